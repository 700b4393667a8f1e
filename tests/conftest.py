from typing import Optional

import pytest
from langchain_core.embeddings import DeterministicFakeEmbedding
from langchain_core.messages import HumanMessage

from planloop.domain.models.agent_config import AgentConfig, GraphLimits, MemorySettings
from planloop.domain.models.agent_state import AgentRole, initial_state, message_tags, new_plan, new_step
from planloop.domain.orchestration.core.main_agent import AgentOrchestrator

from fakes import ScriptedGateway, broken_tool, dump_report, lookup_price, slow_tool


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def tools():
    return [lookup_price, dump_report, broken_tool, slow_tool]


@pytest.fixture
def agent_config():
    return AgentConfig(
        id="agent-test",
        name="Test agent",
        limits=GraphLimits(model_timeout=5.0, tool_timeout=0.5),
        memory=MemorySettings(short_term_memory=3, memory_size=5),
    )


@pytest.fixture
def embeddings():
    return DeterministicFakeEmbedding(size=32)


@pytest.fixture
def make_orchestrator(agent_config, tools):
    def factory(gateway, config: Optional[AgentConfig] = None, **kwargs) -> AgentOrchestrator:
        kwargs.setdefault("tools", tools)
        return AgentOrchestrator(config or agent_config, gateway, **kwargs)

    return factory


@pytest.fixture
def make_state():
    """Graph state positioned on a plan, for driving single nodes"""

    def factory(step_names=("fetch", "report"), index=0, retry=0, last_agent=AgentRole.EXECUTOR, **overrides):
        request = "Summarise the market"
        state = initial_state(request, HumanMessage(content=request, additional_kwargs=message_tags(AgentRole.USER)))
        state["plan"] = new_plan(
            "plan", [new_step(i + 1, name, f"Carry out {name}") for i, name in enumerate(step_names)]
        )
        state["current_step_index"] = index
        state["retry"] = retry
        state["last_agent"] = last_agent.value
        state.update(overrides)
        return state

    return factory


@pytest.fixture
def run_config():
    return {"configurable": {"thread_id": "thread-unit"}}
