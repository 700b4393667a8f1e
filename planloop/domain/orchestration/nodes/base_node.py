from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

from langchain_core.runnables import RunnableConfig

from planloop.domain.models.agent_state import AgentRole, GraphState
from planloop.domain.streaming.streaming_handler import emit_start
from planloop.infrastructure.observability.logging import agent_logger


def thread_id_of(config: Optional[RunnableConfig]) -> str:
    return ((config or {}).get("configurable") or {}).get("thread_id", "default")


class BaseNode(ABC):
    """Base class for orchestration nodes

    Subclasses implement process() and return a state delta. run() is what the
    graph calls: it announces the node on the custom stream, stamps the delta
    with the node's role and advances the thread's graph-step counter.
    """

    role: AgentRole

    def __init__(self, name: str, description: str):
        self.name = name
        self.description = description

    async def run(self, state: GraphState, config: RunnableConfig) -> Dict[str, Any]:
        emit_start(self.name, step_index=state["current_step_index"], graph_step=state["current_graph_step"])
        agent_logger.node_started(
            self.name,
            graph_step=state["current_graph_step"],
            step_index=state["current_step_index"],
            thread_id=thread_id_of(config),
        )

        delta = await self.process(state, config)
        delta.setdefault("last_agent", self.role.value)
        delta["current_graph_step"] = state["current_graph_step"] + 1
        return delta

    @abstractmethod
    async def process(self, state: GraphState, config: RunnableConfig) -> Dict[str, Any]:
        """Compute the node's state delta"""
        pass

