from typing import Dict, Any, List
import asyncio

import structlog
from langchain_core.messages import AIMessage, BaseMessage
from langchain_core.runnables import RunnableConfig
from pydantic import BaseModel, Field

from planloop.domain.context.memory.memory_coordinator import MemoryCoordinator, format_long_term
from planloop.domain.context.memory.short_term_memory import format_short_term
from planloop.domain.models.agent_config import AgentConfig, LtmRetrievalPolicy
from planloop.domain.models.agent_state import (
    AgentRole, GraphState, Plan, StepStatus, StepType,
    message_tags, message_text, new_plan, new_step
)
from planloop.domain.orchestration.nodes.base_node import BaseNode, thread_id_of
from planloop.domain.orchestration.prompts import PLANNER_PROMPT, PLANNER_REVISION_PROMPT
from planloop.domain.ports.model_gateway import ModelGateway
from planloop.domain.tool.tool_registry import ToolRegistry

logger = structlog.get_logger(__name__)

MAX_PLAN_STEPS = 20


class PlannedStep(BaseModel):
    """Step as proposed by the model"""
    name: str = Field(description="Short step name")
    description: str = Field(description="What the step must achieve")
    type: StepType = Field(default=StepType.MESSAGE, description="message, tools or human_in_the_loop")


class PlanProposal(BaseModel):
    """Structured planner output"""
    summary: str = Field(description="One sentence summary of the plan")
    steps: List[PlannedStep] = Field(min_length=1, max_length=MAX_PLAN_STEPS)


def format_plan(plan: Plan) -> str:
    lines = [f"{step['number']}. {step['name']}: {step['description']}" for step in plan["steps"]]
    return "\n".join(lines)


def failed_plan(reason: str) -> Plan:
    step = new_step(1, "planning_failed", reason)
    step["status"] = StepStatus.FAILED.value
    step["result"] = reason
    return new_plan(f"Planning failed: {reason}", [step])


class PlannerNode(BaseNode):
    """Compiles the user's request into an ordered plan"""

    role = AgentRole.PLANNER

    def __init__(self, gateway: ModelGateway, registry: ToolRegistry, memory: MemoryCoordinator, config: AgentConfig):
        super().__init__("planner", "Produces a 1-20 step plan, revising it after rejections")
        self.gateway = gateway
        self.registry = registry
        self.memory = memory
        self.config = config

    async def process(self, state: GraphState, config: RunnableConfig) -> Dict[str, Any]:
        rejected = state["last_agent"] == AgentRole.PLAN_VALIDATOR
        revising = rejected or state["last_agent"] == AgentRole.EXECUTOR
        memories = state["memories"]
        delta: Dict[str, Any] = {}

        if self.config.memory.ltm_retrieval == LtmRetrievalPolicy.ON_PLANNING:
            ltm = await self.memory.retrieve(state["user_request"], memories)
            memories = {"stm": list(memories["stm"]), "ltm": ltm}
            delta["memories"] = memories

        try:
            prompt = self._build_prompt(state, memories, revising)
            proposal = await asyncio.wait_for(
                self.gateway.astructured(prompt, PlanProposal),
                timeout=self.config.limits.model_timeout,
            )
            plan = new_plan(
                proposal.summary,
                [new_step(i + 1, s.name, s.description, s.type.value) for i, s in enumerate(proposal.steps)],
            )
            message = AIMessage(
                content=f"Plan created with {len(plan['steps'])} steps:\n{format_plan(plan)}",
                additional_kwargs=message_tags(AgentRole.PLANNER, plan_id=plan["id"], revision=revising),
            )
            logger.info(
                "Plan created",
                thread_id=thread_id_of(config),
                steps=len(plan["steps"]),
                revision=revising,
            )
        except Exception as e:
            logger.error("Planning failed", thread_id=thread_id_of(config), error=str(e))
            plan = failed_plan(str(e) or e.__class__.__name__)
            message = AIMessage(
                content=plan["summary"],
                additional_kwargs=message_tags(AgentRole.PLANNER, plan_failed=True),
            )

        delta["plan"] = plan
        delta["current_step_index"] = 0
        delta["messages"] = [message]
        # rejection re-plans keep the counter bounding the validator loop
        if not rejected:
            delta["retry"] = 0
        return delta

    def _build_prompt(self, state: GraphState, memories, revising: bool) -> List[BaseMessage]:
        values = {
            "persona": self.config.persona,
            "tools": self.registry.describe(),
            "short_term": format_short_term(memories["stm"]) or "None.",
            "long_term": format_long_term(memories["ltm"]) or "None.",
            "request": state["user_request"],
        }
        if not revising:
            return PLANNER_PROMPT.format_messages(**values)

        rejection = message_text(state["messages"][-1])
        return PLANNER_REVISION_PROMPT.format_messages(
            reason=rejection,
            previous_plan=format_plan(state["plan"]),
            **values,
        )
