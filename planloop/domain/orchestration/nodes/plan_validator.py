from typing import Dict, Any
import asyncio

import structlog
from langchain_core.messages import AIMessage
from langchain_core.runnables import RunnableConfig
from pydantic import BaseModel, Field

from planloop.domain.context.memory.memory_coordinator import MemoryCoordinator, format_long_term
from planloop.domain.models.agent_config import AgentConfig, LtmRetrievalPolicy
from planloop.domain.models.agent_state import AgentRole, GraphState, message_tags
from planloop.domain.orchestration.nodes.base_node import BaseNode, thread_id_of
from planloop.domain.orchestration.nodes.planner import format_plan
from planloop.domain.orchestration.prompts import PLAN_VALIDATOR_PROMPT
from planloop.domain.ports.model_gateway import ModelGateway
from planloop.domain.tool.tool_registry import ToolRegistry

logger = structlog.get_logger(__name__)

REASON_CHARS = 300


class PlanVerdict(BaseModel):
    """Structured plan review"""
    is_validated: bool = Field(description="Whether the plan can be executed as written")
    reason: str = Field(description="Short justification")


class PlanValidatorNode(BaseNode):
    """Approves or rejects a freshly compiled plan"""

    role = AgentRole.PLAN_VALIDATOR

    def __init__(self, gateway: ModelGateway, registry: ToolRegistry, memory: MemoryCoordinator, config: AgentConfig):
        super().__init__("validator", "Judges plan feasibility before execution")
        self.gateway = gateway
        self.registry = registry
        self.memory = memory
        self.config = config

    async def process(self, state: GraphState, config: RunnableConfig) -> Dict[str, Any]:
        thread_id = thread_id_of(config)
        memories = state["memories"]
        delta: Dict[str, Any] = {}

        if self.config.memory.ltm_retrieval == LtmRetrievalPolicy.ON_VALIDATION:
            ltm = await self.memory.retrieve(state["user_request"], memories)
            memories = {"stm": list(memories["stm"]), "ltm": ltm}
            delta["memories"] = memories

        prompt = PLAN_VALIDATOR_PROMPT.format_messages(
            tools=self.registry.describe(),
            long_term=format_long_term(memories["ltm"]) or "None.",
            request=state["user_request"],
            plan=format_plan(state["plan"]),
        )

        try:
            verdict = await asyncio.wait_for(
                self.gateway.astructured(prompt, PlanVerdict),
                timeout=self.config.limits.model_timeout,
            )
        except Exception as e:
            logger.error("Plan validation failed", thread_id=thread_id, error=str(e))
            delta["messages"] = [AIMessage(
                content=f"Error: plan validation could not be completed. Error : {e}",
                additional_kwargs=message_tags(AgentRole.PLAN_VALIDATOR, final=True, error="validator_error"),
            )]
            return delta

        reason = verdict.reason[:REASON_CHARS]
        if verdict.is_validated:
            logger.info("Plan validated", thread_id=thread_id)
            delta["retry"] = 0
            delta["messages"] = [AIMessage(
                content=f"Plan validated: {reason}",
                additional_kwargs=message_tags(AgentRole.PLAN_VALIDATOR, validated=True),
            )]
            return delta

        retry = state["retry"] + 1
        logger.info("Plan rejected", thread_id=thread_id, retry=retry, reason=reason)
        delta["retry"] = retry
        delta["messages"] = [AIMessage(
            content=f"Plan rejected: {reason}",
            additional_kwargs=message_tags(AgentRole.PLAN_VALIDATOR, validated=False, retry=retry),
        )]
        return delta
