from typing import Dict, Any, List
import asyncio

import structlog
from langchain_core.messages import AIMessage, BaseMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from pydantic import BaseModel, Field

from planloop.domain.context.memory.memory_coordinator import MemoryCoordinator
from planloop.domain.models.agent_config import AgentConfig
from planloop.domain.models.agent_state import (
    AgentRole, GraphState, StepStatus,
    current_step, latest_iteration, message_tags, message_text, replace_step
)
from planloop.domain.orchestration.nodes.base_node import BaseNode, thread_id_of
from planloop.domain.orchestration.prompts import STEP_VERIFIER_PROMPT
from planloop.domain.ports.model_gateway import ModelGateway

logger = structlog.get_logger(__name__)

RESULT_CHARS = 500


class StepVerdict(BaseModel):
    """Structured step review"""
    validated: bool = Field(description="Whether the step's objective was met")
    reason: str = Field(description="Short justification")


class StepJudgment(BaseModel):
    """Verifier decision for the current step"""
    validated: bool
    reason: str
    is_final: bool = False


def attempt_trail(messages: List[BaseMessage]) -> List[BaseMessage]:
    """Messages of the latest executor iteration"""

    iteration = latest_iteration(messages)
    trail = [m for m in messages if m.additional_kwargs.get("iteration") == iteration]
    return trail or messages[-1:]


def attempt_result(trail: List[BaseMessage]) -> str:
    """Text kept as the step result: the last non-empty output of the attempt"""

    for message in reversed(trail):
        text = message_text(message).strip()
        if text:
            return text[:RESULT_CHARS]
    return ""


def render_output(trail: List[BaseMessage]) -> str:
    parts = []
    for message in trail:
        text = message_text(message)
        if isinstance(message, ToolMessage):
            parts.append(f"[tool {message.name}] {text}")
        elif isinstance(message, AIMessage) and message.tool_calls:
            calls = ", ".join(call["name"] for call in message.tool_calls)
            parts.append(f"[model called {calls}] {text}".rstrip())
        elif text:
            parts.append(f"[{message.type}] {text}")
    return "\n".join(parts) or "(no output)"


class StepVerifierNode(BaseNode):
    """Judges the current step and advances, retries or fails it"""

    role = AgentRole.EXEC_VERIFIER

    def __init__(self, gateway: ModelGateway, memory: MemoryCoordinator, config: AgentConfig):
        super().__init__("verifier", "Checks step completion and bounds step retries")
        self.gateway = gateway
        self.memory = memory
        self.config = config

    async def process(self, state: GraphState, config: RunnableConfig) -> Dict[str, Any]:
        thread_id = thread_id_of(config)
        index = state["current_step_index"]
        step = current_step(state)
        plan = state["plan"]

        if step is None:
            return {"messages": [AIMessage(
                content=f"Error: no plan step at index {index} to verify.",
                additional_kwargs=message_tags(AgentRole.EXEC_VERIFIER, final=True, error="no_current_step"),
            )]}

        trail = attempt_trail(state["messages"])
        result = attempt_result(trail)

        try:
            judgment = await self.judge(state, trail)
        except Exception as e:
            logger.error("Step verification failed", thread_id=thread_id, step=step["number"], error=str(e))
            plan = replace_step(plan, index, status=StepStatus.FAILED.value, result=result)
            return {
                "plan": plan,
                "memories": self.memory.record_step(thread_id, state["memories"], plan, index, index, trail),
                "messages": [AIMessage(
                    content=f"Error: step {step['number']} could not be verified. Error : {e}",
                    additional_kwargs=message_tags(AgentRole.EXEC_VERIFIER, final=True, error="verifier_error"),
                )],
            }

        if judgment.validated:
            plan = replace_step(plan, index, status=StepStatus.COMPLETED.value, result=result)
            next_index = index + 1
            if judgment.is_final:
                content = f"Last Step {step['number']} has been success"
            else:
                content = f"Step {step['number']} has been success"
            logger.info("Step completed", thread_id=thread_id, step=step["number"], is_final=judgment.is_final)
            return {
                "plan": plan,
                "current_step_index": next_index,
                "retry": 0,
                "memories": self.memory.record_step(thread_id, state["memories"], plan, index, next_index, trail),
                "messages": [AIMessage(
                    content=content,
                    additional_kwargs=message_tags(
                        AgentRole.EXEC_VERIFIER,
                        final=judgment.is_final,
                        validated=True,
                        is_final=judgment.is_final,
                        reason=judgment.reason,
                        step_index=index,
                    ),
                )],
            }

        retry = state["retry"] + 1
        delta: Dict[str, Any] = {"retry": retry}
        if retry >= self.config.limits.max_step_retries:
            plan = replace_step(plan, index, status=StepStatus.FAILED.value, result=result)
            delta["plan"] = plan
            delta["memories"] = self.memory.record_step(thread_id, state["memories"], plan, index, index, trail)
            logger.info("Step failed", thread_id=thread_id, step=step["number"], retry=retry)
        else:
            logger.info("Step rejected", thread_id=thread_id, step=step["number"], retry=retry)

        delta["messages"] = [AIMessage(
            content=f"Step {step['number']} not success - Reason: {judgment.reason}",
            additional_kwargs=message_tags(
                AgentRole.EXEC_VERIFIER, validated=False, reason=judgment.reason, retry=retry, step_index=index
            ),
        )]
        return delta

    async def judge(self, state: GraphState, trail: List[BaseMessage]) -> StepJudgment:
        """Ask the model whether the attempt satisfied the step"""

        step = current_step(state)
        prompt = STEP_VERIFIER_PROMPT.format_messages(
            step_number=step["number"],
            step_name=step["name"],
            step_description=step["description"],
            output=render_output(trail),
        )
        verdict = await asyncio.wait_for(
            self.gateway.astructured(prompt, StepVerdict),
            timeout=self.config.limits.model_timeout,
        )
        is_final = verdict.validated and state["current_step_index"] == len(state["plan"]["steps"]) - 1
        return StepJudgment(validated=verdict.validated, reason=verdict.reason, is_final=is_final)
