from typing import Dict, Any, List, Optional, Sequence
import asyncio
import time

import structlog
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage, HumanMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool
from langgraph.types import interrupt

from planloop.domain.context.context_manager import build_context_window, estimate_messages_tokens
from planloop.domain.context.memory.memory_coordinator import format_long_term
from planloop.domain.context.memory.short_term_memory import format_short_term
from planloop.domain.errors import ModelInvocationError, is_context_limit_error
from planloop.domain.models.agent_config import AgentConfig
from planloop.domain.models.agent_state import (
    AgentRole, GraphState, Step, StepType, REPLAN_MARKER,
    current_step, has_terminal_marker, latest_iteration, message_tags, message_text
)
from planloop.domain.orchestration.nodes.base_node import BaseNode, thread_id_of
from planloop.domain.orchestration.prompts import EXECUTOR_PROMPT, EXECUTOR_RETRY_ADDENDUM
from planloop.domain.ports.model_gateway import ModelGateway
from planloop.domain.streaming.streaming_handler import emit_token
from planloop.domain.tool.tool_registry import ToolRegistry
from planloop.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

TOKEN_LIMIT_MESSAGE = (
    "Error: The conversation history has grown too large, exceeding token limits. Cannot proceed."
)
UNEXPECTED_ERROR_MESSAGE = "Error: An unexpected error occurred while processing the request. Error : {error}"


class ExecutorNode(BaseNode):
    """Executes the current plan step with the tool-bound model"""

    role = AgentRole.EXECUTOR

    def __init__(self, gateway: ModelGateway, registry: ToolRegistry, config: AgentConfig):
        super().__init__("executor", "Drives one plan step through the model")
        self.gateway = gateway
        self.registry = registry
        self.config = config

    @property
    def limits(self):
        return self.config.limits

    async def process(self, state: GraphState, config: RunnableConfig) -> Dict[str, Any]:
        thread_id = thread_id_of(config)
        step = current_step(state)
        index = state["current_step_index"]
        iteration = latest_iteration(state["messages"]) + 1

        if step is None:
            logger.error("No step to execute", thread_id=thread_id, step_index=index)
            return {"messages": [AIMessage(
                content=f"Error: no plan step at index {index}.",
                additional_kwargs=message_tags(AgentRole.EXECUTOR, final=True, error="no_current_step"),
            )]}

        if step["type"] == StepType.HUMAN_IN_THE_LOOP and self.config.allows_human_input:
            return self._ask_human(step, index, iteration)

        prompt = self._build_prompt(state, step)
        tools = self.registry.get_available_tools()
        logger.info(
            "Executing step",
            thread_id=thread_id,
            step=step["number"],
            retry=state["retry"],
            iteration=iteration,
            context_tokens=estimate_messages_tokens(prompt),
        )

        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._call_model(prompt, tools, iteration, index),
                timeout=self.limits.model_timeout,
            )
        except Exception as e:
            return {"messages": [self._error_message(e, thread_id, iteration)]}
        metrics.record_latency("model", (time.perf_counter() - started) * 1000, tags={"node": self.name})

        text = message_text(response)
        final = bool(response.additional_kwargs.get("final")) or has_terminal_marker(text)
        tags = message_tags(AgentRole.EXECUTOR, final=final, iteration=iteration, step_index=index)
        if not final and REPLAN_MARKER in text:
            tags["replan"] = True

        message = AIMessage(
            content=response.content,
            tool_calls=list(response.tool_calls or []),
            usage_metadata=response.usage_metadata,
            response_metadata=dict(response.response_metadata or {}),
            additional_kwargs=tags,
        )
        return {"messages": [message]}

    async def _call_model(
        self,
        prompt: Sequence[BaseMessage],
        tools: List[BaseTool],
        iteration: int,
        index: int,
    ) -> AIMessage:
        if not self.limits.stream_tokens:
            return await self.gateway.ainvoke(prompt, tools or None)

        response: Optional[AIMessageChunk] = None
        async for chunk in self.gateway.astream(prompt, tools or None):
            token = message_text(chunk)
            if token:
                emit_token(self.name, token, iteration, index)
            response = chunk if response is None else response + chunk

        if response is None:
            raise ModelInvocationError("Model returned an empty stream")
        return response

    def _ask_human(self, step: Step, index: int, iteration: int) -> Dict[str, Any]:
        answer = interrupt({
            "step_number": step["number"],
            "step_name": step["name"],
            "question": step["description"],
        })
        return {"messages": [HumanMessage(
            content=str(answer),
            additional_kwargs=message_tags(AgentRole.HUMAN, iteration=iteration, step_index=index),
        )]}

    def _build_prompt(self, state: GraphState, step: Step) -> List[BaseMessage]:
        retry_addendum = ""
        if state["retry"] > 0:
            retry_addendum = EXECUTOR_RETRY_ADDENDUM.format(
                retry=state["retry"],
                max_retries=self.limits.max_step_retries,
                reason=self._last_rejection(state),
            )

        memories = state["memories"]
        prompt = EXECUTOR_PROMPT.format_messages(
            persona=self.config.persona,
            step_number=step["number"],
            step_name=step["name"],
            step_description=step["description"],
            tools=self.registry.describe(),
            short_term=format_short_term(memories["stm"]) or "None.",
            long_term=format_long_term(memories["ltm"]) or "None.",
            retry_addendum=retry_addendum,
            request=state["user_request"],
        )
        return prompt + build_context_window(state["messages"], self.limits.context_iterations)

    @staticmethod
    def _last_rejection(state: GraphState) -> str:
        for message in reversed(state["messages"]):
            if message.additional_kwargs.get("from") == AgentRole.EXEC_VERIFIER:
                return message.additional_kwargs.get("reason") or message_text(message)
        return "unknown"

    def _error_message(self, error: Exception, thread_id: str, iteration: int) -> AIMessage:
        metrics.increment_counter("model.errors", tags={"node": self.name})
        if is_context_limit_error(error):
            logger.error("Context limit exceeded", thread_id=thread_id, error=str(error))
            return AIMessage(
                content=TOKEN_LIMIT_MESSAGE,
                additional_kwargs=message_tags(
                    AgentRole.EXECUTOR, final=True, error="token_limit_exceeded", iteration=iteration
                ),
            )

        detail = str(error) or error.__class__.__name__
        logger.error("Model invocation failed", thread_id=thread_id, error=detail)
        return AIMessage(
            content=UNEXPECTED_ERROR_MESSAGE.format(error=detail),
            additional_kwargs=message_tags(
                AgentRole.EXECUTOR, final=True, error="unexpected_error", iteration=iteration
            ),
        )
