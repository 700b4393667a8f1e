from typing import Dict, Any, List, Optional
import asyncio
import json
import time

import structlog
from langchain_core.messages import AIMessage, ToolMessage
from langchain_core.runnables import RunnableConfig

from planloop.domain.errors import ToolExecutionError
from planloop.domain.models.agent_config import GraphLimits
from planloop.domain.models.agent_state import AgentRole, GraphState, latest_iteration, message_tags
from planloop.domain.orchestration.nodes.base_node import BaseNode
from planloop.domain.tool.tool_registry import ToolRegistry
from planloop.infrastructure.observability.logging import agent_logger, metrics

logger = structlog.get_logger(__name__)

ARGS_PREVIEW_CHARS = 150


def preview_args(args: Any, limit: int = ARGS_PREVIEW_CHARS) -> str:
    text = json.dumps(args, default=str, ensure_ascii=False)
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def truncate_output(text: str, budget: int) -> str:
    """Cut text to at most budget characters, ending with a truncation marker"""

    if len(text) <= budget:
        return text

    dropped = len(text) - budget
    while True:
        marker = f"... [truncated {dropped} chars]"
        keep = budget - len(marker)
        if keep <= 0:
            return marker[:budget]
        if len(text) - keep == dropped:
            return text[:keep] + marker
        dropped = len(text) - keep


def stringify_output(output: Any) -> str:
    if isinstance(output, str):
        return output
    if isinstance(output, ToolMessage):
        return output.content if isinstance(output.content, str) else json.dumps(output.content, default=str)
    return json.dumps(output, default=str, ensure_ascii=False)


class ToolExecutor(BaseNode):
    """Runs the tool calls requested by the executor's last message"""

    role = AgentRole.TOOLS

    def __init__(self, registry: ToolRegistry, limits: GraphLimits):
        super().__init__("tools", "Invokes requested tools and truncates their output")
        self.registry = registry
        self.limits = limits

    async def process(self, state: GraphState, config: Optional[RunnableConfig] = None) -> Dict[str, Any]:
        """Invoke each requested tool in order and append the results"""

        last_message = state["messages"][-1]
        tool_calls = last_message.tool_calls if isinstance(last_message, AIMessage) else []
        iteration = last_message.additional_kwargs.get("iteration", latest_iteration(state["messages"]))

        results: List[ToolMessage] = []
        for call in tool_calls:
            results.append(await self._invoke(call, iteration))

        return {"messages": results}

    async def _invoke(self, call: Dict[str, Any], iteration: int) -> ToolMessage:
        name = call["name"]
        args = call.get("args") or {}
        tool = self.registry.get_tool(name)
        args_preview = preview_args(args)

        logger.info("Executing tool", tool_name=name, args=args_preview, iteration=iteration)
        started = time.perf_counter()
        try:
            output = await asyncio.wait_for(tool.ainvoke(args), timeout=self.limits.tool_timeout)
        except TimeoutError as e:
            agent_logger.tool_finished(name, args_preview, error="timeout")
            metrics.increment_counter("tool.errors", tags={"tool": name})
            raise ToolExecutionError(name, f"timed out after {self.limits.tool_timeout}s") from e
        except Exception as e:
            agent_logger.tool_finished(name, args_preview, error=str(e))
            metrics.increment_counter("tool.errors", tags={"tool": name})
            raise ToolExecutionError(name, str(e)) from e

        duration_ms = (time.perf_counter() - started) * 1000
        raw = stringify_output(output)
        content = truncate_output(raw, self.limits.tool_output_budget)

        agent_logger.tool_finished(
            name,
            args_preview,
            duration_ms=duration_ms,
            output_chars=len(raw),
            truncated=len(content) < len(raw),
        )
        metrics.record_latency("tool", duration_ms, tags={"tool": name})

        return ToolMessage(
            content=content,
            tool_call_id=call.get("id") or "",
            name=name,
            additional_kwargs=message_tags(AgentRole.TOOLS, iteration=iteration),
        )
