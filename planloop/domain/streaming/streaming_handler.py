from typing import Dict, Any, Optional, List, Callable
import structlog

from langchain_core.messages import BaseMessage
from langgraph.config import get_stream_writer

from planloop.domain.models.agent_state import ThreadStatus, message_text
from planloop.domain.models.events import EventType, StreamEvent

logger = structlog.get_logger(__name__)

INTERRUPT_KEY = "__interrupt__"
PREVIEW_CHARS = 500


def _discard(_: Any) -> None:
    return None


def node_writer() -> Callable[[Any], None]:
    """Custom stream writer of the running node, or a no-op outside a graph run"""

    try:
        return get_stream_writer()
    except RuntimeError:
        return _discard


def emit_start(node: str, **payload: Any) -> None:
    node_writer()({"event": EventType.START.value, "node": node, "payload": payload})


def emit_token(node: str, content: str, iteration: int, step_index: int) -> None:
    node_writer()({
        "event": EventType.TOKEN.value,
        "node": node,
        "payload": {"content": content, "iteration": iteration, "step_index": step_index},
    })


def summarize_delta(delta: Dict[str, Any]) -> Dict[str, Any]:
    """Client-facing summary of a node's state delta"""

    summary: Dict[str, Any] = {}
    messages: List[BaseMessage] = delta.get("messages") or []
    if messages:
        last = messages[-1]
        summary["message"] = message_text(last)[:PREVIEW_CHARS]
        summary["message_type"] = last.type
        summary["tags"] = dict(last.additional_kwargs)
        tool_calls = getattr(last, "tool_calls", None)
        if tool_calls:
            summary["tool_calls"] = [{"name": c["name"], "id": c.get("id")} for c in tool_calls]
    if "plan" in delta:
        plan = delta["plan"]
        summary["plan"] = {
            "summary": plan["summary"],
            "steps": [{"number": s["number"], "name": s["name"], "status": s["status"]} for s in plan["steps"]],
        }
    for key in ("current_step_index", "retry", "current_graph_step"):
        if key in delta:
            summary[key] = delta[key]
    return summary


class StreamingHandler:
    """Turns graph stream chunks into StreamEvents for one invocation"""

    def __init__(self, thread_id: str, run_id: str):
        self.thread_id = thread_id
        self.run_id = run_id
        self.checkpoint_id: Optional[str] = None

    def handle_update(self, update: Dict[str, Any]) -> List[StreamEvent]:
        """Events for an 'updates' chunk"""

        events = []
        for node_id, node_data in update.items():
            if node_id == INTERRUPT_KEY:
                continue
            logger.debug("Processing node update", thread_id=self.thread_id, node_id=node_id)
            events.append(self._event(EventType.END, node_id, summarize_delta(node_data or {})))
        return events

    def handle_custom(self, data: Any) -> Optional[StreamEvent]:
        """Event for a 'custom' chunk written by a node"""

        if not isinstance(data, dict) or "event" not in data:
            return None
        return self._event(EventType(data["event"]), data.get("node"), data.get("payload") or {})

    def final_event(
        self,
        status: ThreadStatus,
        payload: Optional[Dict[str, Any]] = None,
        error: bool = False,
        aborted: bool = False,
    ) -> StreamEvent:
        """Single terminal event of the invocation"""

        return StreamEvent(
            event=EventType.END,
            node_role=None,
            thread_id=self.thread_id,
            checkpoint_id=self.checkpoint_id,
            payload={"run_id": self.run_id, **(payload or {})},
            final=True,
            error=error,
            aborted=aborted,
            status=status,
        )

    def _event(self, event: EventType, node: Optional[str], payload: Dict[str, Any]) -> StreamEvent:
        return StreamEvent(
            event=event,
            node_role=node,
            thread_id=self.thread_id,
            checkpoint_id=self.checkpoint_id,
            payload=payload,
            status=ThreadStatus.RUNNING,
        )
