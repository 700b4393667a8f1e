from typing import List, Sequence
from datetime import datetime
import uuid

from langchain_core.messages import BaseMessage, ToolMessage

from planloop.domain.models.agent_state import MemoryItem, Step, message_text

TOOL_DIGEST_CHARS = 200


class ShortTermMemory:
    """Bounded FIFO of recent step summaries"""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("STM capacity must be positive")
        self.capacity = capacity

    def push(self, items: Sequence[MemoryItem], item: MemoryItem) -> List[MemoryItem]:
        """Return a new buffer with item appended, evicting the oldest entries at capacity"""

        buffer = list(items)
        while len(buffer) >= self.capacity:
            buffer.pop(0)
        buffer.append(item)
        return buffer

    def make_item(self, content: str, source_task_id: str) -> MemoryItem:
        return {
            "id": str(uuid.uuid4()),
            "content": content,
            "source_task_id": source_task_id,
            "timestamp": datetime.utcnow().isoformat(),
        }


def format_step_trail(step: Step, trail: Sequence[BaseMessage]) -> str:
    """Compact one-line summary of a step and the tool results it produced"""

    text = f"S{step['number']}:{step['name']}"
    tool_results = [m for m in trail if isinstance(m, ToolMessage)]
    if tool_results:
        digest = "|".join(
            f"T{i}:{m.name or 'tool'}->{message_text(m)[:TOOL_DIGEST_CHARS]}"
            for i, m in enumerate(tool_results)
        )
        text += f"[{digest}]"
    if step.get("result"):
        text += f"→{step['result']}"
    return text


def format_short_term(items: Sequence[MemoryItem]) -> str:
    """Render STM for a prompt, oldest first"""

    if not items:
        return ""
    return "\n".join(item["content"] for item in items)
