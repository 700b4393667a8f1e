from typing import Dict, List, Optional, Sequence, Set
import asyncio
import uuid

import structlog
from langchain_core.embeddings import Embeddings
from langchain_core.messages import BaseMessage
from pydantic import BaseModel, Field

from planloop.domain.context.memory.short_term_memory import ShortTermMemory, format_step_trail
from planloop.domain.models.agent_config import MemorySettings
from planloop.domain.models.agent_state import MemoryItem, Memories, Plan, StepStatus
from planloop.domain.orchestration.prompts import MEMORY_SUMMARY_PROMPT
from planloop.domain.ports.memory_store import MemoryRecord, MemoryStore
from planloop.domain.ports.model_gateway import ModelGateway

logger = structlog.get_logger(__name__)

LTM_PREVIEW_CHARS = 120


class MemorySummary(BaseModel):
    """Short summary of a completed step"""
    summary: str = Field(description="One to three sentence summary")


def memory_key(thread_id: str, task_id: str, step_number: int) -> str:
    return f"{thread_id}:{task_id}:{step_number}"


def format_long_term(items: Sequence[MemoryItem]) -> str:
    """Render retrieved memories for a prompt, most similar first"""

    lines = []
    for i, item in enumerate(items):
        similarity = item.get("similarity", 0.0) * 100
        content = item["content"]
        preview = content[:LTM_PREVIEW_CHARS] + ("..." if len(content) > LTM_PREVIEW_CHARS else "")
        lines.append(f"E{i}:({similarity:.1f}%)→{preview}")
    return "\n".join(lines)


class MemoryCoordinator:
    """Writes step memories and retrieves long-term context"""

    def __init__(
        self,
        settings: MemorySettings,
        gateway: ModelGateway,
        store: Optional[MemoryStore] = None,
        embeddings: Optional[Embeddings] = None,
    ):
        self.settings = settings
        self.gateway = gateway
        self.store = store
        self.embeddings = embeddings
        self.short_term = ShortTermMemory(settings.short_term_memory)
        self._pending: Dict[str, Dict[asyncio.Task, str]] = {}
        self._written: Dict[str, Set[str]] = {}

    @property
    def long_term_enabled(self) -> bool:
        return self.settings.ltm_enabled and self.store is not None and self.embeddings is not None

    def record_step(
        self,
        thread_id: str,
        memories: Memories,
        plan: Plan,
        step_index: int,
        next_index: int,
        trail: Sequence[BaseMessage],
    ) -> Memories:
        """Push the step that just changed status onto STM and schedule the LTM write

        step_index is the step that was judged; next_index is current_step_index
        after the transition. Returns the new memories value.
        """

        step = plan["steps"][step_index]
        item = self.short_term.make_item(format_step_trail(step, trail), plan["id"])
        stm = self.short_term.push(memories["stm"], item)

        logger.debug(
            "Short-term memory updated",
            thread_id=thread_id,
            step=step["number"],
            size=len(stm),
            capacity=self.short_term.capacity,
        )

        previous_index = next_index - 1
        if self.long_term_enabled and previous_index >= 0:
            previous = plan["steps"][previous_index]
            if previous["status"] == StepStatus.COMPLETED:
                content = item["content"] if previous_index == step_index else format_step_trail(previous, [])
                self._schedule_long_term_write(thread_id, plan["id"], previous["number"], content)

        return {"stm": stm, "ltm": list(memories["ltm"])}

    async def retrieve(self, query: str, memories: Memories) -> List[MemoryItem]:
        """Top similar long-term entries not already represented in STM"""

        if not self.long_term_enabled or not query:
            return []

        try:
            embedding = await self.embeddings.aembed_query(query)
            ranked = await self.store.similar_memories(embedding, self.settings.memory_size)
        except Exception as e:
            logger.warning("Long-term memory retrieval failed", error=str(e))
            return []

        in_stm = {item["source_task_id"] for item in memories["stm"]}
        results: List[MemoryItem] = [
            {
                "id": record.id,
                "content": record.content,
                "source_task_id": record.source_task_id,
                "timestamp": record.created_at.isoformat(),
                "similarity": similarity,
            }
            for record, similarity in ranked
            if record.source_task_id not in in_stm
        ]
        results.sort(key=lambda item: item["similarity"], reverse=True)

        logger.debug("Long-term memories retrieved", count=len(results), excluded=len(ranked) - len(results))
        return results

    def _schedule_long_term_write(self, thread_id: str, task_id: str, step_number: int, content: str):
        key = memory_key(thread_id, task_id, step_number)
        written = self._written.setdefault(thread_id, set())
        if key in written:
            return
        written.add(key)

        task = asyncio.create_task(self._write_long_term(key, thread_id, task_id, step_number, content))
        pending = self._pending.setdefault(thread_id, {})
        pending[task] = key
        task.add_done_callback(lambda done: pending.pop(done, None))

    async def _write_long_term(self, key: str, thread_id: str, task_id: str, step_number: int, content: str):
        try:
            prompt = MEMORY_SUMMARY_PROMPT.format_messages(content=content)
            summary = await self.gateway.astructured(prompt, MemorySummary)
            embedding = await self.embeddings.aembed_query(summary.summary)
            await self.store.upsert_memories([
                MemoryRecord(
                    id=str(uuid.uuid4()),
                    key=key,
                    thread_id=thread_id,
                    source_task_id=task_id,
                    step_number=step_number,
                    content=summary.summary,
                    embedding=embedding,
                )
            ])
            logger.debug("Long-term memory upserted", key=key)
        except Exception as e:
            # LTM is best-effort enrichment
            self._written.get(thread_id, set()).discard(key)
            logger.warning("Long-term memory write failed", key=key, error=str(e))

    async def drain(self, thread_id: str) -> None:
        """Wait for the thread's outstanding LTM writes"""

        pending = list(self._pending.get(thread_id, ()))
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._pending.pop(thread_id, None)

    def cancel(self, thread_id: str) -> int:
        """Cancel the thread's outstanding LTM writes; their steps may be written again"""

        pending = self._pending.pop(thread_id, {})
        written = self._written.get(thread_id, set())
        for task, key in pending.items():
            task.cancel()
            written.discard(key)
        return len(pending)

    def forget(self, thread_id: str) -> None:
        """Drop all bookkeeping for a deleted thread"""

        self.cancel(thread_id)
        self._written.pop(thread_id, None)
