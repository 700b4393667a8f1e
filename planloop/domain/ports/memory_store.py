"""
Ports for the persistent stores shared across threads.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field


class MemoryRecord(BaseModel):
    """Long-term memory entry as persisted"""
    id: str
    key: str = Field(description="thread/task/step key the entry is upserted under")
    thread_id: str
    source_task_id: str
    step_number: int
    content: str
    embedding: List[float] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class MemoryStore(ABC):
    @abstractmethod
    async def upsert_memories(self, records: Sequence[MemoryRecord]) -> None:
        """Insert records, superseding any existing record with the same key."""
        ...

    @abstractmethod
    async def similar_memories(self, embedding: Sequence[float], k: int) -> List[Tuple[MemoryRecord, float]]:
        """Return up to k records ranked by descending similarity."""
        ...


class AgentConfigSource(ABC):
    @abstractmethod
    async def get_agent_config(self, agent_id: str) -> Optional[Dict[str, Any]]:
        """Return the raw config blob, or None when the agent is unknown."""
        ...

    @abstractmethod
    async def get_version(self, agent_id: str) -> Optional[int]:
        """Return the current version pointer of the agent's config."""
        ...
