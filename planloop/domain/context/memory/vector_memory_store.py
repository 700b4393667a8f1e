from typing import Dict, List, Sequence, Tuple
import asyncio

import numpy as np
import structlog

from planloop.domain.ports.memory_store import MemoryRecord, MemoryStore

logger = structlog.get_logger(__name__)


class VectorMemoryStore(MemoryStore):
    """In-process long-term memory store with cosine similarity search"""

    def __init__(self, max_records: int = 1000):
        self.records: Dict[str, MemoryRecord] = {}
        self.max_records = max_records
        self._lock = asyncio.Lock()

    async def upsert_memories(self, records: Sequence[MemoryRecord]) -> None:
        """Insert records, superseding existing entries with the same key"""

        async with self._lock:
            for record in records:
                if record.key in self.records:
                    logger.debug("Superseding memory", key=record.key)
                    del self.records[record.key]
                self.records[record.key] = record

            # dicts keep insertion order, so the oldest keys go first
            while len(self.records) > self.max_records:
                oldest = next(iter(self.records))
                del self.records[oldest]

    async def similar_memories(self, embedding: Sequence[float], k: int) -> List[Tuple[MemoryRecord, float]]:
        """Rank stored records by cosine similarity to embedding"""

        async with self._lock:
            records = [r for r in self.records.values() if r.embedding]

        if not records or k <= 0:
            return []

        query = np.asarray(embedding, dtype=float)
        matrix = np.asarray([r.embedding for r in records], dtype=float)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = 1.0
        scores = matrix @ query / norms

        order = np.argsort(-scores)[:k]
        return [(records[i], float(scores[i])) for i in order]

    async def count(self) -> int:
        async with self._lock:
            return len(self.records)
