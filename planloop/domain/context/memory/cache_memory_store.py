from typing import Dict, Any, Optional
import asyncio
from datetime import datetime, timedelta


class CacheMemoryStore:
    """In-memory cache whose entries are pinned to a version pointer"""

    def __init__(self, ttl: int = 3600):
        self.ttl = ttl
        self.cache: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self._key_locks: Dict[str, asyncio.Lock] = {}

    def key_lock(self, key: str) -> asyncio.Lock:
        """Lock serializing writers of one key"""

        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        return lock

    async def set(self, key: str, value: Any, version: int, ttl: Optional[int] = None) -> None:
        """Cache a value together with the version it was read at"""

        async with self._lock:
            self.cache[key] = {
                "value": value,
                "version": version,
                "expires_at": datetime.utcnow() + timedelta(seconds=ttl or self.ttl),
            }

    async def get(self, key: str, current_version: Optional[int]) -> Optional[Any]:
        """Return the cached value only if it is fresh and matches current_version"""

        async with self._lock:
            entry = self.cache.get(key)
            if entry is None:
                return None

            if datetime.utcnow() > entry["expires_at"] or entry["version"] != current_version:
                del self.cache[key]
                return None

            return entry["value"]

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self.cache.pop(key, None) is not None

    async def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""

        async with self._lock:
            now = datetime.utcnow()
            active_count = sum(1 for entry in self.cache.values() if now <= entry["expires_at"])
            return {
                "total_keys": len(self.cache),
                "active_keys": active_count,
                "expired_keys": len(self.cache) - active_count,
            }
