from typing import Dict, Any, Optional
import asyncio
import copy

import structlog

from planloop.domain.context.memory.cache_memory_store import CacheMemoryStore
from planloop.domain.errors import ConfigurationError
from planloop.domain.models.agent_config import AgentConfig
from planloop.domain.ports.memory_store import AgentConfigSource

logger = structlog.get_logger(__name__)


class InMemoryAgentConfigSource(AgentConfigSource):
    """Versioned agent config blobs held in process"""

    def __init__(self):
        self.configs: Dict[str, Dict[str, Any]] = {}
        self.versions: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def put(self, agent_id: str, data: Dict[str, Any], expected_version: Optional[int] = None) -> int:
        """Store a config blob, bumping its version

        With expected_version set, the write only succeeds if nobody else
        wrote in between.
        """

        async with self._lock:
            current = self.versions.get(agent_id, 0)
            if expected_version is not None and expected_version != current:
                raise ConfigurationError(
                    f"Config for agent '{agent_id}' changed (version {current}, expected {expected_version})"
                )
            self.configs[agent_id] = copy.deepcopy(data)
            self.versions[agent_id] = current + 1
            return current + 1

    async def get_agent_config(self, agent_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            data = self.configs.get(agent_id)
            return copy.deepcopy(data) if data is not None else None

    async def get_version(self, agent_id: str) -> Optional[int]:
        async with self._lock:
            return self.versions.get(agent_id)


class AgentConfigRepository:
    """Loads agent configs through a version-checked cache"""

    def __init__(self, source: AgentConfigSource, cache: Optional[CacheMemoryStore] = None):
        self.source = source
        self.cache = cache or CacheMemoryStore()

    @staticmethod
    def _key(agent_id: str) -> str:
        return f"agent_config:{agent_id}"

    async def get_agent_config(self, agent_id: str) -> AgentConfig:
        """Return a validated config, raising ConfigurationError if it is missing or invalid"""

        key = self._key(agent_id)
        version = await self.source.get_version(agent_id)
        if version is None:
            raise ConfigurationError(f"No configuration found for agent '{agent_id}'")

        cached = await self.cache.get(key, version)
        if cached is not None:
            return cached

        async with self.cache.key_lock(key):
            # another loader may have filled the cache while we waited
            cached = await self.cache.get(key, version)
            if cached is not None:
                return cached

            data = await self.source.get_agent_config(agent_id)
            if data is None:
                raise ConfigurationError(f"No configuration found for agent '{agent_id}'")

            config = AgentConfig.from_mapping(data)
            await self.cache.set(key, config, version)
            logger.info("Agent config loaded", agent_id=agent_id, version=version)
            return config

    async def invalidate(self, agent_id: str) -> bool:
        return await self.cache.delete(self._key(agent_id))
