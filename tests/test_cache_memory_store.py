from datetime import datetime, timedelta

from planloop.domain.context.memory.cache_memory_store import CacheMemoryStore


async def test_get_returns_value_for_current_version():
    cache = CacheMemoryStore()
    await cache.set("agent_config:a", {"name": "A"}, version=1)

    assert await cache.get("agent_config:a", 1) == {"name": "A"}


async def test_stale_version_is_evicted_not_served():
    cache = CacheMemoryStore()
    await cache.set("agent_config:a", {"name": "A"}, version=1)

    assert await cache.get("agent_config:a", 2) is None
    # evicted, so even the old version misses now
    assert await cache.get("agent_config:a", 1) is None


async def test_expired_entry_is_evicted():
    cache = CacheMemoryStore(ttl=60)
    await cache.set("k", "v", version=1)
    cache.cache["k"]["expires_at"] = datetime.utcnow() - timedelta(seconds=1)

    assert await cache.get("k", 1) is None
    assert (await cache.get_stats())["total_keys"] == 0


async def test_delete_and_stats():
    cache = CacheMemoryStore()
    await cache.set("a", 1, version=1)
    await cache.set("b", 2, version=1)

    assert await cache.delete("a") is True
    assert await cache.delete("a") is False
    assert await cache.get_stats() == {"total_keys": 1, "active_keys": 1, "expired_keys": 0}


def test_key_lock_is_stable_per_key():
    cache = CacheMemoryStore()
    assert cache.key_lock("a") is cache.key_lock("a")
    assert cache.key_lock("a") is not cache.key_lock("b")
