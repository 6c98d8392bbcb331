"""
Tests for the cache service's in-process fallback backend
"""

from types import SimpleNamespace

import pytest

from core import cache as cache_module
from core.cache import CacheService


@pytest.fixture
def clock(monkeypatch):
    now = {"value": 1000.0}
    monkeypatch.setattr(cache_module, "time", SimpleNamespace(time=lambda: now["value"]))
    return now


@pytest.mark.asyncio
async def test_memory_entry_expires_after_ttl(settings, clock):
    cache = CacheService(settings)
    assert cache.backend == "memory"

    await cache.set("k", {"v": 1}, ttl=10)
    clock["value"] += 9
    assert await cache.get("k") == {"v": 1}

    clock["value"] += 1
    assert await cache.get("k") is None
    assert await cache.exists("k") is False
    assert "k" not in cache.memory_cache


@pytest.mark.asyncio
async def test_memory_default_ttl_from_settings(settings, clock):
    cache = CacheService(settings)

    await cache.set("k", "v")

    expires_at, value = cache.memory_cache["k"]
    assert value == "v"
    assert expires_at == 1000.0 + settings.cache_ttl


@pytest.mark.asyncio
async def test_memory_set_drops_expired_entries(settings, clock):
    """Writes evict stale keys so abandoned entries do not pile up"""
    cache = CacheService(settings)
    await cache.set("old", 1, ttl=5)
    await cache.set("fresh", 2, ttl=60)

    clock["value"] += 30
    await cache.set("new", 3, ttl=60)

    assert set(cache.memory_cache) == {"fresh", "new"}


@pytest.mark.asyncio
async def test_memory_delete(settings, clock):
    cache = CacheService(settings)
    await cache.set("k", "v", ttl=10)

    assert await cache.delete("k") is True
    assert await cache.delete("k") is False
