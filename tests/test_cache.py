"""Tests for cache service — in-memory fallback (no Redis required)."""

from unittest.mock import AsyncMock, patch

import pytest

from cms_backend.services import cache_keys
from cms_backend.services.cache import CacheService


class FailingRedis:
    """Stand-in client whose every call fails."""

    async def get(self, key):
        raise ConnectionError("redis down")

    async def setex(self, key, ttl, payload):
        raise ConnectionError("redis down")

    async def delete(self, *keys):
        raise ConnectionError("redis down")

    async def scan_iter(self, match=None):
        raise ConnectionError("redis down")
        yield  # pragma: no cover


@pytest.fixture
def broken_redis_cache():
    svc = CacheService()
    svc._redis = FailingRedis()
    svc._available = True
    return svc


class TestCacheKeyGeneration:
    def test_make_key_deterministic(self, cache):
        key1 = cache.make_key("search:results", {"query": "pricing"})
        key2 = cache.make_key("search:results", {"query": "pricing"})
        assert key1 == key2

    def test_make_key_different_input(self, cache):
        key1 = cache.make_key("search:results", {"query": "pricing"})
        key2 = cache.make_key("search:results", {"query": "about"})
        assert key1 != key2

    def test_make_key_prefix(self, cache):
        key = cache.make_key("search:results", {"query": "pricing"})
        assert key.startswith("search:results:")

    def test_make_key_order_independent(self, cache):
        """JSON keys are sorted, so order shouldn't matter."""
        key1 = cache.make_key("search:results", {"a": "1", "b": "2"})
        key2 = cache.make_key("search:results", {"b": "2", "a": "1"})
        assert key1 == key2


class TestCacheKeyBuilders:
    def test_entity_keys(self):
        assert cache_keys.product(7) == "product:id:7"
        assert cache_keys.page(3) == "page:id:3"

    def test_list_keys_share_family(self):
        assert cache_keys.product_list(2, 10) == "products:list:page:2:size:10"
        assert cache_keys.product_variants(5) == "product:variants:5"

    def test_suggestion_key_lowercased(self):
        assert cache_keys.suggestions("PriCing", 5) == cache_keys.suggestions("pricing", 5)

    def test_pattern(self):
        assert cache_keys.pattern("search") == "search:*"


class TestCacheTTL:
    def test_ttl_entity(self, cache):
        assert cache.get_ttl("entity") == 1800

    def test_ttl_search(self, cache):
        assert cache.get_ttl("search") == 300

    def test_ttl_suggestions(self, cache):
        assert cache.get_ttl("suggestions") == 600

    def test_ttl_indexing_status(self, cache):
        assert cache.get_ttl("indexing_status") == 120

    def test_ttl_unknown_profile(self, cache):
        assert cache.get_ttl("unknown") == 1800


class TestCacheInMemoryFallback:
    @pytest.mark.asyncio
    async def test_set_and_get(self, cache):
        data = {"id": 1, "items": []}
        await cache.set("product:id:1", data, ttl=3600)
        assert await cache.get("product:id:1") == data

    @pytest.mark.asyncio
    async def test_get_miss(self, cache):
        assert await cache.get("nonexistent_key") is None

    @pytest.mark.asyncio
    async def test_overwrite(self, cache):
        await cache.set("key1", {"v": 1}, ttl=3600)
        await cache.set("key1", {"v": 2}, ttl=3600)
        assert await cache.get("key1") == {"v": 2}

    @pytest.mark.asyncio
    async def test_remove(self, cache):
        await cache.set("key1", {"v": 1})
        await cache.remove("key1")
        assert await cache.get("key1") is None

    @pytest.mark.asyncio
    async def test_remove_by_pattern(self, cache):
        await cache.set("search:results:a", {"v": 1})
        await cache.set("search:results:b", {"v": 2})
        await cache.set("page:id:1", {"v": 3})
        removed = await cache.remove_by_pattern("search:*")
        assert removed == 2
        assert await cache.get("search:results:a") is None
        assert await cache.get("page:id:1") == {"v": 3}

    @pytest.mark.asyncio
    async def test_keys(self, cache):
        await cache.set("file:id:1", {"v": 1})
        await cache.set("file:id:2", {"v": 2})
        assert await cache.keys("file:*") == ["file:id:1", "file:id:2"]


class TestGetOrAdd:
    @pytest.mark.asyncio
    async def test_produces_once(self, cache):
        calls = []

        async def produce():
            calls.append(1)
            return {"name": "Acme"}

        first = await cache.get_or_add("company:main", produce, 60)
        second = await cache.get_or_add("company:main", produce, 60)
        assert first == second == {"name": "Acme"}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_none_not_cached(self, cache):
        calls = []

        async def produce():
            calls.append(1)
            return None

        assert await cache.get_or_add("missing", produce) is None
        assert await cache.get_or_add("missing", produce) is None
        assert len(calls) == 2


class TestStatistics:
    @pytest.mark.asyncio
    async def test_hit_ratio(self, cache):
        await cache.set("k", {"v": 1})
        await cache.get("k")
        await cache.get("missing")
        stats = cache.get_statistics()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_ratio"] == 0.5
        assert stats["backend"] == "memory"


class TestRedisFailures:
    @pytest.mark.asyncio
    async def test_read_errors_fall_back_to_memory(self, broken_redis_cache):
        await broken_redis_cache.set("k", {"v": 1})
        assert await broken_redis_cache.get("k") == {"v": 1}
        assert broken_redis_cache.get_statistics()["errors"] >= 2

    @pytest.mark.asyncio
    async def test_remove_raises_but_clears_memory(self, broken_redis_cache):
        await broken_redis_cache.set("k", {"v": 1})
        with pytest.raises(ConnectionError):
            await broken_redis_cache.remove("k")
        broken_redis_cache._available = False
        assert await broken_redis_cache.get("k") is None

    @pytest.mark.asyncio
    async def test_remove_by_pattern_raises(self, broken_redis_cache):
        await broken_redis_cache.set("search:results:a", {"v": 1})
        with pytest.raises(ConnectionError):
            await broken_redis_cache.remove_by_pattern("search:*")


class TestRedisConnection:
    @pytest.mark.asyncio
    async def test_connect_and_read_through_redis(self):
        client = AsyncMock()
        client.get.return_value = '{"v": 2}'
        cache = CacheService()
        with patch("redis.asyncio.from_url", return_value=client):
            assert await cache.connect() is True
        assert cache.is_redis_available
        assert cache.get_statistics()["backend"] == "redis"

        await cache.set("k", {"v": 1}, ttl=60)
        client.setex.assert_awaited_once_with("k", 60, '{"v": 1}')
        assert await cache.get("other") == {"v": 2}

        await cache.disconnect()
        client.aclose.assert_awaited_once()
        assert not cache.is_redis_available

    @pytest.mark.asyncio
    async def test_connect_failure_degrades_to_memory(self):
        client = AsyncMock()
        client.ping.side_effect = ConnectionError("refused")
        cache = CacheService()
        with patch("redis.asyncio.from_url", return_value=client):
            assert await cache.connect() is False
        assert cache.get_statistics()["backend"] == "memory"
        await cache.set("k", {"v": 1})
        assert await cache.get("k") == {"v": 1}
