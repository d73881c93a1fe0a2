"""Tests for the cache module."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import RedisError

from unified_ai.cache import CACHE_PREFIX, CacheService, LocalCache, create_cache, generate_cache_key
from unified_ai.config import Settings

# Import fakeredis for testing
try:
    from fakeredis import FakeAsyncRedis as FakeRedis
except ImportError:
    FakeRedis = None


MESSAGES = [{"role": "user", "content": "Hello world"}]


@pytest.fixture
async def cache_service():
    """Fixture providing a test cache service with fakeredis."""
    if FakeRedis is None:
        pytest.skip("fakeredis not installed")

    fake_client = FakeRedis()
    service = CacheService(
        redis_client=fake_client,
        default_ttl=60,
        enabled=True,
    )

    yield service

    await service.close()


class TestGenerateCacheKey:
    """Tests for generate_cache_key function."""

    def test_key_format(self):
        key = generate_cache_key(MESSAGES, "balanced")

        prefix, namespace, digest = key.split(":")
        assert prefix == CACHE_PREFIX
        assert namespace == "response"
        assert len(digest) == 64

    def test_deterministic(self):
        first = generate_cache_key(MESSAGES, "balanced", {"vision": False}, {"max_cost": 1.0}, {"temperature": 0.5})
        second = generate_cache_key(MESSAGES, "balanced", {"vision": False}, {"max_cost": 1.0}, {"temperature": 0.5})
        assert first == second

    def test_mapping_order_does_not_matter(self):
        first = generate_cache_key(MESSAGES, "balanced", parameters={"temperature": 0.5, "max_tokens": 10})
        second = generate_cache_key(MESSAGES, "balanced", parameters={"max_tokens": 10, "temperature": 0.5})
        assert first == second

    def test_every_input_changes_key(self):
        base = generate_cache_key(MESSAGES, "balanced")

        assert generate_cache_key([{"role": "user", "content": "Hello"}], "balanced") != base
        assert generate_cache_key(MESSAGES, "cost_optimized") != base
        assert generate_cache_key(MESSAGES, "balanced", requirements={"vision": True}) != base
        assert generate_cache_key(MESSAGES, "balanced", constraints={"max_cost": 1}) != base
        assert generate_cache_key(MESSAGES, "balanced", parameters={"temperature": 0.1}) != base

    def test_structurally_different_messages_do_not_collide(self):
        # Both would stringify to "a:b" under naive concatenation
        first = generate_cache_key([{"role": "user", "content": "a:b"}], "balanced")
        second = generate_cache_key([{"role": "user", "content": "a"}, {"role": "user", "content": "b"}], "balanced")
        assert first != second


class TestCacheService:
    """Tests for the Redis-backed CacheService."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, cache_service):
        key = generate_cache_key(MESSAGES, "balanced")
        value = {"id": "resp_1", "choices": [{"message": {"content": "Hi"}}]}

        assert await cache_service.set(key, value) is True
        assert await cache_service.get(key) == value

    @pytest.mark.asyncio
    async def test_miss_returns_none(self, cache_service):
        assert await cache_service.get("unified_ai:response:missing") is None

    @pytest.mark.asyncio
    async def test_stats(self, cache_service):
        await cache_service.set("unified_ai:response:a", {"x": 1})
        await cache_service.get("unified_ai:response:a")
        await cache_service.get("unified_ai:response:b")

        stats = cache_service.get_stats()
        assert stats == {"hits": 1, "misses": 1, "errors": 0, "sets": 1}

        cache_service.reset_stats()
        assert cache_service.get_stats()["hits"] == 0

    @pytest.mark.asyncio
    async def test_unserializable_value(self, cache_service):
        assert await cache_service.set("unified_ai:response:bad", {"obj": object()}) is False
        assert cache_service.get_stats()["errors"] == 1

    @pytest.mark.asyncio
    async def test_delete(self, cache_service):
        await cache_service.set("unified_ai:response:a", {"x": 1})

        assert await cache_service.delete("unified_ai:response:a") is True
        assert await cache_service.get("unified_ai:response:a") is None

    @pytest.mark.asyncio
    async def test_clear_only_touches_prefix(self, cache_service):
        await cache_service.set("unified_ai:response:a", {"x": 1})
        await cache_service.set("unified_ai:response:b", {"x": 2})
        client = await cache_service._get_client()
        await client.set("other:key", "keep")

        assert await cache_service.clear() is True
        assert await cache_service.get("unified_ai:response:a") is None
        assert await client.get("other:key") is not None

    @pytest.mark.asyncio
    async def test_ping(self, cache_service):
        assert await cache_service.ping() is True

    @pytest.mark.asyncio
    async def test_redis_failure_degrades_to_miss(self):
        client = AsyncMock()
        client.get.side_effect = RedisError("connection lost")
        client.set.side_effect = RedisError("connection lost")
        service = CacheService(redis_client=client, default_ttl=60)

        assert await service.get("unified_ai:response:a") is None
        assert await service.set("unified_ai:response:a", {"x": 1}) is False
        assert service.get_stats()["errors"] == 2

    @pytest.mark.asyncio
    async def test_disabled_without_url(self):
        service = CacheService(redis_url=None)

        assert service.enabled is False
        assert await service.set("k", {"x": 1}) is False
        assert await service.get("k") is None
        assert await service.ping() is False


class TestLocalCache:
    """Tests for the in-process cache."""

    @pytest.mark.asyncio
    async def test_set_and_get(self):
        cache = LocalCache(default_ttl=60)
        await cache.set("k", {"x": [1, 2]})

        assert await cache.get("k") == {"x": [1, 2]}

    @pytest.mark.asyncio
    async def test_returned_values_are_copies(self):
        cache = LocalCache()
        await cache.set("k", {"x": [1]})

        value = await cache.get("k")
        value["x"].append(2)
        assert await cache.get("k") == {"x": [1]}

    @pytest.mark.asyncio
    async def test_expiry(self):
        cache = LocalCache(default_ttl=10)
        await cache.set("fresh", {"x": 1})
        await cache.set("stale", {"x": 2}, ttl=0)

        assert await cache.get("fresh") == {"x": 1}
        assert await cache.get("stale") is None

    @pytest.mark.asyncio
    async def test_eviction_at_capacity(self):
        cache = LocalCache(default_ttl=60, max_entries=2)
        await cache.set("a", 1, ttl=10)
        await cache.set("b", 2, ttl=20)
        await cache.set("c", 3, ttl=30)

        assert await cache.get("a") is None
        assert await cache.get("b") == 2
        assert await cache.get("c") == 3

    @pytest.mark.asyncio
    async def test_disabled(self):
        cache = LocalCache(enabled=False)

        assert await cache.set("k", 1) is False
        assert await cache.get("k") is None


class TestCreateCache:
    def test_local_without_redis_url(self, settings):
        assert isinstance(create_cache(settings), LocalCache)

    def test_redis_with_url(self, settings: Settings):
        settings.redis_url = "redis://localhost:6379/0"
        cache = create_cache(settings)

        assert isinstance(cache, CacheService)
        assert cache.enabled is True
