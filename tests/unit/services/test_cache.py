"""Unit tests for Redis cache service."""

import pytest

from commerce_sync.infrastructure.redis import CacheService, products_cache_key


class TestCacheServiceGracefulDegradation:
    """CacheService should no-op safely when Redis is unavailable."""

    @pytest.fixture
    def cache(self) -> CacheService:
        return CacheService(None)

    @pytest.mark.asyncio
    async def test_get_returns_none(self, cache: CacheService) -> None:
        assert await cache.get("any-key") is None

    @pytest.mark.asyncio
    async def test_set_is_noop(self, cache: CacheService) -> None:
        await cache.set("key", {"data": "value"})  # should not raise

    @pytest.mark.asyncio
    async def test_delete_is_noop(self, cache: CacheService) -> None:
        await cache.delete("key")  # should not raise

    @pytest.mark.asyncio
    async def test_health_check_returns_false(self, cache: CacheService) -> None:
        assert await cache.health_check() is False


class TestCacheServiceWithClient:
    @pytest.mark.asyncio
    async def test_set_then_get(self, fake_redis) -> None:
        cache = CacheService(fake_redis)
        await cache.set("products:acme.myshopify.com", {"total": 2}, ttl_seconds=60)

        assert await cache.get("products:acme.myshopify.com") == {"total": 2}
        assert fake_redis.ttls["products:acme.myshopify.com"] == 60

    @pytest.mark.asyncio
    async def test_delete_removes_entry(self, fake_redis) -> None:
        cache = CacheService(fake_redis)
        await cache.set("k", [1, 2])
        await cache.delete("k")

        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_backend_errors_are_swallowed(self, fake_redis) -> None:
        cache = CacheService(fake_redis)
        fake_redis.fail = True

        await cache.set("k", 1)
        await cache.delete("k")
        assert await cache.get("k") is None
        assert await cache.health_check() is False


def test_products_cache_key() -> None:
    assert products_cache_key("acme.myshopify.com") == "products:acme.myshopify.com"
