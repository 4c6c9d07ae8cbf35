"""Redis cache infrastructure with graceful degradation.

The same client backs the job locks in ``services.locking``. When Redis is
not configured or unreachable every helper here degrades to a no-op.
"""

from typing import Any

import orjson
import redis.asyncio as aioredis
import structlog

from commerce_sync.config import get_settings

logger = structlog.get_logger()

_redis_client: aioredis.Redis | None = None


def products_cache_key(shop_domain: str) -> str:
    """Key of the cached product projection for one storefront."""
    return f"products:{shop_domain}"


async def create_redis_client() -> aioredis.Redis | None:
    """Open and ping a new client; None when Redis is disabled or down."""
    settings = get_settings()
    if not settings.redis_enabled:
        return None
    client = aioredis.from_url(
        settings.redis_url,
        decode_responses=False,
        socket_connect_timeout=2,
        socket_timeout=2,
        retry_on_timeout=True,
    )
    try:
        await client.ping()
    except Exception as e:
        logger.warning("Redis unavailable, caching and locking disabled", error=str(e))
        await client.aclose()
        return None
    return client


async def get_redis_client() -> aioredis.Redis | None:
    """Get or create the global async Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = await create_redis_client()
        if _redis_client is not None:
            logger.info("Redis connection established")
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


class CacheService:
    """Async Redis cache with orjson serialization. No-ops if Redis is unavailable."""

    def __init__(self, client: aioredis.Redis | None):
        self.client = client

    async def get(self, key: str) -> Any | None:
        if not self.client:
            return None
        try:
            data = await self.client.get(key)
            if data:
                return orjson.loads(data)
        except Exception as e:
            logger.warning("Cache get failed", key=key, error=str(e))
        return None

    async def set(self, key: str, value: Any, ttl_seconds: int = 300) -> None:
        if not self.client:
            return
        try:
            await self.client.set(key, orjson.dumps(value), ex=ttl_seconds)
        except Exception as e:
            logger.warning("Cache set failed", key=key, error=str(e))

    async def delete(self, key: str) -> None:
        """Fire-and-forget invalidation; readers must tolerate stale entries."""
        if not self.client:
            return
        try:
            await self.client.delete(key)
        except Exception as e:
            logger.warning("Cache delete failed", key=key, error=str(e))

    async def health_check(self) -> bool:
        if not self.client:
            return False
        try:
            return bool(await self.client.ping())
        except Exception:
            return False
