"""TTL-based job locks on top of Redis ``SET NX EX``."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger()


class LockManager:
    """Mutual exclusion for long-running jobs across processes.

    There is no ownership token: ``release`` deletes the key, and the TTL is
    what frees a lock left behind by a crashed holder. Without a Redis client
    every acquire is granted so jobs still run on a cache-less deployment.
    """

    def __init__(self, client: aioredis.Redis | None):
        self.client = client

    async def acquire(self, key: str, ttl_seconds: int) -> bool:
        if not self.client:
            return True
        try:
            granted = await self.client.set(key, "1", nx=True, ex=ttl_seconds)
        except Exception as e:
            logger.warning("Lock backend failed, proceeding unlocked", key=key, error=str(e))
            return True
        return bool(granted)

    async def release(self, key: str) -> None:
        if not self.client:
            return
        try:
            await self.client.delete(key)
        except Exception as e:
            logger.warning("Lock release failed, relying on TTL", key=key, error=str(e))

    @asynccontextmanager
    async def hold(self, key: str, ttl_seconds: int) -> AsyncGenerator[bool, None]:
        """Yield whether the lock was granted; release it on every exit path."""
        granted = await self.acquire(key, ttl_seconds)
        if not granted:
            logger.info("Lock held elsewhere", key=key)
            yield False
            return
        logger.debug("Lock acquired", key=key, ttl_seconds=ttl_seconds)
        try:
            yield True
        finally:
            await self.release(key)
            logger.debug("Lock released", key=key)
