"""Unit tests for the Redis job lock."""

import asyncio

import pytest

from commerce_sync.services.locking import LockManager


class TestLockManager:
    @pytest.mark.asyncio
    async def test_concurrent_acquire_grants_exactly_one(self, fake_redis) -> None:
        locks = LockManager(fake_redis)

        granted = await asyncio.gather(*(locks.acquire("sync_all_lock", 600) for _ in range(5)))

        assert granted.count(True) == 1
        assert fake_redis.ttls["sync_all_lock"] == 600

    @pytest.mark.asyncio
    async def test_release_allows_reacquire(self, fake_redis) -> None:
        locks = LockManager(fake_redis)
        assert await locks.acquire("k", 60) is True
        assert await locks.acquire("k", 60) is False

        await locks.release("k")

        assert await locks.acquire("k", 60) is True

    @pytest.mark.asyncio
    async def test_no_client_always_grants(self) -> None:
        locks = LockManager(None)

        assert await locks.acquire("k", 60) is True
        assert await locks.acquire("k", 60) is True

    @pytest.mark.asyncio
    async def test_backend_error_grants(self, fake_redis) -> None:
        fake_redis.fail = True
        locks = LockManager(fake_redis)

        assert await locks.acquire("k", 60) is True
        await locks.release("k")  # should not raise


class TestHold:
    @pytest.mark.asyncio
    async def test_releases_on_exit(self, fake_redis) -> None:
        locks = LockManager(fake_redis)

        async with locks.hold("k", 60) as granted:
            assert granted is True
            assert "k" in fake_redis.store

        assert "k" not in fake_redis.store

    @pytest.mark.asyncio
    async def test_releases_on_error(self, fake_redis) -> None:
        locks = LockManager(fake_redis)

        with pytest.raises(RuntimeError):
            async with locks.hold("k", 60):
                raise RuntimeError("job failed")

        assert "k" not in fake_redis.store

    @pytest.mark.asyncio
    async def test_contended_hold_leaves_other_holder_alone(self, fake_redis) -> None:
        locks = LockManager(fake_redis)
        await locks.acquire("k", 60)

        async with locks.hold("k", 60) as granted:
            assert granted is False

        assert "k" in fake_redis.store
