"""Unit tests for the full sync orchestrator."""

import pytest
from sqlalchemy import func, select

from commerce_sync.infrastructure.database.connection import DatabaseUnavailableError
from commerce_sync.infrastructure.database.models import Customer, Order, Product, SyncLog
from commerce_sync.infrastructure.redis import CacheService
from commerce_sync.services.locking import LockManager
from commerce_sync.services.sync import (
    MissingCredentialsError,
    SyncInProgressError,
    SyncOrchestrator,
    SyncStatus,
    UpstreamIncompleteError,
    tenant_lock_key,
)


@pytest.fixture
def seeded_shopify(shopify):
    shopify.records["products"] = [
        {"id": 1, "title": "Mug", "variants": [{"price": "10"}]},
        {"id": 2, "title": "Cap", "variants": [{"price": "20"}]},
    ]
    shopify.records["customers"] = [{"id": 42, "email": "ann@example.com"}]
    shopify.records["orders"] = [{"id": 100, "total_price": "30", "customer": {"id": 42}}]
    return shopify


@pytest.fixture
def orchestrator(session, fake_redis, test_settings, client_factory) -> SyncOrchestrator:
    return SyncOrchestrator(
        session,
        LockManager(fake_redis),
        CacheService(fake_redis),
        test_settings,
        client_factory,
    )


async def _count(session, model, **filters) -> int:
    query = select(func.count()).select_from(model)
    for name, value in filters.items():
        query = query.where(getattr(model, name) == value)
    return (await session.execute(query)).scalar_one()


async def _logs(session, tenant_id):
    result = await session.execute(select(SyncLog).where(SyncLog.tenant_id == tenant_id))
    return result.scalars().all()


class TestSyncAllTenants:
    @pytest.mark.asyncio
    async def test_mixed_credentials(self, orchestrator, session, make_tenant, seeded_shopify) -> None:
        a = await make_tenant("A", "a.myshopify.com")
        b = await make_tenant("B", "b.myshopify.com", access_token=None)

        report = await orchestrator.sync_all_tenants()

        assert report.status == SyncStatus.OK
        assert len(report.results) == 2
        result_a, result_b = report.results
        assert (result_a.tenant_id, result_a.ok) == (a.id, True)
        assert (result_a.products, result_a.customers, result_a.orders) == (2, 1, 1)
        assert (result_b.tenant_id, result_b.ok, result_b.msg) == (b.id, False, "missing creds")

        logs_a = await _logs(session, a.id)
        assert [(log.status, log.job_type) for log in logs_a] == [("success", "cron")]
        assert logs_a[0].message.startswith("P:2 C:1 O:1 in ")
        assert await _logs(session, b.id) == []

        assert await _count(session, Product, tenant_id=a.id) == 2
        order = (await session.execute(select(Order))).scalar_one()
        customer = (await session.execute(select(Customer))).scalar_one()
        assert order.customer_id == customer.id

    @pytest.mark.asyncio
    async def test_rerun_converges(self, orchestrator, session, make_tenant, seeded_shopify) -> None:
        await make_tenant()

        await orchestrator.sync_all_tenants()
        await orchestrator.sync_all_tenants()

        assert await _count(session, Product) == 2
        assert await _count(session, Order) == 1
        assert await _count(session, SyncLog) == 2

    @pytest.mark.asyncio
    async def test_lock_held_returns_already_running(self, orchestrator, fake_redis, make_tenant) -> None:
        await make_tenant()
        await fake_redis.set("sync_all_lock", "1", nx=True, ex=600)

        report = await orchestrator.sync_all_tenants()

        assert report.status == SyncStatus.ALREADY_RUNNING
        assert report.results == []
        assert "sync_all_lock" in fake_redis.store

    @pytest.mark.asyncio
    async def test_lock_released_after_run(self, orchestrator, fake_redis, make_tenant, seeded_shopify) -> None:
        await make_tenant()

        await orchestrator.sync_all_tenants()

        assert "sync_all_lock" not in fake_redis.store

    @pytest.mark.asyncio
    async def test_database_unavailable(self, orchestrator, fake_redis, monkeypatch) -> None:
        async def unavailable(*args, **kwargs):
            raise DatabaseUnavailableError("connection refused")

        monkeypatch.setattr("commerce_sync.services.sync.load_tenants", unavailable)

        report = await orchestrator.sync_all_tenants()

        assert report.status == SyncStatus.DATABASE_UNAVAILABLE
        assert report.retry_after == 30
        assert "sync_all_lock" not in fake_redis.store

    @pytest.mark.asyncio
    async def test_tenant_failure_is_recorded_and_run_continues(
        self, session, fake_redis, test_settings, client_factory, make_tenant, seeded_shopify
    ) -> None:
        # Plain ids: the failed tenant's rollback expires ORM instances in this session
        broken_id = (await make_tenant("Broken", "broken.myshopify.com")).id
        healthy_id = (await make_tenant("Healthy", "healthy.myshopify.com")).id

        def factory(store):
            if store.tenant_id == broken_id:
                raise RuntimeError("upstream exploded")
            return client_factory(store)

        orchestrator = SyncOrchestrator(
            session, LockManager(fake_redis), CacheService(fake_redis), test_settings, factory
        )
        report = await orchestrator.sync_all_tenants()

        assert [r.ok for r in report.results] == [False, True]
        assert report.results[0].msg == "upstream exploded"
        broken_logs = await _logs(session, broken_id)
        assert [(log.status, log.message) for log in broken_logs] == [("error", "upstream exploded")]
        assert [log.status for log in await _logs(session, healthy_id)] == ["success"]

    @pytest.mark.asyncio
    async def test_invalidates_product_cache(self, orchestrator, fake_redis, make_tenant, seeded_shopify) -> None:
        await make_tenant()
        await fake_redis.set("products:acme.myshopify.com", b"[]")

        await orchestrator.sync_all_tenants()

        assert "products:acme.myshopify.com" not in fake_redis.store


class TestSyncTenant:
    @pytest.mark.asyncio
    async def test_manual_sync(self, orchestrator, session, make_tenant, seeded_shopify) -> None:
        tenant = await make_tenant()

        report = await orchestrator.sync_tenant(tenant.id)

        assert report.status == SyncStatus.OK
        assert report.results[0].ok
        assert [log.job_type for log in await _logs(session, tenant.id)] == ["manual"]

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, orchestrator) -> None:
        report = await orchestrator.sync_tenant("missing")
        assert report.status == SyncStatus.TENANT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_missing_credentials(self, orchestrator, session, make_tenant) -> None:
        tenant = await make_tenant(access_token=None)

        report = await orchestrator.sync_tenant(tenant.id)

        assert report.status == SyncStatus.MISSING_CREDENTIALS
        assert await _logs(session, tenant.id) == []

    @pytest.mark.asyncio
    async def test_per_tenant_lock(self, orchestrator, fake_redis, make_tenant) -> None:
        tenant = await make_tenant()
        await fake_redis.set(tenant_lock_key(tenant.id), "1", nx=True)

        report = await orchestrator.sync_tenant(tenant.id)

        assert report.status == SyncStatus.ALREADY_RUNNING


class TestCleanupOrphans:
    @pytest.mark.asyncio
    async def test_deletes_products_gone_upstream(
        self, orchestrator, session, make_tenant, seeded_shopify
    ) -> None:
        tenant = await make_tenant()
        await orchestrator.sync_tenant(tenant.id)
        seeded_shopify.records["products"] = [{"id": 1, "title": "Mug"}]

        report = await orchestrator.cleanup_orphans(tenant.id, "products")

        assert report.deleted == 1
        assert await _count(session, Product) == 1

    @pytest.mark.asyncio
    async def test_dry_run(self, orchestrator, session, make_tenant, seeded_shopify) -> None:
        tenant = await make_tenant()
        await orchestrator.sync_tenant(tenant.id)
        seeded_shopify.records["products"] = []

        report = await orchestrator.cleanup_orphans(tenant.id, "products", dry_run=True)

        assert report.dry_run is True
        assert len(report.orphans) == 2
        assert report.deleted == 0
        assert await _count(session, Product) == 2

    @pytest.mark.asyncio
    async def test_refuses_on_incomplete_listing(
        self, orchestrator, session, make_tenant, seeded_shopify
    ) -> None:
        tenant = await make_tenant()
        await orchestrator.sync_tenant(tenant.id)
        seeded_shopify.failing.add("products")

        with pytest.raises(UpstreamIncompleteError):
            await orchestrator.cleanup_orphans(tenant.id, "products")

        assert await _count(session, Product) == 2

    @pytest.mark.asyncio
    async def test_errors(self, orchestrator, fake_redis, make_tenant) -> None:
        tenant = await make_tenant(access_token=None)

        with pytest.raises(ValueError):
            await orchestrator.cleanup_orphans(tenant.id, "refunds")
        with pytest.raises(MissingCredentialsError):
            await orchestrator.cleanup_orphans(tenant.id, "products")

        await fake_redis.set(tenant_lock_key(tenant.id), "1", nx=True)
        with pytest.raises(SyncInProgressError):
            await orchestrator.cleanup_orphans(tenant.id, "products")
