"""Unit tests for the abandoned checkout sweep."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from commerce_sync.infrastructure.database.models import RawEvent
from commerce_sync.services.abandonment import AbandonmentSweeper, group_sessions
from commerce_sync.services.locking import LockManager
from commerce_sync.services.reconciler import UpsertReconciler
from commerce_sync.services.sync import SyncStatus

NOW = datetime(2026, 5, 1, 12, 0)


def iso(dt: datetime) -> str:
    return dt.isoformat() + "Z"


async def add_event(session, tenant_id, topic, payload, created_at) -> None:
    session.add(RawEvent(tenant_id=tenant_id, topic=topic, payload=payload, created_at=created_at))
    await session.commit()


async def markers(session, tenant_id=None):
    query = select(RawEvent).where(RawEvent.topic == "checkouts/abandoned")
    if tenant_id:
        query = query.where(RawEvent.tenant_id == tenant_id)
    return (await session.execute(query)).scalars().all()


@pytest.fixture
def sweeper(session, fake_redis, test_settings) -> AbandonmentSweeper:
    return AbandonmentSweeper(session, LockManager(fake_redis), test_settings)


class TestGroupSessions:
    def test_merges_by_token(self) -> None:
        t0 = NOW - timedelta(hours=3)
        events = [
            RawEvent(topic="checkouts/create", created_at=t0, payload={"token": "a", "created_at": iso(t0)}),
            RawEvent(
                topic="checkouts/update",
                created_at=t0 + timedelta(minutes=10),
                payload={"token": "a", "email": "x@example.com", "updated_at": iso(t0 + timedelta(minutes=10))},
            ),
            RawEvent(topic="carts/create", created_at=t0, payload={"id": 77}),
            RawEvent(topic="carts/update", created_at=t0, payload={"note": "no key"}),
        ]

        sessions = group_sessions(events)

        assert set(sessions) == {"a", "77"}
        assert sessions["a"].first_at == t0
        assert sessions["a"].last_at == t0 + timedelta(minutes=10)
        assert sessions["a"].email == "x@example.com"

    def test_first_email_wins(self) -> None:
        events = [
            RawEvent(created_at=NOW, payload={"token": "a", "email": "first@example.com"}),
            RawEvent(created_at=NOW, payload={"token": "a", "email": "second@example.com"}),
        ]
        assert group_sessions(events)["a"].email == "first@example.com"


class TestSweep:
    @pytest.mark.asyncio
    async def test_emits_marker_for_idle_checkout(self, session, sweeper, make_tenant) -> None:
        tenant = await make_tenant()
        started = NOW - timedelta(minutes=120)
        await add_event(
            session,
            tenant.id,
            "checkouts/create",
            {"token": "tok-1", "email": "ann@example.com", "created_at": iso(started), "updated_at": iso(started)},
            started,
        )

        report = await sweeper.sweep(threshold_minutes=60, window_hours=48, now=NOW)

        assert report.status == SyncStatus.OK
        assert [(r.tenant_id, r.abandoned) for r in report.results] == [(tenant.id, 1)]
        (marker,) = await markers(session)
        assert marker.payload["token"] == "tok-1"
        assert marker.payload["email"] == "ann@example.com"
        assert marker.payload["minutes_inactive"] == 120
        assert marker.created_at == NOW

    @pytest.mark.asyncio
    async def test_rerun_does_not_duplicate(self, session, sweeper, make_tenant) -> None:
        tenant = await make_tenant()
        started = NOW - timedelta(minutes=90)
        await add_event(session, tenant.id, "carts/update", {"token": "tok-1"}, started)

        await sweeper.sweep(now=NOW)
        report = await sweeper.sweep(now=NOW + timedelta(minutes=5))

        assert report.results[0].abandoned == 0
        assert len(await markers(session)) == 1

    @pytest.mark.asyncio
    async def test_recent_activity_is_not_abandoned(self, session, sweeper, make_tenant) -> None:
        tenant = await make_tenant()
        await add_event(session, tenant.id, "checkouts/update", {"token": "tok-1"}, NOW - timedelta(minutes=5))

        report = await sweeper.sweep(threshold_minutes=60, now=NOW)

        assert report.results[0].abandoned == 0
        assert await markers(session) == []

    @pytest.mark.asyncio
    async def test_outside_window_is_ignored(self, session, sweeper, make_tenant) -> None:
        tenant = await make_tenant()
        await add_event(session, tenant.id, "checkouts/create", {"token": "old"}, NOW - timedelta(hours=72))

        report = await sweeper.sweep(window_hours=48, now=NOW)

        assert report.results[0].abandoned == 0

    @pytest.mark.asyncio
    async def test_converted_checkout_is_skipped(self, session, sweeper, make_tenant, test_settings) -> None:
        tenant = await make_tenant()
        started = NOW - timedelta(hours=3)
        await add_event(
            session,
            tenant.id,
            "checkouts/create",
            {"token": "tok-1", "email": "Ann@Example.com", "created_at": iso(started)},
            started,
        )
        reconciler = UpsertReconciler(session, test_settings)
        await reconciler.upsert_customers(tenant.id, [{"id": 42, "email": "ann@example.com"}])
        await reconciler.upsert_orders(
            tenant.id,
            [{"id": 9, "customer": {"id": 42}, "processed_at": iso(started + timedelta(minutes=30))}],
        )
        await session.commit()

        report = await sweeper.sweep(now=NOW)

        assert report.results[0].abandoned == 0
        assert await markers(session) == []

    @pytest.mark.asyncio
    async def test_order_before_checkout_does_not_count(self, session, sweeper, make_tenant, test_settings) -> None:
        tenant = await make_tenant()
        started = NOW - timedelta(hours=3)
        await add_event(
            session, tenant.id, "checkouts/create", {"token": "tok-1", "email": "ann@example.com"}, started
        )
        reconciler = UpsertReconciler(session, test_settings)
        await reconciler.upsert_customers(tenant.id, [{"id": 42, "email": "ann@example.com"}])
        await reconciler.upsert_orders(
            tenant.id,
            [{"id": 9, "customer": {"id": 42}, "processed_at": iso(started - timedelta(days=1))}],
        )
        await session.commit()

        report = await sweeper.sweep(now=NOW)

        assert report.results[0].abandoned == 1

    @pytest.mark.asyncio
    async def test_tenants_are_independent(self, session, sweeper, make_tenant) -> None:
        a = await make_tenant("A", "a.myshopify.com")
        b = await make_tenant("B", "b.myshopify.com")
        started = NOW - timedelta(hours=2)
        await add_event(session, a.id, "checkouts/create", {"token": "same"}, started)
        await add_event(session, b.id, "checkouts/create", {"token": "same"}, started)

        report = await sweeper.sweep(now=NOW)

        assert sorted(r.abandoned for r in report.results) == [1, 1]
        assert len(await markers(session, a.id)) == 1
        assert len(await markers(session, b.id)) == 1

    @pytest.mark.asyncio
    async def test_lock_held(self, sweeper, fake_redis) -> None:
        await fake_redis.set("abandon_sweep_lock", "1", nx=True, ex=300)

        report = await sweeper.sweep(now=NOW)

        assert report.status == SyncStatus.ALREADY_RUNNING

    @pytest.mark.asyncio
    async def test_latest_activity_counts_past_one_batch(
        self, session, fake_redis, test_settings, make_tenant
    ) -> None:
        tenant = await make_tenant()
        settings = test_settings.model_copy(update={"abandon_scan_batch_size": 5})
        old = NOW - timedelta(hours=40)
        session.add(RawEvent(tenant_id=tenant.id, topic="checkouts/create", payload={"token": "live"}, created_at=old))
        session.add_all(
            RawEvent(tenant_id=tenant.id, topic="carts/update", payload={"token": f"idle-{i}"}, created_at=old)
            for i in range(12)
        )
        session.add(
            RawEvent(
                tenant_id=tenant.id,
                topic="checkouts/update",
                payload={"token": "live"},
                created_at=NOW - timedelta(minutes=2),
            )
        )
        await session.commit()

        report = await AbandonmentSweeper(session, LockManager(fake_redis), settings).sweep(
            threshold_minutes=60, window_hours=48, now=NOW
        )

        assert report.results[0].abandoned == 12
        tokens = {m.payload["token"] for m in await markers(session)}
        assert "live" not in tokens
        assert "idle-0" in tokens
