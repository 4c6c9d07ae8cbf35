"""Abandoned checkout detection over the raw event log.

Checkout and cart activity is grouped into sessions by checkout token. A
session that has been idle past the threshold, has no marker yet and did not
lead to an order gets one ``checkouts/abandoned`` event appended.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.connection import DatabaseUnavailableError
from commerce_sync.infrastructure.database.models import Customer, Order, RawEvent
from commerce_sync.infrastructure.shopify.payloads import CheckoutPayload
from commerce_sync.services.locking import LockManager
from commerce_sync.services.sync import SyncStatus
from commerce_sync.services.tenants import load_tenants
from shared.clock import parse_timestamp, utc_now
from shared.constants import (
    ABANDON_SWEEP_LOCK_KEY,
    ABANDONED_CHECKOUT_TOPIC,
    CHECKOUT_ACTIVITY_TOPICS,
)

logger = structlog.get_logger()


@dataclass
class CheckoutSession:
    key: str
    first_at: datetime
    last_at: datetime
    email: str | None = None

    def minutes_inactive(self, now: datetime) -> float:
        return (now - self.last_at).total_seconds() / 60

    def marker_payload(self, now: datetime) -> dict:
        return {
            "token": self.key,
            "email": self.email,
            "first_at": self.first_at.isoformat(),
            "last_at": self.last_at.isoformat(),
            "minutes_inactive": round(self.minutes_inactive(now)),
        }


@dataclass
class TenantSweepResult:
    tenant_id: str
    abandoned: int = 0
    error: str | None = None


@dataclass
class SweepReport:
    status: SyncStatus
    results: list[TenantSweepResult] = field(default_factory=list)
    retry_after: int | None = None
    error: str | None = None


def group_sessions(
    events: Iterable[RawEvent], sessions: dict[str, CheckoutSession] | None = None
) -> dict[str, CheckoutSession]:
    """Fold checkout activity into one session per token (or id).

    Events must arrive in ascending creation order for "first email wins" to
    mean the earliest one. Events without a usable key are ignored. Pass
    ``sessions`` to keep folding batches into the same mapping.
    """
    if sessions is None:
        sessions = {}
    for event in events:
        payload = CheckoutPayload.model_validate(event.payload or {})
        key = payload.session_key
        if key is None:
            continue
        first = parse_timestamp(payload.created_at) or event.created_at
        last = parse_timestamp(payload.updated_at) or event.created_at

        session = sessions.get(key)
        if session is None:
            sessions[key] = CheckoutSession(key, first, last, payload.email or None)
            continue
        session.first_at = min(session.first_at, first)
        session.last_at = max(session.last_at, last)
        if not session.email and payload.email:
            session.email = payload.email
    return sessions


class AbandonmentSweeper:
    def __init__(
        self,
        session: AsyncSession,
        lock_manager: LockManager,
        settings: Settings | None = None,
    ):
        self.session = session
        self.lock_manager = lock_manager
        self.settings = settings or get_settings()

    async def sweep(
        self,
        threshold_minutes: int | None = None,
        window_hours: int | None = None,
        now: datetime | None = None,
    ) -> SweepReport:
        """Run one sweep across every tenant under the sweep lock."""
        threshold = threshold_minutes if threshold_minutes is not None else self.settings.abandon_threshold_minutes
        window = window_hours if window_hours is not None else self.settings.abandon_window_hours
        now = now or utc_now()

        async with self.lock_manager.hold(
            ABANDON_SWEEP_LOCK_KEY, self.settings.abandon_lock_ttl_seconds
        ) as granted:
            if not granted:
                return SweepReport(status=SyncStatus.ALREADY_RUNNING)

            try:
                stores = await load_tenants(self.session, self.settings)
            except DatabaseUnavailableError:
                return SweepReport(
                    status=SyncStatus.DATABASE_UNAVAILABLE,
                    retry_after=self.settings.db_retry_after_seconds,
                    error="database unreachable",
                )

            results: list[TenantSweepResult] = []
            for store in stores:
                try:
                    abandoned = await self.sweep_tenant(store.tenant_id, threshold, window, now)
                    results.append(TenantSweepResult(store.tenant_id, abandoned=abandoned))
                except Exception as e:
                    await self.session.rollback()
                    logger.exception("Abandonment sweep failed for tenant", tenant_id=store.tenant_id)
                    results.append(TenantSweepResult(store.tenant_id, error=str(e)))

            logger.info(
                "Abandonment sweep completed",
                tenants=len(results),
                abandoned=sum(r.abandoned for r in results),
                threshold_minutes=threshold,
                window_hours=window,
            )
            return SweepReport(status=SyncStatus.OK, results=results)

    async def sweep_tenant(
        self, tenant_id: str, threshold_minutes: int, window_hours: int, now: datetime
    ) -> int:
        """Emit markers for one tenant and return how many were written."""
        since = now - timedelta(hours=window_hours)
        result = await self.session.stream_scalars(
            select(RawEvent)
            .where(
                RawEvent.tenant_id == tenant_id,
                RawEvent.topic.in_(CHECKOUT_ACTIVITY_TOPICS),
                RawEvent.created_at >= since,
            )
            .order_by(RawEvent.created_at.asc(), RawEvent.id.asc())
            .execution_options(yield_per=self.settings.abandon_scan_batch_size)
        )
        sessions: dict[str, CheckoutSession] = {}
        async for batch in result.partitions():
            group_sessions(batch, sessions)
        if not sessions:
            return 0

        already_marked = await self._marked_keys(tenant_id, since)
        emitted = 0
        for key, checkout in sessions.items():
            if checkout.minutes_inactive(now) < threshold_minutes:
                continue
            if key in already_marked:
                continue
            if checkout.email and await self._has_converted(tenant_id, checkout):
                continue
            self.session.add(
                RawEvent(
                    tenant_id=tenant_id,
                    topic=ABANDONED_CHECKOUT_TOPIC,
                    payload=checkout.marker_payload(now),
                    created_at=now,
                )
            )
            emitted += 1

        if emitted:
            await self.session.commit()
            logger.info("Abandoned checkouts detected", tenant_id=tenant_id, count=emitted)
        return emitted

    async def _marked_keys(self, tenant_id: str, since: datetime) -> set[str]:
        result = await self.session.execute(
            select(RawEvent.payload).where(
                RawEvent.tenant_id == tenant_id,
                RawEvent.topic == ABANDONED_CHECKOUT_TOPIC,
                RawEvent.created_at >= since,
            )
        )
        keys = set()
        for payload in result.scalars():
            key = CheckoutPayload.model_validate(payload or {}).session_key
            if key:
                keys.add(key)
        return keys

    async def _has_converted(self, tenant_id: str, checkout: CheckoutSession) -> bool:
        """An order by a customer with the session's email, placed after it began."""
        result = await self.session.execute(
            select(func.count(Order.id))
            .join(Customer, Order.customer_id == Customer.id)
            .where(
                Order.tenant_id == tenant_id,
                Customer.tenant_id == tenant_id,
                func.lower(Customer.email) == checkout.email.lower(),
                Order.processed_at >= checkout.first_at,
            )
        )
        return result.scalar_one() > 0
