"""Scheduled full sync tasks."""

import asyncio
from dataclasses import asdict
from typing import Any

import structlog
from celery import shared_task

from commerce_sync.config import get_settings
from commerce_sync.infrastructure.database.connection import worker_session
from commerce_sync.infrastructure.redis import CacheService, create_redis_client
from commerce_sync.services.locking import LockManager
from commerce_sync.services.sync import SyncOrchestrator, SyncReport, SyncStatus

logger = structlog.get_logger()


def serialize_report(report: Any) -> dict:
    return {
        "status": report.status.value,
        "results": [asdict(r) for r in report.results],
        "error": report.error,
    }


async def run_sync(tenant_id: str | None = None) -> SyncReport:
    """One sync pass on a fresh engine and Redis client for this event loop."""
    redis_client = await create_redis_client()
    try:
        async with worker_session() as session:
            orchestrator = SyncOrchestrator(
                session, LockManager(redis_client), CacheService(redis_client)
            )
            if tenant_id is None:
                return await orchestrator.sync_all_tenants()
            return await orchestrator.sync_tenant(tenant_id)
    finally:
        if redis_client is not None:
            await redis_client.aclose()


@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def sync_all_tenants(self) -> dict:
    """
    Full sync of every tenant, then schedule the abandonment sweep.

    Retried by Celery while the database is unreachable. A run that finds the
    lock taken returns without retrying; the next beat tick picks it up.
    """
    logger.info("Starting scheduled sync")
    report = asyncio.run(run_sync())

    if report.status == SyncStatus.DATABASE_UNAVAILABLE:
        raise self.retry(countdown=report.retry_after)

    if report.status == SyncStatus.OK:
        from sync_worker.tasks.abandonment import sweep_abandoned_checkouts

        sweep_abandoned_checkouts.apply_async(countdown=get_settings().sweep_delay_seconds)

    return serialize_report(report)


@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def sync_tenant(self, tenant_id: str) -> dict:
    """Queued variant of the manual single-tenant sync."""
    logger.info("Syncing tenant", tenant_id=tenant_id)
    report = asyncio.run(run_sync(tenant_id))
    if report.status == SyncStatus.DATABASE_UNAVAILABLE:
        raise self.retry(countdown=report.retry_after)
    return serialize_report(report)
