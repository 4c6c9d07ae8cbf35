"""Abandoned checkout sweep task."""

import asyncio

import structlog
from celery import shared_task

from commerce_sync.infrastructure.database.connection import worker_session
from commerce_sync.infrastructure.redis import create_redis_client
from commerce_sync.services.abandonment import AbandonmentSweeper, SweepReport
from commerce_sync.services.locking import LockManager
from commerce_sync.services.sync import SyncStatus
from sync_worker.tasks.sync_tenants import serialize_report

logger = structlog.get_logger()


async def run_sweep() -> SweepReport:
    redis_client = await create_redis_client()
    try:
        async with worker_session() as session:
            return await AbandonmentSweeper(session, LockManager(redis_client)).sweep()
    finally:
        if redis_client is not None:
            await redis_client.aclose()


@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def sweep_abandoned_checkouts(self) -> dict:
    """Emit abandonment markers with the configured threshold and window."""
    report = asyncio.run(run_sweep())
    if report.status == SyncStatus.DATABASE_UNAVAILABLE:
        raise self.retry(countdown=report.retry_after)
    logger.info("Sweep task finished", status=report.status.value)
    return serialize_report(report)
