"""Abandoned checkout sweep trigger."""

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.api.dependencies import api_error, get_lock_manager, verify_cron_key
from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.connection import get_session
from commerce_sync.services.abandonment import AbandonmentSweeper
from commerce_sync.services.locking import LockManager
from commerce_sync.services.sync import SyncStatus

router = APIRouter()


@router.post("/sweep", dependencies=[Depends(verify_cron_key)])
async def sweep(
    threshold_minutes: int | None = Query(None, ge=1),
    window_hours: int | None = Query(None, ge=1),
    session: AsyncSession = Depends(get_session),
    lock_manager: LockManager = Depends(get_lock_manager),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Mark idle, unconverted checkouts as abandoned for every tenant."""
    report = await AbandonmentSweeper(session, lock_manager, settings).sweep(
        threshold_minutes=threshold_minutes, window_hours=window_hours
    )
    if report.status == SyncStatus.ALREADY_RUNNING:
        raise api_error(status.HTTP_429_TOO_MANY_REQUESTS, "already running", report.status.value)
    if report.status == SyncStatus.DATABASE_UNAVAILABLE:
        raise api_error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "database unreachable",
            report.status.value,
            headers={"Retry-After": str(report.retry_after)},
        )
    return {"ok": True, "results": [asdict(r) for r in report.results]}
