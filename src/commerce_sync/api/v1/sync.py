"""Full sync triggers and orphan cleanup."""

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.api.dependencies import (
    api_error,
    get_cache,
    get_current_tenant_id,
    get_lock_manager,
    get_shopify_client_factory,
    verify_cron_key,
)
from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.connection import DatabaseUnavailableError, get_session
from commerce_sync.infrastructure.redis import CacheService
from commerce_sync.services.locking import LockManager
from commerce_sync.services.sync import (
    MissingCredentialsError,
    SyncInProgressError,
    SyncOrchestrator,
    SyncReport,
    SyncStatus,
    UpstreamIncompleteError,
)
from commerce_sync.services.tenants import TenantNotFoundError
from shared.constants import RESOURCE_CUSTOMERS, RESOURCE_ORDERS, RESOURCE_PRODUCTS

router = APIRouter()


def get_orchestrator(
    session: AsyncSession = Depends(get_session),
    lock_manager: LockManager = Depends(get_lock_manager),
    cache: CacheService = Depends(get_cache),
    settings: Settings = Depends(get_settings),
    client_factory=Depends(get_shopify_client_factory),
) -> SyncOrchestrator:
    return SyncOrchestrator(session, lock_manager, cache, settings, client_factory)


def report_response(report: SyncReport) -> dict[str, Any]:
    """Translate a sync report into a body, or raise the matching HTTP error."""
    if report.status == SyncStatus.ALREADY_RUNNING:
        raise api_error(status.HTTP_429_TOO_MANY_REQUESTS, "already running", report.status.value)
    if report.status == SyncStatus.DATABASE_UNAVAILABLE:
        raise api_error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            report.error or "database unreachable",
            report.status.value,
            headers={"Retry-After": str(report.retry_after)},
        )
    if report.status == SyncStatus.TENANT_NOT_FOUND:
        raise api_error(status.HTTP_404_NOT_FOUND, "tenant not found", report.status.value)
    if report.status == SyncStatus.MISSING_CREDENTIALS:
        raise api_error(status.HTTP_400_BAD_REQUEST, report.error or "missing shop or token", report.status.value)
    if report.status == SyncStatus.FAILED:
        raise api_error(status.HTTP_500_INTERNAL_SERVER_ERROR, report.error or "sync failed", report.status.value)
    return {"ok": True, "results": [asdict(r) for r in report.results]}


@router.post("")
async def sync_current_tenant(
    tenant_id: str = Depends(get_current_tenant_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Manual full sync of the caller's storefront."""
    return report_response(await orchestrator.sync_tenant(tenant_id))


@router.post("/all", dependencies=[Depends(verify_cron_key)])
async def sync_all(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """
    Full sync of every tenant, one after another.

    Tenants without credentials are reported with ``missing creds`` and do not
    fail the run.
    """
    return report_response(await orchestrator.sync_all_tenants())


@router.post("/cleanup")
async def cleanup(
    kind: str = Query(RESOURCE_PRODUCTS, pattern=f"^({RESOURCE_PRODUCTS}|{RESOURCE_CUSTOMERS}|{RESOURCE_ORDERS})$"),
    dry_run: bool = Query(False),
    tenant_id: str = Depends(get_current_tenant_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Delete (or with ``dry_run`` only list) replica rows missing upstream."""
    try:
        report = await orchestrator.cleanup_orphans(tenant_id, kind, dry_run=dry_run)
    except SyncInProgressError:
        raise api_error(status.HTTP_429_TOO_MANY_REQUESTS, "already running", "already_running")
    except TenantNotFoundError:
        raise api_error(status.HTTP_404_NOT_FOUND, "tenant not found", "tenant_not_found")
    except MissingCredentialsError:
        raise api_error(status.HTTP_400_BAD_REQUEST, "missing shop or token", "missing_credentials")
    except UpstreamIncompleteError:
        raise api_error(
            status.HTTP_502_BAD_GATEWAY,
            "upstream listing incomplete, nothing deleted",
            "upstream_incomplete",
        )
    except DatabaseUnavailableError:
        raise api_error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "database unreachable",
            "database_unavailable",
            headers={"Retry-After": str(settings.db_retry_after_seconds)},
        )
    return {"ok": True, **asdict(report)}
