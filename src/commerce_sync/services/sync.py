"""Full sync orchestration: one tenant (manual) or all tenants (cron).

Each run holds a job lock, loads tenants with backoff, pulls the three
replicated collections per tenant concurrently, reconciles them and writes
one SyncLog row per attempted tenant. Per-tenant failures end up in the
result list; only lock contention and tenant loading abort a run.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.connection import DatabaseUnavailableError
from commerce_sync.infrastructure.database.models import SyncLog
from commerce_sync.infrastructure.redis import CacheService, products_cache_key
from commerce_sync.infrastructure.shopify.client import ShopifyClient, StoreCredentials
from commerce_sync.services.locking import LockManager
from commerce_sync.services.reconciler import REPLICA_MODELS, OrphanReport, UpsertReconciler
from commerce_sync.services.tenants import TenantNotFoundError, load_tenants
from shared.constants import (
    MISSING_CREDENTIALS_MESSAGE,
    ORDERS_LIST_PARAMS,
    RESOURCE_CUSTOMERS,
    RESOURCE_ORDERS,
    RESOURCE_PRODUCTS,
    SYNC_ALL_LOCK_KEY,
    SYNC_JOB_CRON,
    SYNC_JOB_MANUAL,
    SYNC_STATUS_ERROR,
    SYNC_STATUS_SUCCESS,
    SYNC_TENANT_LOCK_PREFIX,
)

logger = structlog.get_logger()

ClientFactory = Callable[[StoreCredentials], ShopifyClient]


class SyncInProgressError(Exception):
    pass


class MissingCredentialsError(Exception):
    pass


class UpstreamIncompleteError(Exception):
    """An upstream listing ended early, so its id set cannot be trusted."""


class SyncStatus(str, Enum):
    """Outcome of a whole sync invocation."""

    OK = "ok"
    ALREADY_RUNNING = "already_running"
    DATABASE_UNAVAILABLE = "database_unavailable"
    TENANT_NOT_FOUND = "tenant_not_found"
    MISSING_CREDENTIALS = "missing_credentials"
    FAILED = "failed"


@dataclass
class TenantSyncResult:
    tenant_id: str
    ok: bool
    msg: str
    products: int = 0
    customers: int = 0
    orders: int = 0


@dataclass
class SyncReport:
    status: SyncStatus
    results: list[TenantSyncResult] = field(default_factory=list)
    retry_after: int | None = None
    error: str | None = None


def tenant_lock_key(tenant_id: str) -> str:
    return f"{SYNC_TENANT_LOCK_PREFIX}:{tenant_id}"


class SyncOrchestrator:
    """Drives full sync passes against the upstream storefronts."""

    def __init__(
        self,
        session: AsyncSession,
        lock_manager: LockManager,
        cache: CacheService,
        settings: Settings | None = None,
        client_factory: ClientFactory | None = None,
    ):
        self.session = session
        self.lock_manager = lock_manager
        self.cache = cache
        self.settings = settings or get_settings()
        self.client_factory = client_factory or (
            lambda store: ShopifyClient.for_store(store, self.settings)
        )

    async def sync_all_tenants(self) -> SyncReport:
        """Cron variant: every tenant, sequentially, with a pause in between."""
        async with self.lock_manager.hold(
            SYNC_ALL_LOCK_KEY, self.settings.sync_all_lock_ttl_seconds
        ) as granted:
            if not granted:
                return SyncReport(status=SyncStatus.ALREADY_RUNNING)

            report = await self._load(tenant_id=None)
            if isinstance(report, SyncReport):
                return report
            stores = report

            logger.info("Starting all-tenant sync", tenants=len(stores))
            results: list[TenantSyncResult] = []
            pause = self.settings.sync_tenant_pause_ms / 1000
            for index, store in enumerate(stores):
                if not store.has_credentials:
                    logger.info("Skipping tenant without credentials", tenant_id=store.tenant_id)
                    results.append(
                        TenantSyncResult(store.tenant_id, ok=False, msg=MISSING_CREDENTIALS_MESSAGE)
                    )
                    continue
                results.append(await self._sync_store(store, SYNC_JOB_CRON))
                if pause > 0 and index < len(stores) - 1:
                    await asyncio.sleep(pause)

            logger.info(
                "All-tenant sync completed",
                tenants=len(results),
                succeeded=sum(1 for r in results if r.ok),
            )
            return SyncReport(status=SyncStatus.OK, results=results)

    async def sync_tenant(self, tenant_id: str) -> SyncReport:
        """Manual variant for a single tenant."""
        async with self.lock_manager.hold(
            tenant_lock_key(tenant_id), self.settings.sync_tenant_lock_ttl_seconds
        ) as granted:
            if not granted:
                return SyncReport(status=SyncStatus.ALREADY_RUNNING)

            report = await self._load(tenant_id=tenant_id)
            if isinstance(report, SyncReport):
                return report
            if not report:
                return SyncReport(status=SyncStatus.TENANT_NOT_FOUND, error="tenant not found")

            store = report[0]
            if not store.has_credentials:
                return SyncReport(
                    status=SyncStatus.MISSING_CREDENTIALS,
                    results=[TenantSyncResult(tenant_id, ok=False, msg=MISSING_CREDENTIALS_MESSAGE)],
                    error="missing shop or token",
                )

            result = await self._sync_store(store, SYNC_JOB_MANUAL)
            return SyncReport(
                status=SyncStatus.OK if result.ok else SyncStatus.FAILED,
                results=[result],
                error=None if result.ok else result.msg,
            )

    async def _load(self, tenant_id: str | None) -> list[StoreCredentials] | SyncReport:
        try:
            return await load_tenants(self.session, self.settings, tenant_id=tenant_id)
        except DatabaseUnavailableError as e:
            logger.error("Database unreachable while loading tenants", error=str(e))
            return SyncReport(
                status=SyncStatus.DATABASE_UNAVAILABLE,
                retry_after=self.settings.db_retry_after_seconds,
                error="database unreachable",
            )
        except Exception as e:
            logger.exception("Failed to load tenants")
            return SyncReport(status=SyncStatus.FAILED, error=f"failed to load tenants: {e}")

    async def fetch_store(self, store: StoreCredentials) -> tuple[list, list, list]:
        """Pull products, customers and orders concurrently."""
        async with self.client_factory(store) as client:
            products, customers, orders = await asyncio.gather(
                client.fetch_all(RESOURCE_PRODUCTS),
                client.fetch_all(RESOURCE_CUSTOMERS),
                client.fetch_all(RESOURCE_ORDERS, ORDERS_LIST_PARAMS),
            )
            if client.partial_resources:
                logger.warning(
                    "Upstream listing incomplete, syncing partial data",
                    tenant_id=store.tenant_id,
                    resources=sorted(client.partial_resources),
                )
        return products, customers, orders

    async def _sync_store(self, store: StoreCredentials, job_type: str) -> TenantSyncResult:
        log = logger.bind(tenant_id=store.tenant_id, shop=store.shop_domain, job_type=job_type)
        started = time.monotonic()
        try:
            products, customers, orders = await self.fetch_store(store)

            reconciler = UpsertReconciler(self.session, self.settings)
            await reconciler.upsert_products(store.tenant_id, products)
            # Customers before orders so order -> customer links resolve
            await reconciler.upsert_customers(store.tenant_id, customers)
            await reconciler.upsert_orders(store.tenant_id, orders)

            elapsed = round(time.monotonic() - started)
            message = f"P:{len(products)} C:{len(customers)} O:{len(orders)} in {elapsed}s"
            self.session.add(
                SyncLog(
                    tenant_id=store.tenant_id,
                    job_type=job_type,
                    status=SYNC_STATUS_SUCCESS,
                    message=message,
                )
            )
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            log.exception("Tenant sync failed")
            await self._record_failure(store, job_type, str(e))
            return TenantSyncResult(store.tenant_id, ok=False, msg=str(e))

        await self.cache.delete(products_cache_key(store.shop_domain or ""))
        log.info("Tenant synced", products=len(products), customers=len(customers), orders=len(orders))
        return TenantSyncResult(
            store.tenant_id,
            ok=True,
            msg="ok",
            products=len(products),
            customers=len(customers),
            orders=len(orders),
        )

    async def _record_failure(self, store: StoreCredentials, job_type: str, message: str) -> None:
        try:
            self.session.add(
                SyncLog(
                    tenant_id=store.tenant_id,
                    job_type=job_type,
                    status=SYNC_STATUS_ERROR,
                    message=message,
                )
            )
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            logger.error("Could not write sync log", tenant_id=store.tenant_id, error=str(e))

    # -------------------------------------------------------------------------
    # Orphan cleanup
    # -------------------------------------------------------------------------

    async def cleanup_orphans(self, tenant_id: str, kind: str, dry_run: bool = False) -> OrphanReport:
        """
        Remove replica rows of ``kind`` that no longer exist upstream.

        Holds the tenant's sync lock so a concurrent sync cannot interleave.

        Raises:
            ValueError: unknown kind
            SyncInProgressError: the tenant lock is held
            TenantNotFoundError / MissingCredentialsError
            UpstreamIncompleteError: the upstream listing ended early
            DatabaseUnavailableError: tenant loading exhausted its retries
        """
        if kind not in REPLICA_MODELS:
            raise ValueError(f"Unsupported replica kind: {kind}")

        async with self.lock_manager.hold(
            tenant_lock_key(tenant_id), self.settings.sync_tenant_lock_ttl_seconds
        ) as granted:
            if not granted:
                raise SyncInProgressError(tenant_id)

            stores = await load_tenants(self.session, self.settings, tenant_id=tenant_id)
            if not stores:
                raise TenantNotFoundError(tenant_id)
            store = stores[0]
            if not store.has_credentials:
                raise MissingCredentialsError(tenant_id)

            params = ORDERS_LIST_PARAMS if kind == RESOURCE_ORDERS else None
            async with self.client_factory(store) as client:
                records = await client.fetch_all(kind, params)
                if kind in client.partial_resources:
                    raise UpstreamIncompleteError(kind)

            upstream_ids = [r["id"] for r in records if r.get("id") not in (None, "")]
            reconciler = UpsertReconciler(self.session, self.settings)
            if dry_run:
                return await reconciler.find_orphans(tenant_id, kind, upstream_ids)
            report = await reconciler.delete_orphans(tenant_id, kind, upstream_ids)
            if report.deleted:
                await self.session.commit()
                await self.cache.delete(products_cache_key(store.shop_domain or ""))
            return report
