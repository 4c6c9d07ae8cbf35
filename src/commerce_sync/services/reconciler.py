"""Idempotent create-or-update of upstream records into the local replica.

Every write is an ``INSERT .. ON CONFLICT (tenant_id, shop_id) DO UPDATE``,
so replaying a batch converges to the same rows. Nothing here commits; the
caller owns the transaction.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog
from pydantic import ValidationError
from sqlalchemy import DateTime, bindparam, delete, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.models import Customer, Order, Product
from commerce_sync.infrastructure.shopify.payloads import (
    UpstreamCustomer,
    UpstreamOrder,
    UpstreamProduct,
    UpstreamRecord,
)
from shared.clock import utc_now
from shared.constants import RESOURCE_CUSTOMERS, RESOURCE_ORDERS, RESOURCE_PRODUCTS

logger = structlog.get_logger()

RecordT = TypeVar("RecordT", bound=UpstreamRecord)

REPLICA_MODELS = {
    RESOURCE_PRODUCTS: Product,
    RESOURCE_CUSTOMERS: Customer,
    RESOURCE_ORDERS: Order,
}

UPSERT_PRODUCT = text("""
    INSERT INTO products (tenant_id, shop_id, title, price, created_at, updated_at)
    VALUES (:tenant_id, :shop_id, :title, :price, :now, :now)
    ON CONFLICT (tenant_id, shop_id) DO UPDATE SET
        title = excluded.title,
        price = excluded.price,
        updated_at = excluded.updated_at
""").bindparams(bindparam("now", type_=DateTime))

UPSERT_CUSTOMER = text("""
    INSERT INTO customers
        (tenant_id, shop_id, email, first_name, last_name, total_spend, created_at, updated_at)
    VALUES
        (:tenant_id, :shop_id, :email, :first_name, :last_name, :total_spend, :now, :now)
    ON CONFLICT (tenant_id, shop_id) DO UPDATE SET
        email = excluded.email,
        first_name = excluded.first_name,
        last_name = excluded.last_name,
        total_spend = excluded.total_spend,
        updated_at = excluded.updated_at
""").bindparams(bindparam("now", type_=DateTime))

# An unresolved customer on update keeps the link already stored
UPSERT_ORDER = text("""
    INSERT INTO orders
        (tenant_id, shop_id, customer_id, total_amount, currency, processed_at,
         created_at, updated_at)
    VALUES
        (:tenant_id, :shop_id, :customer_id, :total_amount, :currency, :processed_at,
         :now, :now)
    ON CONFLICT (tenant_id, shop_id) DO UPDATE SET
        customer_id = COALESCE(excluded.customer_id, orders.customer_id),
        total_amount = excluded.total_amount,
        currency = excluded.currency,
        processed_at = excluded.processed_at,
        updated_at = excluded.updated_at
""").bindparams(
    bindparam("now", type_=DateTime),
    bindparam("processed_at", type_=DateTime),
)


@dataclass
class UpsertResult:
    upserted: int = 0
    skipped: int = 0


@dataclass
class OrphanReport:
    kind: str
    local_total: int
    upstream_total: int
    orphans: list[dict[str, Any]] = field(default_factory=list)
    deleted: int = 0
    dry_run: bool = False


def _validate(
    model: type[RecordT], records: Iterable[dict[str, Any]], tenant_id: str
) -> tuple[list[RecordT], int]:
    valid: list[RecordT] = []
    skipped = 0
    for record in records:
        try:
            valid.append(model.model_validate(record))
        except ValidationError as e:
            skipped += 1
            logger.warning(
                "Skipping malformed upstream record",
                tenant_id=tenant_id,
                kind=model.__name__,
                errors=e.error_count(),
            )
    return valid, skipped


class UpsertReconciler:
    """Maps upstream records onto replica rows for one session."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    async def upsert_products(
        self, tenant_id: str, records: Iterable[dict[str, Any]]
    ) -> UpsertResult:
        products, skipped = _validate(UpstreamProduct, records, tenant_id)
        now = utc_now()
        rows = [
            {
                "tenant_id": tenant_id,
                "shop_id": p.external_id,
                "title": p.title or "",
                "price": p.price,
                "now": now,
            }
            for p in products
        ]
        if rows:
            await self.session.execute(UPSERT_PRODUCT, rows)
        return UpsertResult(upserted=len(rows), skipped=skipped)

    async def upsert_customers(
        self, tenant_id: str, records: Iterable[dict[str, Any]]
    ) -> UpsertResult:
        customers, skipped = _validate(UpstreamCustomer, records, tenant_id)
        now = utc_now()
        rows = [
            {
                "tenant_id": tenant_id,
                "shop_id": c.external_id,
                "email": c.email,
                "first_name": c.first_name,
                "last_name": c.last_name,
                "total_spend": c.total_spend,
                "now": now,
            }
            for c in customers
        ]
        if rows:
            await self.session.execute(UPSERT_CUSTOMER, rows)
        return UpsertResult(upserted=len(rows), skipped=skipped)

    async def upsert_orders(
        self, tenant_id: str, records: Iterable[dict[str, Any]]
    ) -> UpsertResult:
        """Upsert orders, linking each to a local customer when one is known."""
        orders, skipped = _validate(UpstreamOrder, records, tenant_id)
        if not orders:
            return UpsertResult(skipped=skipped)

        wanted = {o.customer_external_id for o in orders if o.customer_external_id}
        customer_ids = await self.resolve_customer_ids(tenant_id, wanted)

        now = utc_now()
        rows = [
            {
                "tenant_id": tenant_id,
                "shop_id": o.external_id,
                "customer_id": customer_ids.get(o.customer_external_id or ""),
                "total_amount": o.total_amount,
                "currency": o.currency or self.settings.default_currency,
                "processed_at": o.processed_time(fallback=now),
                "now": now,
            }
            for o in orders
        ]
        await self.session.execute(UPSERT_ORDER, rows)
        return UpsertResult(upserted=len(rows), skipped=skipped)

    async def resolve_customer_ids(
        self, tenant_id: str, shop_customer_ids: set[str]
    ) -> dict[str, int]:
        """Map upstream customer ids to local ids; unknown ids are absent."""
        if not shop_customer_ids:
            return {}
        result = await self.session.execute(
            select(Customer.shop_id, Customer.id).where(
                Customer.tenant_id == tenant_id,
                Customer.shop_id.in_(shop_customer_ids),
            )
        )
        return {shop_id: local_id for shop_id, local_id in result.all()}

    async def upsert(
        self, kind: str, tenant_id: str, records: Sequence[dict[str, Any]]
    ) -> UpsertResult:
        if kind == RESOURCE_PRODUCTS:
            return await self.upsert_products(tenant_id, records)
        if kind == RESOURCE_CUSTOMERS:
            return await self.upsert_customers(tenant_id, records)
        if kind == RESOURCE_ORDERS:
            return await self.upsert_orders(tenant_id, records)
        raise ValueError(f"Unsupported replica kind: {kind}")

    # -------------------------------------------------------------------------
    # Orphan cleanup
    # -------------------------------------------------------------------------

    async def find_orphans(
        self, tenant_id: str, kind: str, upstream_ids: Iterable[str | int]
    ) -> OrphanReport:
        """Report local rows missing upstream without touching them."""
        return await self.delete_orphans(tenant_id, kind, upstream_ids, dry_run=True)

    async def delete_orphans(
        self,
        tenant_id: str,
        kind: str,
        upstream_ids: Iterable[str | int],
        dry_run: bool = False,
    ) -> OrphanReport:
        """
        Delete local rows whose external id no longer exists upstream.

        ``upstream_ids`` must be the complete upstream id set; a partial
        listing would delete live rows.
        """
        model = REPLICA_MODELS.get(kind)
        if model is None:
            raise ValueError(f"Unsupported replica kind: {kind}")

        live = {str(i) for i in upstream_ids}
        result = await self.session.execute(
            select(model.id, model.shop_id).where(model.tenant_id == tenant_id)
        )
        local = result.all()
        orphans = [{"id": row_id, "shop_id": shop_id} for row_id, shop_id in local if shop_id not in live]

        report = OrphanReport(
            kind=kind,
            local_total=len(local),
            upstream_total=len(live),
            orphans=orphans,
            dry_run=dry_run,
        )
        if orphans and not dry_run:
            await self.session.execute(
                delete(model).where(model.id.in_([o["id"] for o in orphans]))
            )
            report.deleted = len(orphans)
            logger.info("Deleted orphaned rows", tenant_id=tenant_id, kind=kind, deleted=report.deleted)
        return report
