"""Unified recent-event feed over webhook deliveries and the upstream feed."""

import asyncio
import math
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.models import RawEvent
from commerce_sync.infrastructure.shopify.client import ShopifyClient, StoreCredentials
from commerce_sync.infrastructure.shopify.payloads import UpstreamEvent
from shared.clock import parse_timestamp, utc_now

logger = structlog.get_logger()

SUBJECT_TOPICS = {
    "order": "orders",
    "product": "products",
    "customer": "customers",
    "checkout": "checkouts",
    "cart": "carts",
    "collection": "collections",
    "fulfillment": "fulfillments",
    "refund": "refunds",
    "inventoryitem": "inventory_items",
    "draftorder": "draft_orders",
}

VERB_ACTIONS = {
    "create": "create",
    "placed": "create",
    "update": "update",
    "destroy": "delete",
    "confirmed": "paid",
    "cancelled": "cancelled",
    "fulfillment_success": "fulfilled",
    "published": "publish",
    "unpublished": "unpublish",
}


class EventSource(str, Enum):
    DB = "db"
    SHOPIFY = "shopify"
    HYBRID = "hybrid"


def infer_topic(subject_type: str | None, verb: str | None) -> str:
    """``("Order", "placed")`` -> ``"orders/create"``.

    Unknown subjects or verbs pass through lowercased; missing ones become
    ``unknown``.
    """
    subject = (subject_type or "").strip().lower()
    action = (verb or "").strip().lower()
    resource = SUBJECT_TOPICS.get(subject, subject or "unknown")
    return f"{resource}/{VERB_ACTIONS.get(action, action or 'unknown')}"


@dataclass
class EventView:
    id: str
    source: str
    topic: str
    created_at: datetime
    payload: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "topic": self.topic,
            "created_at": self.created_at.isoformat(),
            "payload": self.payload,
        }


@dataclass
class EventFeed:
    events: list[EventView]
    source: EventSource
    webhook_events: int = 0
    shopify_events: int = 0
    stats: dict[str, int] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def total(self) -> int:
        return len(self.events)


class EventFeedService:
    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        client_factory: Callable[[StoreCredentials], ShopifyClient] | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.client_factory = client_factory or (
            lambda store: ShopifyClient.for_store(store, self.settings)
        )

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            limit = self.settings.events_default_limit
        return max(1, min(limit, self.settings.events_max_limit))

    async def list_events(
        self,
        store: StoreCredentials,
        source: EventSource = EventSource.DB,
        topic: str | None = None,
        limit: int | None = None,
    ) -> EventFeed:
        """
        Recent events for one tenant, newest first.

        In hybrid mode each source contributes at most ``ceil(limit / 2)``
        events before the merged list is truncated to ``limit``. A tenant
        without storefront credentials gets only local events in hybrid mode
        and an empty feed from the shopify source.
        """
        limit = self.clamp_limit(limit)
        wants_upstream = source != EventSource.DB and store.has_credentials
        per_source = math.ceil(limit / 2) if source == EventSource.HYBRID else limit

        local: list[EventView] = []
        upstream: list[EventView] = []
        if source == EventSource.HYBRID and wants_upstream:
            local, upstream = await asyncio.gather(
                self.local_events(store.tenant_id, topic, per_source),
                self.upstream_events(store, topic, per_source),
            )
        elif source == EventSource.SHOPIFY:
            if wants_upstream:
                upstream = await self.upstream_events(store, topic, per_source)
        else:
            local = await self.local_events(store.tenant_id, topic, per_source)

        merged = sorted(local + upstream, key=lambda e: e.created_at, reverse=True)[:limit]
        return EventFeed(
            events=merged,
            source=source,
            webhook_events=len(local),
            shopify_events=len(upstream),
            stats=dict(Counter(e.topic for e in merged)),
        )

    async def local_events(self, tenant_id: str, topic: str | None, limit: int) -> list[EventView]:
        query = select(RawEvent).where(RawEvent.tenant_id == tenant_id)
        if topic:
            query = query.where(RawEvent.topic == topic)
        query = query.order_by(RawEvent.created_at.desc(), RawEvent.id.desc()).limit(limit)
        result = await self.session.execute(query)
        return [
            EventView(
                id=str(row.id),
                source=EventSource.DB.value,
                topic=row.topic,
                created_at=row.created_at,
                payload=row.payload if isinstance(row.payload, dict) else {"value": row.payload},
            )
            for row in result.scalars().all()
        ]

    async def upstream_events(
        self, store: StoreCredentials, topic: str | None, limit: int
    ) -> list[EventView]:
        async with self.client_factory(store) as client:
            raw = await client.fetch_events(limit=limit)

        views: list[EventView] = []
        for record in raw:
            try:
                event = UpstreamEvent.model_validate(record)
            except ValidationError:
                continue
            created = parse_timestamp(event.created_at)
            if created is None:
                continue
            inferred = infer_topic(event.subject_type, event.verb)
            if topic and inferred != topic:
                continue
            views.append(
                EventView(
                    id=str(event.id),
                    source=EventSource.SHOPIFY.value,
                    topic=inferred,
                    created_at=created,
                    payload=record,
                )
            )
            if len(views) >= limit:
                break
        return views
