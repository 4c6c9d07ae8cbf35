"""Recent integration events for the caller's tenant."""

from typing import Any

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.api.dependencies import api_error, get_current_tenant_id, get_shopify_client_factory
from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.connection import get_session
from commerce_sync.infrastructure.shopify.client import StoreCredentials
from commerce_sync.services.events import EventFeedService, EventSource
from commerce_sync.services.tenants import TenantNotFoundError, TenantService

router = APIRouter()


@router.get("")
async def list_events(
    source: EventSource = Query(EventSource.DB),
    topic: str | None = Query(None),
    limit: int | None = Query(None, ge=1),
    tenant_id: str = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    client_factory=Depends(get_shopify_client_factory),
) -> dict[str, Any]:
    """
    Webhook deliveries, the storefront's own event feed, or both merged.

    ``limit`` is capped at ``events_max_limit``. ``stats`` counts topics over
    the returned events only.
    """
    try:
        tenant = await TenantService(session).get(tenant_id)
    except TenantNotFoundError:
        raise api_error(status.HTTP_404_NOT_FOUND, "tenant not found", "tenant_not_found")
    store = StoreCredentials.from_tenant(tenant)

    feed = await EventFeedService(session, settings, client_factory).list_events(
        store, source=source, topic=topic, limit=limit
    )
    return {
        "events": [e.to_dict() for e in feed.events],
        "stats": feed.stats,
        "total": feed.total,
        "source": feed.source.value,
        "webhook_events": feed.webhook_events,
        "shopify_events": feed.shopify_events,
        "timestamp": feed.timestamp.isoformat(),
    }
