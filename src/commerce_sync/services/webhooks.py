"""Signature-verified intake of storefront webhooks."""

import base64
import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import orjson
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.models import RawEvent
from commerce_sync.infrastructure.shopify.payloads import TopicFamily, classify_topic
from commerce_sync.services.reconciler import UpsertReconciler
from commerce_sync.services.tenants import TenantService
from shared.clock import utc_now

logger = structlog.get_logger()

# Topic families that are mirrored straight into the replica tables
_REPLICATED_FAMILIES = {
    TopicFamily.ORDERS: "orders",
    TopicFamily.CUSTOMERS: "customers",
    TopicFamily.PRODUCTS: "products",
}


class InvalidPayloadError(ValueError):
    pass


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """Check a base64 HMAC-SHA256 of the raw body against the header value.

    An empty secret or a missing header never verifies.
    """
    if not secret or not signature:
        return False
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode()
    return hmac.compare_digest(expected, signature.strip())


@dataclass
class WebhookReceipt:
    topic: str
    domain: str
    event_id: int
    timestamp: datetime


class WebhookService:
    """Persists deliveries and mirrors replicated topics into the replica."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    async def process(self, topic: str, shop_domain: str, raw_body: bytes) -> WebhookReceipt:
        """
        Store one already-verified delivery.

        Raises:
            TenantNotFoundError: no tenant owns ``shop_domain``
            InvalidPayloadError: body is not a JSON object
        """
        tenant = await TenantService(self.session).get_by_domain(shop_domain)
        tenant_id = tenant.id

        try:
            payload = orjson.loads(raw_body)
        except orjson.JSONDecodeError as e:
            raise InvalidPayloadError("invalid JSON body") from e
        if not isinstance(payload, dict):
            raise InvalidPayloadError("JSON body must be an object")

        event = RawEvent(tenant_id=tenant_id, topic=topic, payload=payload, created_at=utc_now())
        self.session.add(event)
        await self.session.commit()
        logger.info("Webhook stored", tenant_id=tenant_id, topic=topic, event_id=event.id)

        await self._mirror(tenant_id, topic, payload)
        return WebhookReceipt(
            topic=topic, domain=shop_domain, event_id=event.id, timestamp=event.created_at
        )

    async def _mirror(self, tenant_id: str, topic: str, payload: dict[str, Any]) -> None:
        kind = _REPLICATED_FAMILIES.get(classify_topic(topic))
        if kind is None:
            return
        if topic.lower().endswith("/delete"):
            # Delete bodies carry only the id; the orphan cleanup removes the row
            logger.debug("Webhook delete not mirrored", tenant_id=tenant_id, topic=topic)
            return
        try:
            result = await UpsertReconciler(self.session, self.settings).upsert(
                kind, tenant_id, [payload]
            )
            await self.session.commit()
        except Exception as e:
            # The raw event is already stored; the next full sync repairs the replica
            await self.session.rollback()
            logger.warning(
                "Webhook replica upsert failed",
                tenant_id=tenant_id,
                topic=topic,
                error=str(e),
            )
            return
        logger.debug("Webhook mirrored", tenant_id=tenant_id, kind=kind, upserted=result.upserted)
