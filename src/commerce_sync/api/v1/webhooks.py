"""Storefront webhook receiver."""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.api.dependencies import api_error
from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.connection import get_session
from commerce_sync.services.tenants import TenantNotFoundError
from commerce_sync.services.webhooks import InvalidPayloadError, WebhookService, verify_signature
from shared.constants import SHOPIFY_DOMAIN_HEADER, SHOPIFY_HMAC_HEADER, SHOPIFY_TOPIC_HEADER

logger = structlog.get_logger()

router = APIRouter()


@router.post("/shopify")
async def receive_shopify_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """
    Verify, store and mirror one webhook delivery.

    The signature is checked over the raw body before anything is parsed.
    """
    signature = request.headers.get(SHOPIFY_HMAC_HEADER)
    topic = request.headers.get(SHOPIFY_TOPIC_HEADER)
    domain = request.headers.get(SHOPIFY_DOMAIN_HEADER)
    if not (signature and topic and domain):
        raise api_error(status.HTTP_400_BAD_REQUEST, "missing webhook headers", "missing_headers")

    raw_body = await request.body()
    if not verify_signature(raw_body, signature, settings.shopify_webhook_secret):
        logger.warning("Webhook signature rejected", topic=topic, shop=domain)
        raise api_error(status.HTTP_401_UNAUTHORIZED, "invalid hmac", "invalid_signature")

    try:
        receipt = await WebhookService(session, settings).process(topic, domain, raw_body)
    except TenantNotFoundError:
        raise api_error(status.HTTP_404_NOT_FOUND, "tenant not found", "tenant_not_found")
    except InvalidPayloadError as e:
        raise api_error(status.HTTP_400_BAD_REQUEST, str(e), "invalid_payload")

    return {
        "success": True,
        "topic": receipt.topic,
        "domain": receipt.domain,
        "timestamp": receipt.timestamp.isoformat(),
    }
