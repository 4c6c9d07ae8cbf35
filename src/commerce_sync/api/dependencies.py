"""Shared FastAPI dependencies: caller identity, Redis-backed helpers, upstream clients."""

import hmac
from collections.abc import Callable

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request, status

from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.redis import CacheService, get_redis_client
from commerce_sync.infrastructure.shopify.client import ShopifyClient, StoreCredentials
from commerce_sync.services.locking import LockManager


def api_error(status_code: int, error: str, code: str, headers: dict[str, str] | None = None) -> HTTPException:
    """HTTPException with the ``{"error", "code"}`` detail body used across the API."""
    return HTTPException(
        status_code=status_code,
        detail={"error": error, "code": code},
        headers=headers,
    )


async def get_redis() -> aioredis.Redis | None:
    return await get_redis_client()


def get_cache(client: aioredis.Redis | None = Depends(get_redis)) -> CacheService:
    return CacheService(client)


def get_lock_manager(client: aioredis.Redis | None = Depends(get_redis)) -> LockManager:
    return LockManager(client)


def get_shopify_client_factory(
    settings: Settings = Depends(get_settings),
) -> Callable[[StoreCredentials], ShopifyClient]:
    """Build clients per tenant; tests swap this for a mock transport."""
    return lambda store: ShopifyClient.for_store(store, settings)


def verify_cron_key(request: Request, settings: Settings = Depends(get_settings)) -> None:
    """Shared-secret check for scheduler-triggered endpoints.

    Open when no secret is configured.
    """
    if not settings.cron_secret:
        return
    supplied = request.headers.get(settings.cron_key_header, "")
    if not hmac.compare_digest(supplied.encode(), settings.cron_secret.encode()):
        raise api_error(status.HTTP_403_FORBIDDEN, "forbidden", "forbidden")


def get_current_tenant_id(request: Request, settings: Settings = Depends(get_settings)) -> str:
    """Tenant id forwarded by the authenticating gateway."""
    tenant_id = request.headers.get(settings.tenant_header, "").strip()
    if not tenant_id:
        raise api_error(status.HTTP_401_UNAUTHORIZED, "unauthorized", "unauthorized")
    return tenant_id
