"""Read path over the replicated product catalog, cached per storefront."""

from typing import Any

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.api.dependencies import api_error, get_cache, get_current_tenant_id
from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.connection import get_session
from commerce_sync.infrastructure.database.models import Product
from commerce_sync.infrastructure.redis import CacheService, products_cache_key
from commerce_sync.services.tenants import TenantNotFoundError, TenantService

router = APIRouter()


@router.get("")
async def list_products(
    tenant_id: str = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
    cache: CacheService = Depends(get_cache),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """
    Products of the caller's storefront.

    Served from ``products:{domain}`` when cached. Syncs and cleanups drop
    that key, so a stale entry lives at most ``products_cache_ttl_seconds``.
    """
    try:
        tenant = await TenantService(session).get(tenant_id)
    except TenantNotFoundError:
        raise api_error(status.HTTP_404_NOT_FOUND, "tenant not found", "tenant_not_found")
    if not tenant.shop_domain:
        raise api_error(status.HTTP_400_BAD_REQUEST, "missing shop or token", "missing_credentials")

    cache_key = products_cache_key(tenant.shop_domain)
    cached = await cache.get(cache_key)
    if cached is not None:
        return {**cached, "cached": True}

    result = await session.execute(
        select(Product).where(Product.tenant_id == tenant_id).order_by(Product.title, Product.id)
    )
    products = [
        {"id": p.id, "shop_id": p.shop_id, "title": p.title, "price": p.price}
        for p in result.scalars().all()
    ]
    body = {"shop_domain": tenant.shop_domain, "products": products, "total": len(products)}
    await cache.set(cache_key, body, ttl_seconds=settings.products_cache_ttl_seconds)
    return {**body, "cached": False}
