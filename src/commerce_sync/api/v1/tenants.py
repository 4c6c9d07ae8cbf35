"""Tenant onboarding: storefront credentials for the caller's tenant."""

from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.api.dependencies import api_error, get_current_tenant_id, get_shopify_client_factory
from commerce_sync.infrastructure.database.connection import get_session
from commerce_sync.infrastructure.shopify.client import StoreCredentials
from commerce_sync.services.tenants import (
    InvalidShopDomainError,
    ShopDomainTakenError,
    TenantNotFoundError,
    TenantService,
)

router = APIRouter()


class CredentialsRequest(BaseModel):
    """Storefront connection details. Omitted secrets keep their stored value."""

    shop_domain: str = Field(..., min_length=1, description="e.g. acme.myshopify.com")
    access_token: str | None = Field(None, description="Admin API access token")
    api_key: str | None = None
    api_secret: str | None = None


class CredentialsResponse(BaseModel):
    ok: bool
    tenant_id: str
    shop_domain: str
    has_credentials: bool


class ConnectionResponse(BaseModel):
    success: bool
    shop_domain: str
    status_code: int | None = None
    shop: dict[str, Any] | None = None
    error: str | None = None


@router.put("/me/credentials", response_model=CredentialsResponse)
async def update_credentials(
    body: CredentialsRequest,
    tenant_id: str = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
) -> CredentialsResponse:
    try:
        tenant = await TenantService(session).update_credentials(
            tenant_id,
            body.shop_domain,
            access_token=body.access_token,
            api_key=body.api_key,
            api_secret=body.api_secret,
        )
    except TenantNotFoundError:
        raise api_error(status.HTTP_404_NOT_FOUND, "tenant not found", "tenant_not_found")
    except InvalidShopDomainError as e:
        raise api_error(status.HTTP_400_BAD_REQUEST, str(e), "invalid_shop_domain")
    except ShopDomainTakenError:
        raise api_error(
            status.HTTP_409_CONFLICT,
            "shop domain is registered to another tenant",
            "shop_domain_taken",
        )

    return CredentialsResponse(
        ok=True,
        tenant_id=tenant.id,
        shop_domain=tenant.shop_domain,
        has_credentials=tenant.has_credentials,
    )


@router.get("/me/connection", response_model=ConnectionResponse)
async def check_connection(
    tenant_id: str = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
    client_factory=Depends(get_shopify_client_factory),
) -> ConnectionResponse:
    """
    Call the storefront's shop endpoint with the stored credentials.

    An upstream rejection is reported in the body with ``success: false``
    and the upstream status, not as an error response.
    """
    try:
        tenant = await TenantService(session).get(tenant_id)
    except TenantNotFoundError:
        raise api_error(status.HTTP_404_NOT_FOUND, "tenant not found", "tenant_not_found")
    store = StoreCredentials.from_tenant(tenant)
    if not store.has_credentials:
        raise api_error(
            status.HTTP_400_BAD_REQUEST,
            "storefront credentials not configured",
            "missing_credentials",
        )

    async with client_factory(store) as client:
        check = await client.fetch_shop()

    return ConnectionResponse(
        success=check.ok,
        shop_domain=store.shop_domain,
        status_code=check.status_code,
        shop=check.shop,
        error=check.error,
    )
