"""Tenant lookup, onboarding and resilient loading."""

import re

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from commerce_sync.config import Settings
from commerce_sync.infrastructure.database.connection import (
    DatabaseUnavailableError,
    is_database_unreachable,
)
from commerce_sync.infrastructure.database.models import Tenant
from commerce_sync.infrastructure.shopify.client import StoreCredentials
from shared.constants import SHOP_DOMAIN_SUFFIXES

logger = structlog.get_logger()


class TenantNotFoundError(Exception):
    pass


class InvalidShopDomainError(ValueError):
    pass


class ShopDomainTakenError(Exception):
    pass


def normalize_shop_domain(domain: str) -> str:
    """Strip protocol and trailing slash, lowercase, and validate the suffix.

    ``https://Acme.myshopify.com/`` -> ``acme.myshopify.com``
    """
    cleaned = re.sub(r"^https?://", "", (domain or "").strip(), flags=re.IGNORECASE)
    cleaned = cleaned.rstrip("/").lower()
    if not cleaned.endswith(SHOP_DOMAIN_SUFFIXES):
        raise InvalidShopDomainError(
            "Invalid shop domain; must end with .myshopify.com or .myshopify.io"
        )
    return cleaned


def _log_retry(retry_state: RetryCallState) -> None:
    logger.warning(
        "Database unreachable, retrying tenant load",
        attempt=retry_state.attempt_number,
        delay_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else 0,
    )


async def _select_tenants(session: AsyncSession, tenant_id: str | None) -> list[StoreCredentials]:
    query = select(Tenant).order_by(Tenant.created_at, Tenant.id)
    if tenant_id is not None:
        query = query.where(Tenant.id == tenant_id)
    try:
        result = await session.execute(query)
    except Exception as e:
        if not is_database_unreachable(e):
            raise
        await session.rollback()
        raise DatabaseUnavailableError(str(e)) from e
    return [StoreCredentials.from_tenant(t) for t in result.scalars().all()]


async def load_tenants(
    session: AsyncSession, settings: Settings, tenant_id: str | None = None
) -> list[StoreCredentials]:
    """
    Load every tenant (or just ``tenant_id``), retrying only while the
    database is unreachable.

    Backoff is exponential from ``db_retry_base_delay_seconds`` and capped at
    ``db_retry_max_delay_seconds``. Other failures propagate immediately.

    Raises:
        DatabaseUnavailableError: after ``db_retry_attempts`` failed attempts
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(DatabaseUnavailableError),
        stop=stop_after_attempt(settings.db_retry_attempts),
        wait=wait_exponential(
            multiplier=settings.db_retry_base_delay_seconds,
            max=settings.db_retry_max_delay_seconds,
        ),
        before_sleep=_log_retry,
        reraise=True,
    )
    return await retrying(_select_tenants, session, tenant_id)


class TenantService:
    """Tenant reads and credential management."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, tenant_id: str) -> Tenant:
        tenant = await self.session.get(Tenant, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return tenant

    async def get_by_domain(self, shop_domain: str) -> Tenant:
        try:
            domain = normalize_shop_domain(shop_domain)
        except InvalidShopDomainError as e:
            raise TenantNotFoundError(shop_domain) from e
        result = await self.session.execute(select(Tenant).where(Tenant.shop_domain == domain))
        tenant = result.scalar_one_or_none()
        if tenant is None:
            raise TenantNotFoundError(shop_domain)
        return tenant

    async def update_credentials(
        self,
        tenant_id: str,
        shop_domain: str,
        access_token: str | None = None,
        api_key: str | None = None,
        api_secret: str | None = None,
    ) -> Tenant:
        """Replace a tenant's storefront credentials. Omitted secrets are kept.

        Raises:
            TenantNotFoundError: unknown tenant
            InvalidShopDomainError: domain fails normalisation
            ShopDomainTakenError: another tenant already owns the domain
        """
        tenant = await self.get(tenant_id)
        tenant.shop_domain = normalize_shop_domain(shop_domain)
        if access_token is not None:
            tenant.access_token = access_token
        if api_key is not None:
            tenant.api_key = api_key
        if api_secret is not None:
            tenant.api_secret = api_secret
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise ShopDomainTakenError(shop_domain) from e
        logger.info("Tenant credentials updated", tenant_id=tenant.id, shop=tenant.shop_domain)
        return tenant
