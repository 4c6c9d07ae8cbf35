"""Paginated, authenticated accessor for one tenant's Shopify Admin API."""

import base64
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.models import Tenant
from shared.constants import SHOPIFY_TOKEN_HEADER

logger = structlog.get_logger()


@dataclass(frozen=True)
class StoreCredentials:
    """Detached copy of a tenant's connection details.

    Survives session rollbacks, unlike the ORM row it was taken from.
    """

    tenant_id: str
    shop_domain: str | None
    access_token: str | None
    api_key: str | None = None
    api_secret: str | None = None

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "StoreCredentials":
        return cls(
            tenant_id=tenant.id,
            shop_domain=tenant.shop_domain,
            access_token=tenant.access_token,
            api_key=tenant.api_key,
            api_secret=tenant.api_secret,
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.shop_domain and self.access_token)


@dataclass(frozen=True)
class ConnectionCheck:
    """Outcome of probing a storefront with its stored credentials."""

    ok: bool
    status_code: int | None = None
    shop: dict[str, Any] | None = None
    error: str | None = None


class ShopifyClient:
    """Read-only REST client bound to one storefront.

    Listing never raises on upstream trouble: a failed page ends the loop and
    the rows gathered so far are returned. Resources whose listing ended that
    way are remembered in ``partial_resources``.
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str | None = None,
        *,
        api_key: str | None = None,
        api_secret: str | None = None,
        api_version: str = "2025-07",
        page_size: int = 250,
        timeout: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.shop_domain = shop_domain
        self.base_url = f"https://{shop_domain}/admin/api/{api_version}"
        self.page_size = page_size
        self.timeout = timeout
        self.transport = transport
        self.headers = self._auth_headers(access_token, api_key, api_secret)
        self.partial_resources: set[str] = set()
        self._http: httpx.AsyncClient | None = None

    @classmethod
    def for_store(
        cls,
        store: StoreCredentials,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "ShopifyClient":
        settings = settings or get_settings()
        return cls(
            store.shop_domain or "",
            store.access_token,
            api_key=store.api_key,
            api_secret=store.api_secret,
            api_version=settings.shopify_api_version,
            page_size=settings.shopify_page_size,
            timeout=settings.shopify_api_timeout,
            transport=transport,
        )

    @staticmethod
    def _auth_headers(
        access_token: str | None, api_key: str | None, api_secret: str | None
    ) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers[SHOPIFY_TOKEN_HEADER] = access_token
        elif api_key and api_secret:
            basic = base64.b64encode(f"{api_key}:{api_secret}".encode()).decode()
            headers["Authorization"] = f"Basic {basic}"
        return headers

    async def __aenter__(self) -> "ShopifyClient":
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            transport=self.transport,
        )
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError("ShopifyClient must be used as an async context manager")
        return self._http

    async def _get_json(self, path: str, params: dict[str, Any]) -> dict[str, Any] | None:
        try:
            response = await self.http.get(path, params=params)
        except httpx.HTTPError as e:
            logger.warning(
                "Shopify request failed",
                shop=self.shop_domain,
                path=path,
                error=str(e),
            )
            return None
        if not response.is_success:
            logger.warning(
                "Shopify returned non-success status",
                shop=self.shop_domain,
                path=path,
                status=response.status_code,
            )
            return None
        try:
            body = response.json()
        except ValueError as e:
            logger.warning("Shopify returned invalid JSON", shop=self.shop_domain, path=path, error=str(e))
            return None
        return body if isinstance(body, dict) else None

    async def fetch_all(
        self, resource: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """
        Fetch a whole collection with since_id cursoring.

        Pages are requested in ascending id order; the next cursor is the
        largest id seen so far. The loop ends on a short or empty page, on
        any upstream failure, or if the cursor stops advancing.

        Args:
            resource: Collection name, e.g. "products" (also the JSON key)
            params: Extra query parameters, e.g. {"status": "any"}

        Returns:
            All records fetched, possibly partial on upstream failure
        """
        self.partial_resources.discard(resource)
        results: list[dict[str, Any]] = []
        since_id = 0
        pages = 0

        while True:
            query: dict[str, Any] = {**(params or {}), "limit": self.page_size}
            if since_id:
                query["since_id"] = since_id

            body = await self._get_json(f"/{resource}.json", query)
            if body is None:
                self.partial_resources.add(resource)
                break

            page = body.get(resource) or []
            pages += 1
            if not page:
                break
            results.extend(page)
            if len(page) < self.page_size:
                break

            try:
                next_cursor = max(int(record["id"]) for record in page)
            except (KeyError, TypeError, ValueError):
                logger.warning("Cannot derive since_id cursor", shop=self.shop_domain, resource=resource)
                self.partial_resources.add(resource)
                break
            if next_cursor <= since_id:
                logger.warning(
                    "since_id cursor did not advance",
                    shop=self.shop_domain,
                    resource=resource,
                    since_id=since_id,
                )
                self.partial_resources.add(resource)
                break
            since_id = next_cursor

        logger.debug(
            "Fetched upstream collection",
            shop=self.shop_domain,
            resource=resource,
            records=len(results),
            pages=pages,
        )
        return results

    async def fetch_events(self, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent entries of the storefront's own event feed."""
        body = await self._get_json("/events.json", {"limit": max(1, min(limit, 250))})
        if body is None:
            return []
        return list(body.get("events") or [])

    async def fetch_shop(self) -> ConnectionCheck:
        """Read the shop resource to confirm the credentials are accepted."""
        try:
            response = await self.http.get("/shop.json")
        except httpx.HTTPError as e:
            logger.warning("Shopify connection check failed", shop=self.shop_domain, error=str(e))
            return ConnectionCheck(ok=False, error=str(e))

        if not response.is_success:
            logger.info(
                "Shopify rejected connection check",
                shop=self.shop_domain,
                status=response.status_code,
            )
            return ConnectionCheck(
                ok=False,
                status_code=response.status_code,
                error=f"Shopify API error: {response.status_code} {response.reason_phrase}".strip(),
            )

        try:
            body = response.json()
        except ValueError:
            return ConnectionCheck(ok=False, status_code=response.status_code, error="invalid JSON from Shopify")
        shop = body.get("shop") if isinstance(body, dict) else None
        return ConnectionCheck(
            ok=True,
            status_code=response.status_code,
            shop=shop if isinstance(shop, dict) else {},
        )
