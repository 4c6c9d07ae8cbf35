"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from commerce_sync.api.dependencies import get_redis, get_shopify_client_factory
from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.connection import get_session
from commerce_sync.infrastructure.database.models import Base, Tenant
from commerce_sync.infrastructure.shopify.client import ShopifyClient, StoreCredentials
from commerce_sync.main import create_app

WEBHOOK_SECRET = "test-webhook-secret"
CRON_SECRET = "test-cron-secret"


class FakeRedis:
    """In-memory stand-in for the redis.asyncio calls this service makes."""

    def __init__(self) -> None:
        self.store: dict[str, bytes] = {}
        self.ttls: dict[str, int | None] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("redis down")

    async def set(self, key: str, value: Any, nx: bool = False, ex: int | None = None) -> bool | None:
        self._check()
        if nx and key in self.store:
            return None
        self.store[key] = value if isinstance(value, bytes) else str(value).encode()
        self.ttls[key] = ex
        return True

    async def get(self, key: str) -> bytes | None:
        self._check()
        return self.store.get(key)

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def ping(self) -> bool:
        self._check()
        return True


class ShopifyStub:
    """Serves paginated Admin API listings from in-memory records."""

    def __init__(self) -> None:
        self.records: dict[str, list[dict[str, Any]]] = {"products": [], "customers": [], "orders": []}
        self.events: list[dict[str, Any]] = []
        self.shop: dict[str, Any] = {"id": 1, "name": "Acme", "myshopify_domain": "acme.myshopify.com"}
        self.failing: set[str] = set()
        self.requests: list[httpx.Request] = []

    def calls(self, resource: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(f"/{resource}.json")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        resource = request.url.path.rsplit("/", 1)[-1].removesuffix(".json")
        if resource in self.failing:
            return httpx.Response(500, json={"errors": "boom"})
        limit = int(request.url.params.get("limit", 50))

        if resource == "shop":
            return httpx.Response(200, json={"shop": self.shop})
        if resource == "events":
            return httpx.Response(200, json={"events": self.events[:limit]})

        since_id = int(request.url.params.get("since_id", 0))
        rows = sorted(self.records.get(resource, []), key=lambda r: int(r["id"]))
        page = [r for r in rows if int(r["id"]) > since_id][:limit]
        return httpx.Response(200, json={resource: page})


@pytest.fixture
def test_settings() -> Settings:
    """Get test settings with overrides."""
    return Settings(
        app_env="test",
        debug=True,
        redis_host="",
        shopify_webhook_secret=WEBHOOK_SECRET,
        cron_secret=CRON_SECRET,
        sync_tenant_pause_ms=0,
        db_retry_attempts=3,
        db_retry_base_delay_seconds=0,
        db_retry_max_delay_seconds=0,
    )


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def shopify() -> ShopifyStub:
    return ShopifyStub()


@pytest.fixture
def client_factory(
    shopify: ShopifyStub, test_settings: Settings
) -> Callable[[StoreCredentials], ShopifyClient]:
    transport = httpx.MockTransport(shopify.handler)
    return lambda store: ShopifyClient.for_store(store, test_settings, transport=transport)


@pytest.fixture
def make_tenant(session: AsyncSession) -> Callable[..., Awaitable[Tenant]]:
    """Insert a tenant; pass access_token=None for one without credentials."""

    async def _make(
        name: str = "Acme",
        shop_domain: str | None = "acme.myshopify.com",
        access_token: str | None = "shpat_test",
    ) -> Tenant:
        tenant = Tenant(name=name, shop_domain=shop_domain, access_token=access_token)
        session.add(tenant)
        await session.commit()
        return tenant

    return _make


@pytest.fixture
def app(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    fake_redis: FakeRedis,
    client_factory: Callable[[StoreCredentials], ShopifyClient],
) -> Any:
    """Create test application."""

    async def get_test_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app = create_app()
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_session] = get_test_session
    app.dependency_overrides[get_redis] = lambda: fake_redis
    app.dependency_overrides[get_shopify_client_factory] = lambda: client_factory
    return app


@pytest_asyncio.fixture
async def async_client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """Create asynchronous test client."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def cron_headers() -> dict[str, str]:
    return {"X-Cron-Key": CRON_SECRET}
