"""API v1 router that aggregates all endpoint routers."""

from fastapi import APIRouter

from commerce_sync.api.v1 import (
    abandonment,
    events,
    health,
    products,
    sync,
    tenants,
    webhooks,
)

api_router = APIRouter()

# Include all routers
api_router.include_router(
    health.router,
    tags=["Health"],
)

api_router.include_router(
    sync.router,
    prefix="/sync",
    tags=["Sync"],
)

api_router.include_router(
    webhooks.router,
    prefix="/webhooks",
    tags=["Webhooks"],
)

api_router.include_router(
    events.router,
    prefix="/events",
    tags=["Events"],
)

api_router.include_router(
    abandonment.router,
    prefix="/abandonment",
    tags=["Abandonment"],
)

api_router.include_router(
    tenants.router,
    prefix="/tenants",
    tags=["Tenants"],
)

api_router.include_router(
    products.router,
    prefix="/products",
    tags=["Products"],
)
