"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import InterfaceError, OperationalError

from commerce_sync import __version__
from commerce_sync.api.v1.router import api_router
from commerce_sync.config import get_settings
from commerce_sync.infrastructure.database.connection import DatabaseUnavailableError
from commerce_sync.infrastructure.redis import close_redis
from commerce_sync.log_config import configure_logging
from commerce_sync.middleware.request_context import RequestContextMiddleware

configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    settings = get_settings()
    logger.info(
        "Starting commerce sync service",
        app_env=settings.app_env,
        debug=settings.debug,
        redis_enabled=settings.redis_enabled,
    )

    yield

    await close_redis()
    logger.info("Shutting down commerce sync service")


async def database_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    settings = get_settings()
    logger.error("Database unreachable", error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": {"error": "database unreachable", "code": "database_unavailable"}},
        headers={"Retry-After": str(settings.db_retry_after_seconds)},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Commerce Sync API",
        description="Multi-tenant storefront ingestion: full syncs, webhooks and abandonment detection",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for exc_class in (DatabaseUnavailableError, OperationalError, InterfaceError):
        app.add_exception_handler(exc_class, database_unavailable_handler)

    app.include_router(api_router, prefix="/api/v1")

    return app


app = create_app()


def run() -> None:
    """Run the application using uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "commerce_sync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
    )


if __name__ == "__main__":
    run()
