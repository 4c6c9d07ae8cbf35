"""Application configuration management."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Application Settings
    # -------------------------------------------------------------------------
    app_name: str = "commerce-sync"
    app_env: Literal["development", "staging", "production", "test"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # API Settings
    # -------------------------------------------------------------------------
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_workers: int = 4
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    # -------------------------------------------------------------------------
    # Shopify Admin API
    # -------------------------------------------------------------------------
    shopify_api_version: str = "2025-07"
    shopify_page_size: int = Field(default=250, ge=1, le=250)
    shopify_api_timeout: int = 30
    shopify_webhook_secret: str = ""

    # -------------------------------------------------------------------------
    # PostgreSQL Database
    # -------------------------------------------------------------------------
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "commerce"
    postgres_password: str = ""
    postgres_db: str = "commerce_sync"

    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_recycle: int = 1800

    @property
    def database_url(self) -> str:
        """Construct PostgreSQL connection URL."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def database_url_sync(self) -> str:
        """Construct synchronous PostgreSQL connection URL (for Alembic)."""
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # -------------------------------------------------------------------------
    # Redis (cache and job locks; empty host disables both)
    # -------------------------------------------------------------------------
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0

    @property
    def redis_enabled(self) -> bool:
        return bool(self.redis_host)

    @property
    def redis_url(self) -> str:
        """Construct Redis connection URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # -------------------------------------------------------------------------
    # Celery
    # -------------------------------------------------------------------------
    celery_broker_url: str = ""
    celery_result_backend: str = ""

    @property
    def celery_broker(self) -> str:
        """Get Celery broker URL, defaulting to Redis URL."""
        return self.celery_broker_url or self.redis_url

    @property
    def celery_backend(self) -> str:
        """Get Celery result backend URL, defaulting to Redis URL."""
        return self.celery_result_backend or self.redis_url

    # -------------------------------------------------------------------------
    # Security
    # -------------------------------------------------------------------------
    cron_secret: str = ""
    cron_key_header: str = "X-Cron-Key"
    # Set by the authenticating gateway in front of this service
    tenant_header: str = "X-Tenant-ID"

    # -------------------------------------------------------------------------
    # Sync Settings
    # -------------------------------------------------------------------------
    cron_interval_seconds: int = 900
    sweep_delay_seconds: int = 3
    sync_all_lock_ttl_seconds: int = 600
    sync_tenant_lock_ttl_seconds: int = 600
    sync_tenant_pause_ms: int = 300
    db_retry_attempts: int = Field(default=4, ge=1, le=5)
    db_retry_base_delay_seconds: float = 0.8
    db_retry_max_delay_seconds: float = 10.0
    db_retry_after_seconds: int = 30
    default_currency: str = "INR"

    @field_validator("cron_interval_seconds")
    @classmethod
    def floor_cron_interval(cls, v: int) -> int:
        return max(60, v)

    # -------------------------------------------------------------------------
    # Abandonment Sweep Settings
    # -------------------------------------------------------------------------
    abandon_threshold_minutes: int = 60
    abandon_window_hours: int = 48
    abandon_lock_ttl_seconds: int = 300
    abandon_scan_batch_size: int = 500

    # -------------------------------------------------------------------------
    # Event Feed / Cache Settings
    # -------------------------------------------------------------------------
    events_default_limit: int = 20
    events_max_limit: int = 50
    products_cache_ttl_seconds: int = 60


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
