"""Multi-tenant storefront ingestion and reconciliation service."""

__version__ = "1.0.0"
