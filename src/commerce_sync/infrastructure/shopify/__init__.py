"""Shopify Admin API access."""

from commerce_sync.infrastructure.shopify.client import ConnectionCheck, ShopifyClient, StoreCredentials

__all__ = ["ConnectionCheck", "ShopifyClient", "StoreCredentials"]
