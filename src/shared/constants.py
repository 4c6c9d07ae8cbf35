"""Shared constants across the application."""

# Replicated upstream resources and their list endpoints
RESOURCE_PRODUCTS = "products"
RESOURCE_CUSTOMERS = "customers"
RESOURCE_ORDERS = "orders"
ORDERS_LIST_PARAMS = {"status": "any"}

# Job lock keys
SYNC_ALL_LOCK_KEY = "sync_all_lock"
SYNC_TENANT_LOCK_PREFIX = "sync_tenant_lock"
ABANDON_SWEEP_LOCK_KEY = "abandon_sweep_lock"

# Raw event topics
CHECKOUT_ACTIVITY_TOPICS = (
    "checkouts/create",
    "checkouts/update",
    "carts/create",
    "carts/update",
)
ABANDONED_CHECKOUT_TOPIC = "checkouts/abandoned"

# Webhook headers
SHOPIFY_HMAC_HEADER = "X-Shopify-Hmac-Sha256"
SHOPIFY_TOPIC_HEADER = "X-Shopify-Topic"
SHOPIFY_DOMAIN_HEADER = "X-Shopify-Shop-Domain"
SHOPIFY_TOKEN_HEADER = "X-Shopify-Access-Token"

# Accepted storefront domain suffixes
SHOP_DOMAIN_SUFFIXES = (".myshopify.com", ".myshopify.io")

# Sync log vocabulary
SYNC_JOB_MANUAL = "manual"
SYNC_JOB_CRON = "cron"
SYNC_STATUS_SUCCESS = "success"
SYNC_STATUS_ERROR = "error"
MISSING_CREDENTIALS_MESSAGE = "missing creds"
