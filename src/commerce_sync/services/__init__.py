"""Business logic services."""

from commerce_sync.services.abandonment import AbandonmentSweeper
from commerce_sync.services.events import EventFeedService
from commerce_sync.services.locking import LockManager
from commerce_sync.services.reconciler import UpsertReconciler
from commerce_sync.services.sync import SyncOrchestrator
from commerce_sync.services.tenants import TenantService
from commerce_sync.services.webhooks import WebhookService

__all__ = [
    "AbandonmentSweeper",
    "EventFeedService",
    "LockManager",
    "SyncOrchestrator",
    "TenantService",
    "UpsertReconciler",
    "WebhookService",
]
