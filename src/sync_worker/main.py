"""Celery application for sync worker."""

from celery import Celery

from commerce_sync.config import get_settings
from commerce_sync.log_config import configure_logging

settings = get_settings()
configure_logging()

# Create Celery app
app = Celery(
    "sync_worker",
    broker=settings.celery_broker,
    backend=settings.celery_backend,
    include=[
        "sync_worker.tasks.sync_tenants",
        "sync_worker.tasks.abandonment",
    ],
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.sync_all_lock_ttl_seconds,
    task_soft_time_limit=settings.sync_all_lock_ttl_seconds - 60,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="sync",
    task_routes={
        "sync_worker.tasks.*": {"queue": "sync"},
    },
)

# Beat schedule for periodic tasks. The sweep is chained from the sync task.
app.conf.beat_schedule = {
    "sync-all-tenants": {
        "task": "sync_worker.tasks.sync_tenants.sync_all_tenants",
        "schedule": float(settings.cron_interval_seconds),
    },
}


def run() -> None:
    """Run the Celery worker."""
    app.worker_main(["worker", "--loglevel=info", "-Q", "sync"])


if __name__ == "__main__":
    run()
