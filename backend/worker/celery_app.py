"""Celery application configuration.

This module sets up the Celery app with:
- Redis as broker and result backend
- Bulk action batches routed to their own queue
- Time limits taken from settings
- Beat schedule for the due check and nightly cleanup
"""

from celery import Celery, signals
from celery.schedules import crontab

from app.config import get_settings
from core.logging_config import setup_logging

settings = get_settings()

celery_app = Celery(
    "bulk_action_engine",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task routing
    task_routes={
        "worker.tasks.bulk.*": {"queue": settings.BULK_QUEUE_NAME},
        "worker.tasks.*": {"queue": "default"},
    },
    task_default_queue="default",

    # Result expiration (24 hours)
    result_expires=86400,

    # Batch units may be long; the soft limit releases the batch for retry
    task_soft_time_limit=settings.BATCH_SOFT_TIME_LIMIT,
    task_time_limit=settings.BATCH_TIME_LIMIT,
    task_acks_late=True,
    worker_prefetch_multiplier=1,

    # Redeliver units of a lost worker
    task_reject_on_worker_lost=True,
    task_acks_on_failure_or_timeout=True,

    beat_schedule={
        "poll-due-bulk-actions": {
            "task": "worker.tasks.schedule_poller.poll_due_bulk_actions",
            "schedule": crontab(minute="*/1"),  # Every minute
            "options": {"queue": "default"},
        },
        "cleanup-expired-bulk-data": {
            "task": "worker.tasks.maintenance.cleanup_expired_bulk_data",
            "schedule": crontab(hour=3, minute=0),  # Daily at 3 AM
            "options": {"queue": "default"},
        },
    },

    include=[
        "worker.tasks.bulk",
        "worker.tasks.schedule_poller",
        "worker.tasks.maintenance",
    ],
)


@signals.setup_logging.connect
def configure_worker_logging(**kwargs):
    """Replace Celery's own logging setup with the structlog configuration."""
    setup_logging(settings)
