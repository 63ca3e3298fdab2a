"""Celery task that starts due scheduled bulk actions.

Runs every minute via Celery Beat. Each due execution is claimed with a
conditional update before it runs, so overlapping polls are harmless.
"""

import asyncio
import logging

from db.worker_session import worker_session_factory
from engine.executor import create_executor
from engine.scheduler import SchedulerService
from worker.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="worker.tasks.schedule_poller.poll_due_bulk_actions",
    bind=True,
    max_retries=2,
    default_retry_delay=15,
)
def poll_due_bulk_actions(self):
    """Start every scheduled bulk action whose time has come."""
    logger.info("[bulk-scheduler] Polling for due bulk actions...")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_poll())
        logger.info(f"[bulk-scheduler] Done: {result}")
        return result
    except Exception as exc:
        logger.error(f"[bulk-scheduler] Polling failed: {exc}", exc_info=True)
        raise self.retry(exc=exc)
    finally:
        loop.close()


async def _poll() -> dict:
    async with worker_session_factory() as session_factory:
        scheduler = SchedulerService(create_executor(session_factory))
        return await scheduler.process_due()
