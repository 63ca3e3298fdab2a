"""Celery tasks for bulk action data retention.

Runs daily at 3 AM (configured in beat_schedule) and performs:
1. Drop undo snapshots of executions whose undo window has lapsed
2. Delete batch progress rows of long-finished executions
3. Delete finished executions past the retention period
4. Delete audit rows past the audit retention period
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from core.constants import ExecutionStatus
from core.utils import utcnow
from db.models import BulkActionAudit, BulkActionExecution, BulkActionProgress
from db.worker_session import worker_session_factory
from engine.undo import UndoManager
from worker.celery_app import celery_app

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = [s.value for s in ExecutionStatus.terminal()]


@celery_app.task(
    name="worker.tasks.maintenance.cleanup_expired_bulk_data",
    queue="default",
)
def cleanup_expired_bulk_data():
    """Remove expired undo data and rows past their retention period."""
    logger.info("Running bulk action cleanup")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_cleanup())
        logger.info("Bulk action cleanup completed: %s", result)
        return result
    except Exception as exc:
        logger.error("Bulk action cleanup failed: %s", exc, exc_info=True)
        return {"status": "error", "error": str(exc)}
    finally:
        loop.close()


async def _cleanup() -> dict:
    async with worker_session_factory() as session_factory:
        return await run_cleanup(session_factory)


async def run_cleanup(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Apply every retention rule once and return per-rule counts."""
    settings = settings or get_settings()
    now = now or utcnow()
    stats = {
        "undo_records_deleted": await UndoManager(session_factory, settings).cleanup(now),
        "progress_rows_deleted": 0,
        "executions_deleted": 0,
        "audit_rows_deleted": 0,
    }

    async with session_factory() as session:
        async with session.begin():
            # 2. Progress rows of executions finished before the progress cutoff
            progress_cutoff = now - timedelta(days=settings.PROGRESS_RETENTION_DAYS)
            finished = (
                select(BulkActionExecution.id)
                .where(
                    BulkActionExecution.status.in_(TERMINAL_STATUSES),
                    BulkActionExecution.completed_at < progress_cutoff,
                )
                .scalar_subquery()
            )
            result = await session.execute(
                delete(BulkActionProgress)
                .where(BulkActionProgress.execution_id.in_(finished))
                .execution_options(synchronize_session=False)
            )
            stats["progress_rows_deleted"] = result.rowcount or 0

            # 3. Finished executions whose undo window is closed
            execution_cutoff = now - timedelta(days=settings.EXECUTION_RETENTION_DAYS)
            result = await session.execute(
                delete(BulkActionExecution)
                .where(
                    BulkActionExecution.status.in_(TERMINAL_STATUSES),
                    BulkActionExecution.completed_at < execution_cutoff,
                    or_(
                        BulkActionExecution.can_undo.is_(False),
                        BulkActionExecution.undo_expires_at < now,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            stats["executions_deleted"] = result.rowcount or 0

            # 4. Audit trail
            audit_cutoff = now - timedelta(days=settings.AUDIT_RETENTION_DAYS)
            result = await session.execute(
                delete(BulkActionAudit)
                .where(BulkActionAudit.created_at < audit_cutoff)
                .execution_options(synchronize_session=False)
            )
            stats["audit_rows_deleted"] = result.rowcount or 0

    return stats
