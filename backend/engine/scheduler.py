"""Scheduled bulk actions.

A scheduled execution is parked in `scheduled` with its selection frozen
as serialized filters. The due check (run every minute by Celery beat)
claims each due execution with a conditional `scheduled -> pending`
update, so two pollers never start the same execution, then runs it
through the executor with the target set resolved at that moment.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update

from core.constants import ExecutionStatus
from core.exceptions import ExecutionNotFound, InvalidExecutionState
from core.utils import ensure_utc, utcnow
from db.models import BulkActionExecution
from engine.builder import resolve_schedule_time
from engine.executor import ActionExecutor

logger = structlog.get_logger(__name__)


class SchedulerService:
    """Due check and management of scheduled executions."""

    def __init__(self, executor: ActionExecutor):
        self.executor = executor
        self.session_factory = executor.session_factory
        self.settings = executor.settings

    async def process_due(self, now: Optional[datetime] = None, limit: int = 100) -> Dict[str, Any]:
        """Start every scheduled execution whose time has come.

        Returns:
            {"due": n, "started": n, "skipped": n, "failed": n}
        """
        now = ensure_utc(now) or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(BulkActionExecution.id)
                .where(
                    BulkActionExecution.status == ExecutionStatus.SCHEDULED.value,
                    BulkActionExecution.scheduled_for <= now,
                )
                .order_by(BulkActionExecution.scheduled_for)
                .limit(limit)
            )
            due_ids = list(result.scalars().all())

        stats = {"due": len(due_ids), "started": 0, "skipped": 0, "failed": 0}
        for execution_id in due_ids:
            if not await self._claim(execution_id):
                stats["skipped"] += 1
                continue
            try:
                await self.executor.run_scheduled(execution_id)
            except Exception:
                stats["failed"] += 1
                logger.exception("Scheduled execution failed to start", execution_id=execution_id)
            else:
                stats["started"] += 1

        if due_ids:
            logger.info("Due scheduled executions processed", **stats)
        return stats

    async def _claim(self, execution_id: str) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(BulkActionExecution)
                    .where(
                        BulkActionExecution.id == execution_id,
                        BulkActionExecution.status == ExecutionStatus.SCHEDULED.value,
                    )
                    .values(status=ExecutionStatus.PENDING.value)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    async def cancel(self, execution_id: str, actor_id: Optional[str] = None) -> BulkActionExecution:
        return await self.executor.cancel(execution_id, actor_id)

    async def reschedule(
        self, execution_id: str, when: datetime, timezone: str = "UTC"
    ) -> BulkActionExecution:
        """Move a scheduled execution to a new time.

        Raises:
            InvalidConfiguration: Bad time or timezone
            ExecutionNotFound: No such execution
            InvalidExecutionState: Execution is no longer scheduled
        """
        when = resolve_schedule_time(when, timezone, self.settings)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(BulkActionExecution)
                    .where(
                        BulkActionExecution.id == execution_id,
                        BulkActionExecution.status == ExecutionStatus.SCHEDULED.value,
                    )
                    .values(
                        scheduled_for=when,
                        scheduled_timezone=timezone,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    execution = await session.get(BulkActionExecution, execution_id)
                    if execution is None:
                        raise ExecutionNotFound(execution_id)
                    raise InvalidExecutionState(
                        f"Execution {execution_id} cannot be rescheduled from status '{execution.status}'."
                    )

        logger.info("Execution rescheduled", execution_id=execution_id, scheduled_for=when.isoformat())
        return await self.executor.get_execution(execution_id)

    async def get_scheduled(self, actor_id: Optional[str] = None) -> List[BulkActionExecution]:
        return await self._scheduled_between(None, actor_id)

    async def get_upcoming(
        self, hours_ahead: int = 24, actor_id: Optional[str] = None
    ) -> List[BulkActionExecution]:
        return await self._scheduled_between(utcnow() + timedelta(hours=hours_ahead), actor_id)

    async def _scheduled_between(
        self, until: Optional[datetime], actor_id: Optional[str]
    ) -> List[BulkActionExecution]:
        query = select(BulkActionExecution).where(
            BulkActionExecution.status == ExecutionStatus.SCHEDULED.value
        )
        if until is not None:
            query = query.where(BulkActionExecution.scheduled_for <= until)
        if actor_id is not None:
            query = query.where(BulkActionExecution.actor_id == actor_id)

        async with self.session_factory() as session:
            result = await session.execute(query.order_by(BulkActionExecution.scheduled_for))
            return list(result.scalars().all())
