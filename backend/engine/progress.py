"""Per-batch progress tracking.

One BulkActionProgress row per batch, created up front as `pending`.
Aggregate numbers are always read from the execution's own counters,
which batches update atomically, never by summing batch rows.
"""

import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from core.constants import BatchStatus
from core.utils import json_safe, utcnow
from db.models import BulkActionExecution, BulkActionProgress
from engine.schemas import ExecutionSnapshot, ProgressDetails
from notifications.channels import BroadcastChannel

logger = structlog.get_logger(__name__)


def unresolved_batches_exist(execution_id: Any):
    """EXISTS clause: the execution still has pending or processing batches."""
    return exists().where(
        BulkActionProgress.execution_id == execution_id,
        BulkActionProgress.status.in_([s.value for s in BatchStatus.unresolved()]),
    )


class ProgressTracker:
    """Creates, updates and reports batch progress."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        broadcaster: Optional[Any] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.broadcaster = broadcaster
        self._clock = clock
        self._last_broadcast: Dict[str, float] = {}

    @property
    def broadcaster(self) -> Optional[BroadcastChannel]:
        return self._broadcaster

    @broadcaster.setter
    def broadcaster(self, value: Optional[Any]) -> None:
        # A bare publisher is wrapped so its failures are reported, not raised
        if value is not None and not isinstance(value, BroadcastChannel):
            value = BroadcastChannel(value)
        self._broadcaster = value

    @staticmethod
    def percentage(processed: int, total: int) -> float:
        if not total:
            return 0.0
        return round(processed / total * 100, 2)

    # ─── Batch rows ────────────────────────────────────────

    async def initialize(
        self,
        session: AsyncSession,
        execution: BulkActionExecution,
        batches: Sequence[Sequence[Any]],
        batch_size: int,
    ) -> List[BulkActionProgress]:
        """Create one pending row per batch (numbered from 1)."""
        rows = [
            BulkActionProgress(
                execution_id=execution.id,
                batch_number=number,
                batch_size=batch_size,
                total_in_batch=len(ids),
                record_ids=json_safe(list(ids)),
                status=BatchStatus.PENDING.value,
                processed_count=0,
                failed_count=0,
                affected_ids=[],
                failed_ids=[],
                retry_count=0,
            )
            for number, ids in enumerate(batches, start=1)
        ]
        session.add_all(rows)
        await session.flush()
        logger.debug("Progress initialized", execution_id=execution.id, batches=len(rows))
        return rows

    async def get_batch(
        self, session: AsyncSession, execution_id: str, batch_number: int, lock: bool = False
    ) -> Optional[BulkActionProgress]:
        query = select(BulkActionProgress).where(
            BulkActionProgress.execution_id == execution_id,
            BulkActionProgress.batch_number == batch_number,
        )
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def claim_batch(self, session: AsyncSession, execution_id: str, batch_number: int) -> bool:
        """Move a pending batch to processing.

        Conditional on the row still being pending, so of two deliveries of
        the same unit only one gets to process it. The claim belongs to the
        caller's transaction and is undone with it.
        """
        result = await session.execute(
            update(BulkActionProgress)
            .where(
                BulkActionProgress.execution_id == execution_id,
                BulkActionProgress.batch_number == batch_number,
                BulkActionProgress.status == BatchStatus.PENDING.value,
            )
            .values(status=BatchStatus.PROCESSING.value, started_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def start_batch(self, progress: BulkActionProgress) -> None:
        progress.status = BatchStatus.PROCESSING.value
        progress.started_at = utcnow()

    def complete_batch(
        self,
        progress: BulkActionProgress,
        affected_ids: Sequence[Any],
        failed_ids: Sequence[Any],
        errors: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        progress.status = BatchStatus.COMPLETED.value
        progress.affected_ids = json_safe(list(progress.affected_ids or []) + list(affected_ids))
        progress.failed_ids = json_safe(list(failed_ids))
        progress.processed_count = len(progress.affected_ids)
        progress.failed_count = len(progress.failed_ids)
        progress.error_details = {"records": errors} if errors else None
        progress.completed_at = utcnow()

    def release_batch(self, progress: BulkActionProgress, error: BaseException, final: bool) -> None:
        """Record an escaped error; `final` marks the batch failed, otherwise pending for redelivery."""
        progress.retry_count = (progress.retry_count or 0) + 1
        progress.error_message = str(error) or type(error).__name__
        progress.error_details = {"type": type(error).__name__, "attempts": progress.retry_count}
        if final:
            progress.status = BatchStatus.FAILED.value
            progress.failed_ids = list(progress.record_ids or [])
            progress.failed_count = len(progress.failed_ids)
            progress.processed_count = 0
            progress.affected_ids = []
            progress.completed_at = utcnow()
        else:
            progress.status = BatchStatus.PENDING.value
            progress.started_at = None

    # ─── Queries ───────────────────────────────────────────

    async def has_unresolved(self, session: AsyncSession, execution_id: str) -> bool:
        result = await session.execute(select(unresolved_batches_exist(execution_id)))
        return bool(result.scalar())

    async def is_finished(self, session: AsyncSession, execution: BulkActionExecution) -> bool:
        """True once every batch resolved (or the execution already reached a terminal status)."""
        if execution.is_terminal:
            return True
        return not await self.has_unresolved(session, execution.id)

    async def batch_counts(self, session: AsyncSession, execution_id: str) -> Dict[str, int]:
        result = await session.execute(
            select(BulkActionProgress.status, func.count())
            .where(BulkActionProgress.execution_id == execution_id)
            .group_by(BulkActionProgress.status)
        )
        counts = {status.value: 0 for status in BatchStatus}
        counts.update({status: count for status, count in result.all()})
        return counts

    async def affected_ids(
        self, session: AsyncSession, execution_id: str, limit: Optional[int] = None
    ) -> List[Any]:
        """Affected ids across batches, in batch order."""
        result = await session.execute(
            select(BulkActionProgress.affected_ids)
            .where(BulkActionProgress.execution_id == execution_id)
            .order_by(BulkActionProgress.batch_number)
        )
        ids: List[Any] = []
        for batch_ids in result.scalars().all():
            ids.extend(batch_ids or [])
            if limit is not None and len(ids) >= limit:
                return ids[:limit]
        return ids

    async def get_details(self, session: AsyncSession, execution: BulkActionExecution) -> ProgressDetails:
        total = execution.total_records or 0
        processed = execution.processed_records or 0
        failed = execution.failed_records or 0

        rate = None
        eta = None
        elapsed = None
        if execution.started_at is not None:
            end = execution.completed_at or utcnow()
            elapsed = max((end - execution.started_at).total_seconds(), 0.0)
            if elapsed > 0:
                rate = round(processed / elapsed, 3)
            if rate:
                eta = round(max(total - processed - failed, 0) / rate, 1)

        return ProgressDetails(
            execution_id=execution.id,
            status=execution.status,
            percentage=self.percentage(processed, total),
            total=total,
            processed=processed,
            failed=failed,
            batches=await self.batch_counts(session, execution.id),
            rate_per_second=rate,
            estimated_seconds_remaining=eta,
            started_at=execution.started_at,
            elapsed_seconds=elapsed,
        )

    # ─── Broadcast ─────────────────────────────────────────

    async def broadcast(self, execution: BulkActionExecution, force: bool = False) -> bool:
        """Push a snapshot to the broadcast channel, at most once per throttle interval.

        Returns:
            True if a snapshot was delivered to the channel
        """
        if not self.settings.BROADCAST_ENABLED or self.broadcaster is None:
            return False

        now = self._clock()
        last = self._last_broadcast.get(execution.id)
        interval = self.settings.BROADCAST_THROTTLE_MS / 1000
        if not force and last is not None and now - last < interval:
            return False

        self._last_broadcast[execution.id] = now
        payload = ExecutionSnapshot.model_validate(execution).model_dump(mode="json")
        delivery = await self.broadcaster.publish(execution.id, payload)
        if execution.is_terminal:
            self.clear(execution.id)
        return delivery.success

    def clear(self, execution_id: str) -> None:
        self._last_broadcast.pop(execution_id, None)
