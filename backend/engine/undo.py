"""Undo snapshots and reversal.

A snapshot is written immediately before a handler mutates a record.
Undoing an execution replays the snapshots. Each reversal runs in a
savepoint together with a compare-and-set on `undone`, so a record is
reversed at most once even when undo runs twice concurrently, and a
failed reversal leaves its snapshot available for another attempt.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from core.constants import ExecutionStatus, LifecycleEvent, UndoActionType
from core.exceptions import ExecutionNotFound, UndoExpired
from core.utils import utcnow
from db.models import BulkActionExecution, BulkActionUndo
from services.record_service import RecordService, model_type_name, resolve_model

logger = structlog.get_logger(__name__)


def diff_snapshots(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """{field: {"old": ..., "new": ...}} for fields whose value changed."""
    return {
        key: {"old": before.get(key), "new": after.get(key)}
        for key in before
        if before.get(key) != after.get(key)
    }


class UndoManager:
    """Captures pre-mutation state and reverses executions from it."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        notifications: Optional[Any] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.notifications = notifications

    # ─── Capture ───────────────────────────────────────────

    async def capture_snapshot(
        self,
        session: AsyncSession,
        execution_id: str,
        record: Any,
        action_type: UndoActionType,
        fields: Sequence[str],
        records: Optional[RecordService] = None,
    ) -> BulkActionUndo:
        """Persist the current state of `record` (all columns for ['*'])."""
        records = records or RecordService(session, type(record))
        snapshot = BulkActionUndo(
            execution_id=execution_id,
            model_type=model_type_name(type(record)),
            model_id=str(records.identity(record)),
            original_data=await records.snapshot(record, fields),
            undo_action_type=UndoActionType(action_type).value,
            undone=False,
        )
        session.add(snapshot)
        await session.flush()
        return snapshot

    async def record_changes(
        self, snapshot: BulkActionUndo, record: Any, records: RecordService
    ) -> None:
        """Store the before/after diff once the handler has run."""
        if snapshot.undo_action_type == UndoActionType.RECREATE.value:
            return
        after = await records.snapshot(record, list(snapshot.original_data))
        snapshot.changes = diff_snapshots(snapshot.original_data, after) or None

    # ─── Policy ────────────────────────────────────────────

    def can_undo(self, execution: BulkActionExecution) -> bool:
        if not self.settings.UNDO_ENABLED or not execution.can_undo or execution.is_dry_run:
            return False
        if execution.undo_expires_at is None or execution.undo_expires_at <= utcnow():
            return False
        allowed = {ExecutionStatus.COMPLETED.value}
        if self.settings.UNDO_ALLOW_PARTIAL:
            allowed.add(ExecutionStatus.PARTIALLY_COMPLETED.value)
        return execution.status in allowed

    def get_time_remaining(self, execution: BulkActionExecution) -> Optional[timedelta]:
        if not execution.can_undo or execution.undo_expires_at is None:
            return None
        remaining = execution.undo_expires_at - utcnow()
        if remaining.total_seconds() <= 0:
            return None
        return remaining

    async def get_undoable_count(self, execution_id: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(BulkActionUndo)
                .where(BulkActionUndo.execution_id == execution_id, BulkActionUndo.undone.is_(False))
            )
            return result.scalar() or 0

    # ─── Reverse ───────────────────────────────────────────

    async def undo(self, execution_id: str, actor_id: Optional[str] = None) -> int:
        """Reverse every not-yet-undone record of an execution.

        Returns:
            Number of records reversed by this call

        Raises:
            ExecutionNotFound: No such execution
            UndoExpired: The execution is not (or no longer) undoable
        """
        log = logger.bind(execution_id=execution_id, actor_id=actor_id)
        restored = 0
        failed = 0

        async with self.session_factory() as session:
            async with session.begin():
                execution = await session.get(BulkActionExecution, execution_id)
                if execution is None:
                    raise ExecutionNotFound(execution_id)
                if not self.can_undo(execution):
                    raise UndoExpired()

                result = await session.execute(
                    select(BulkActionUndo)
                    .where(
                        BulkActionUndo.execution_id == execution_id,
                        BulkActionUndo.undone.is_(False),
                    )
                    .order_by(BulkActionUndo.created_at.desc(), BulkActionUndo.id)
                )
                snapshots = result.scalars().all()

                for snapshot in snapshots:
                    if await self._reverse_one(session, snapshot, actor_id):
                        restored += 1
                    else:
                        failed += 1

        log.info("Execution undone", restored=restored, failed=failed)
        if restored and self.notifications is not None:
            await self.notifications.notify(
                LifecycleEvent.UNDONE, execution, extra={"restored": restored, "undone_by": actor_id}
            )
        return restored

    async def undo_record(self, undo_id: str, actor_id: Optional[str] = None) -> bool:
        """Reverse a single snapshot. False if it was already undone or the reversal failed."""
        async with self.session_factory() as session:
            async with session.begin():
                snapshot = await session.get(BulkActionUndo, undo_id)
                if snapshot is None or snapshot.undone:
                    return False
                execution = await session.get(BulkActionExecution, snapshot.execution_id)
                if execution is None or not self.can_undo(execution):
                    raise UndoExpired()
                return await self._reverse_one(session, snapshot, actor_id)

    async def _reverse_one(
        self, session: AsyncSession, snapshot: BulkActionUndo, actor_id: Optional[str]
    ) -> bool:
        snapshot_id = snapshot.id
        model_type, model_id = snapshot.model_type, snapshot.model_id
        try:
            async with session.begin_nested():
                claimed = await session.execute(
                    update(BulkActionUndo)
                    .where(BulkActionUndo.id == snapshot_id, BulkActionUndo.undone.is_(False))
                    .values(undone=True, undone_at=utcnow(), undone_by=actor_id)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    return False
                await self._apply(session, snapshot)
        except Exception as e:
            logger.warning(
                "Undo of record failed",
                undo_id=snapshot_id,
                model_type=model_type,
                model_id=model_id,
                error=str(e),
            )
            return False
        return True

    async def _apply(self, session: AsyncSession, snapshot: BulkActionUndo) -> None:
        model = resolve_model(snapshot.model_type)
        records = RecordService(session, model)
        action = UndoActionType(snapshot.undo_action_type)
        data = dict(snapshot.original_data or {})
        record = await records.get_by_id(snapshot.model_id, include_deleted=True)

        if action == UndoActionType.RECREATE:
            if record is None:
                await records.recreate(snapshot.model_id, data)
            else:
                await records.update(record, data)
            return

        if record is None:
            raise LookupError(f"{model.__name__} {snapshot.model_id} no longer exists")

        if action == UndoActionType.RESTORE:
            await records.restore(record)
        elif action == UndoActionType.DELETE:
            if records.soft_deletable:
                await records.soft_delete(record)
            else:
                await records.hard_delete(record)
        else:
            if not data and snapshot.changes:
                data = {key: change.get("old") for key, change in snapshot.changes.items()}
            await records.update(record, data)

    # ─── Retention ─────────────────────────────────────────

    async def cleanup(self, now=None) -> int:
        """Drop snapshots of executions whose undo window has lapsed.

        Returns:
            Number of snapshots removed
        """
        now = now or utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(BulkActionExecution.id).where(
                        BulkActionExecution.can_undo.is_(True),
                        BulkActionExecution.undo_expires_at < now,
                    )
                )
                expired_ids: List[str] = list(result.scalars().all())
                if not expired_ids:
                    return 0

                removed = await session.execute(
                    delete(BulkActionUndo)
                    .where(BulkActionUndo.execution_id.in_(expired_ids))
                    .execution_options(synchronize_session=False)
                )
                await session.execute(
                    update(BulkActionExecution)
                    .where(BulkActionExecution.id.in_(expired_ids))
                    .values(can_undo=False)
                    .execution_options(synchronize_session=False)
                )

        logger.info("Expired undo data removed", executions=len(expired_ids), snapshots=removed.rowcount)
        return removed.rowcount or 0
