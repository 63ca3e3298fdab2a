"""
Action Executor: runs bulk actions end to end.

Validates a configuration, authorizes and rate-limits it, then either
previews it (dry run), parks it (scheduled), runs every batch inside one
transaction (inline) or hands batch units to the task queue (queued).

Per record:
    savepoint -> undo snapshot -> handler -> flush -> before/after diff

A handler failure rolls back that record's savepoint and is counted.
Storage errors escape and fail the whole transaction.

Completion is a single conditional UPDATE; whichever caller's update
matches fires the completion notification, so concurrent batch finishers
never complete an execution twice.
"""

import traceback
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog
from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from actions.base_action import BaseAction
from actions.registry import ActionRegistry, get_action_registry
from app.config import Settings, get_settings
from core.constants import ExecutionStatus, LifecycleEvent
from core.exceptions import (
    ActionChainError,
    ExecutionNotFound,
    InvalidConfiguration,
    InvalidExecutionState,
    RecordActionFailed,
    Unauthorized,
    UnknownAction,
)
from core.rate_limit import BulkRateLimiter
from core.rbac import Actor, PermissionPolicy
from core.utils import chunked, json_safe, maybe_await, utcnow
from db.models import BulkActionExecution
from engine.builder import BulkActionBuilder, BulkActionConfig
from engine.context import ActionContext
from engine.dispatch import BatchDispatcher, CeleryBatchDispatcher
from engine.filters import deserialize_conditions
from engine.progress import ProgressTracker, unresolved_batches_exist
from engine.schemas import BatchUnit
from engine.undo import UndoManager
from notifications.channels import BroadcastChannel
from notifications.manager import NotificationManager, build_notification_manager
from services.record_service import RecordService, model_type_name, resolve_model

logger = structlog.get_logger(__name__)

# Errors that must escape the per-record guard
FATAL_ERRORS = (OperationalError, InterfaceError, SoftTimeLimitExceeded)

RecordCallback = Callable[[Any, bool], Awaitable[None]]

FAILABLE_STATUSES = [s.value for s in ExecutionStatus.active()] + [ExecutionStatus.SCHEDULED.value]


@dataclass
class BatchOutcome:
    """What happened to the records of one batch."""
    affected: List[Any] = field(default_factory=list)
    failed: List[Any] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    skipped: int = 0


class ActionExecutor:
    """Runs bulk action configurations against the record store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: Optional[ActionRegistry] = None,
        dispatcher: Optional[BatchDispatcher] = None,
        settings: Optional[Settings] = None,
        notifications: Optional[NotificationManager] = None,
        progress: Optional[ProgressTracker] = None,
        undo: Optional[UndoManager] = None,
        rate_limiter: Optional[BulkRateLimiter] = None,
        policy: Optional[PermissionPolicy] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.registry = registry or get_action_registry()
        self.dispatcher = dispatcher or CeleryBatchDispatcher(self.settings)
        self.notifications = notifications or NotificationManager()
        self.progress = progress or ProgressTracker(self.settings)
        self.undo = undo or UndoManager(session_factory, self.settings, self.notifications)
        self.rate_limiter = rate_limiter or BulkRateLimiter(self.settings)
        self.policy = policy or PermissionPolicy(self.settings)

    def builder(self, model: Optional[type] = None) -> BulkActionBuilder:
        return BulkActionBuilder(self, model)

    # ─── Read-only operations ──────────────────────────────

    async def count(self, config: BulkActionConfig) -> int:
        action = self._resolve_action(config)
        async with self.session_factory() as session:
            records = RecordService(session, config.model)
            return await records.count(config.build_query(records, action.include_deleted))

    async def preview(self, config: BulkActionConfig, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        action = self._resolve_action(config)
        limit = limit or self.settings.DRY_RUN_PREVIEW_LIMIT
        async with self.session_factory() as session:
            records = RecordService(session, config.model)
            return await records.preview(config.build_query(records, action.include_deleted), limit)

    async def dry_run_details(self, config: BulkActionConfig) -> Dict[str, Any]:
        """Scope of an action without creating an execution."""
        action = self._resolve_action(config)
        parameters = action.validate_parameters(dict(config.parameters), config.model)
        async with self.session_factory() as session:
            return await self._dry_run_results(session, config, action, parameters)

    async def _dry_run_results(
        self,
        session: AsyncSession,
        config: BulkActionConfig,
        action: BaseAction,
        parameters: Dict[str, Any],
    ) -> Dict[str, Any]:
        records = RecordService(session, config.model)
        query = config.build_query(records, action.include_deleted)
        return {
            "total_count": await records.count(query),
            "preview": await records.preview(query, self.settings.DRY_RUN_PREVIEW_LIMIT),
            "action": config.action_name,
            "model": model_type_name(config.model),
            "parameters": json_safe(parameters),
            "filters": config.serializable_filters(),
        }

    # ─── Execute ───────────────────────────────────────────

    async def execute(self, config: BulkActionConfig) -> BulkActionExecution:
        """Run (or dry-run, or schedule) one bulk action.

        Raises:
            InvalidConfiguration: Unusable target, action or parameters
            UnknownAction: Action (or a chained step) is not registered
            Unauthorized: Authorization denied the actor
            RateLimitExceeded: Actor is over one of the limits
        """
        action, parameters = self._validate(config)
        if not config.trusted:
            await self._authorize(config)
            await self._check_rate_limits(config)

        if config.dry_run:
            return await self._dry_run(config, action, parameters)

        if (
            config.execution_id is None
            and config.scheduled_for is not None
            and config.scheduled_for > utcnow()
        ):
            return await self._schedule(config, action, parameters)

        execution, record_ids = await self._materialize(config, action, parameters)
        if config.queued:
            return await self._dispatch(config, execution, record_ids, parameters)
        return await self._run_inline(config, action, execution, record_ids, parameters)

    def _resolve_action(self, config: BulkActionConfig) -> BaseAction:
        if config.model is None:
            raise InvalidConfiguration("No record type selected.")
        if not config.action_name:
            raise InvalidConfiguration("No action selected.")
        # Raises for unmapped classes and composite keys
        RecordService(None, config.model)
        return self.registry.resolve(config.action_name)

    def _validate(self, config: BulkActionConfig):
        action = self._resolve_action(config)
        for step in config.chain:
            if not self.registry.has(step["action"]):
                raise UnknownAction(step["action"])
        if config.batch_size < 1:
            raise InvalidConfiguration("Batch size must be at least 1.")
        parameters = action.validate_parameters(dict(config.parameters), config.model)
        return action, parameters

    async def _authorize(self, config: BulkActionConfig) -> None:
        if not self.settings.AUTHORIZATION_ENABLED:
            return

        if config.authorizer is not None:
            allowed = await maybe_await(config.authorizer(config.actor, config))
            if not allowed:
                raise Unauthorized(f"You are not authorized to perform bulk {config.action_name}.")
            return

        if not self.settings.AUTHORIZATION_USE_POLICIES:
            return
        for name in [config.action_name] + [step["action"] for step in config.chain]:
            if not self.policy.can_perform(config.actor, config.model, name):
                raise Unauthorized(f"You are not authorized to perform bulk {name}.")

    async def _check_rate_limits(self, config: BulkActionConfig) -> None:
        if not self.rate_limiter.enabled or config.actor_id is None:
            return
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(BulkActionExecution)
                .where(
                    BulkActionExecution.actor_id == config.actor_id,
                    BulkActionExecution.status.in_([s.value for s in ExecutionStatus.active()]),
                )
            )
            active = result.scalar() or 0
        self.rate_limiter.check(config.actor_id, active)

    def _new_execution(
        self,
        config: BulkActionConfig,
        action: BaseAction,
        parameters: Dict[str, Any],
        status: ExecutionStatus,
        total: int = 0,
    ) -> BulkActionExecution:
        capture_undo = bool(config.undo_enabled and action.supports_undo and self.settings.UNDO_ENABLED)
        queue_name = config.queue_name
        if config.queued and not queue_name:
            queue_name = self.settings.BULK_QUEUE_NAME
        return BulkActionExecution(
            action_name=config.action_name,
            model_type=model_type_name(config.model),
            filters=config.serializable_filters(),
            parameters=json_safe(parameters),
            total_records=total,
            processed_records=0,
            failed_records=0,
            status=status.value,
            actor_id=config.actor_id,
            can_undo=capture_undo,
            undo_expiry_days=self.settings.clamp_undo_days(config.undo_days) if capture_undo else None,
            is_dry_run=False,
            batch_size=config.batch_size,
            queued=config.queued,
            queue_name=queue_name,
            callbacks=config.callback_flags(),
            chain_config=list(config.chain) or None,
            parent_execution_id=config.parent_execution_id,
            scheduled_for=config.scheduled_for,
            scheduled_timezone=config.scheduled_timezone if config.scheduled_for else None,
        )

    async def _dry_run(self, config, action, parameters) -> BulkActionExecution:
        async with self.session_factory() as session:
            async with session.begin():
                results = await self._dry_run_results(session, config, action, parameters)
                execution = self._new_execution(
                    config, action, parameters, ExecutionStatus.COMPLETED, total=results["total_count"]
                )
                now = utcnow()
                execution.is_dry_run = True
                execution.can_undo = False
                execution.undo_expiry_days = None
                execution.dry_run_results = results
                execution.started_at = now
                execution.completed_at = now
                session.add(execution)

        logger.info(
            "Dry run recorded",
            execution_id=execution.id,
            action=config.action_name,
            total=execution.total_records,
        )
        return execution

    async def _schedule(self, config, action, parameters) -> BulkActionExecution:
        if config.has_custom_predicate:
            raise InvalidConfiguration(
                "Executions selected by callable predicates cannot be scheduled; use conditions or ids."
            )
        async with self.session_factory() as session:
            async with session.begin():
                execution = self._new_execution(config, action, parameters, ExecutionStatus.SCHEDULED)
                session.add(execution)

        logger.info(
            "Execution scheduled",
            execution_id=execution.id,
            action=config.action_name,
            scheduled_for=execution.scheduled_for.isoformat(),
        )
        return execution

    async def _materialize(self, config, action, parameters):
        """Freeze the target ids and create (or claim) the pending execution row."""
        async with self.session_factory() as session:
            async with session.begin():
                records = RecordService(session, config.model)
                record_ids = await records.pluck_ids(config.build_query(records, action.include_deleted))
                if not config.trusted:
                    self.rate_limiter.check_volume(len(record_ids))

                if config.execution_id is not None:
                    execution = await session.get(BulkActionExecution, config.execution_id)
                    if execution is None:
                        raise ExecutionNotFound(config.execution_id)
                    execution.total_records = len(record_ids)
                else:
                    execution = self._new_execution(
                        config, action, parameters, ExecutionStatus.PENDING, total=len(record_ids)
                    )
                    session.add(execution)

                if execution.can_undo:
                    days = self.settings.clamp_undo_days(execution.undo_expiry_days or config.undo_days)
                    execution.undo_expiry_days = days
                    execution.undo_expires_at = utcnow() + timedelta(days=days)

        if not config.trusted:
            self.rate_limiter.register_volume(config.actor_id, len(record_ids))
        logger.info(
            "Execution created",
            execution_id=execution.id,
            action=config.action_name,
            total=len(record_ids),
            queued=config.queued,
        )
        return execution, record_ids

    async def _mark_processing(self, session: AsyncSession, execution_id: str) -> bool:
        result = await session.execute(
            update(BulkActionExecution)
            .where(
                BulkActionExecution.id == execution_id,
                BulkActionExecution.status == ExecutionStatus.PENDING.value,
            )
            .values(status=ExecutionStatus.PROCESSING.value, started_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ─── Queued path ───────────────────────────────────────

    async def _dispatch(self, config, execution, record_ids, parameters) -> BulkActionExecution:
        execution_id = execution.id
        batches = list(chunked(record_ids, config.batch_size))
        async with self.session_factory() as session:
            async with session.begin():
                if not await self._mark_processing(session, execution_id):
                    logger.info("Execution no longer pending, not dispatched", execution_id=execution_id)
                    return await self.get_execution(execution_id)
                await self.progress.initialize(session, execution, batches, config.batch_size)

        execution = await self.get_execution(execution_id)
        await self._notify(LifecycleEvent.STARTED, execution)

        units = [
            BatchUnit(
                execution_id=execution_id,
                batch_number=number,
                record_ids=json_safe(batch),
                parameters=json_safe(parameters),
                capture_undo=execution.can_undo,
                queue_name=execution.queue_name,
            )
            for number, batch in enumerate(batches, start=1)
        ]
        try:
            await self.dispatcher.dispatch(units)
        except Exception as e:
            await self._fail_execution(execution_id, e)
            raise

        logger.info("Batches dispatched", execution_id=execution_id, batches=len(units))
        if not units:
            await self._finish(execution_id)
        return await self.get_execution(execution_id)

    async def process_unit(self, unit: BatchUnit, attempt: int = 1, max_attempts: int = 1) -> Dict[str, Any]:
        return await self.process_batch(
            unit.execution_id,
            unit.batch_number,
            unit.record_ids,
            unit.parameters,
            unit.capture_undo,
            attempt=attempt,
            max_attempts=max_attempts,
        )

    async def process_batch(
        self,
        execution_id: str,
        batch_number: int,
        record_ids: Sequence[Any],
        parameters: Dict[str, Any],
        capture_undo: bool = False,
        attempt: int = 1,
        max_attempts: int = 1,
    ) -> Dict[str, Any]:
        """Process one batch unit in its own transaction.

        An escaping error rolls the batch back and releases it: back to
        pending while attempts remain, failed (records counted as failed)
        on the last one. The error is re-raised so the queue can retry.

        Returns:
            Summary dict with status and counts
        """
        log = logger.bind(execution_id=execution_id, batch_number=batch_number, attempt=attempt)
        try:
            result = await self._run_batch(
                execution_id, batch_number, record_ids, parameters, capture_undo, log
            )
        except (ExecutionNotFound, InvalidExecutionState):
            raise
        except Exception as e:
            final = attempt >= max_attempts
            log.warning("Batch failed", error=str(e), error_type=type(e).__name__, final=final)
            await self._release_batch(execution_id, batch_number, e, final)
            if final:
                await self._finish(execution_id)
            raise

        if result["status"] == "completed":
            await self._finish(execution_id)
        return result

    async def _run_batch(self, execution_id, batch_number, record_ids, parameters, capture_undo, log):
        async with self.session_factory() as session:
            async with session.begin():
                execution = await session.get(BulkActionExecution, execution_id)
                if execution is None:
                    raise ExecutionNotFound(execution_id)
                if execution.status != ExecutionStatus.PROCESSING.value:
                    log.info("Batch skipped", execution_status=execution.status)
                    return {"status": "skipped", "reason": execution.status}

                claimed = await self.progress.claim_batch(session, execution_id, batch_number)
                progress = await self.progress.get_batch(session, execution_id, batch_number, lock=True)
                if progress is None:
                    raise InvalidExecutionState(f"Execution {execution_id} has no batch {batch_number}.")
                if not claimed:
                    log.info("Batch not pending", batch_status=progress.status)
                    return {"status": "skipped", "reason": progress.status}

                action = self.registry.resolve(execution.action_name)
                context = self._context(session, execution, resolve_model(execution.model_type), batch_number)
                already = {context.records.coerce_id(i) for i in progress.affected_ids or []}

                outcome = await self._process_records(
                    context, action, record_ids, parameters, capture_undo, skip=already
                )
                await action.after_batch(context)
                self.progress.complete_batch(progress, outcome.affected, outcome.failed, outcome.errors)
                await self._increment(session, execution_id, len(outcome.affected), len(outcome.failed))

        log.info(
            "Batch completed",
            processed=len(outcome.affected),
            failed=len(outcome.failed),
            skipped=outcome.skipped,
        )
        return {
            "status": "completed",
            "processed": len(outcome.affected),
            "failed": len(outcome.failed),
            "skipped": outcome.skipped,
        }

    async def _release_batch(self, execution_id, batch_number, error, final: bool) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                progress = await self.progress.get_batch(session, execution_id, batch_number, lock=True)
                if progress is None or progress.is_resolved:
                    return
                self.progress.release_batch(progress, error, final)
                if final:
                    await self._increment(session, execution_id, 0, len(progress.record_ids or []))

    async def _finish(self, execution_id: str) -> None:
        """Consolidate after a batch resolved; the winner handles completion."""
        async with self.session_factory() as session:
            async with session.begin():
                won = await self._consolidate(session, execution_id)

        if won:
            try:
                await self._on_completed(execution_id)
            except ActionChainError:
                logger.exception("Chained action failed", execution_id=execution_id)
        elif self.settings.BROADCAST_ENABLED:
            await self.progress.broadcast(await self.get_execution(execution_id))

    # ─── Inline path ───────────────────────────────────────

    async def _run_inline(self, config, action, execution, record_ids, parameters) -> BulkActionExecution:
        execution_id = execution.id
        async with self.session_factory() as session:
            async with session.begin():
                started = await self._mark_processing(session, execution_id)
        if not started:
            logger.info("Execution no longer pending, not run", execution_id=execution_id)
            return await self.get_execution(execution_id)

        await self._notify(LifecycleEvent.STARTED, await self.get_execution(execution_id))
        batches = list(chunked(record_ids, config.batch_size))
        log = logger.bind(execution_id=execution_id, action=config.action_name)

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    execution = await session.get(BulkActionExecution, execution_id)
                    rows = await self.progress.initialize(session, execution, batches, config.batch_size)
                    observe = config.on_progress is not None or self.settings.BROADCAST_ENABLED

                    async def on_record(record_id, ok):
                        await self._increment(session, execution_id, int(ok), int(not ok))
                        if not observe:
                            return
                        await session.refresh(execution, attribute_names=["processed_records", "failed_records"])
                        await self.progress.broadcast(execution)
                        if config.on_progress is not None:
                            percentage = self.progress.percentage(
                                execution.processed_records, execution.total_records
                            )
                            await maybe_await(config.on_progress(percentage, execution))

                    for row, batch in zip(rows, batches):
                        self.progress.start_batch(row)
                        await session.flush()
                        context = self._context(session, execution, config.model, row.batch_number)
                        outcome = await self._process_records(
                            context, action, batch, parameters, execution.can_undo, on_record=on_record
                        )
                        await action.after_batch(context)
                        self.progress.complete_batch(row, outcome.affected, outcome.failed, outcome.errors)
                        await session.flush()
                        log.debug(
                            "Batch completed",
                            batch_number=row.batch_number,
                            processed=len(outcome.affected),
                            failed=len(outcome.failed),
                        )

                    won = await self._consolidate(session, execution_id)
        except Exception as e:
            log.error("Inline execution failed", error=str(e), error_type=type(e).__name__)
            await self._fail_execution(execution_id, e, config)
            raise

        if won:
            await self._on_completed(execution_id, action=action, config=config)
        return await self.get_execution(execution_id)

    # ─── Per-record processing ─────────────────────────────

    async def _process_records(
        self,
        context: ActionContext,
        action: BaseAction,
        record_ids: Sequence[Any],
        parameters: Dict[str, Any],
        capture_undo: bool,
        on_record: Optional[RecordCallback] = None,
        skip: Optional[set] = None,
    ) -> BatchOutcome:
        records = context.records
        loaded = {records.identity(r): r for r in await records.fetch(record_ids, include_deleted=True)}
        outcome = BatchOutcome()

        for raw_id in record_ids:
            record_id = records.coerce_id(raw_id)
            if skip and record_id in skip:
                outcome.skipped += 1
                continue

            try:
                record = loaded.get(record_id)
                if record is None:
                    raise RecordActionFailed(record_id, "Record not found")
                await self._process_record(context, action, record, record_id, parameters, capture_undo)
            except FATAL_ERRORS:
                raise
            except Exception as e:
                outcome.failed.append(record_id)
                outcome.errors.append({"id": json_safe(record_id), "error": str(e) or type(e).__name__})
                logger.warning(
                    "Record action failed",
                    execution_id=context.execution_id,
                    record_id=record_id,
                    error=str(e),
                )
                ok = False
            else:
                outcome.affected.append(record_id)
                ok = True

            if on_record is not None:
                await on_record(record_id, ok)
        return outcome

    async def _process_record(self, context, action, record, record_id, parameters, capture_undo) -> None:
        session = context.session
        async with session.begin_nested():
            snapshot = None
            if capture_undo:
                snapshot = await self.undo.capture_snapshot(
                    session,
                    context.execution_id,
                    record,
                    action.resolve_undo_type(record, parameters),
                    action.undo_fields(parameters),
                    context.records,
                )
            ok = await action.execute(record, parameters, context)
            if ok is False:
                raise RecordActionFailed(record_id)
            await session.flush()
            if snapshot is not None:
                await self.undo.record_changes(snapshot, record, context.records)
                await session.flush()

    async def _increment(self, session: AsyncSession, execution_id: str, processed: int, failed: int) -> None:
        if not processed and not failed:
            return
        await session.execute(
            update(BulkActionExecution)
            .where(BulkActionExecution.id == execution_id)
            .values(
                processed_records=BulkActionExecution.processed_records + processed,
                failed_records=BulkActionExecution.failed_records + failed,
            )
            .execution_options(synchronize_session=False)
        )

    # ─── Completion ────────────────────────────────────────

    async def _consolidate(self, session: AsyncSession, execution_id: str) -> bool:
        """Move a processing execution with no unresolved batches to its terminal status.

        Returns:
            True for the one caller whose update matched
        """
        result = await session.execute(
            update(BulkActionExecution)
            .where(
                BulkActionExecution.id == execution_id,
                BulkActionExecution.status == ExecutionStatus.PROCESSING.value,
                ~unresolved_batches_exist(execution_id),
            )
            .values(
                status=case(
                    (BulkActionExecution.failed_records == 0, ExecutionStatus.COMPLETED.value),
                    else_=ExecutionStatus.PARTIALLY_COMPLETED.value,
                ),
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _on_completed(
        self,
        execution_id: str,
        action: Optional[BaseAction] = None,
        config: Optional[BulkActionConfig] = None,
    ) -> None:
        execution = await self.get_execution(execution_id)
        logger.info(
            "Execution finished",
            execution_id=execution_id,
            status=execution.status,
            processed=execution.processed_records,
            failed=execution.failed_records,
        )
        await self._notify(LifecycleEvent.COMPLETED, execution)
        await self.progress.broadcast(execution, force=True)

        action = action or self.registry.resolve(execution.action_name)
        model = config.model if config else resolve_model(execution.model_type)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await action.after_complete(execution, self._context(session, execution, model))
        except Exception:
            logger.exception("after_complete hook failed", execution_id=execution_id)

        if config is not None and config.on_complete is not None:
            try:
                await maybe_await(config.on_complete(execution))
            except Exception:
                logger.exception("on_complete callback failed", execution_id=execution_id)

        await self._start_chain(execution)

    async def _start_chain(self, parent: BulkActionExecution) -> Optional[BulkActionExecution]:
        if parent.status != ExecutionStatus.COMPLETED.value or not parent.chain_config:
            return None

        step, *rest = parent.chain_config
        async with self.session_factory() as session:
            affected = await self.progress.affected_ids(session, parent.id)

        child = BulkActionConfig(
            model=resolve_model(parent.model_type),
            action_name=step["action"],
            record_ids=affected,
            parameters=dict(step.get("parameters") or {}),
            batch_size=parent.batch_size,
            queued=parent.queued,
            queue_name=parent.queue_name,
            undo_enabled=parent.can_undo,
            undo_days=parent.undo_expiry_days or self.settings.UNDO_DEFAULT_EXPIRY_DAYS,
            actor=Actor(parent.actor_id) if parent.actor_id else None,
            chain=list(rest),
            parent_execution_id=parent.id,
            trusted=True,
        )
        logger.info(
            "Starting chained action",
            parent_execution_id=parent.id,
            action=step["action"],
            step=step.get("step"),
            records=len(affected),
        )
        try:
            return await self.execute(child)
        except Exception as e:
            raise ActionChainError(step["action"], step.get("step", 1), e) from e

    async def _fail_execution(
        self,
        execution_id: str,
        error: BaseException,
        config: Optional[BulkActionConfig] = None,
    ) -> BulkActionExecution:
        details = {
            "message": str(error) or type(error).__name__,
            "type": type(error).__name__,
            "trace": "".join(traceback.format_exception(type(error), error, error.__traceback__))[-4000:],
        }
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(BulkActionExecution)
                    .where(
                        BulkActionExecution.id == execution_id,
                        BulkActionExecution.status.in_(FAILABLE_STATUSES),
                    )
                    .values(status=ExecutionStatus.FAILED.value, completed_at=utcnow(), error_details=details)
                    .execution_options(synchronize_session=False)
                )
                marked = result.rowcount == 1

        execution = await self.get_execution(execution_id)
        if marked:
            await self._notify(LifecycleEvent.FAILED, execution, extra={"error": details["message"]})
            await self.progress.broadcast(execution, force=True)
        if config is not None and config.on_failure is not None:
            try:
                await maybe_await(config.on_failure(error, execution))
            except Exception:
                logger.exception("on_failure callback failed", execution_id=execution_id)
        return execution

    # ─── Management ────────────────────────────────────────

    async def cancel(self, execution_id: str, actor_id: Optional[str] = None) -> BulkActionExecution:
        """Cancel a pending or scheduled execution.

        Raises:
            ExecutionNotFound: No such execution
            InvalidExecutionState: Execution already started or finished
        """
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(BulkActionExecution)
                    .where(
                        BulkActionExecution.id == execution_id,
                        BulkActionExecution.status.in_(
                            [ExecutionStatus.PENDING.value, ExecutionStatus.SCHEDULED.value]
                        ),
                    )
                    .values(status=ExecutionStatus.CANCELLED.value, completed_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    execution = await session.get(BulkActionExecution, execution_id)
                    if execution is None:
                        raise ExecutionNotFound(execution_id)
                    raise InvalidExecutionState(
                        f"Execution {execution_id} cannot be cancelled from status '{execution.status}'."
                    )

        execution = await self.get_execution(execution_id)
        logger.info("Execution cancelled", execution_id=execution_id, actor_id=actor_id)
        await self._notify(LifecycleEvent.CANCELLED, execution, extra={"cancelled_by": actor_id})
        return execution

    async def get_execution(self, execution_id: str) -> BulkActionExecution:
        async with self.session_factory() as session:
            execution = await session.get(BulkActionExecution, execution_id)
            if execution is None:
                raise ExecutionNotFound(execution_id)
            return execution

    async def list_executions(
        self,
        actor_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[BulkActionExecution]:
        """Most recent executions first, optionally filtered by actor and status."""
        query = select(BulkActionExecution)
        if actor_id is not None:
            query = query.where(BulkActionExecution.actor_id == actor_id)
        if status is not None:
            query = query.where(BulkActionExecution.status == ExecutionStatus(status).value)
        query = query.order_by(BulkActionExecution.created_at.desc()).limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    def config_from_execution(self, execution: BulkActionExecution) -> BulkActionConfig:
        """Rebuild a runnable configuration from a stored execution row."""
        filters = execution.filters or {}
        return BulkActionConfig(
            model=resolve_model(execution.model_type),
            action_name=execution.action_name,
            conditions=deserialize_conditions(filters.get("conditions")),
            record_ids=filters.get("ids"),
            parameters=dict(execution.parameters or {}),
            batch_size=execution.batch_size,
            queued=execution.queued,
            queue_name=execution.queue_name,
            undo_enabled=execution.can_undo,
            undo_days=execution.undo_expiry_days or self.settings.UNDO_DEFAULT_EXPIRY_DAYS,
            actor=Actor(execution.actor_id) if execution.actor_id else None,
            chain=list(execution.chain_config or []),
            parent_execution_id=execution.parent_execution_id,
            execution_id=execution.id,
            trusted=True,
        )

    async def run_scheduled(self, execution_id: str) -> BulkActionExecution:
        """Run a claimed (pending) scheduled execution; failures mark it failed."""
        execution = await self.get_execution(execution_id)
        try:
            return await self.execute(self.config_from_execution(execution))
        except Exception as e:
            await self._fail_execution(execution_id, e)
            raise

    # ─── Helpers ───────────────────────────────────────────

    def _context(self, session, execution, model, batch_number=None) -> ActionContext:
        return ActionContext(
            session=session,
            execution_id=execution.id,
            model=model,
            settings=self.settings,
            actor_id=execution.actor_id,
            batch_number=batch_number,
        )

    async def _notify(self, event: LifecycleEvent, execution: BulkActionExecution, extra=None) -> None:
        await self.notifications.notify(event, execution, extra)


def create_executor(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
    dispatcher: Optional[BatchDispatcher] = None,
    registry: Optional[ActionRegistry] = None,
    broadcaster: Optional[Any] = None,
) -> ActionExecutor:
    """Executor wired with the settings-driven defaults."""
    settings = settings or get_settings()
    if broadcaster is not None and not isinstance(broadcaster, BroadcastChannel):
        broadcaster = BroadcastChannel(broadcaster)
    notifications = build_notification_manager(session_factory, settings, broadcaster)
    return ActionExecutor(
        session_factory,
        registry=registry,
        dispatcher=dispatcher or CeleryBatchDispatcher(settings),
        settings=settings,
        notifications=notifications,
        progress=ProgressTracker(settings, broadcaster=broadcaster),
        undo=UndoManager(session_factory, settings, notifications),
    )
