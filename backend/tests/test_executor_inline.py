"""Tests for inline (single transaction) execution."""

from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from actions.base_action import BaseAction
from core.constants import ExecutionStatus, LifecycleEvent
from core.exceptions import (
    ActionChainError,
    ExecutionNotFound,
    InvalidConfiguration,
    InvalidExecutionState,
    RateLimitExceeded,
    Unauthorized,
    UnknownAction,
)
from core.rbac import Actor
from core.utils import utcnow
from db.models import BulkActionExecution, BulkActionProgress, BulkActionUndo
from sample_models import Contact, Tag


class StrictAction(BaseAction):
    name = "strict"

    def validate_parameters(self, parameters, model):
        if parameters.get("mode") != "strict":
            raise InvalidConfiguration("strict requires mode=strict")
        return dict(parameters)

    async def execute(self, record, parameters, context) -> bool:
        return True


async def load_contacts(session_factory, ids=None):
    async with session_factory() as session:
        query = select(Contact).order_by(Contact.name)
        if ids is not None:
            query = query.where(Contact.id.in_(ids))
        result = await session.execute(query)
        return list(result.scalars().all())


async def count_rows(session_factory, model, *where):
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(model).where(*where))
        return result.scalar()


@pytest.mark.integration
class TestInlineExecution:

    async def test_update_all_matching(self, executor, session_factory, contacts, events):
        execution = await (
            executor.builder(Contact)
            .action("update")
            .where("status", "inactive")
            .with_parameters({"data": {"status": "lapsed"}})
            .sync()
            .execute()
        )

        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.total_records == 2
        assert execution.processed_records == 2
        assert execution.failed_records == 0
        assert execution.started_at is not None
        assert execution.completed_at is not None

        rows = await load_contacts(session_factory)
        assert sorted(c.status for c in rows) == ["active", "active", "active", "lapsed", "lapsed"]
        assert [e[0] for e in events] == [LifecycleEvent.STARTED, LifecycleEvent.COMPLETED]

    async def test_progress_rows_per_batch(self, executor, session_factory, contacts):
        execution = await (
            executor.builder(Contact).action("update").with_parameters({"score": 1}).batch_size(2).sync().execute()
        )
        async with session_factory() as session:
            result = await session.execute(
                select(BulkActionProgress)
                .where(BulkActionProgress.execution_id == execution.id)
                .order_by(BulkActionProgress.batch_number)
            )
            batches = result.scalars().all()
        assert [b.batch_number for b in batches] == [1, 2, 3]
        assert [b.total_in_batch for b in batches] == [2, 2, 1]
        assert all(b.status == "completed" for b in batches)
        assert sum(len(b.affected_ids) for b in batches) == 5

    async def test_record_failure_does_not_abort(self, executor, registry, session_factory, contacts):
        def bump(record, params):
            if record.name == "Chen":
                raise ValueError("Chen is read-only")
            record.score += 1
            return record.name != "Dana"

        registry.register("bump", bump)
        execution = await executor.builder(Contact).action("bump").sync().execute()

        assert execution.status == ExecutionStatus.PARTIALLY_COMPLETED.value
        assert execution.processed_records == 3
        assert execution.failed_records == 2

        scores = {c.name: c.score for c in await load_contacts(session_factory)}
        # Failed records are rolled back to their savepoint
        assert scores == {"Ada": 11, "Brian": 21, "Chen": 30, "Dana": 40, "Eve": 51}

        async with session_factory() as session:
            result = await session.execute(
                select(BulkActionProgress).where(BulkActionProgress.execution_id == execution.id)
            )
            errors = [e for b in result.scalars().all() for e in (b.error_details or {}).get("records", [])]
        assert any("read-only" in e["error"] for e in errors)

    async def test_fatal_error_rolls_back_everything(self, executor, registry, session_factory, contacts, events):
        failures = []

        def explode(record, params):
            record.score = 0
            if record.name == "Eve":
                raise OperationalError("UPDATE", {}, Exception("disk I/O error"))
            return True

        registry.register("explode", explode)
        with pytest.raises(OperationalError):
            await (
                executor.builder(Contact)
                .action("explode")
                .on_failure(lambda exc, execution: failures.append((exc, execution.status)))
                .sync()
                .execute()
            )

        scores = sorted(c.score for c in await load_contacts(session_factory))
        assert scores == [10, 20, 30, 40, 50]
        assert await count_rows(session_factory, BulkActionProgress) == 0

        execution = (await executor.list_executions())[0]
        assert execution.status == ExecutionStatus.FAILED.value
        assert execution.processed_records == 0
        assert execution.error_details["type"] == "OperationalError"
        assert "disk I/O error" in execution.error_details["message"]
        assert failures and failures[0][1] == ExecutionStatus.FAILED.value
        assert events[-1][0] == LifecycleEvent.FAILED

    async def test_progress_callback(self, executor, contacts):
        seen = []
        await (
            executor.builder(Contact)
            .action("update")
            .with_parameters({"status": "seen"})
            .on_progress(lambda percentage, execution: seen.append(percentage))
            .sync()
            .execute()
        )
        assert seen == [20.0, 40.0, 60.0, 80.0, 100.0]

    async def test_complete_callback(self, executor, contacts):
        completed = []

        async def on_complete(execution):
            completed.append(execution.status)

        execution = await (
            executor.builder(Contact).action("archive").on_complete(on_complete).sync().execute()
        )
        assert completed == [ExecutionStatus.COMPLETED.value]
        assert execution.callbacks["has_complete_callback"] is True

    async def test_empty_selection_completes(self, executor, contacts):
        execution = await executor.builder(Contact).action("delete").where("status", "missing").sync().execute()
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.total_records == 0

    async def test_hard_delete(self, executor, session_factory, tags):
        execution = await executor.builder(Tag).action("delete").sync().execute()
        assert execution.processed_records == 3
        assert await count_rows(session_factory, Tag) == 0

    async def test_restore_on_hard_delete_model_fails_per_record(self, executor, tags):
        execution = await executor.builder(Tag).action("restore").sync().execute()
        assert execution.status == ExecutionStatus.PARTIALLY_COMPLETED.value
        assert execution.failed_records == 3

    async def test_export_writes_jsonl(self, executor, settings, contacts):
        execution = await (
            executor.builder(Contact)
            .action("export")
            .with_parameters({"fields": ["name", "score"]})
            .batch_size(2)
            .sync()
            .execute()
        )
        directory = settings.EXPORT_DIRECTORY
        export = Path(directory) / execution.id / "export.jsonl"
        lines = export.read_text().splitlines()
        assert len(lines) == 5
        assert not list((Path(directory) / execution.id).glob("part-*.jsonl"))
        assert '"name": "Ada"' in "\n".join(lines)


@pytest.mark.integration
class TestUndoCapture:

    async def test_snapshot_and_diff_recorded(self, executor, session_factory, contacts):
        execution = await (
            executor.builder(Contact)
            .action("update")
            .ids(contacts[:1])
            .with_parameters({"data": {"status": "vip"}})
            .with_undo(days=3)
            .sync()
            .execute()
        )
        assert execution.can_undo is True
        assert execution.undo_expiry_days == 3
        assert timedelta(days=2, hours=23) < execution.undo_expires_at - utcnow() <= timedelta(days=3)

        async with session_factory() as session:
            result = await session.execute(
                select(BulkActionUndo).where(BulkActionUndo.execution_id == execution.id)
            )
            undo = result.scalar_one()
        assert undo.model_type == "sample_models.Contact"
        assert undo.model_id == contacts[0]
        assert undo.original_data["status"] == "active"
        assert undo.changes["status"] == {"old": "active", "new": "vip"}

    async def test_no_capture_without_request(self, executor, session_factory, contacts):
        execution = await executor.builder(Contact).action("update").with_parameters({"score": 0}).sync().execute()
        assert execution.can_undo is False
        assert await count_rows(session_factory, BulkActionUndo) == 0

    async def test_no_capture_when_action_lacks_support(self, executor, session_factory, contacts):
        execution = await executor.builder(Contact).action("export").with_undo().sync().execute()
        assert execution.can_undo is False
        assert await count_rows(session_factory, BulkActionUndo) == 0

    async def test_failed_record_leaves_no_snapshot(self, executor, registry, session_factory, contacts):
        registry.register("picky", lambda r, p: r.name == "Ada", {"supports_undo": True})
        await executor.builder(Contact).action("picky").with_undo().sync().execute()
        assert await count_rows(session_factory, BulkActionUndo) == 1


@pytest.mark.integration
class TestValidationAndPolicy:

    async def test_unknown_action(self, executor, session_factory, contacts):
        with pytest.raises(UnknownAction):
            await executor.builder(Contact).action("explode").sync().execute()
        assert await count_rows(session_factory, BulkActionExecution) == 0

    async def test_unknown_chain_action(self, executor, contacts):
        with pytest.raises(UnknownAction):
            await executor.builder(Contact).action("archive").chain([{"action": "nope"}]).sync().execute()

    async def test_unmapped_model(self, executor):
        class NotAModel:
            pass

        with pytest.raises(InvalidConfiguration):
            await executor.builder(NotAModel).action("delete").execute()

    async def test_invalid_parameters(self, executor, session_factory, contacts):
        with pytest.raises(InvalidConfiguration):
            await executor.builder(Contact).action("update").sync().execute()
        assert await count_rows(session_factory, BulkActionExecution) == 0

    async def test_policy_denies_actor_without_permission(self, executor, session_factory, contacts):
        actor = Actor.with_permissions("u1", "test_contacts.bulk_archive")
        with pytest.raises(Unauthorized):
            await executor.builder(Contact).action("delete").as_actor(actor).sync().execute()
        assert await count_rows(session_factory, BulkActionExecution) == 0

    async def test_policy_allows_wildcard(self, executor, contacts):
        actor = Actor.with_permissions("u1", "test_contacts.*")
        execution = await executor.builder(Contact).action("archive").as_actor(actor).sync().execute()
        assert execution.actor_id == "u1"
        assert execution.status == ExecutionStatus.COMPLETED.value

    async def test_custom_authorizer_is_sole_gate(self, executor, contacts):
        actor = Actor.with_permissions("u1")

        async def allow(who, config):
            return who.id == "u1" and config.action_name == "archive"

        execution = await (
            executor.builder(Contact).action("archive").as_actor(actor).authorize(allow).sync().execute()
        )
        assert execution.status == ExecutionStatus.COMPLETED.value

        with pytest.raises(Unauthorized):
            await executor.builder(Contact).action("archive").authorize(lambda who, config: False).execute()

    async def test_authorization_disabled(self, executor, contacts):
        executor.settings.AUTHORIZATION_ENABLED = False
        execution = await (
            executor.builder(Contact).action("archive").as_actor(Actor("nobody")).sync().execute()
        )
        assert execution.status == ExecutionStatus.COMPLETED.value

    async def test_volume_cap(self, executor, session_factory, contacts):
        executor.settings.MAX_RECORDS_PER_ACTION = 4
        actor = Actor.with_permissions("u1", "*")
        with pytest.raises(RateLimitExceeded):
            await executor.builder(Contact).action("archive").as_actor(actor).sync().execute()
        assert await count_rows(session_factory, BulkActionExecution) == 0

    async def test_concurrency_limit(self, executor, contacts):
        executor.settings.MAX_CONCURRENT_ACTIONS = 1
        actor = Actor.with_permissions("u1", "*")
        await executor.builder(Contact).action("archive").as_actor(actor).execute()
        with pytest.raises(RateLimitExceeded, match="concurrent"):
            await executor.builder(Contact).action("archive").as_actor(actor).execute()

    async def test_large_action_starts_cooldown(self, executor, contacts):
        executor.settings.LARGE_ACTION_THRESHOLD = 5
        actor = Actor.with_permissions("u1", "*")
        await executor.builder(Contact).action("archive").as_actor(actor).sync().execute()
        assert executor.rate_limiter.cooldown_remaining("u1") > 0
        with pytest.raises(RateLimitExceeded) as exc_info:
            await executor.builder(Contact).action("archive").as_actor(actor).sync().execute()
        assert exc_info.value.retry_after > 0


@pytest.mark.integration
class TestDryRunAndScheduling:

    async def test_dry_run_persists_preview_only(self, executor, session_factory, contacts):
        execution = await (
            executor.builder(Contact)
            .action("delete")
            .where("status", "active")
            .with_undo()
            .dry_run()
            .execute()
        )
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.is_dry_run is True
        assert execution.can_undo is False
        assert execution.total_records == 3
        assert execution.dry_run_results["total_count"] == 3
        assert len(execution.dry_run_results["preview"]) == 3
        assert await count_rows(session_factory, Contact, Contact.is_deleted.is_(True)) == 0
        assert await count_rows(session_factory, BulkActionProgress) == 0

    async def test_dry_run_preview_bounded(self, executor, contacts):
        executor.settings.DRY_RUN_PREVIEW_LIMIT = 2
        execution = await executor.builder(Contact).action("archive").dry_run().execute()
        assert execution.total_records == 5
        assert len(execution.dry_run_results["preview"]) == 2

    async def test_schedule_parks_execution(self, executor, dispatcher, session_factory, contacts):
        when = utcnow() + timedelta(hours=2)
        execution = await (
            executor.builder(Contact).action("archive").where("status", "active").schedule_for(when).execute()
        )
        assert execution.status == ExecutionStatus.SCHEDULED.value
        assert execution.scheduled_for == when
        assert execution.filters["conditions"][0]["column"] == "status"
        assert dispatcher.units == []
        assert await count_rows(session_factory, Contact, Contact.archived_at.is_not(None)) == 0

    async def test_schedule_rejects_callable_predicate(self, executor, contacts):
        with pytest.raises(InvalidConfiguration, match="scheduled"):
            await (
                executor.builder(Contact)
                .action("archive")
                .where(lambda model: model.score > 1)
                .schedule_for(utcnow() + timedelta(hours=1))
                .execute()
            )


@pytest.mark.integration
class TestManagement:

    async def test_cancel_scheduled(self, executor, events, contacts):
        execution = await (
            executor.builder(Contact).action("archive").schedule_for(utcnow() + timedelta(hours=1)).execute()
        )
        cancelled = await executor.cancel(execution.id, actor_id="u1")
        assert cancelled.status == ExecutionStatus.CANCELLED.value
        assert events[-1][0] == LifecycleEvent.CANCELLED
        assert events[-1][2] == {"cancelled_by": "u1"}

    async def test_cancel_finished_rejected(self, executor, contacts):
        execution = await executor.builder(Contact).action("archive").sync().execute()
        with pytest.raises(InvalidExecutionState):
            await executor.cancel(execution.id)

    async def test_cancel_unknown(self, executor):
        with pytest.raises(ExecutionNotFound):
            await executor.cancel("missing")

    async def test_get_and_list(self, executor, contacts):
        first = await executor.builder(Contact).action("archive").sync().execute()
        second = await executor.builder(Contact).action("archive").dry_run().as_actor(Actor("u2", frozenset({"*"}))).execute()
        assert (await executor.get_execution(first.id)).id == first.id
        assert {e.id for e in await executor.list_executions()} == {first.id, second.id}
        assert [e.id for e in await executor.list_executions(actor_id="u2")] == [second.id]
        assert len(await executor.list_executions(status="completed", limit=1)) == 1
        with pytest.raises(ExecutionNotFound):
            await executor.get_execution("missing")


@pytest.mark.integration
class TestChaining:

    async def test_chain_runs_over_affected_records(self, executor, session_factory, contacts):
        parent = await (
            executor.builder(Contact)
            .action("update")
            .where("status", "inactive")
            .with_parameters({"data": {"status": "lapsed"}})
            .chain([{"action": "archive", "parameters": {"reason": "lapsed"}}])
            .sync()
            .execute()
        )
        assert parent.status == ExecutionStatus.COMPLETED.value

        children = [e for e in await executor.list_executions() if e.parent_execution_id == parent.id]
        assert len(children) == 1
        assert children[0].action_name == "archive"
        assert children[0].processed_records == 2

        archived = {c.name: c.archive_reason for c in await load_contacts(session_factory) if c.archived_at}
        assert archived == {"Chen": "lapsed", "Dana": "lapsed"}

    async def test_failing_complete_callback_still_chains(self, executor, contacts):
        def on_complete(execution):
            raise RuntimeError("listener bug")

        parent = await (
            executor.builder(Contact)
            .action("update")
            .with_parameters({"status": "lapsed"})
            .on_complete(on_complete)
            .chain([{"action": "archive"}])
            .sync()
            .execute()
        )

        assert parent.status == ExecutionStatus.COMPLETED.value
        children = [e for e in await executor.list_executions() if e.parent_execution_id == parent.id]
        assert len(children) == 1
        assert children[0].processed_records == 5

    async def test_failing_failure_callback_keeps_original_error(self, executor, registry, contacts):
        def explode(record, params):
            raise OperationalError("UPDATE", {}, Exception("disk I/O error"))

        def on_failure(error, execution):
            raise RuntimeError("listener bug")

        registry.register("explode", explode)
        with pytest.raises(OperationalError):
            await executor.builder(Contact).action("explode").on_failure(on_failure).sync().execute()

        execution = (await executor.list_executions())[0]
        assert execution.status == ExecutionStatus.FAILED.value

    async def test_chain_skipped_when_partially_completed(self, executor, registry, contacts):
        registry.register("half", lambda r, p: r.score > 25)
        parent = await executor.builder(Contact).action("half").chain([{"action": "archive"}]).sync().execute()
        assert parent.status == ExecutionStatus.PARTIALLY_COMPLETED.value
        assert [e.parent_execution_id for e in await executor.list_executions()] == [None]

    async def test_failing_step_raises_chain_error(self, executor, registry, session_factory, contacts):
        # Step parameters are only validated once the step runs
        registry.register("strict", StrictAction)
        with pytest.raises(ActionChainError) as exc_info:
            await (
                executor.builder(Contact)
                .action("archive")
                .chain([{"action": "strict", "parameters": {"mode": "loose"}}])
                .sync()
                .execute()
            )
        assert exc_info.value.failed_action == "strict"
        assert exc_info.value.failed_step == 1

        parent = (await executor.list_executions())[0]
        assert parent.status == ExecutionStatus.COMPLETED.value
        assert await count_rows(session_factory, Contact, Contact.archived_at.is_not(None)) == 5
