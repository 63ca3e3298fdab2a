"""Tests for the Celery task wrappers and retention cleanup."""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest
import structlog
from sqlalchemy import func, select

from core.constants import ExecutionStatus
from core.exceptions import ExecutionNotFound
from core.utils import utcnow
from db.models import BulkActionAudit, BulkActionExecution, BulkActionProgress
from sample_models import Contact
from worker import celery_app as celery_module
from worker.tasks import bulk, maintenance, schedule_poller


def patch_worker_session(monkeypatch, module, session_factory):
    @asynccontextmanager
    async def fake_worker_session_factory():
        yield session_factory

    monkeypatch.setattr(module, "worker_session_factory", fake_worker_session_factory)


async def count(session_factory, model):
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar()


@pytest.mark.unit
class TestCeleryConfig:

    def test_beat_schedule(self):
        schedule = celery_module.celery_app.conf.beat_schedule
        assert schedule["poll-due-bulk-actions"]["task"] == "worker.tasks.schedule_poller.poll_due_bulk_actions"
        assert schedule["cleanup-expired-bulk-data"]["task"] == "worker.tasks.maintenance.cleanup_expired_bulk_data"

    def test_batches_routed_to_bulk_queue(self):
        routes = celery_module.celery_app.conf.task_routes
        assert routes["worker.tasks.bulk.*"] == {"queue": celery_module.settings.BULK_QUEUE_NAME}

    def test_tasks_registered(self):
        assert bulk.process_bulk_batch.name == "worker.tasks.bulk.process_bulk_batch"
        assert bulk.process_bulk_batch.acks_late is True


@pytest.mark.unit
class TestProcessBulkBatchTask:

    def test_returns_batch_result(self, monkeypatch):
        calls = []

        async def fake_process(*args):
            calls.append(args)
            return {"status": "completed", "processed": 2, "failed": 0, "skipped": 0}

        monkeypatch.setattr(bulk, "_process", fake_process)
        result = bulk.process_bulk_batch("exec-1", 1, ["a", "b"], {"data": {"x": 1}})

        assert result["status"] == "completed"
        max_attempts = bulk.settings.BATCH_MAX_RETRIES + 1
        assert calls == [("exec-1", 1, ["a", "b"], {"data": {"x": 1}}, False, 1, max_attempts)]

    def test_missing_execution_dropped(self, monkeypatch):
        async def fake_process(*args):
            raise ExecutionNotFound("exec-1")

        monkeypatch.setattr(bulk, "_process", fake_process)
        result = bulk.process_bulk_batch("exec-1", 1, ["a"])
        assert result["status"] == "skipped"

    def test_error_retried_while_attempts_remain(self, monkeypatch):
        async def fake_process(*args):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(bulk, "_process", fake_process)
        # Called directly, retry re-raises the original error
        with pytest.raises(RuntimeError, match="locked"):
            bulk.process_bulk_batch("exec-1", 1, ["a"])

    def test_last_attempt_reports_failure(self, monkeypatch):
        attempts = []

        async def fake_process(*args):
            attempts.append(args[5:])
            raise RuntimeError("database is locked")

        monkeypatch.setattr(bulk, "_process", fake_process)
        task = bulk.process_bulk_batch
        task.push_request(retries=bulk.settings.BATCH_MAX_RETRIES)
        try:
            result = task.run("exec-1", 1, ["a"])
        finally:
            task.pop_request()

        assert result == {"status": "failed", "error": "database is locked"}
        max_attempts = bulk.settings.BATCH_MAX_RETRIES + 1
        assert attempts == [(max_attempts, max_attempts)]


@pytest.mark.integration
class TestTaskBodies:

    async def test_process_runs_batch(self, monkeypatch, executor, dispatcher, session_factory, contacts):
        patch_worker_session(monkeypatch, bulk, session_factory)
        monkeypatch.setattr(bulk, "create_executor", lambda factory: executor)

        execution = await executor.builder(Contact).action("archive").ids(contacts[:2]).execute()
        unit = dispatcher.drain()[0]
        result = await bulk._process(
            unit.execution_id, unit.batch_number, unit.record_ids, unit.parameters, False, 1, 4
        )

        assert result["processed"] == 2
        assert (await executor.get_execution(execution.id)).status == ExecutionStatus.COMPLETED.value

    async def test_poll_starts_due(self, monkeypatch, executor, session_factory, contacts):
        patch_worker_session(monkeypatch, schedule_poller, session_factory)
        monkeypatch.setattr(schedule_poller, "create_executor", lambda factory: executor)

        scheduled = await (
            executor.builder(Contact).action("archive").sync().schedule_for(utcnow() + timedelta(hours=1)).execute()
        )
        async with session_factory() as session:
            async with session.begin():
                row = await session.get(BulkActionExecution, scheduled.id)
                row.scheduled_for = utcnow() - timedelta(minutes=1)

        stats = await schedule_poller._poll()
        assert stats["started"] == 1
        assert (await executor.get_execution(scheduled.id)).status == ExecutionStatus.COMPLETED.value

    def test_poll_failure_retried(self, monkeypatch):
        async def broken_poll():
            raise ConnectionError("db down")

        monkeypatch.setattr(schedule_poller, "_poll", broken_poll)
        with pytest.raises(ConnectionError):
            schedule_poller.poll_due_bulk_actions()

    def test_cleanup_task_reports_errors(self, monkeypatch):
        async def broken_cleanup():
            raise ConnectionError("db down")

        monkeypatch.setattr(maintenance, "_cleanup", broken_cleanup)
        assert maintenance.cleanup_expired_bulk_data() == {"status": "error", "error": "db down"}


@pytest.mark.integration
class TestRetention:

    async def test_progress_rows_expire_first(self, executor, session_factory, settings, contacts):
        await executor.builder(Contact).action("archive").sync().execute()

        stats = await maintenance.run_cleanup(session_factory, settings, now=utcnow() + timedelta(days=10))

        assert stats["progress_rows_deleted"] == 3
        assert stats["executions_deleted"] == 0
        assert await count(session_factory, BulkActionExecution) == 1

    async def test_finished_executions_expire(self, executor, session_factory, settings, contacts):
        plain = await executor.builder(Contact).action("archive").sync().execute()
        undoable = await executor.builder(Contact).action("update").with_parameters(
            {"score": 1}
        ).with_undo(days=90).sync().execute()
        running = await executor.builder(Contact).action("archive").execute()

        stats = await maintenance.run_cleanup(session_factory, settings, now=utcnow() + timedelta(days=40))

        assert stats["executions_deleted"] == 1
        assert stats["undo_records_deleted"] == 0
        remaining = {e.id for e in await executor.list_executions()}
        assert remaining == {undoable.id, running.id}
        assert plain.id not in remaining

    async def test_lapsed_undo_window_then_execution(self, executor, session_factory, settings, contacts):
        await executor.builder(Contact).action("archive").with_undo(days=1).sync().execute()

        stats = await maintenance.run_cleanup(session_factory, settings, now=utcnow() + timedelta(days=40))

        assert stats["undo_records_deleted"] == 5
        assert stats["executions_deleted"] == 1
        assert await count(session_factory, BulkActionProgress) == 0

    async def test_audit_outlives_execution(self, executor, session_factory, settings, contacts):
        await executor.builder(Contact).action("archive").sync().execute()

        stats = await maintenance.run_cleanup(session_factory, settings, now=utcnow() + timedelta(days=40))
        assert stats["audit_rows_deleted"] == 0
        assert await count(session_factory, BulkActionAudit) == 1

        stats = await maintenance.run_cleanup(session_factory, settings, now=utcnow() + timedelta(days=100))
        assert stats["audit_rows_deleted"] == 1


@pytest.mark.unit
class TestLoggingSetup:

    def test_worker_signal_installs_structlog_handler(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            celery_module.configure_worker_logging()
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
            structlog.reset_defaults()
