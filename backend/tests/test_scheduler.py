"""Tests for scheduled executions and the due check."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from core.constants import ExecutionStatus
from core.exceptions import ExecutionNotFound, InvalidConfiguration, InvalidExecutionState
from core.rbac import Actor
from core.utils import utcnow
from engine.scheduler import SchedulerService
from sample_models import Contact


@pytest.fixture
def scheduler(executor) -> SchedulerService:
    return SchedulerService(executor)


async def schedule(executor, hours=1, **kwargs):
    builder = executor.builder(Contact).action(kwargs.pop("action", "archive"))
    for column, value in kwargs.pop("where", {}).items():
        builder.where(column, value)
    if kwargs.pop("sync", True):
        builder.sync()
    if "actor" in kwargs:
        builder.as_actor(kwargs.pop("actor"))
    return await builder.schedule_for(utcnow() + timedelta(hours=hours)).execute()


@pytest.mark.integration
class TestDueCheck:

    async def test_due_execution_runs_in_place(self, executor, scheduler, contacts):
        scheduled = await schedule(executor, where={"status": "inactive"})

        stats = await scheduler.process_due(now=utcnow() + timedelta(hours=2))

        assert stats == {"due": 1, "started": 1, "skipped": 0, "failed": 0}
        execution = await executor.get_execution(scheduled.id)
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.processed_records == 2
        assert execution.started_at is not None
        assert len(await executor.list_executions()) == 1

    async def test_not_yet_due(self, executor, scheduler, contacts):
        scheduled = await schedule(executor, hours=3)
        stats = await scheduler.process_due(now=utcnow() + timedelta(hours=1))
        assert stats["due"] == 0
        assert (await executor.get_execution(scheduled.id)).status == ExecutionStatus.SCHEDULED.value

    async def test_selection_resolved_when_due(self, executor, scheduler, session_factory, contacts):
        scheduled = await schedule(executor, where={"status": "inactive"})
        async with session_factory() as session:
            async with session.begin():
                result = await session.execute(select(Contact).where(Contact.name == "Ada"))
                result.scalar_one().status = "inactive"

        await scheduler.process_due(now=utcnow() + timedelta(hours=2))
        execution = await executor.get_execution(scheduled.id)
        assert execution.total_records == 3

    async def test_queued_schedule_dispatches(self, executor, scheduler, dispatcher, run_dispatched, contacts):
        scheduled = await schedule(executor, sync=False)
        await scheduler.process_due(now=utcnow() + timedelta(hours=2))

        assert {u.execution_id for u in dispatcher.units} == {scheduled.id}
        await run_dispatched()
        assert (await executor.get_execution(scheduled.id)).status == ExecutionStatus.COMPLETED.value

    async def test_concurrent_pollers_start_once(self, executor, scheduler, contacts):
        scheduled = await schedule(executor)
        other = SchedulerService(executor)
        later = utcnow() + timedelta(hours=2)

        results = await asyncio.gather(scheduler.process_due(now=later), other.process_due(now=later))

        assert sum(r["started"] for r in results) == 1
        execution = await executor.get_execution(scheduled.id)
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.processed_records == 5

    async def test_start_failure_marks_failed(self, executor, scheduler, registry, contacts):
        registry.register("temporary", lambda r, p: True)
        scheduled = await schedule(executor, action="temporary")
        registry.unregister("temporary")

        stats = await scheduler.process_due(now=utcnow() + timedelta(hours=2))

        assert stats["failed"] == 1
        execution = await executor.get_execution(scheduled.id)
        assert execution.status == ExecutionStatus.FAILED.value
        assert execution.error_details["type"] == "UnknownAction"

    async def test_run_skips_limits_checked_at_submission(self, executor, scheduler, contacts):
        actor = Actor.with_permissions("u1", "test_contacts.*")
        scheduled = await schedule(executor, actor=actor)
        executor.settings.MAX_RECORDS_PER_ACTION = 1

        await scheduler.process_due(now=utcnow() + timedelta(hours=2))
        execution = await executor.get_execution(scheduled.id)
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.actor_id == "u1"


@pytest.mark.integration
class TestScheduleManagement:

    async def test_cancel_then_not_run(self, executor, scheduler, contacts):
        scheduled = await schedule(executor)
        await scheduler.cancel(scheduled.id, actor_id="u1")

        stats = await scheduler.process_due(now=utcnow() + timedelta(hours=2))
        assert stats["due"] == 0
        assert (await executor.get_execution(scheduled.id)).status == ExecutionStatus.CANCELLED.value

    async def test_reschedule(self, executor, scheduler, contacts):
        scheduled = await schedule(executor)
        when = utcnow() + timedelta(hours=5)

        moved = await scheduler.reschedule(scheduled.id, when)
        assert moved.scheduled_for == when
        assert moved.status == ExecutionStatus.SCHEDULED.value

    async def test_reschedule_in_timezone(self, executor, scheduler, contacts):
        scheduled = await schedule(executor)

        moved = await scheduler.reschedule(scheduled.id, utcnow() + timedelta(hours=2), "Europe/Sofia")
        assert moved.status == ExecutionStatus.SCHEDULED.value
        assert moved.scheduled_timezone == "Europe/Sofia"

    async def test_cancelled_stays_cancelled(self, executor, scheduler, contacts):
        scheduled = await schedule(executor)
        await scheduler.cancel(scheduled.id)

        with pytest.raises(InvalidExecutionState, match="cancelled"):
            await scheduler.reschedule(scheduled.id, utcnow() + timedelta(hours=2))

        execution = await executor.get_execution(scheduled.id)
        assert execution.status == ExecutionStatus.CANCELLED.value
        assert execution.completed_at is not None

    async def test_reschedule_finished_rejected(self, executor, scheduler, contacts):
        execution = await executor.builder(Contact).action("archive").sync().execute()
        with pytest.raises(InvalidExecutionState):
            await scheduler.reschedule(execution.id, utcnow() + timedelta(hours=1))

    async def test_reschedule_unknown(self, scheduler):
        with pytest.raises(ExecutionNotFound):
            await scheduler.reschedule("missing", utcnow() + timedelta(hours=1))

    async def test_reschedule_validates_time(self, executor, scheduler, settings, contacts):
        scheduled = await schedule(executor)
        with pytest.raises(InvalidConfiguration):
            await scheduler.reschedule(
                scheduled.id, utcnow() + timedelta(days=settings.MAX_SCHEDULED_DAYS_AHEAD + 1)
            )

    async def test_listing(self, executor, scheduler, contacts):
        soon = await schedule(executor, hours=2, actor=Actor.with_permissions("u1", "*"))
        later = await schedule(executor, hours=48, actor=Actor.with_permissions("u2", "*"))

        assert [e.id for e in await scheduler.get_scheduled()] == [soon.id, later.id]
        assert [e.id for e in await scheduler.get_scheduled(actor_id="u2")] == [later.id]
        assert [e.id for e in await scheduler.get_upcoming(hours_ahead=24)] == [soon.id]
        assert await scheduler.get_upcoming(hours_ahead=24, actor_id="u2") == []
