"""
Task create/update/delete/start/stop: validation, state machine, ownership.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from productivity_tracker.constants import COLLECTION_TASKS
from productivity_tracker.domain.common.errors import (
    InvalidStateTransition,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from productivity_tracker.domain.tasks.models import CreateTaskRequest, TaskQuery, TaskStatus, UpdateTaskRequest
from productivity_tracker.main import build_engine

from tests.conftest import T0, task_request


def test_create_derives_duration(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        req = CreateTaskRequest(
            user_id=1,
            title="  Write report ",
            scheduled_start=T0,
            scheduled_end=T0 + timedelta(minutes=47, seconds=30),
        )
        result = await engine.tasks.create(req)
        assert result.task.title == "Write report"
        assert result.task.duration_minutes == 48
        assert result.task.status == TaskStatus.SCHEDULED
        assert result.occurrences == ()
        assert result.warnings == ()

        stored = await engine.tasks.get(1, result.task.id)
        assert stored == result.task

    asyncio.run(run())


def test_create_keeps_explicit_duration(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        result = await engine.tasks.create(task_request(minutes=60, duration_minutes=45))
        assert result.task.duration_minutes == 45

    asyncio.run(run())


def test_create_with_end_not_after_start_fails_and_persists_nothing(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        with pytest.raises(ValidationError):
            await engine.tasks.create(task_request(minutes=0))
        with pytest.raises(ValidationError):
            await engine.tasks.create(task_request(minutes=-30))
        assert await engine.store.count_documents(COLLECTION_TASKS, {}) == 0

    asyncio.run(run())


def test_create_rejects_bad_input(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        with pytest.raises(ValidationError):
            await engine.tasks.create(task_request(title="   "))
        with pytest.raises(ValidationError):
            await engine.tasks.create(task_request(status="paused"))
        with pytest.raises(ValidationError):
            await engine.tasks.create(task_request(recurrence_pattern="yearly", is_recurring=True))
        naive = datetime(2024, 3, 4, 9, 0)
        with pytest.raises(ValidationError):
            await engine.tasks.create(task_request(start=naive))
        assert await engine.store.count_documents(COLLECTION_TASKS, {}) == 0

    asyncio.run(run())


def test_create_with_actual_window_derives_actual_duration(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        result = await engine.tasks.create(
            task_request(
                status="completed",
                actual_start=T0,
                actual_end=T0 + timedelta(minutes=50),
            )
        )
        assert result.task.actual_duration_minutes == 50
        rollup = await engine.rollups.find(1, T0)
        assert rollup.completed_tasks == 1
        assert rollup.total_effective_minutes == 50

        with pytest.raises(ValidationError):
            await engine.tasks.create(task_request(actual_start=T0, actual_end=T0))

    asyncio.run(run())


def test_start_then_stop_completes_with_actual_duration(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        task = (await engine.tasks.create(task_request())).task

        started = await engine.tasks.start(1, task.id)
        assert started.status == TaskStatus.IN_PROGRESS
        assert started.actual_start == T0

        clock.advance(minutes=37, seconds=40)
        stopped = await engine.tasks.stop(1, task.id)
        assert stopped.status == TaskStatus.COMPLETED
        assert stopped.actual_end == clock.now()
        assert stopped.actual_duration_minutes == 38

        rollup = await engine.rollups.find(1, T0)
        assert rollup.completed_tasks == 1
        assert rollup.total_effective_minutes == 38

    asyncio.run(run())


def test_start_completed_and_stop_scheduled_are_refused(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        task = (await engine.tasks.create(task_request())).task
        with pytest.raises(InvalidStateTransition):
            await engine.tasks.stop(1, task.id)

        await engine.tasks.start(1, task.id)
        clock.advance(minutes=10)
        await engine.tasks.stop(1, task.id)
        with pytest.raises(InvalidStateTransition):
            await engine.tasks.start(1, task.id)

    asyncio.run(run())


def test_start_missed_is_refused(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        task = (await engine.tasks.create(task_request())).task
        clock.advance(hours=2)
        missed = await engine.tasks.sweep_missed(1)
        assert [t.id for t in missed] == [task.id]
        with pytest.raises(InvalidStateTransition):
            await engine.tasks.start(1, task.id)

    asyncio.run(run())


def test_stop_in_the_instant_of_start_is_refused_and_task_keeps_running(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        task = (await engine.tasks.create(task_request())).task
        await engine.tasks.start(1, task.id)
        with pytest.raises(ValidationError, match="at or before"):
            await engine.tasks.stop(1, task.id)
        assert (await engine.tasks.get(1, task.id)).status == TaskStatus.IN_PROGRESS

        clock.advance(seconds=30)
        stopped = await engine.tasks.stop(1, task.id)
        assert stopped.status == TaskStatus.COMPLETED
        assert stopped.actual_duration_minutes == 1

    asyncio.run(run())


def test_update_cannot_start_or_complete_a_task(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        task = (await engine.tasks.create(task_request())).task
        with pytest.raises(InvalidStateTransition, match="Use start"):
            await engine.tasks.update(UpdateTaskRequest(1, task.id, {"status": "in-progress"}))

        await engine.tasks.start(1, task.id)
        clock.advance(minutes=30)
        with pytest.raises(InvalidStateTransition, match="Use stop"):
            await engine.tasks.update(UpdateTaskRequest(1, task.id, {"status": "completed"}))

        current = await engine.tasks.get(1, task.id)
        assert current.status == TaskStatus.IN_PROGRESS
        assert current.actual_end is None
        # unchanged status in a patch is accepted
        same = await engine.tasks.update(UpdateTaskRequest(1, task.id, {"status": "in-progress", "title": "Renamed"}))
        assert same.title == "Renamed"
        assert same.actual_start == T0

    asyncio.run(run())


def test_other_users_task_is_not_found(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        task = (await engine.tasks.create(task_request(user_id=1))).task
        with pytest.raises(NotFoundError):
            await engine.tasks.get(2, task.id)
        with pytest.raises(NotFoundError):
            await engine.tasks.start(2, task.id)
        with pytest.raises(NotFoundError):
            await engine.tasks.delete(2, task.id)
        with pytest.raises(NotFoundError):
            await engine.tasks.update(UpdateTaskRequest(user_id=2, task_id=task.id, patch={"title": "x"}))
        assert (await engine.tasks.get(1, task.id)).title == "Task"

    asyncio.run(run())


def test_update_validates_merged_window_and_rederives_duration(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        task = (await engine.tasks.create(task_request(minutes=60))).task

        with pytest.raises(ValidationError):
            await engine.tasks.update(
                UpdateTaskRequest(1, task.id, {"scheduled_end": T0 - timedelta(minutes=1)})
            )
        updated = await engine.tasks.update(
            UpdateTaskRequest(1, task.id, {"scheduled_end": T0 + timedelta(minutes=90), "category": "Work"})
        )
        assert updated.duration_minutes == 90
        assert updated.category == "Work"
        assert updated.updated_at == clock.now()

    asyncio.run(run())


def test_update_rejects_unknown_fields_and_bad_transitions(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        task = (await engine.tasks.create(task_request())).task
        with pytest.raises(ValidationError):
            await engine.tasks.update(UpdateTaskRequest(1, task.id, {"user_id": 2}))
        with pytest.raises(ValidationError):
            await engine.tasks.update(UpdateTaskRequest(1, task.id, {}))
        with pytest.raises(InvalidStateTransition):
            await engine.tasks.update(UpdateTaskRequest(1, task.id, {"status": "completed"}))

        missed = await engine.tasks.update(UpdateTaskRequest(1, task.id, {"status": "missed"}))
        assert missed.status == TaskStatus.MISSED
        with pytest.raises(InvalidStateTransition):
            await engine.tasks.update(UpdateTaskRequest(1, task.id, {"status": "scheduled"}))

    asyncio.run(run())


def test_delete_removes_task_and_rollup_reference(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        keep = (await engine.tasks.create(task_request(title="Keep"))).task
        drop = (await engine.tasks.create(task_request(title="Drop"))).task

        deleted = await engine.tasks.delete(1, drop.id)
        assert deleted.id == drop.id
        with pytest.raises(NotFoundError):
            await engine.tasks.get(1, drop.id)

        rollup = await engine.rollups.find(1, T0)
        assert rollup.task_ids == (keep.id,)
        assert rollup.total_tasks == 1

    asyncio.run(run())


def test_list_filters_and_orders(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        await engine.tasks.create(task_request(title="Later", start=T0 + timedelta(hours=3), category="Work"))
        await engine.tasks.create(task_request(title="Earlier", start=T0, category="Work"))
        await engine.tasks.create(task_request(title="Home", start=T0 + timedelta(hours=1), category="Personal"))
        await engine.tasks.create(task_request(title="Other user", user_id=2, category="Work"))

        work = await engine.tasks.list(TaskQuery(user_id=1, category="Work"))
        assert [t.title for t in work] == ["Earlier", "Later"]

        window = await engine.tasks.list(
            TaskQuery(user_id=1, start=T0 + timedelta(minutes=30), end=T0 + timedelta(hours=2))
        )
        assert [t.title for t in window] == ["Home"]

    asyncio.run(run())


def test_rollup_failure_does_not_undo_create(settings, clock, monkeypatch):
    async def run():
        engine = await build_engine(settings, clock=clock)

        async def broken_attach(task):
            raise PersistenceError("rollup store down")

        monkeypatch.setattr(engine.rollups, "attach", broken_attach)
        result = await engine.tasks.create(task_request())
        assert len(result.warnings) == 1
        assert "Rollup attach" in result.warnings[0]
        assert (await engine.tasks.get(1, result.task.id)).id == result.task.id

        # resync repairs the missing reference
        repaired = await engine.rollups.resync(1, T0)
        assert repaired.task_ids == (result.task.id,)
        assert repaired.total_tasks == 1

    asyncio.run(run())


def test_sweep_missed_only_touches_overdue_scheduled(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        overdue = (await engine.tasks.create(task_request(title="Overdue", minutes=30))).task
        running = (await engine.tasks.create(task_request(title="Running", minutes=30))).task
        future = (await engine.tasks.create(task_request(title="Future", start=T0 + timedelta(days=1)))).task
        await engine.tasks.start(1, running.id)

        clock.set(T0 + timedelta(hours=1))
        missed = await engine.tasks.sweep_missed(1)
        assert [t.id for t in missed] == [overdue.id]
        assert (await engine.tasks.get(1, running.id)).status == TaskStatus.IN_PROGRESS
        assert (await engine.tasks.get(1, future.id)).status == TaskStatus.SCHEDULED
        assert (await engine.rollups.find(1, T0)).missed_tasks == 1

    asyncio.run(run())


def test_created_datetimes_are_utc(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        helsinki = timezone(timedelta(hours=2))
        start = datetime(2024, 3, 4, 11, 0, tzinfo=helsinki)
        task = (await engine.tasks.create(task_request(start=start))).task
        assert task.scheduled_start == T0
        assert task.scheduled_start.utcoffset() == timedelta(0)

    asyncio.run(run())
