from __future__ import annotations

import asyncio
from datetime import timedelta

from productivity_tracker.domain.tasks.models import ReminderType
from productivity_tracker.main import build_engine

from tests.conftest import T0, task_request


def test_only_tasks_inside_lookahead_without_reminder_are_selected(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        soon = (await engine.tasks.create(task_request(title="Soon", start=T0 + timedelta(minutes=10)))).task
        await engine.tasks.create(task_request(title="Later", start=T0 + timedelta(minutes=30)))
        await engine.tasks.create(task_request(title="Silent", start=T0 + timedelta(minutes=5), reminder_type=None))
        await engine.tasks.create(task_request(title="Past", start=T0 - timedelta(minutes=5)))
        await engine.tasks.create(task_request(title="Not mine", user_id=2, start=T0 + timedelta(minutes=10)))

        due = await engine.reminders.tasks_needing_reminders(1)
        assert [t.id for t in due] == [soon.id]

    asyncio.run(run())


def test_process_and_mark_sent(settings, clock):
    async def run():
        engine = await build_engine(settings, clock=clock)
        task = (
            await engine.tasks.create(
                task_request(title="Call mom", start=T0 + timedelta(minutes=15), reminder_type="call")
            )
        ).task

        reminders = await engine.reminders.process_reminders(1)
        assert len(reminders) == 1
        assert reminders[0].task_id == task.id
        assert reminders[0].reminder_type == ReminderType.CALL
        assert reminders[0].message == "Reminder: Call mom starts at 09:15"

        marked = await engine.reminders.mark_reminder_sent(1, task.id)
        assert marked.reminder_sent_at == T0
        assert await engine.reminders.process_reminders(1) == []

    asyncio.run(run())
