from __future__ import annotations

import logging
from datetime import timedelta
from typing import List

from productivity_tracker.constants import COLLECTION_TASKS, DEFAULT_REMINDER_LOOKAHEAD_MINUTES
from productivity_tracker.domain.common.errors import NotFoundError
from productivity_tracker.domain.common.ports import Clock, DocumentStore
from productivity_tracker.domain.common.time import DayCalendar
from productivity_tracker.domain.tasks.models import Reminder, Task, TaskStatus

logger = logging.getLogger(__name__)


class ReminderSelector:
    """Selects tasks about to start. Delivery belongs to the transport layer."""

    def __init__(
        self,
        store: DocumentStore,
        clock: Clock,
        calendar: DayCalendar,
        lookahead_minutes: int = DEFAULT_REMINDER_LOOKAHEAD_MINUTES,
    ) -> None:
        self._store = store
        self._clock = clock
        self._calendar = calendar
        self._lookahead = timedelta(minutes=lookahead_minutes)

    async def tasks_needing_reminders(self, user_id: int) -> List[Task]:
        now = self._clock.now()
        docs = await self._store.find(
            COLLECTION_TASKS,
            {
                "user_id": user_id,
                "status": {"$in": [TaskStatus.SCHEDULED.value, TaskStatus.IN_PROGRESS.value]},
                "scheduled_start": {"$gte": now, "$lte": now + self._lookahead},
                "reminder_type": {"$ne": None},
                "reminder_sent_at": None,
            },
            sort=[("scheduled_start", 1)],
        )
        return [Task.from_document(d) for d in docs]

    def _message(self, task: Task) -> str:
        local = self._calendar.local(task.scheduled_start)
        return f"Reminder: {task.title} starts at {local.strftime('%H:%M')}"

    async def process_reminders(self, user_id: int) -> List[Reminder]:
        reminders = [
            Reminder(
                task_id=t.id,
                title=t.title,
                scheduled_start=t.scheduled_start,
                reminder_type=t.reminder_type,
                message=self._message(t),
            )
            for t in await self.tasks_needing_reminders(user_id)
        ]
        for r in reminders:
            logger.info(f"Reminder due: user_id={user_id} task_id={r.task_id} type={r.reminder_type.value}")
        return reminders

    async def mark_reminder_sent(self, user_id: int, task_id: str) -> Task:
        now = self._clock.now()
        doc = await self._store.update_one(
            COLLECTION_TASKS,
            {"_id": task_id, "user_id": user_id},
            {"$set": {"reminder_sent_at": now, "updated_at": now}},
        )
        if doc is None:
            raise NotFoundError("Task not found.")
        return Task.from_document(doc)
