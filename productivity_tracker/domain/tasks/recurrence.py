"""
Recurrence expansion: turns a recurring template into dated occurrences.

Occurrence k sits at anchor + k * unit, where the unit is one day, seven
days or one calendar month. Stepping happens on local wall-clock time in the
engine timezone, so a 09:00 task stays at 09:00 across DST changes. Month
steps that land past the end of the target month clamp to its last day
(Jan 31 -> Feb 28/29 -> Mar 31); they are computed from the anchor, never
from the previous occurrence, so clamping does not drift.

Expansion is idempotent: an occurrence is skipped when a task with the same
(user, title, scheduled_start, is_recurring, pattern) already exists, when the
template already has an occurrence at that start (it may predate a rename),
or when another template in the same batch already produced it.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterator, List, Optional, Set, Tuple

from productivity_tracker.constants import COLLECTION_TASKS, DEFAULT_CLEANUP_RETENTION_DAYS
from productivity_tracker.domain.common.ports import Clock, DocumentStore, IdGenerator
from productivity_tracker.domain.common.time import DayCalendar
from productivity_tracker.domain.tasks.models import RecurrencePattern, Task, TaskStatus

logger = logging.getLogger(__name__)

OccurrenceKey = Tuple[int, str, datetime, str]

_DAYS_PER_STEP = {
    RecurrencePattern.DAILY: 1,
    RecurrencePattern.WEEKLY: 7,
}


class RecurrenceExpander:
    def __init__(self, store: DocumentStore, clock: Clock, ids: IdGenerator, calendar: DayCalendar) -> None:
        self._store = store
        self._clock = clock
        self._ids = ids
        self._calendar = calendar

    def occurrence_window(self, template: Task, k: int) -> Tuple[datetime, datetime]:
        pattern = template.recurrence_pattern
        if pattern == RecurrencePattern.MONTHLY:
            return (
                self._calendar.shift(template.scheduled_start, months=k),
                self._calendar.shift(template.scheduled_end, months=k),
            )
        if pattern in _DAYS_PER_STEP:
            days = _DAYS_PER_STEP[pattern] * k
            return (
                self._calendar.shift(template.scheduled_start, days=days),
                self._calendar.shift(template.scheduled_end, days=days),
            )
        raise ValueError(f"Task {template.id} has no recurrence pattern")

    def occurrences(
        self,
        template: Task,
        horizon_end: datetime,
        not_before: Optional[datetime] = None,
    ) -> Iterator[Tuple[datetime, datetime]]:
        """Windows from the template's own start up to horizon_end (inclusive)."""
        k = 0
        while True:
            start, end = self.occurrence_window(template, k)
            if start > horizon_end:
                return
            if not_before is None or start >= not_before:
                yield start, end
            k += 1

    def _materialize(self, template: Task, start: datetime, end: datetime) -> Task:
        now = self._clock.now()
        return replace(
            template,
            id=self._ids.new_id(),
            scheduled_start=start,
            scheduled_end=end,
            actual_start=None,
            actual_end=None,
            actual_duration_minutes=None,
            status=TaskStatus.SCHEDULED,
            parent_id=template.id,
            reminder_sent_at=None,
            created_at=now,
            updated_at=now,
        )

    async def _existing_starts(self, template: Task, horizon_end: datetime) -> Set[datetime]:
        docs = await self._store.find(
            COLLECTION_TASKS,
            {
                "user_id": template.user_id,
                "scheduled_start": {"$lte": horizon_end},
                "$or": [
                    {"parent_id": template.id},
                    {
                        "title": template.title,
                        "is_recurring": True,
                        "recurrence_pattern": template.recurrence_pattern.value,
                    },
                ],
            },
        )
        return {d["scheduled_start"] for d in docs}

    async def expand(
        self,
        template: Task,
        horizon_end: datetime,
        not_before: Optional[datetime] = None,
        seen: Optional[Set[OccurrenceKey]] = None,
    ) -> List[Task]:
        """
        New (unsaved) occurrences of template up to horizon_end.

        The caller persists them and syncs their rollups.
        """
        if not template.is_recurring or template.recurrence_pattern == RecurrencePattern.NONE:
            return []
        seen = seen if seen is not None else set()
        existing = await self._existing_starts(template, horizon_end)

        created: List[Task] = []
        for start, end in self.occurrences(template, horizon_end, not_before):
            key = (template.user_id, template.title, start, template.recurrence_pattern.value)
            if key in seen or start in existing:
                continue
            seen.add(key)
            created.append(self._materialize(template, start, end))
        return created

    async def process_recurring_tasks(self, user_id: int, start: datetime, end: datetime) -> List[Task]:
        """Expand every recurring template of the user whose start is <= end, over [start, end]."""
        docs = await self._store.find(
            COLLECTION_TASKS,
            {
                "user_id": user_id,
                "is_recurring": True,
                "recurrence_pattern": {"$ne": RecurrencePattern.NONE.value},
                "parent_id": None,
                "scheduled_start": {"$lte": end},
            },
            sort=[("scheduled_start", 1)],
        )
        seen: Set[OccurrenceKey] = set()
        generated: List[Task] = []
        for doc in docs:
            generated.extend(await self.expand(Task.from_document(doc), end, not_before=start, seen=seen))
        if generated:
            logger.info(
                "Recurrence: user_id=%s templates=%s new_occurrences=%s",
                user_id, len(docs), len(generated),
            )
        return generated

    async def _delete_tasks(self, filter: dict) -> List[Task]:
        docs = await self._store.find(COLLECTION_TASKS, filter)
        if not docs:
            return []
        await self._store.delete_many(
            COLLECTION_TASKS,
            {**filter, "_id": {"$in": [d["_id"] for d in docs]}},
        )
        return [Task.from_document(d) for d in docs]

    async def discard_pending_occurrences(self, template: Task, since: datetime) -> List[Task]:
        """
        Delete the template's occurrences that are still scheduled and start at
        or after since. Used before re-expanding an edited template; started
        and finished occurrences stay. Returns the deleted tasks so the caller
        can resync their days.
        """
        discarded = await self._delete_tasks(
            {
                "user_id": template.user_id,
                "parent_id": template.id,
                "status": TaskStatus.SCHEDULED.value,
                "scheduled_start": {"$gte": since},
            },
        )
        if discarded:
            logger.info(
                "Recurrence: template_id=%s discarded_occurrences=%s since=%s",
                template.id, len(discarded), since.isoformat(),
            )
        return discarded

    async def cleanup_old_recurring(self, user_id: int, days_to_keep: int = DEFAULT_CLEANUP_RETENTION_DAYS) -> List[Task]:
        """
        Delete finished occurrences scheduled before now - days_to_keep.

        Templates are kept, otherwise the series would stop expanding. Returns
        the deleted tasks; their days need a rollup resync.
        """
        cutoff = self._clock.now() - timedelta(days=days_to_keep)
        deleted = await self._delete_tasks(
            {
                "user_id": user_id,
                "is_recurring": True,
                "parent_id": {"$ne": None},
                "scheduled_start": {"$lt": cutoff},
                "status": {"$in": [TaskStatus.COMPLETED.value, TaskStatus.MISSED.value]},
            },
        )
        if deleted:
            logger.info("Recurrence cleanup: user_id=%s deleted=%s cutoff=%s", user_id, len(deleted), cutoff.isoformat())
        return deleted
