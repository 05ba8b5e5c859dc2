from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime
from typing import List, Optional, Sequence

from productivity_tracker.constants import COLLECTION_DAILY_ACTIVITIES, COLLECTION_TASKS, DEFAULT_ROLLUP_LIST_LIMIT
from productivity_tracker.domain.common.ports import Clock, DocumentStore
from productivity_tracker.domain.common.rates import mean_or_zero, percent
from productivity_tracker.domain.common.time import DayCalendar
from productivity_tracker.domain.rollup.models import (
    DailyActivity,
    DailyActivityView,
    DayStats,
    RollupCounters,
    rollup_id,
)
from productivity_tracker.domain.tasks.models import Task

logger = logging.getLogger(__name__)


class DailyRollupMaintainer:
    """
    Keeps one DailyActivity per (user, calendar day) in step with that day's tasks.

    Two write paths:
    - attach/detach: incremental $push/$pull/$inc on the reference set and
      total_tasks. Fast, but only total_tasks moves and only by one.
    - resync: full recompute from the tasks scheduled that day. The only path
      guaranteed correct after concurrent or multi-field edits.

    All writes for one (user, day) are serialized through an asyncio.Lock.

    Counters are always derivable from the tasks that still exist for the day.
    Anything that deletes tasks, retention cleanup included, resyncs the
    affected days, so history does not outlive its tasks.
    """

    def __init__(self, store: DocumentStore, clock: Clock, calendar: DayCalendar) -> None:
        self._store = store
        self._clock = clock
        self._calendar = calendar
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _key(self, user_id: int, when: datetime) -> str:
        return rollup_id(user_id, self._calendar.day_key(when))

    async def _day_tasks(self, user_id: int, when: datetime) -> List[Task]:
        start, end = self._calendar.day_bounds(when)
        docs = await self._store.find(
            COLLECTION_TASKS,
            {"user_id": user_id, "scheduled_start": {"$gte": start, "$lt": end}},
            sort=[("scheduled_start", 1)],
        )
        return [Task.from_document(d) for d in docs]

    def _insert_fields(self, user_id: int, when: datetime) -> dict:
        return {
            "user_id": user_id,
            "date": self._calendar.day_start(when),
            "day": self._calendar.day_key(when),
            "created_at": self._clock.now(),
        }

    async def _ensure(self, user_id: int, when: datetime) -> DailyActivity:
        key = self._key(user_id, when)
        doc = await self._store.find_one(COLLECTION_DAILY_ACTIVITIES, {"_id": key, "user_id": user_id})
        if doc:
            return DailyActivity.from_document(doc)

        tasks = await self._day_tasks(user_id, when)
        counters = RollupCounters.from_tasks(tasks)
        seeded = {
            **self._insert_fields(user_id, when),
            "task_ids": [t.id for t in tasks],
            **counters.as_fields(),
            "updated_at": self._clock.now(),
        }
        # $setOnInsert: if someone else created the row meanwhile, theirs wins
        doc = await self._store.update_one(
            COLLECTION_DAILY_ACTIVITIES,
            {"_id": key, "user_id": user_id},
            {"$setOnInsert": seeded},
            upsert=True,
        )
        logger.debug("Created rollup %s with %s tasks", key, counters.total_tasks)
        return DailyActivity.from_document(doc)

    async def get_or_create(self, user_id: int, when: datetime) -> DailyActivity:
        async with self._lock_for(self._key(user_id, when)):
            return await self._ensure(user_id, when)

    async def attach(self, task: Task) -> None:
        """Reference task from its day's rollup and bump total_tasks. No-op if already referenced."""
        key = self._key(task.user_id, task.scheduled_start)
        async with self._lock_for(key):
            await self._ensure(task.user_id, task.scheduled_start)
            await self._store.update_one(
                COLLECTION_DAILY_ACTIVITIES,
                {"_id": key, "user_id": task.user_id, "task_ids": {"$ne": task.id}},
                {
                    "$push": {"task_ids": task.id},
                    "$inc": {"total_tasks": 1},
                    "$set": {"updated_at": self._clock.now()},
                },
            )

    async def detach(self, user_id: int, task_id: str, when: datetime) -> None:
        """Drop task_id from the rollup of the day containing when. No-op if not referenced."""
        key = self._key(user_id, when)
        async with self._lock_for(key):
            await self._store.update_one(
                COLLECTION_DAILY_ACTIVITIES,
                {"_id": key, "user_id": user_id, "task_ids": task_id},
                {
                    "$pull": {"task_ids": task_id},
                    "$inc": {"total_tasks": -1},
                    "$set": {"updated_at": self._clock.now()},
                },
            )

    async def resync(self, user_id: int, when: datetime) -> DailyActivity:
        """
        Recompute the rollup of the day containing when from the tasks scheduled that day.

        References to deleted or moved tasks are dropped and tasks missing from
        the reference set are added, so calling this repairs any drift left by
        a failed attach/detach. Idempotent.
        """
        key = self._key(user_id, when)
        async with self._lock_for(key):
            existing = await self._store.find_one(COLLECTION_DAILY_ACTIVITIES, {"_id": key, "user_id": user_id})
            tasks = await self._day_tasks(user_id, when)

            day_ids = {t.id for t in tasks}
            previous = list(existing.get("task_ids") or []) if existing else []
            kept = [tid for tid in previous if tid in day_ids]
            kept_set = set(kept)
            ordered = kept + [t.id for t in tasks if t.id not in kept_set]
            counters = RollupCounters.from_tasks(tasks)

            doc = await self._store.update_one(
                COLLECTION_DAILY_ACTIVITIES,
                {"_id": key, "user_id": user_id},
                {
                    "$set": {"task_ids": ordered, **counters.as_fields(), "updated_at": self._clock.now()},
                    "$setOnInsert": self._insert_fields(user_id, when),
                },
                upsert=True,
            )
            if existing and len(previous) != len(ordered):
                logger.info("Rollup %s references changed %s -> %s", key, len(previous), len(ordered))
            return DailyActivity.from_document(doc)

    async def resync_many(self, user_id: int, moments: Sequence[datetime]) -> List[DailyActivity]:
        """Resync each distinct day once."""
        seen: dict[str, datetime] = {}
        for m in moments:
            seen.setdefault(self._calendar.day_key(m), m)
        return [await self.resync(user_id, m) for _, m in sorted(seen.items())]

    async def find(self, user_id: int, when: datetime) -> Optional[DailyActivity]:
        doc = await self._store.find_one(
            COLLECTION_DAILY_ACTIVITIES, {"_id": self._key(user_id, when), "user_id": user_id}
        )
        return DailyActivity.from_document(doc) if doc else None

    async def list_range(
        self,
        user_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = DEFAULT_ROLLUP_LIST_LIMIT,
    ) -> List[DailyActivity]:
        query: dict = {"user_id": user_id}
        if start or end:
            query["date"] = {}
            if start:
                query["date"]["$gte"] = start
            if end:
                query["date"]["$lte"] = end
        docs = await self._store.find(COLLECTION_DAILY_ACTIVITIES, query, sort=[("date", -1)], limit=limit)
        return [DailyActivity.from_document(d) for d in docs]

    async def view(self, user_id: int, when: datetime) -> DailyActivityView:
        activity = await self.get_or_create(user_id, when)
        docs = await self._store.find(
            COLLECTION_TASKS,
            {"user_id": user_id, "_id": {"$in": list(activity.task_ids)}},
            sort=[("scheduled_start", 1)],
        )
        tasks = tuple(Task.from_document(d) for d in docs)
        stats = DayStats(
            total_scheduled_minutes=sum(t.duration_minutes or 0 for t in tasks),
            total_actual_minutes=sum(t.actual_duration_minutes or 0 for t in tasks),
            completion_rate=percent(activity.completed_tasks, activity.total_tasks),
            productivity_score=mean_or_zero(t.productivity_score for t in tasks),
        )
        return DailyActivityView(activity=activity, tasks=tasks, stats=stats)
