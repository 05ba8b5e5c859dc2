from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from productivity_tracker.constants import (
    COLLECTION_DAILY_ACTIVITIES,
    COLLECTION_PRODUCTIVITY_SUMMARIES,
    COLLECTION_TASKS,
    DEFAULT_HEATMAP_DAYS,
    DEFAULT_TRENDS_DAYS,
    NO_CATEGORY_KEY,
)
from productivity_tracker.domain.common.errors import ValidationError
from productivity_tracker.domain.common.ports import Clock, DocumentStore
from productivity_tracker.domain.common.rates import mean_or_zero, percent
from productivity_tracker.domain.common.time import DayCalendar
from productivity_tracker.domain.stats.grouping import intensity_for_hours, key_func
from productivity_tracker.domain.stats.models import (
    CategoryBreakdownEntry,
    CategoryStats,
    DailyBreakdownRow,
    GroupBy,
    GroupedBucket,
    GroupedReport,
    HeatmapCell,
    PeriodSummary,
    ProductivitySummary,
    SummaryType,
    TrendRow,
)
from productivity_tracker.domain.tasks.models import Task, TaskStatus

logger = logging.getLogger(__name__)

_COUNTER_SUMS = {
    "total_tasks": {"$sum": "$total_tasks"},
    "completed_tasks": {"$sum": "$completed_tasks"},
    "missed_tasks": {"$sum": "$missed_tasks"},
    "total_effective_minutes": {"$sum": "$total_effective_minutes"},
}


def _hours(minutes: int) -> float:
    return round(minutes / 60.0, 2)


def _range(field: str, start: Optional[datetime], end: Optional[datetime]) -> Dict[str, Any]:
    if not start and not end:
        return {}
    cond: Dict[str, Any] = {}
    if start:
        cond["$gte"] = start
    if end:
        cond["$lte"] = end
    return {field: cond}


class StatisticsAggregator:
    """
    Read-only period reports over tasks and daily rollups.

    Every rate is a percentage rounded to one decimal; a zero denominator
    gives 0.0. Groupings are returned in ascending key order unless noted.
    """

    def __init__(self, store: DocumentStore, clock: Clock, calendar: DayCalendar) -> None:
        self._store = store
        self._clock = clock
        self._calendar = calendar

    async def _tasks(self, flt: Dict[str, Any]) -> List[Task]:
        docs = await self._store.find(COLLECTION_TASKS, flt, sort=[("scheduled_start", 1)])
        return [Task.from_document(d) for d in docs]

    async def _completed_in_range(self, user_id: int, start: datetime, end: datetime) -> List[Task]:
        """Completed tasks with a measured duration whose actual (else scheduled) start is in [start, end]."""
        tasks = await self._tasks(
            {
                "user_id": user_id,
                "status": TaskStatus.COMPLETED.value,
                "actual_duration_minutes": {"$gt": 0},
            }
        )
        return [t for t in tasks if start <= (t.actual_start or t.scheduled_start) <= end]

    async def summary_for_period(self, user_id: int, start: datetime, end: datetime) -> PeriodSummary:
        if end < start:
            raise ValidationError("Period end must be after its start.")
        tasks = await self._tasks({"user_id": user_id, **_range("scheduled_start", start, end)})

        by_status: Dict[TaskStatus, int] = defaultdict(int)
        for t in tasks:
            by_status[t.status] += 1
        scheduled_minutes = sum(t.duration_minutes or 0 for t in tasks)
        actual_minutes = sum(t.actual_duration_minutes or 0 for t in tasks)

        rows = await self._store.aggregate(
            COLLECTION_DAILY_ACTIVITIES,
            [
                {"$match": {"user_id": user_id, **_range("date", self._calendar.day_start(start), end)}},
                {"$group": {"_id": "$day", **_COUNTER_SUMS}},
                {"$sort": {"_id": 1}},
            ],
        )
        breakdown = tuple(
            DailyBreakdownRow(
                day=r["_id"],
                total_tasks=int(r["total_tasks"]),
                completed_tasks=int(r["completed_tasks"]),
                total_effective_minutes=int(r["total_effective_minutes"]),
            )
            for r in rows
        )

        completed = by_status[TaskStatus.COMPLETED]
        return PeriodSummary(
            start=start,
            end=end,
            total_tasks=len(tasks),
            completed_tasks=completed,
            missed_tasks=by_status[TaskStatus.MISSED],
            in_progress_tasks=by_status[TaskStatus.IN_PROGRESS],
            scheduled_tasks=by_status[TaskStatus.SCHEDULED],
            total_scheduled_minutes=scheduled_minutes,
            total_actual_minutes=actual_minutes,
            completion_rate=percent(completed, len(tasks)),
            efficiency=percent(actual_minutes, scheduled_minutes),
            avg_productivity_score=mean_or_zero(t.productivity_score for t in tasks),
            daily_breakdown=breakdown,
        )

    async def category_breakdown(
        self,
        user_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[CategoryStats]:
        """Per-category totals, most tasks first. Uncategorized tasks form their own bucket (category None)."""
        rows = await self._store.aggregate(
            COLLECTION_TASKS,
            [
                {"$match": {"user_id": user_id, **_range("scheduled_start", start, end)}},
                {
                    "$group": {
                        "_id": "$category",
                        "total_tasks": {"$sum": 1},
                        "completed_tasks": {
                            "$sum": {"$cond": [{"$eq": ["$status", TaskStatus.COMPLETED.value]}, 1, 0]}
                        },
                        "total_scheduled_minutes": {"$sum": "$duration_minutes"},
                        "total_actual_minutes": {"$sum": {"$ifNull": ["$actual_duration_minutes", 0]}},
                        "avg_productivity_score": {"$avg": "$productivity_score"},
                    }
                },
            ],
        )
        # ties on task count fall back to category name, uncategorized last
        rows.sort(key=lambda r: (-r["total_tasks"], r["_id"] is None, r["_id"] or ""))
        return [
            CategoryStats(
                category=r["_id"],
                total_tasks=int(r["total_tasks"]),
                completed_tasks=int(r["completed_tasks"]),
                completion_rate=percent(r["completed_tasks"], r["total_tasks"]),
                total_scheduled_minutes=int(r["total_scheduled_minutes"]),
                total_actual_minutes=int(r["total_actual_minutes"]),
                avg_productivity_score=round(r["avg_productivity_score"], 1)
                if r["avg_productivity_score"] is not None
                else 0.0,
            )
            for r in rows
        ]

    async def trends(self, user_id: int, days: int = DEFAULT_TRENDS_DAYS) -> List[TrendRow]:
        """Rollup counters for the trailing `days` days (today included), oldest first."""
        if days <= 0:
            raise ValidationError("days must be positive.")
        now = self._clock.now()
        since = self._calendar.day_start(self._calendar.shift(now, days=-(days - 1)))
        rows = await self._store.aggregate(
            COLLECTION_DAILY_ACTIVITIES,
            [
                {"$match": {"user_id": user_id, "date": {"$gte": since, "$lte": now}}},
                {"$group": {"_id": "$day", **_COUNTER_SUMS}},
                {"$sort": {"_id": 1}},
            ],
        )
        return [
            TrendRow(
                day=r["_id"],
                total_tasks=int(r["total_tasks"]),
                completed_tasks=int(r["completed_tasks"]),
                missed_tasks=int(r["missed_tasks"]),
                total_effective_minutes=int(r["total_effective_minutes"]),
                completion_rate=percent(r["completed_tasks"], r["total_tasks"]),
            )
            for r in rows
        ]

    async def heatmap(
        self,
        user_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[HeatmapCell]:
        """Completed minutes per day with an intensity level 1-5. Defaults to the last year."""
        end = end or self._clock.now()
        start = start or self._calendar.day_start(end - timedelta(days=DEFAULT_HEATMAP_DAYS))

        minutes: Dict[str, int] = defaultdict(int)
        for t in await self._completed_in_range(user_id, start, end):
            minutes[self._calendar.day_key(t.actual_start or t.scheduled_start)] += t.actual_duration_minutes

        cells = []
        for day in sorted(minutes):
            hours = _hours(minutes[day])
            cells.append(HeatmapCell(day=day, minutes=minutes[day], hours=hours, intensity=intensity_for_hours(hours)))
        return cells

    async def grouped_report(
        self,
        user_id: int,
        start: datetime,
        end: datetime,
        group_by: GroupBy = GroupBy.DAY,
    ) -> GroupedReport:
        try:
            group_by = GroupBy(group_by)
        except ValueError as e:
            raise ValidationError(f"Unknown grouping: {group_by}") from e
        keyof = key_func(group_by)

        totals: Dict[str, int] = defaultdict(int)
        counts: Dict[str, int] = defaultdict(int)
        for t in await self._completed_in_range(user_id, start, end):
            key = keyof(t, self._calendar)
            totals[key] += t.actual_duration_minutes
            counts[key] += 1

        buckets = tuple(
            GroupedBucket(key=k, total_minutes=totals[k], total_hours=_hours(totals[k]), task_count=counts[k])
            for k in sorted(totals)
        )
        total = sum(totals.values())
        return GroupedReport(
            group_by=group_by,
            start=start,
            end=end,
            total_minutes=total,
            total_hours=_hours(total),
            buckets=buckets,
        )

    def _period(self, summary_type: SummaryType, anchor: datetime):
        if summary_type == SummaryType.WEEKLY:
            start = self._calendar.week_start(anchor)
            return start, self._calendar.shift(start, days=7)
        start = self._calendar.month_start(anchor)
        return start, self._calendar.shift(start, months=1)

    async def build_productivity_summary(
        self,
        user_id: int,
        summary_type: SummaryType,
        anchor: datetime,
    ) -> ProductivitySummary:
        """
        Compute and store the weekly (ISO week) or monthly summary containing anchor.

        The period is [period_start, period_end). Rebuilding the same period
        overwrites the stored summary.
        """
        try:
            summary_type = SummaryType(summary_type)
        except ValueError as e:
            raise ValidationError(f"Unknown summary type: {summary_type}") from e
        period_start, period_end = self._period(summary_type, anchor)
        tasks = await self._tasks(
            {"user_id": user_id, "scheduled_start": {"$gte": period_start, "$lt": period_end}}
        )

        totals: Dict[str, int] = defaultdict(int)
        completed: Dict[str, int] = defaultdict(int)
        productive: Dict[str, int] = defaultdict(int)
        for t in tasks:
            key = t.category or NO_CATEGORY_KEY
            totals[key] += 1
            if t.status == TaskStatus.COMPLETED:
                completed[key] += 1
                productive[key] += t.actual_duration_minutes or 0

        breakdown = [
            CategoryBreakdownEntry(
                category=k,
                total_tasks=totals[k],
                completed_tasks=completed[k],
                productive_minutes=productive[k],
            )
            for k in sorted(totals)
        ]
        # sorted() is stable, so equal minutes keep ascending category order
        ranked = sorted(breakdown, key=lambda e: e.productive_minutes)
        most = max(ranked, key=lambda e: e.productive_minutes).category if ranked else None
        least = ranked[0].category if ranked else None

        summary_id = f"{user_id}:{summary_type.value}:{self._calendar.day_key(period_start)}"
        now = self._clock.now()
        doc = await self._store.update_one(
            COLLECTION_PRODUCTIVITY_SUMMARIES,
            {"_id": summary_id, "user_id": user_id},
            {
                "$set": {
                    "type": summary_type.value,
                    "period_start": period_start,
                    "period_end": period_end,
                    "total_productive_time": sum(productive.values()),
                    "average_productivity": mean_or_zero(t.productivity_score for t in tasks),
                    "most_productive_category": most,
                    "least_productive_category": least,
                    "category_breakdown": [e.to_document() for e in breakdown],
                    "updated_at": now,
                },
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )
        logger.info(f"Productivity summary built: {summary_id} tasks={len(tasks)}")
        return ProductivitySummary.from_document(doc)
