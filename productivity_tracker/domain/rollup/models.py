from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Tuple

from productivity_tracker.domain.tasks.models import Task, TaskStatus


def rollup_id(user_id: int, day_key: str) -> str:
    return f"{user_id}:{day_key}"


@dataclass(frozen=True)
class RollupCounters:
    total_tasks: int = 0
    completed_tasks: int = 0
    missed_tasks: int = 0
    total_effective_minutes: int = 0

    @classmethod
    def from_tasks(cls, tasks: Iterable[Task]) -> "RollupCounters":
        tasks = list(tasks)
        completed = [t for t in tasks if t.status == TaskStatus.COMPLETED]
        return cls(
            total_tasks=len(tasks),
            completed_tasks=len(completed),
            missed_tasks=sum(1 for t in tasks if t.status == TaskStatus.MISSED),
            total_effective_minutes=sum(t.actual_duration_minutes for t in completed if t.actual_duration_minutes),
        )

    def as_fields(self) -> Dict[str, int]:
        return {
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "missed_tasks": self.missed_tasks,
            "total_effective_minutes": self.total_effective_minutes,
        }


@dataclass(frozen=True)
class DailyActivity:
    id: str
    user_id: int
    date: datetime  # UTC instant of local midnight
    day: str  # YYYY-MM-DD in the engine timezone
    task_ids: Tuple[str, ...]
    total_tasks: int
    completed_tasks: int
    missed_tasks: int
    total_effective_minutes: int
    created_at: datetime
    updated_at: datetime

    @property
    def counters(self) -> RollupCounters:
        return RollupCounters(
            total_tasks=self.total_tasks,
            completed_tasks=self.completed_tasks,
            missed_tasks=self.missed_tasks,
            total_effective_minutes=self.total_effective_minutes,
        )

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "DailyActivity":
        return cls(
            id=doc["_id"],
            user_id=int(doc["user_id"]),
            date=doc["date"],
            day=doc["day"],
            task_ids=tuple(doc.get("task_ids") or ()),
            total_tasks=int(doc.get("total_tasks") or 0),
            completed_tasks=int(doc.get("completed_tasks") or 0),
            missed_tasks=int(doc.get("missed_tasks") or 0),
            total_effective_minutes=int(doc.get("total_effective_minutes") or 0),
            created_at=doc["created_at"],
            updated_at=doc["updated_at"],
        )


@dataclass(frozen=True)
class DayStats:
    total_scheduled_minutes: int
    total_actual_minutes: int
    completion_rate: float
    productivity_score: float


@dataclass(frozen=True)
class DailyActivityView:
    activity: DailyActivity
    tasks: Tuple[Task, ...]
    stats: DayStats
