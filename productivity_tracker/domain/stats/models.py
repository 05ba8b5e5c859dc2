from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class GroupBy(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    PROJECT = "project"
    CATEGORY = "category"


class SummaryType(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class DailyBreakdownRow:
    day: str  # YYYY-MM-DD
    total_tasks: int
    completed_tasks: int
    total_effective_minutes: int


@dataclass(frozen=True)
class PeriodSummary:
    start: datetime
    end: datetime
    total_tasks: int
    completed_tasks: int
    missed_tasks: int
    in_progress_tasks: int
    scheduled_tasks: int
    total_scheduled_minutes: int
    total_actual_minutes: int
    completion_rate: float
    efficiency: float
    avg_productivity_score: float
    daily_breakdown: Tuple[DailyBreakdownRow, ...] = ()


@dataclass(frozen=True)
class CategoryStats:
    category: Optional[str]  # None: tasks without a category
    total_tasks: int
    completed_tasks: int
    completion_rate: float
    total_scheduled_minutes: int
    total_actual_minutes: int
    avg_productivity_score: float


@dataclass(frozen=True)
class TrendRow:
    day: str
    total_tasks: int
    completed_tasks: int
    missed_tasks: int
    total_effective_minutes: int
    completion_rate: float


@dataclass(frozen=True)
class HeatmapCell:
    day: str
    minutes: int
    hours: float
    intensity: int


@dataclass(frozen=True)
class GroupedBucket:
    key: str
    total_minutes: int
    total_hours: float
    task_count: int


@dataclass(frozen=True)
class GroupedReport:
    group_by: GroupBy
    start: datetime
    end: datetime
    total_minutes: int
    total_hours: float
    buckets: Tuple[GroupedBucket, ...] = ()


@dataclass(frozen=True)
class CategoryBreakdownEntry:
    category: str
    total_tasks: int
    completed_tasks: int
    productive_minutes: int

    def to_document(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "productive_minutes": self.productive_minutes,
        }


@dataclass(frozen=True)
class ProductivitySummary:
    id: str
    user_id: int
    type: SummaryType
    period_start: datetime
    period_end: datetime
    total_productive_time: int  # minutes
    average_productivity: float
    most_productive_category: Optional[str]
    least_productive_category: Optional[str]
    category_breakdown: Tuple[CategoryBreakdownEntry, ...] = field(default_factory=tuple)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "ProductivitySummary":
        return cls(
            id=doc["_id"],
            user_id=int(doc["user_id"]),
            type=SummaryType(doc["type"]),
            period_start=doc["period_start"],
            period_end=doc["period_end"],
            total_productive_time=int(doc.get("total_productive_time") or 0),
            average_productivity=float(doc.get("average_productivity") or 0.0),
            most_productive_category=doc.get("most_productive_category"),
            least_productive_category=doc.get("least_productive_category"),
            category_breakdown=tuple(
                CategoryBreakdownEntry(
                    category=e["category"],
                    total_tasks=int(e.get("total_tasks") or 0),
                    completed_tasks=int(e.get("completed_tasks") or 0),
                    productive_minutes=int(e.get("productive_minutes") or 0),
                )
                for e in doc.get("category_breakdown") or ()
            ),
        )
