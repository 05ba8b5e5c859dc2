from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class TaskStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    MISSED = "missed"


class RecurrencePattern(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ReminderType(str, Enum):
    NOTIFICATION = "notification"
    CALL = "call"


@dataclass(frozen=True)
class Task:
    id: str
    user_id: int
    title: str
    description: str
    category: Optional[str]
    project: Optional[str]
    notes: Optional[str]
    scheduled_start: datetime
    scheduled_end: datetime
    duration_minutes: int
    actual_start: Optional[datetime]
    actual_end: Optional[datetime]
    actual_duration_minutes: Optional[int]
    status: TaskStatus
    is_recurring: bool
    recurrence_pattern: RecurrencePattern
    parent_id: Optional[str]  # template id for generated occurrences
    reminder_type: Optional[ReminderType]
    reminder_sent_at: Optional[datetime]
    productivity_score: Optional[float]
    created_at: datetime
    updated_at: datetime

    @property
    def is_template(self) -> bool:
        return (
            self.is_recurring
            and self.recurrence_pattern != RecurrencePattern.NONE
            and self.parent_id is None
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "project": self.project,
            "notes": self.notes,
            "scheduled_start": self.scheduled_start,
            "scheduled_end": self.scheduled_end,
            "duration_minutes": self.duration_minutes,
            "actual_start": self.actual_start,
            "actual_end": self.actual_end,
            "actual_duration_minutes": self.actual_duration_minutes,
            "status": self.status.value,
            "is_recurring": self.is_recurring,
            "recurrence_pattern": self.recurrence_pattern.value,
            "parent_id": self.parent_id,
            "reminder_type": self.reminder_type.value if self.reminder_type else None,
            "reminder_sent_at": self.reminder_sent_at,
            "productivity_score": self.productivity_score,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Task":
        reminder_raw = doc.get("reminder_type")
        score = doc.get("productivity_score")
        return cls(
            id=doc["_id"],
            user_id=int(doc["user_id"]),
            title=doc["title"],
            description=doc.get("description") or "",
            category=doc.get("category"),
            project=doc.get("project"),
            notes=doc.get("notes"),
            scheduled_start=doc["scheduled_start"],
            scheduled_end=doc["scheduled_end"],
            duration_minutes=int(doc.get("duration_minutes") or 0),
            actual_start=doc.get("actual_start"),
            actual_end=doc.get("actual_end"),
            actual_duration_minutes=doc.get("actual_duration_minutes"),
            status=TaskStatus(doc.get("status") or TaskStatus.SCHEDULED.value),
            is_recurring=bool(doc.get("is_recurring")),
            recurrence_pattern=RecurrencePattern(doc.get("recurrence_pattern") or RecurrencePattern.NONE.value),
            parent_id=doc.get("parent_id"),
            reminder_type=ReminderType(reminder_raw) if reminder_raw else None,
            reminder_sent_at=doc.get("reminder_sent_at"),
            productivity_score=float(score) if score is not None else None,
            created_at=doc["created_at"],
            updated_at=doc["updated_at"],
        )


@dataclass(frozen=True)
class CreateTaskRequest:
    user_id: int
    title: str
    scheduled_start: datetime
    scheduled_end: datetime
    description: str = ""
    category: Optional[str] = None
    project: Optional[str] = None
    notes: Optional[str] = None
    duration_minutes: Optional[int] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    status: str = TaskStatus.SCHEDULED.value
    is_recurring: bool = False
    recurrence_pattern: str = RecurrencePattern.NONE.value
    reminder_type: Optional[str] = ReminderType.NOTIFICATION.value
    productivity_score: Optional[float] = None


@dataclass(frozen=True)
class UpdateTaskRequest:
    user_id: int
    task_id: str
    patch: Dict[str, Any]


@dataclass(frozen=True)
class TaskQuery:
    user_id: int
    status: Optional[str] = None
    category: Optional[str] = None
    is_recurring: Optional[bool] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass(frozen=True)
class CreateTaskResult:
    task: Task
    occurrences: Tuple[Task, ...] = ()
    # follow-on steps (rollup attach, recurrence) that failed without undoing the create
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Reminder:
    task_id: str
    title: str
    scheduled_start: datetime
    reminder_type: ReminderType
    message: str
