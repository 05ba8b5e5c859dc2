from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Type, TypeVar

from productivity_tracker.domain.common.errors import InvalidStateTransition, ValidationError
from productivity_tracker.domain.tasks.models import RecurrencePattern, ReminderType, TaskStatus

E = TypeVar("E", bound=Enum)

EDITABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "category",
        "project",
        "notes",
        "scheduled_start",
        "scheduled_end",
        "duration_minutes",
        "actual_start",
        "actual_end",
        "status",
        "is_recurring",
        "recurrence_pattern",
        "reminder_type",
        "productivity_score",
    }
)

ALLOWED_TRANSITIONS = {
    TaskStatus.SCHEDULED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.MISSED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.MISSED: frozenset(),
}


def validate_aware(value: Any, field: str) -> datetime:
    if not isinstance(value, datetime):
        raise ValidationError(f"{field} must be a datetime.")
    if value.tzinfo is None:
        raise ValidationError(f"{field} must be timezone-aware.")
    return value


def validate_window(start: datetime, end: datetime, label: str = "Scheduled") -> None:
    validate_aware(start, f"{label.lower()}_start")
    validate_aware(end, f"{label.lower()}_end")
    if end <= start:
        raise ValidationError(f"{label} end time must be after start time.")


def validate_title(title: Any) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Title is required.")
    if len(title.strip()) > 200:
        raise ValidationError("Title is too long (max 200 chars).")
    return title.strip()


def validate_duration(minutes: Any) -> int:
    if isinstance(minutes, bool) or not isinstance(minutes, int):
        raise ValidationError("duration_minutes must be an integer.")
    if minutes < 0:
        raise ValidationError("duration_minutes cannot be negative.")
    return minutes


def validate_score(score: Any) -> Optional[float]:
    if score is None:
        return None
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise ValidationError("productivity_score must be a number.")
    return float(score)


def parse_enum(enum_cls: Type[E], value: Any, field: str) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"{field} must be one of: {allowed}.")


def parse_status(value: Any) -> TaskStatus:
    return parse_enum(TaskStatus, value, "status")


def parse_pattern(value: Any) -> RecurrencePattern:
    return parse_enum(RecurrencePattern, value, "recurrence_pattern")


def parse_reminder_type(value: Any) -> Optional[ReminderType]:
    if value is None:
        return None
    return parse_enum(ReminderType, value, "reminder_type")


def validate_patch_keys(patch: dict) -> None:
    if not patch:
        raise ValidationError("Nothing to update.")
    unknown = sorted(set(patch) - EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(unknown)}.")


def validate_transition(current: TaskStatus, target: TaskStatus) -> None:
    if current == target:
        return
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateTransition(f"Cannot move task from {current.value} to {target.value}.")


def validate_status_patch(current: TaskStatus, target: TaskStatus) -> None:
    """
    A plain update may only mark a task missed. in-progress and completed
    carry actual_start/actual_end bookkeeping and go through start/stop.
    """
    if current == target:
        return
    if target in (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED):
        verb = "start" if target == TaskStatus.IN_PROGRESS else "stop"
        raise InvalidStateTransition(f"Use {verb} to move a task to {target.value}.")
    validate_transition(current, target)
