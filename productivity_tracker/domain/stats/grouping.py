"""
Grouping keys for reports, one function per GroupBy variant.

Time-based keys are taken in the engine timezone from the task's actual
start, falling back to its scheduled start.
"""
from __future__ import annotations

from typing import Callable, Dict

from productivity_tracker.constants import (
    HEATMAP_INTENSITY_THRESHOLDS,
    HEATMAP_MAX_INTENSITY,
    NO_CATEGORY_KEY,
    NO_PROJECT_KEY,
)
from productivity_tracker.domain.common.time import DayCalendar
from productivity_tracker.domain.stats.models import GroupBy
from productivity_tracker.domain.tasks.models import Task

KeyFunc = Callable[[Task, DayCalendar], str]


def _anchor(task: Task):
    return task.actual_start or task.scheduled_start


def day_key(task: Task, calendar: DayCalendar) -> str:
    return calendar.day_key(_anchor(task))


def week_key(task: Task, calendar: DayCalendar) -> str:
    return calendar.iso_week_key(_anchor(task))


def month_key(task: Task, calendar: DayCalendar) -> str:
    return calendar.month_key(_anchor(task))


def project_key(task: Task, calendar: DayCalendar) -> str:
    return task.project or NO_PROJECT_KEY


def category_key(task: Task, calendar: DayCalendar) -> str:
    return task.category or NO_CATEGORY_KEY


KEY_FUNCS: Dict[GroupBy, KeyFunc] = {
    GroupBy.DAY: day_key,
    GroupBy.WEEK: week_key,
    GroupBy.MONTH: month_key,
    GroupBy.PROJECT: project_key,
    GroupBy.CATEGORY: category_key,
}


def key_func(group_by: GroupBy) -> KeyFunc:
    return KEY_FUNCS[GroupBy(group_by)]


def intensity_for_hours(hours: float) -> int:
    """<1h -> 1, <3h -> 2, <5h -> 3, <8h -> 4, else 5."""
    for bound, level in HEATMAP_INTENSITY_THRESHOLDS:
        if hours < bound:
            return level
    return HEATMAP_MAX_INTENSITY
