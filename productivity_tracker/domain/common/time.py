from __future__ import annotations

import calendar
import math
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"naive datetime not allowed: {value.isoformat()}")
    return value


def to_iso(value: datetime) -> str:
    return ensure_aware(value).isoformat()


def from_iso(text: str) -> datetime:
    """Parse ISO-8601 text. A trailing Z and offset-less text both read as UTC."""
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from start to end, halves rounded up."""
    seconds = (end - start).total_seconds()
    return int(math.floor(seconds / 60.0 + 0.5))


def add_months(d: date, months: int) -> date:
    """Shift a date by calendar months, clamping to the last day of the target month."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(d.day, last_day))


class DayCalendar:
    """
    Day boundaries for the whole engine.

    One timezone decides what a "calendar day" is. Rollup keys, task range
    queries, recurrence stepping and report grouping all go through the same
    instance, so a task can never land on a different day than its rollup.
    Instants handed back are always UTC.
    """

    def __init__(self, tz_name: str = "UTC") -> None:
        try:
            self._tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {tz_name}") from e
        self.tz_name = tz_name

    def local(self, dt: datetime) -> datetime:
        return ensure_aware(dt).astimezone(self._tz)

    def local_date(self, dt: datetime) -> date:
        return self.local(dt).date()

    def day_key(self, dt: datetime) -> str:
        return self.local_date(dt).isoformat()

    def start_of_date(self, d: date) -> datetime:
        return datetime.combine(d, time.min, tzinfo=self._tz).astimezone(timezone.utc)

    def day_start(self, dt: datetime) -> datetime:
        """Midnight (local) of the day containing dt."""
        return self.start_of_date(self.local_date(dt))

    def day_bounds(self, dt: datetime) -> tuple[datetime, datetime]:
        """[start, end) of the day containing dt."""
        d = self.local_date(dt)
        return self.start_of_date(d), self.start_of_date(d + timedelta(days=1))

    def shift(self, dt: datetime, days: int = 0, months: int = 0) -> datetime:
        """Move dt by whole days/months keeping its local wall-clock time."""
        local = self.local(dt)
        d = add_months(local.date(), months) if months else local.date()
        d = d + timedelta(days=days)
        wall = datetime.combine(d, local.time(), tzinfo=self._tz)
        return wall.astimezone(timezone.utc)

    def week_start(self, dt: datetime) -> datetime:
        d = self.local_date(dt)
        return self.start_of_date(d - timedelta(days=d.weekday()))

    def month_start(self, dt: datetime) -> datetime:
        return self.start_of_date(self.local_date(dt).replace(day=1))

    def iso_week_key(self, dt: datetime) -> str:
        year, week, _ = self.local_date(dt).isocalendar()
        return f"{year}-W{week:02d}"

    def month_key(self, dt: datetime) -> str:
        return self.local(dt).strftime("%Y-%m")
