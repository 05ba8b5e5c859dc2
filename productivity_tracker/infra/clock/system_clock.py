from __future__ import annotations

from datetime import datetime, timezone

from productivity_tracker.domain.common.ports import Clock


class SystemClock(Clock):
    """Wall clock. Always UTC; day boundaries are DayCalendar's job."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
