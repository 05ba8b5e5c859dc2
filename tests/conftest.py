from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from productivity_tracker.config import Settings
from productivity_tracker.domain.common.ports import Clock
from productivity_tracker.domain.tasks.models import CreateTaskRequest

# Monday 2024-03-04 09:00 UTC
T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


class FixedClock(Clock):
    def __init__(self, now: datetime) -> None:
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now

    def advance(self, **kwargs) -> None:
        self._now = self._now + timedelta(**kwargs)


def task_request(user_id: int = 1, title: str = "Task", start: datetime = T0, minutes: int = 60, **kwargs) -> CreateTaskRequest:
    return CreateTaskRequest(
        user_id=user_id,
        title=title,
        scheduled_start=start,
        scheduled_end=start + timedelta(minutes=minutes),
        **kwargs,
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(db_path=tmp_path / "data" / "test.db")


@pytest.fixture
def clock():
    return FixedClock(T0)
