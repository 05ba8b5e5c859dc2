from dataclasses import dataclass
import logging
import os
from pathlib import Path

from productivity_tracker.constants import (
    DEFAULT_CLEANUP_RETENTION_DAYS,
    DEFAULT_DB_PATH,
    DEFAULT_RECURRENCE_HORIZON_DAYS,
    DEFAULT_REMINDER_LOOKAHEAD_MINUTES,
    DEFAULT_TIMEZONE,
)
from productivity_tracker.domain.common.time import DayCalendar

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass


@dataclass(frozen=True)
class Settings:
    db_path: Path
    timezone: str = DEFAULT_TIMEZONE
    recurrence_horizon_days: int = DEFAULT_RECURRENCE_HORIZON_DAYS
    cleanup_retention_days: int = DEFAULT_CLEANUP_RETENTION_DAYS
    reminder_lookahead_minutes: int = DEFAULT_REMINDER_LOOKAHEAD_MINUTES
    log_level: str = "INFO"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise RuntimeError(f"{name} must be positive, got {value}")
    return value


def load_settings() -> Settings:
    db_raw = os.getenv("DB_PATH", DEFAULT_DB_PATH).strip() or DEFAULT_DB_PATH
    tz = os.getenv("TZ", DEFAULT_TIMEZONE).strip() or DEFAULT_TIMEZONE
    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    try:
        DayCalendar(tz)
    except ValueError:
        raise RuntimeError(f"TZ is not a known timezone: {tz!r}")
    if not isinstance(logging.getLevelName(log_level), int):
        raise RuntimeError(f"LOG_LEVEL is not a logging level: {log_level!r}")

    # db_path stays relative; main creates the parent directory
    return Settings(
        db_path=Path(db_raw),
        timezone=tz,
        recurrence_horizon_days=_env_int("RECURRENCE_HORIZON_DAYS", DEFAULT_RECURRENCE_HORIZON_DAYS),
        cleanup_retention_days=_env_int("CLEANUP_RETENTION_DAYS", DEFAULT_CLEANUP_RETENTION_DAYS),
        reminder_lookahead_minutes=_env_int("REMINDER_LOOKAHEAD_MINUTES", DEFAULT_REMINDER_LOOKAHEAD_MINUTES),
        log_level=log_level,
    )
