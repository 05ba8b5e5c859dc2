from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from productivity_tracker.config import Settings, load_settings
from productivity_tracker.constants import COLLECTION_TASKS
from productivity_tracker.domain.common.errors import DomainError
from productivity_tracker.domain.common.ports import Clock, IdGenerator
from productivity_tracker.domain.common.time import DayCalendar
from productivity_tracker.domain.rollup.service import DailyRollupMaintainer
from productivity_tracker.domain.stats.service import StatisticsAggregator
from productivity_tracker.domain.tasks.recurrence import RecurrenceExpander
from productivity_tracker.domain.tasks.reminders import ReminderSelector
from productivity_tracker.domain.tasks.service import TaskService
from productivity_tracker.infra.clock.system_clock import SystemClock
from productivity_tracker.infra.db.connection import Database
from productivity_tracker.infra.db.document_sqlite import SqliteDocumentStore
from productivity_tracker.infra.ids.uuid_gen import UuidGenerator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Engine:
    settings: Settings
    clock: Clock
    calendar: DayCalendar
    store: SqliteDocumentStore
    tasks: TaskService
    recurrence: RecurrenceExpander
    rollups: DailyRollupMaintainer
    stats: StatisticsAggregator
    reminders: ReminderSelector


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - [PID:%(process)d] - %(message)s'
    )


async def build_engine(
    settings: Settings,
    clock: Optional[Clock] = None,
    ids: Optional[IdGenerator] = None,
) -> Engine:
    """Wire store, calendar and services. Applies pending migrations."""
    clock = clock or SystemClock()
    ids = ids or UuidGenerator()
    os.makedirs(os.path.dirname(str(settings.db_path)) or ".", exist_ok=True)

    store = SqliteDocumentStore(Database(str(settings.db_path)), clock, ids)
    await store.init()

    calendar = DayCalendar(settings.timezone)
    rollups = DailyRollupMaintainer(store, clock, calendar)
    recurrence = RecurrenceExpander(store, clock, ids, calendar)
    tasks = TaskService(
        store,
        clock,
        ids,
        calendar,
        rollups,
        recurrence,
        horizon_days=settings.recurrence_horizon_days,
        retention_days=settings.cleanup_retention_days,
    )
    return Engine(
        settings=settings,
        clock=clock,
        calendar=calendar,
        store=store,
        tasks=tasks,
        recurrence=recurrence,
        rollups=rollups,
        stats=StatisticsAggregator(store, clock, calendar),
        reminders=ReminderSelector(store, clock, calendar, settings.reminder_lookahead_minutes),
    )


async def _owners(engine: Engine) -> List[int]:
    rows = await engine.store.aggregate(
        COLLECTION_TASKS,
        [{"$group": {"_id": "$user_id"}}, {"$sort": {"_id": 1}}],
    )
    return [int(r["_id"]) for r in rows if r["_id"] is not None]


async def run_maintenance(engine: Engine) -> Dict[str, int]:
    """
    One maintenance pass over every owner: expand recurring templates,
    mark overdue tasks missed, clean up old occurrences, log due reminders.

    Meant to be triggered externally (cron). A failure for one owner is
    logged and the pass moves on to the next.
    """
    totals = {"owners": 0, "occurrences": 0, "missed": 0, "cleaned": 0, "reminders": 0}
    now = engine.clock.now()
    horizon_end = now + timedelta(days=engine.settings.recurrence_horizon_days)
    for user_id in await _owners(engine):
        totals["owners"] += 1
        try:
            totals["occurrences"] += len(await engine.tasks.process_recurring(user_id, now, horizon_end))
            totals["missed"] += len(await engine.tasks.sweep_missed(user_id))
            totals["cleaned"] += await engine.tasks.cleanup_old_recurring(user_id)
            totals["reminders"] += len(await engine.reminders.process_reminders(user_id))
        except DomainError:
            logger.error(f"Maintenance failed for user_id={user_id}", exc_info=True)
    logger.info(
        "Maintenance done: owners=%s occurrences=%s missed=%s cleaned=%s reminders=%s",
        totals["owners"], totals["occurrences"], totals["missed"], totals["cleaned"], totals["reminders"],
    )
    return totals


async def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    pid = os.getpid()
    logger.info(f"Maintenance starting - PID: {pid}")
    try:
        engine = await build_engine(settings)
        await run_maintenance(engine)
    except Exception:
        logger.error(f"Maintenance crashed - PID: {pid}", exc_info=True)
        raise
    finally:
        logger.info(f"Maintenance shutdown complete - PID: {pid}")


if __name__ == "__main__":
    asyncio.run(main())
