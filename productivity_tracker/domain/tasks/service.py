from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

from productivity_tracker.constants import (
    COLLECTION_TASKS,
    DEFAULT_CLEANUP_RETENTION_DAYS,
    DEFAULT_RECURRENCE_HORIZON_DAYS,
)
from productivity_tracker.domain.common.errors import (
    InvalidStateTransition,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from productivity_tracker.domain.common.ports import Clock, DocumentStore, IdGenerator
from productivity_tracker.domain.common.time import DayCalendar, minutes_between
from productivity_tracker.domain.rollup.service import DailyRollupMaintainer
from productivity_tracker.domain.tasks.models import (
    CreateTaskRequest,
    CreateTaskResult,
    Task,
    TaskQuery,
    TaskStatus,
    UpdateTaskRequest,
)
from productivity_tracker.domain.tasks.recurrence import RecurrenceExpander
from productivity_tracker.domain.tasks.rules import (
    parse_pattern,
    parse_reminder_type,
    parse_status,
    validate_aware,
    validate_duration,
    validate_patch_keys,
    validate_score,
    validate_status_patch,
    validate_title,
    validate_window,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# edits to these fields on a template re-run recurrence expansion
_TEMPLATE_FIELDS = frozenset({"title", "scheduled_start", "scheduled_end", "is_recurring", "recurrence_pattern"})


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    return dt.astimezone(timezone.utc) if dt is not None else None


def _optional_text(value: Any, field: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be text.")
    return value.strip() or None


class TaskService:
    """
    Task lifecycle: create/update/delete/start/stop. No sqlite, no transport.

    Every lookup is scoped by user_id; another user's task is reported as not
    found. The task write is authoritative once persisted: rollup and
    recurrence follow-ups are best-effort, a PersistenceError there is logged
    and never undoes the task write (rollups.resync repairs the drift later).
    """

    def __init__(
        self,
        store: DocumentStore,
        clock: Clock,
        ids: IdGenerator,
        calendar: DayCalendar,
        rollups: DailyRollupMaintainer,
        recurrence: RecurrenceExpander,
        horizon_days: int = DEFAULT_RECURRENCE_HORIZON_DAYS,
        retention_days: int = DEFAULT_CLEANUP_RETENTION_DAYS,
    ) -> None:
        self._store = store
        self._clock = clock
        self._ids = ids
        self._calendar = calendar
        self._rollups = rollups
        self._recurrence = recurrence
        self._horizon_days = horizon_days
        self._retention_days = retention_days

    async def _follow_up(self, what: str, step: Awaitable[T], warnings: Optional[List[str]] = None) -> Optional[T]:
        try:
            return await step
        except PersistenceError as e:
            logger.error(f"{what} failed: {e}", exc_info=True)
            if warnings is not None:
                warnings.append(f"{what} failed: {e}")
            return None

    async def _load(self, user_id: int, task_id: str) -> Task:
        doc = await self._store.find_one(COLLECTION_TASKS, {"_id": task_id, "user_id": user_id})
        if not doc:
            raise NotFoundError("Task not found.")
        return Task.from_document(doc)

    async def get(self, user_id: int, task_id: str) -> Task:
        return await self._load(user_id, task_id)

    async def list(self, query: TaskQuery) -> List[Task]:
        flt: Dict[str, Any] = {"user_id": query.user_id}
        if query.status is not None:
            flt["status"] = parse_status(query.status).value
        if query.category is not None:
            flt["category"] = query.category
        if query.is_recurring is not None:
            flt["is_recurring"] = bool(query.is_recurring)
        if query.start or query.end:
            flt["scheduled_start"] = {}
            if query.start:
                flt["scheduled_start"]["$gte"] = validate_aware(query.start, "start")
            if query.end:
                flt["scheduled_start"]["$lte"] = validate_aware(query.end, "end")
        docs = await self._store.find(COLLECTION_TASKS, flt, sort=[("scheduled_start", 1)])
        return [Task.from_document(d) for d in docs]

    async def create(self, req: CreateTaskRequest) -> CreateTaskResult:
        title = validate_title(req.title)
        validate_window(req.scheduled_start, req.scheduled_end)
        for field in ("actual_start", "actual_end"):
            if getattr(req, field) is not None:
                validate_aware(getattr(req, field), field)
        actual_duration = None
        if req.actual_start is not None and req.actual_end is not None:
            validate_window(req.actual_start, req.actual_end, "Actual")
            actual_duration = minutes_between(req.actual_start, req.actual_end)

        if req.duration_minutes is not None:
            duration = validate_duration(req.duration_minutes)
        else:
            duration = minutes_between(req.scheduled_start, req.scheduled_end)

        now = self._clock.now()
        task = Task(
            id=self._ids.new_id(),
            user_id=req.user_id,
            title=title,
            description=_optional_text(req.description, "description") or "",
            category=_optional_text(req.category, "category"),
            project=_optional_text(req.project, "project"),
            notes=_optional_text(req.notes, "notes"),
            scheduled_start=_utc(req.scheduled_start),
            scheduled_end=_utc(req.scheduled_end),
            duration_minutes=duration,
            actual_start=_utc(req.actual_start),
            actual_end=_utc(req.actual_end),
            actual_duration_minutes=actual_duration,
            status=parse_status(req.status),
            is_recurring=bool(req.is_recurring),
            recurrence_pattern=parse_pattern(req.recurrence_pattern),
            parent_id=None,
            reminder_type=parse_reminder_type(req.reminder_type),
            reminder_sent_at=None,
            productivity_score=validate_score(req.productivity_score),
            created_at=now,
            updated_at=now,
        )
        await self._store.insert(COLLECTION_TASKS, task.to_document())
        logger.info(f"Task created: user_id={task.user_id} task_id={task.id} day={self._calendar.day_key(task.scheduled_start)}")

        warnings: List[str] = []
        await self._follow_up("Rollup attach", self._rollups.attach(task), warnings)
        if task.status != TaskStatus.SCHEDULED:
            await self._follow_up("Rollup resync", self._rollups.resync(task.user_id, task.scheduled_start), warnings)

        occurrences: List[Task] = []
        if task.is_template:
            horizon_end = now + timedelta(days=self._horizon_days)
            occurrences = await self._follow_up(
                "Recurrence expansion", self.process_recurring(task.user_id, now, horizon_end), warnings
            ) or []

        return CreateTaskResult(task=task, occurrences=tuple(occurrences), warnings=tuple(warnings))

    def _collect_changes(self, task: Task, patch: Dict[str, Any]) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        if "title" in patch:
            changes["title"] = validate_title(patch["title"])
        if "description" in patch:
            changes["description"] = _optional_text(patch["description"], "description") or ""
        for field in ("category", "project", "notes"):
            if field in patch:
                changes[field] = _optional_text(patch[field], field)

        for field in ("scheduled_start", "scheduled_end"):
            if field in patch:
                changes[field] = _utc(validate_aware(patch[field], field))
        if "scheduled_start" in changes or "scheduled_end" in changes:
            start = changes.get("scheduled_start", task.scheduled_start)
            end = changes.get("scheduled_end", task.scheduled_end)
            validate_window(start, end)
            if "duration_minutes" not in patch:
                changes["duration_minutes"] = minutes_between(start, end)
        if "duration_minutes" in patch:
            changes["duration_minutes"] = validate_duration(patch["duration_minutes"])

        if "actual_start" in patch or "actual_end" in patch:
            for field in ("actual_start", "actual_end"):
                if field in patch:
                    value = patch[field]
                    changes[field] = _utc(validate_aware(value, field)) if value is not None else None
            actual_start = changes.get("actual_start", task.actual_start)
            actual_end = changes.get("actual_end", task.actual_end)
            if actual_start is not None and actual_end is not None:
                validate_window(actual_start, actual_end, "Actual")
                changes["actual_duration_minutes"] = minutes_between(actual_start, actual_end)
            else:
                changes["actual_duration_minutes"] = None

        if "status" in patch:
            target = parse_status(patch["status"])
            validate_status_patch(task.status, target)
            changes["status"] = target.value
        if "is_recurring" in patch:
            if not isinstance(patch["is_recurring"], bool):
                raise ValidationError("is_recurring must be true or false.")
            changes["is_recurring"] = patch["is_recurring"]
        if "recurrence_pattern" in patch:
            changes["recurrence_pattern"] = parse_pattern(patch["recurrence_pattern"]).value
        if "reminder_type" in patch:
            reminder = parse_reminder_type(patch["reminder_type"])
            changes["reminder_type"] = reminder.value if reminder else None
        if "productivity_score" in patch:
            changes["productivity_score"] = validate_score(patch["productivity_score"])
        return changes

    async def update(self, req: UpdateTaskRequest) -> Task:
        validate_patch_keys(req.patch)
        task = await self._load(req.user_id, req.task_id)
        changes = self._collect_changes(task, req.patch)
        now = self._clock.now()
        changes["updated_at"] = now

        # status guard: a concurrent start/stop between load and write must not be overwritten
        doc = await self._store.update_one(
            COLLECTION_TASKS,
            {"_id": task.id, "user_id": task.user_id, "status": task.status.value},
            {"$set": changes},
        )
        if doc is None:
            current = await self._load(req.user_id, req.task_id)
            raise InvalidStateTransition(f"Task changed to {current.status.value} while updating; retry.")
        updated = Task.from_document(doc)

        old_day = self._calendar.day_key(task.scheduled_start)
        new_day = self._calendar.day_key(updated.scheduled_start)
        if old_day != new_day:
            logger.info(f"Task rescheduled: task_id={task.id} {old_day} -> {new_day}")
            await self._follow_up("Rollup detach", self._rollups.detach(task.user_id, task.id, task.scheduled_start))
            await self._follow_up("Rollup attach", self._rollups.attach(updated))
            await self._follow_up(
                "Rollup resync",
                self._rollups.resync_many(task.user_id, [task.scheduled_start, updated.scheduled_start]),
            )
        else:
            await self._follow_up("Rollup resync", self._rollups.resync(task.user_id, updated.scheduled_start))

        if task.is_template and _TEMPLATE_FIELDS.intersection(req.patch):
            await self._follow_up("Recurrence refresh", self._refresh_occurrences(task, updated, now))
        return updated

    async def _refresh_occurrences(self, before: Task, after: Task, now: datetime) -> None:
        """Replace the pending occurrences of an edited template with ones built from its new fields."""
        discarded = await self._recurrence.discard_pending_occurrences(before, now)
        if discarded:
            await self._rollups.resync_many(before.user_id, [t.scheduled_start for t in discarded])
        if after.is_template:
            await self.process_recurring(after.user_id, now, now + timedelta(days=self._horizon_days))

    async def delete(self, user_id: int, task_id: str) -> Task:
        task = await self._load(user_id, task_id)
        await self._follow_up("Rollup detach", self._rollups.detach(user_id, task.id, task.scheduled_start))
        deleted = await self._store.delete_one(COLLECTION_TASKS, {"_id": task.id, "user_id": user_id})
        if not deleted:
            raise NotFoundError("Task not found.")
        await self._follow_up("Rollup resync", self._rollups.resync(user_id, task.scheduled_start))
        logger.info(f"Task deleted: user_id={user_id} task_id={task.id}")
        return task

    async def start(self, user_id: int, task_id: str) -> Task:
        task = await self._load(user_id, task_id)
        if task.status == TaskStatus.COMPLETED:
            raise InvalidStateTransition("Cannot start a completed task.")
        if task.status == TaskStatus.MISSED:
            raise InvalidStateTransition("Cannot start a missed task.")

        now = self._clock.now()
        doc = await self._store.update_one(
            COLLECTION_TASKS,
            {
                "_id": task.id,
                "user_id": user_id,
                "status": {"$in": [TaskStatus.SCHEDULED.value, TaskStatus.IN_PROGRESS.value]},
            },
            {
                "$set": {
                    "status": TaskStatus.IN_PROGRESS.value,
                    "actual_start": now,
                    "actual_end": None,
                    "actual_duration_minutes": None,
                    "updated_at": now,
                }
            },
        )
        if doc is None:
            raise InvalidStateTransition("Task can no longer be started.")
        return Task.from_document(doc)

    async def stop(self, user_id: int, task_id: str) -> Task:
        task = await self._load(user_id, task_id)
        if task.status != TaskStatus.IN_PROGRESS:
            raise InvalidStateTransition("Task is not in progress.")

        now = self._clock.now()
        actual_duration = None
        if task.actual_start is not None:
            if now <= task.actual_start:
                raise ValidationError("Cannot stop a task at or before the instant it was started.")
            actual_duration = minutes_between(task.actual_start, now)

        doc = await self._store.update_one(
            COLLECTION_TASKS,
            {"_id": task.id, "user_id": user_id, "status": TaskStatus.IN_PROGRESS.value},
            {
                "$set": {
                    "status": TaskStatus.COMPLETED.value,
                    "actual_end": now,
                    "actual_duration_minutes": actual_duration,
                    "updated_at": now,
                }
            },
        )
        if doc is None:
            raise InvalidStateTransition("Task is not in progress.")
        stopped = Task.from_document(doc)
        await self._follow_up("Rollup resync", self._rollups.resync(user_id, stopped.scheduled_start))
        return stopped

    async def sweep_missed(self, user_id: int) -> List[Task]:
        """scheduled -> missed for tasks whose window ended without being started."""
        now = self._clock.now()
        docs = await self._store.find(
            COLLECTION_TASKS,
            {"user_id": user_id, "status": TaskStatus.SCHEDULED.value, "scheduled_end": {"$lt": now}},
        )
        missed: List[Task] = []
        for d in docs:
            doc = await self._store.update_one(
                COLLECTION_TASKS,
                {"_id": d["_id"], "user_id": user_id, "status": TaskStatus.SCHEDULED.value},
                {"$set": {"status": TaskStatus.MISSED.value, "updated_at": now}},
            )
            if doc is not None:
                missed.append(Task.from_document(doc))
        if missed:
            logger.info(f"Missed sweep: user_id={user_id} marked={len(missed)}")
            await self._follow_up(
                "Rollup resync", self._rollups.resync_many(user_id, [t.scheduled_start for t in missed])
            )
        return missed

    async def process_recurring(self, user_id: int, start: datetime, end: datetime) -> List[Task]:
        """Persist new occurrences over [start, end] and sync the rollups of the days they land on."""
        generated = await self._recurrence.process_recurring_tasks(user_id, start, end)
        if not generated:
            return []
        await self._store.insert_many(COLLECTION_TASKS, [t.to_document() for t in generated])
        for occurrence in generated:
            await self._follow_up("Rollup attach", self._rollups.attach(occurrence))
        await self._follow_up(
            "Rollup resync", self._rollups.resync_many(user_id, [t.scheduled_start for t in generated])
        )
        return generated

    async def cleanup_old_recurring(self, user_id: int, days_to_keep: Optional[int] = None) -> int:
        keep = days_to_keep if days_to_keep is not None else self._retention_days
        deleted = await self._follow_up(
            "Recurring cleanup", self._recurrence.cleanup_old_recurring(user_id, keep)
        )
        if not deleted:
            return 0
        await self._follow_up(
            "Rollup resync", self._rollups.resync_many(user_id, [t.scheduled_start for t in deleted])
        )
        return len(deleted)
