"""
Single-task calendar actions: schedule, unschedule and reschedule.
"""
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session
import structlog

from ..core.exceptions import BrainDumperError, TaskNotFound
from ..core.timeutils import utcnow
from ..database.models import Task, User
from ..schemas.scheduling import (
    Conflict, RescheduleTaskRequest, ScheduleActionResult, ScheduleTaskRequest, SlotRange
)
from ..schemas.tasks import SchedulableTask, SyncStatus
from .availability import availability_service
from .event_builder import BUFFER_AFTER, BUFFER_BEFORE, build_buffer_event, build_task_event, update_event_times
from .event_store import remove_event, upsert_event
from .google_calendar import GoogleCalendarClient
from .preferences import load_preferences, load_protected_slots, load_rules
from .provider_events import parse_provider_event
from .scheduling.conflicts import check_conflicts, describe_conflicts
from .scheduling.protected import get_protected_conflicts
from .scheduling.rules import get_effective_rules

logger = structlog.get_logger(__name__)

ALREADY_SCHEDULED_MESSAGE = "Task is already scheduled. Use reschedule to move it."
NOT_SCHEDULED_MESSAGE = "Task is not scheduled on the calendar"
NOT_SCHEDULED_FOR_RESCHEDULE_MESSAGE = "Task is not scheduled. Use schedule to add it to the calendar."
CONFLICTS_MESSAGE = "Time slot has conflicts. Use force=true to override or use the proposal flow."
RESCHEDULE_CONFLICTS_MESSAGE = "New time slot has conflicts. Use force=true to override."


def to_schedulable(task: Task) -> SchedulableTask:
    return SchedulableTask.model_validate(task)


class TaskActionService:
    """Writes task placements to the provider and mirrors them locally."""

    def __init__(self, client_factory: Optional[Callable[[Session, str], GoogleCalendarClient]] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.client_factory = client_factory or GoogleCalendarClient.for_user
        self.clock = clock

    def get_task(self, db: Session, user_id: str, task_id: str) -> Task:
        task = db.query(Task).filter(Task.id == task_id, Task.user_id == user_id).first()
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def _timezone(self, db: Session, user_id: str) -> str:
        user = db.query(User).filter(User.id == user_id).first()
        return load_preferences(user).timezone

    async def _insert(self, db: Session, client: GoogleCalendarClient, user_id: str,
                      calendar_id: str, body: dict) -> str:
        created = await client.insert_event(calendar_id, body)
        event_id = created.get("id")
        if not event_id:
            raise BrainDumperError("Failed to create calendar event: no event ID returned")
        upsert_event(db, user_id, calendar_id, parse_provider_event(created))
        return event_id

    async def _create_buffers(self, db: Session, client: GoogleCalendarClient, user_id: str,
                              task: SchedulableTask, slot: SlotRange, calendar_id: str,
                              buffer_before: int, buffer_after: int,
                              timezone: str) -> Tuple[Optional[str], Optional[str]]:
        """Buffer events are best effort; a failed buffer never fails the placement."""
        created = {BUFFER_BEFORE: None, BUFFER_AFTER: None}
        plan = [(BUFFER_BEFORE, buffer_before, slot.start), (BUFFER_AFTER, buffer_after, slot.end)]
        for role, minutes, reference in plan:
            if not minutes or minutes <= 0:
                continue
            try:
                body = build_buffer_event(task, role, minutes, reference, timezone)
                created[role] = await self._insert(db, client, user_id, calendar_id, body)
            except Exception as e:
                logger.error("Failed to create buffer event", task_id=task.id, buffer_type=role, error=str(e))
        return created[BUFFER_BEFORE], created[BUFFER_AFTER]

    async def _delete_quietly(self, db: Session, client: GoogleCalendarClient, user_id: str,
                              calendar_id: str, event_id: Optional[str]) -> None:
        if not event_id:
            return
        try:
            await client.delete_event(calendar_id, event_id)
            remove_event(db, user_id, calendar_id, event_id)
        except Exception as e:
            logger.error("Failed to delete buffer event", calendar_id=calendar_id, event_id=event_id, error=str(e))

    async def write_schedule(self, db: Session, user_id: str, task: Task, slot: SlotRange, calendar_id: str,
                             buffer_before: int = 0, buffer_after: int = 0,
                             timezone: Optional[str] = None) -> str:
        """Create the task event (and buffers) and write the schedule back onto the task."""
        timezone = timezone or self._timezone(db, user_id)
        client = self.client_factory(db, user_id)
        schedulable = to_schedulable(task)

        event_id = await self._insert(db, client, user_id, calendar_id, build_task_event(schedulable, slot, timezone))
        before_id, after_id = await self._create_buffers(
            db, client, user_id, schedulable, slot, calendar_id, buffer_before, buffer_after, timezone
        )

        task.calendar_event_id = event_id
        task.calendar_id = calendar_id
        task.scheduled_start = slot.start
        task.scheduled_end = slot.end
        task.buffer_before_event_id = before_id
        task.buffer_after_event_id = after_id
        task.sync_status = SyncStatus.SYNCED.value
        task.unscheduled_reason = None
        task.unscheduled_at = None
        task.rescheduled_externally = False
        db.commit()

        availability_service.invalidate_user(user_id)
        logger.info(
            "Task scheduled",
            user_id=user_id,
            task_id=str(task.id),
            calendar_id=calendar_id,
            event_id=event_id,
            start=slot.start.isoformat()
        )
        return event_id

    async def clear_schedule(self, db: Session, user_id: str, task: Task) -> None:
        """Delete the task's events (already-deleted ones are fine) and clear its schedule."""
        calendar_id = task.calendar_id or "primary"
        client = self.client_factory(db, user_id)

        await client.delete_event(calendar_id, task.calendar_event_id)
        remove_event(db, user_id, calendar_id, task.calendar_event_id)
        await self._delete_quietly(db, client, user_id, calendar_id, task.buffer_before_event_id)
        await self._delete_quietly(db, client, user_id, calendar_id, task.buffer_after_event_id)

        task.calendar_event_id = None
        task.calendar_id = None
        task.scheduled_start = None
        task.scheduled_end = None
        task.buffer_before_event_id = None
        task.buffer_after_event_id = None
        task.sync_status = SyncStatus.PENDING.value
        db.commit()
        availability_service.invalidate_user(user_id)

    async def move_schedule(self, db: Session, user_id: str, task: Task, slot: SlotRange,
                            update_buffers: bool = True, timezone: Optional[str] = None) -> None:
        """Patch the task event to ``slot`` and rebuild its buffers."""
        timezone = timezone or self._timezone(db, user_id)
        calendar_id = task.calendar_id or "primary"
        client = self.client_factory(db, user_id)
        schedulable = to_schedulable(task)

        patched = await client.patch_event(
            calendar_id, task.calendar_event_id, update_event_times({}, slot, timezone)
        )
        if patched.get("id"):
            upsert_event(db, user_id, calendar_id, parse_provider_event(patched))

        if update_buffers:
            await self._delete_quietly(db, client, user_id, calendar_id, task.buffer_before_event_id)
            await self._delete_quietly(db, client, user_id, calendar_id, task.buffer_after_event_id)
            rule = get_effective_rules(schedulable, load_rules(db, user_id))
            before_id, after_id = await self._create_buffers(
                db, client, user_id, schedulable, slot, calendar_id,
                rule.buffer_before, rule.buffer_after, timezone
            )
            task.buffer_before_event_id = before_id
            task.buffer_after_event_id = after_id

        task.scheduled_start = slot.start
        task.scheduled_end = slot.end
        task.sync_status = SyncStatus.SYNCED.value
        task.rescheduled_externally = False
        db.commit()
        availability_service.invalidate_user(user_id)

    def _slot_conflicts(self, db: Session, user_id: str, task: Task, slot: SlotRange,
                        calendar_id: str) -> List[Conflict]:
        """Blocking conflicts for a manual placement; the task's own events are ignored."""
        user = db.query(User).filter(User.id == user_id).first()
        preferences = load_preferences(user)
        check = check_conflicts(
            db, user_id, task.priority, slot.start, slot.end, [calendar_id], exclude_task_id=str(task.id)
        )
        conflicts = describe_conflicts(check)
        protected = load_protected_slots(db, user_id, preferences)
        conflicts.extend(
            c for c in get_protected_conflicts(slot.start, slot.end, protected, to_schedulable(task), preferences.timezone)
            if c.severity == "error"
        )
        return conflicts

    async def schedule_task(self, db: Session, user_id: str, task_id: str,
                            request: ScheduleTaskRequest) -> ScheduleActionResult:
        task = self.get_task(db, user_id, task_id)
        if task.calendar_event_id:
            return ScheduleActionResult(success=False, task_id=task_id, message=ALREADY_SCHEDULED_MESSAGE)

        user = db.query(User).filter(User.id == user_id).first()
        preferences = load_preferences(user)
        calendar_id = request.calendar_id or preferences.default_calendar_id

        if not request.force:
            conflicts = self._slot_conflicts(db, user_id, task, request.slot, calendar_id)
            if conflicts:
                return ScheduleActionResult(
                    success=False, task_id=task_id, conflicts=conflicts, message=CONFLICTS_MESSAGE
                )

        buffer_before = buffer_after = 0
        if request.include_buffers:
            rule = get_effective_rules(to_schedulable(task), load_rules(db, user_id))
            buffer_before, buffer_after = rule.buffer_before, rule.buffer_after

        try:
            event_id = await self.write_schedule(
                db, user_id, task, request.slot, calendar_id,
                buffer_before=buffer_before, buffer_after=buffer_after, timezone=preferences.timezone
            )
        except Exception as e:
            db.rollback()
            logger.error("Failed to schedule task", user_id=user_id, task_id=task_id, error=str(e))
            raise

        return ScheduleActionResult(
            success=True,
            task_id=task_id,
            calendar_event_id=event_id,
            calendar_id=calendar_id,
            scheduled_start=request.slot.start,
            scheduled_end=request.slot.end,
        )

    async def unschedule_task(self, db: Session, user_id: str, task_id: str) -> ScheduleActionResult:
        task = self.get_task(db, user_id, task_id)
        if not task.calendar_event_id:
            return ScheduleActionResult(success=False, task_id=task_id, message=NOT_SCHEDULED_MESSAGE)

        try:
            await self.clear_schedule(db, user_id, task)
        except Exception as e:
            db.rollback()
            logger.error("Failed to unschedule task", user_id=user_id, task_id=task_id, error=str(e))
            raise

        logger.info("Task unscheduled", user_id=user_id, task_id=task_id)
        return ScheduleActionResult(success=True, task_id=task_id)

    async def reschedule_task(self, db: Session, user_id: str, task_id: str,
                              request: RescheduleTaskRequest) -> ScheduleActionResult:
        task = self.get_task(db, user_id, task_id)
        if not task.calendar_event_id:
            return ScheduleActionResult(
                success=False, task_id=task_id, message=NOT_SCHEDULED_FOR_RESCHEDULE_MESSAGE
            )

        calendar_id = task.calendar_id or "primary"
        if not request.force:
            conflicts = self._slot_conflicts(db, user_id, task, request.slot, calendar_id)
            if conflicts:
                return ScheduleActionResult(
                    success=False, task_id=task_id, conflicts=conflicts, message=RESCHEDULE_CONFLICTS_MESSAGE
                )

        try:
            await self.move_schedule(db, user_id, task, request.slot)
        except Exception as e:
            db.rollback()
            logger.error("Failed to reschedule task", user_id=user_id, task_id=task_id, error=str(e))
            raise

        logger.info("Task rescheduled", user_id=user_id, task_id=task_id, start=request.slot.start.isoformat())
        return ScheduleActionResult(
            success=True,
            task_id=task_id,
            calendar_event_id=task.calendar_event_id,
            calendar_id=calendar_id,
            scheduled_start=request.slot.start,
            scheduled_end=request.slot.end,
        )


task_action_service = TaskActionService()
