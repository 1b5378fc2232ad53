"""
Conflict detection against the local event store.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session
import structlog

from ...core.timeutils import as_utc, local_parts, parse_hhmm
from ...database.models import CalendarEvent, Task
from ...schemas.calendar import WorkingHours
from ...schemas.scheduling import Conflict, ConflictType
from ...schemas.tasks import Priority

logger = structlog.get_logger(__name__)

PRIORITY_WEIGHT: Dict[Priority, int] = {
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}


def priority_weight(priority) -> int:
    try:
        return PRIORITY_WEIGHT[Priority(priority)]
    except ValueError:
        return PRIORITY_WEIGHT[Priority.MEDIUM]


def coerce_priority(value) -> Optional[Priority]:
    try:
        return Priority(value) if value else None
    except ValueError:
        return None


def compare_priorities(a, b) -> int:
    """Positive when ``a`` outranks ``b``."""
    return priority_weight(a) - priority_weight(b)


def can_displace_by_priority(new_priority, existing_priority) -> bool:
    return compare_priorities(new_priority, existing_priority) > 0


def slots_overlap(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> bool:
    return as_utc(start1) < as_utc(end2) and as_utc(start2) < as_utc(end1)


@dataclass
class EventConflict:
    """An existing event overlapping a proposed range."""
    event_id: str
    title: str
    calendar_id: str
    start: datetime
    end: datetime
    task_id: Optional[str] = None
    priority: Optional[Priority] = None
    buffer_role: Optional[str] = None

    @property
    def is_managed(self) -> bool:
        return bool(self.task_id)


@dataclass
class ConflictCheck:
    has_conflicts: bool
    conflicts: List[EventConflict] = field(default_factory=list)
    can_displace: bool = False
    displaceable: List[EventConflict] = field(default_factory=list)


def evaluate_conflicts(task_priority, conflicts: List[EventConflict]) -> ConflictCheck:
    """
    Decide whether every conflict can be displaced.

    Only lower-priority managed events are displaceable; a single external or
    equal-or-higher-priority event blocks the slot.
    """
    if not conflicts:
        return ConflictCheck(has_conflicts=False)

    displaceable = []
    all_displaceable = True
    for conflict in conflicts:
        if conflict.is_managed and conflict.priority and can_displace_by_priority(task_priority, conflict.priority):
            displaceable.append(conflict)
        else:
            all_displaceable = False

    return ConflictCheck(
        has_conflicts=True,
        conflicts=conflicts,
        can_displace=all_displaceable and bool(displaceable),
        displaceable=displaceable,
    )


def find_conflicts(db: Session, user_id: str, calendar_ids: Iterable[str], start: datetime, end: datetime,
                   exclude_task_id: Optional[str] = None) -> List[EventConflict]:
    """Non-cancelled stored events overlapping ``[start, end)``."""
    calendar_ids = list(calendar_ids)
    if not calendar_ids:
        return []

    rows = db.query(CalendarEvent).filter(
        CalendarEvent.user_id == user_id,
        CalendarEvent.calendar_id.in_(calendar_ids),
        CalendarEvent.status != "cancelled",
        CalendarEvent.start_time < end,
        CalendarEvent.end_time > start,
    ).all()

    # Buffer events carry no priority of their own; they inherit the task's
    linked_ids = {row.linked_task_id for row in rows if row.linked_task_id}
    task_priorities = {}
    if linked_ids:
        for task in db.query(Task).filter(Task.id.in_(linked_ids)).all():
            task_priorities[str(task.id)] = task.priority

    conflicts = []
    for row in rows:
        if exclude_task_id and row.linked_task_id == exclude_task_id:
            continue
        if row.transparent and not row.buffer_role:
            continue
        if not slots_overlap(start, end, row.start_time, row.end_time):
            continue
        priority = row.priority or task_priorities.get(row.linked_task_id or "")
        conflicts.append(EventConflict(
            event_id=row.provider_event_id,
            title=row.title or "Untitled Event",
            calendar_id=row.calendar_id,
            start=as_utc(row.start_time),
            end=as_utc(row.end_time),
            task_id=row.linked_task_id,
            priority=coerce_priority(priority),
            buffer_role=row.buffer_role,
        ))
    return conflicts


def check_conflicts(db: Session, user_id: str, task_priority, start: datetime, end: datetime,
                    calendar_ids: Iterable[str], exclude_task_id: Optional[str] = None) -> ConflictCheck:
    conflicts = find_conflicts(db, user_id, calendar_ids, start, end, exclude_task_id=exclude_task_id)
    result = evaluate_conflicts(task_priority, conflicts)
    if result.has_conflicts:
        logger.debug(
            "Conflicts found for slot",
            user_id=user_id,
            start=start.isoformat(),
            conflicts=len(result.conflicts),
            can_displace=result.can_displace
        )
    return result


def is_within_working_hours(start: datetime, end: datetime, working_hours: WorkingHours,
                            tz_name: str = "UTC") -> bool:
    start_day, start_hour, start_minute = local_parts(start, tz_name)
    end_day, end_hour, end_minute = local_parts(end, tz_name)
    if start_day != end_day:
        return False
    return (start_hour, start_minute) >= parse_hhmm(working_hours.start) and \
        (end_hour, end_minute) <= parse_hhmm(working_hours.end)


def describe_conflicts(check: ConflictCheck) -> List[Conflict]:
    """Schema view of a conflict check for API responses."""
    displaceable = {id(c) for c in check.displaceable}
    described = []
    for conflict in check.conflicts:
        if id(conflict) in displaceable:
            resolution = "Lower priority task can be displaced"
        elif conflict.is_managed:
            resolution = "Existing task has equal or higher priority"
        else:
            resolution = "External events cannot be moved"
        described.append(Conflict(
            type=ConflictType.BUFFER if conflict.buffer_role else ConflictType.OVERLAP,
            description=f'Overlaps with "{conflict.title}"',
            severity="warning" if id(conflict) in displaceable else "error",
            resolution=resolution,
            conflicting_event_id=conflict.event_id,
        ))
    return described
