"""
Protected time: recurring ranges that are busy regardless of calendar data.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

from ...core.timeutils import as_utc, at_local_time, date_range, js_weekday, local_parts, parse_hhmm, utcnow
from ...schemas.scheduling import (
    CallReservation, Conflict, ConflictType, ProtectedSlotSpec, SchedulingPreferences
)
from ...schemas.tasks import Priority, SchedulableTask

DEFAULT_ADHOC_SLOT = ProtectedSlotSpec(
    id="default-adhoc",
    name="Ad-hoc calls",
    days_of_week=[1, 2, 3, 4, 5],
    start_time="15:00",
    end_time="16:00",
    allow_override_for_urgent=True,
)

DEFAULT_LUNCH_SLOT = ProtectedSlotSpec(
    id="default-lunch",
    name="Lunch",
    days_of_week=[1, 2, 3, 4, 5],
    start_time="12:00",
    end_time="13:00",
    allow_override_for_urgent=False,
)

CALL_RESERVATION_ID = "keep-free-for-calls"
URGENT_WINDOW = timedelta(hours=24)


@dataclass
class ProtectedCheck:
    protected: bool
    slot: Optional[ProtectedSlotSpec] = None
    can_override: bool = True
    reason: Optional[str] = None


@dataclass
class ProtectedInstance:
    """One concrete occurrence of a protected slot."""
    start: datetime
    end: datetime
    slot: ProtectedSlotSpec


def get_default_protected_slots() -> List[ProtectedSlotSpec]:
    return [DEFAULT_ADHOC_SLOT.model_copy(), DEFAULT_LUNCH_SLOT.model_copy()]


def call_reservation_slot(reservation: CallReservation) -> ProtectedSlotSpec:
    """Turn a keep-free-for-calls preference into an overridable protected slot."""
    hours, minutes = parse_hhmm(reservation.preferred_start)
    end_minutes = min(hours * 60 + minutes + reservation.duration_minutes, 23 * 60 + 59)
    return ProtectedSlotSpec(
        id=CALL_RESERVATION_ID,
        name="Calls",
        days_of_week=list(reservation.days_of_week),
        start_time=reservation.preferred_start,
        end_time=f"{end_minutes // 60:02d}:{end_minutes % 60:02d}",
        allow_override_for_urgent=True,
    )


def protected_from_model(row) -> ProtectedSlotSpec:
    return ProtectedSlotSpec(
        id=str(row.id),
        name=row.name,
        days_of_week=list(row.days or []),
        start_time=row.start_time,
        end_time=row.end_time,
        allow_override_for_urgent=bool(row.allow_override_for_urgent),
        enabled=bool(row.enabled),
    )


def resolve_protected_slots(preferences: SchedulingPreferences,
                            configured: Iterable[ProtectedSlotSpec] = ()) -> List[ProtectedSlotSpec]:
    """
    Configured slots, or the defaults when the user has none.

    A keep-free-for-calls preference replaces the default ad-hoc reservation.
    """
    slots = list(configured) or get_default_protected_slots()
    if preferences.keep_free_for_calls:
        slots = [s for s in slots if s.id != DEFAULT_ADHOC_SLOT.id]
        slots.append(call_reservation_slot(preferences.keep_free_for_calls))
    return slots


def get_protected_times(start_date: date, end_date: date, slots: Iterable[ProtectedSlotSpec],
                        tz_name: str = "UTC") -> List[ProtectedInstance]:
    """Expand enabled slots into concrete UTC ranges for every day of the range."""
    instances = []
    slots = [s for s in slots if s.enabled]
    for day in date_range(start_date, end_date):
        weekday = js_weekday(day)
        for slot in slots:
            if weekday not in slot.days_of_week:
                continue
            instances.append(ProtectedInstance(
                start=at_local_time(day, slot.start_time, tz_name),
                end=at_local_time(day, slot.end_time, tz_name),
                slot=slot,
            ))
    instances.sort(key=lambda i: i.start)
    return instances


def is_protected_time(start: datetime, end: datetime, slots: Iterable[ProtectedSlotSpec],
                      tz_name: str = "UTC") -> ProtectedCheck:
    start, end = as_utc(start), as_utc(end)
    first_day, _, _ = local_parts(start, tz_name)
    last_day, _, _ = local_parts(end, tz_name)
    for instance in get_protected_times(first_day, last_day, slots, tz_name):
        if start < instance.end and end > instance.start:
            slot = instance.slot
            return ProtectedCheck(
                protected=True,
                slot=slot,
                can_override=slot.allow_override_for_urgent,
                reason=f'Overlaps with "{slot.name}" ({slot.start_time}-{slot.end_time})',
            )
    return ProtectedCheck(protected=False)


def is_urgent_task(task: SchedulableTask, now: Optional[datetime] = None) -> bool:
    """High priority, or due within the next 24 hours."""
    if Priority(task.priority) == Priority.HIGH:
        return True
    if task.due_date:
        remaining = as_utc(task.due_date) - (now or utcnow())
        return timedelta(0) < remaining <= URGENT_WINDOW
    return False


def can_override_protected(task: SchedulableTask, slot: ProtectedSlotSpec) -> bool:
    return Priority(task.priority) == Priority.HIGH and slot.allow_override_for_urgent


def get_protected_conflicts(start: datetime, end: datetime, slots: Iterable[ProtectedSlotSpec],
                            task: Optional[SchedulableTask], tz_name: str = "UTC") -> List[Conflict]:
    result = is_protected_time(start, end, slots, tz_name)
    if not result.protected or result.slot is None:
        return []

    can_override = bool(task and can_override_protected(task, result.slot))
    if can_override:
        resolution = "High priority task can override this protected time"
    elif result.slot.allow_override_for_urgent:
        resolution = "Only high-priority urgent tasks can override this time"
    else:
        resolution = "This protected time cannot be overridden"
    return [Conflict(
        type=ConflictType.PROTECTED_SLOT,
        description=result.reason or f"Overlaps with protected time: {result.slot.name}",
        severity="warning" if can_override else "error",
        resolution=resolution,
    )]
