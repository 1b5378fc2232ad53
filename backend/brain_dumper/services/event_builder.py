"""
Google Calendar event payloads for scheduled tasks and their buffers.
"""
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Tuple

from ..core.timeutils import as_utc, to_iso
from ..schemas.scheduling import SlotRange
from ..schemas.tasks import Priority, SchedulableTask

# Private extended property keys carried by every managed event
TASK_ID_KEY = "brainDumperTaskId"
BUFFER_TYPE_KEY = "brainDumperBufferType"
PRIORITY_KEY = "brainDumperPriority"
VERSION_KEY = "brainDumperVersion"
EVENT_FORMAT_VERSION = "1"

BUFFER_BEFORE = "before"
BUFFER_AFTER = "after"

PRIORITY_COLORS = {
    Priority.HIGH: "11",
    Priority.MEDIUM: "5",
    Priority.LOW: "9",
}
DEFAULT_COLOR = "8"
BUFFER_COLOR = "8"

PRIORITY_REMINDERS = {
    Priority.HIGH: [30, 10],
    Priority.MEDIUM: [15],
    Priority.LOW: [5],
}
DEFAULT_REMINDERS = [10]


def _priority(value) -> Optional[Priority]:
    try:
        return Priority(value)
    except ValueError:
        return None


def get_color_for_priority(priority) -> str:
    return PRIORITY_COLORS.get(_priority(priority), DEFAULT_COLOR)


def get_reminders_for_priority(priority) -> list:
    minutes = PRIORITY_REMINDERS.get(_priority(priority), DEFAULT_REMINDERS)
    return [{"method": "popup", "minutes": m} for m in minutes]


def build_event_summary(task: SchedulableTask) -> str:
    if task.task_type:
        return f"[{task.task_type.value}] {task.content}"
    return task.content


def build_event_description(task: SchedulableTask) -> str:
    lines = [
        task.content,
        "",
        "--- Brain Dumper Task ---",
        f"Priority: {Priority(task.priority).value}",
    ]
    if task.time_estimate:
        lines.append(f"Estimated time: {task.time_estimate} minutes")
    if task.due_date:
        lines.append(f"Due: {to_iso(task.due_date)}")
    lines.extend([
        "",
        "This event was created by Brain Dumper.",
        "Do not modify the extended properties.",
    ])
    return "\n".join(lines)


def _event_time(value: datetime, timezone: str) -> Dict[str, str]:
    return {"dateTime": to_iso(value), "timeZone": timezone}


def build_task_event(task: SchedulableTask, slot: SlotRange, timezone: str = "UTC") -> Dict[str, Any]:
    """Event body for a task placed at ``slot``."""
    priority = Priority(task.priority).value
    return {
        "summary": build_event_summary(task),
        "description": build_event_description(task),
        "start": _event_time(slot.start, timezone),
        "end": _event_time(slot.end, timezone),
        "colorId": get_color_for_priority(task.priority),
        "status": "confirmed",
        "extendedProperties": {
            "private": {
                TASK_ID_KEY: task.id,
                PRIORITY_KEY: priority,
                VERSION_KEY: EVENT_FORMAT_VERSION,
            }
        },
        "reminders": {
            "useDefault": False,
            "overrides": get_reminders_for_priority(task.priority),
        },
    }


def build_buffer_event(task: SchedulableTask, buffer_type: str, duration_minutes: int,
                       reference_time: datetime, timezone: str = "UTC") -> Dict[str, Any]:
    """
    Prep or wind-down event adjacent to a task.

    A ``before`` buffer ends at ``reference_time`` (the task start); an
    ``after`` buffer starts at it (the task end). Buffers are transparent and
    carry no reminders.
    """
    if buffer_type not in (BUFFER_BEFORE, BUFFER_AFTER):
        raise ValueError(f"Unknown buffer type: {buffer_type}")

    reference_time = as_utc(reference_time)
    duration = timedelta(minutes=duration_minutes)
    if buffer_type == BUFFER_BEFORE:
        start, end = reference_time - duration, reference_time
        summary = f"Prep: {task.content}"
        description = f"Preparation time for: {task.content}\n\nUse this time to get ready for your task."
    else:
        start, end = reference_time, reference_time + duration
        summary = f"Wind-down: {task.content}"
        description = f"Wind-down time after: {task.content}\n\nUse this time to wrap up and transition."

    return {
        "summary": summary,
        "description": description,
        "start": _event_time(start, timezone),
        "end": _event_time(end, timezone),
        "colorId": BUFFER_COLOR,
        "status": "confirmed",
        "transparency": "transparent",
        "extendedProperties": {
            "private": {
                TASK_ID_KEY: task.id,
                BUFFER_TYPE_KEY: buffer_type,
                VERSION_KEY: EVENT_FORMAT_VERSION,
            }
        },
        "reminders": {"useDefault": False, "overrides": []},
    }


def _private_properties(event: Dict[str, Any]) -> Dict[str, str]:
    return (event.get("extendedProperties") or {}).get("private") or {}


def is_brain_dumper_event(event: Dict[str, Any]) -> bool:
    return bool(_private_properties(event).get(TASK_ID_KEY))


def is_buffer_event(event: Dict[str, Any]) -> bool:
    return bool(_private_properties(event).get(BUFFER_TYPE_KEY))


def get_brain_dumper_metadata(event: Dict[str, Any]) -> Optional[Dict[str, Optional[str]]]:
    """Task linkage stored on a managed event, or None for external events."""
    props = _private_properties(event)
    if not props.get(TASK_ID_KEY):
        return None
    return {
        "task_id": props[TASK_ID_KEY],
        "priority": props.get(PRIORITY_KEY),
        "buffer_type": props.get(BUFFER_TYPE_KEY),
        "version": props.get(VERSION_KEY),
    }


def update_event_times(event: Dict[str, Any], slot: SlotRange, timezone: str = "UTC") -> Dict[str, Any]:
    """Copy of ``event`` moved to ``slot``."""
    updated = dict(event)
    updated["start"] = _event_time(slot.start, timezone)
    updated["end"] = _event_time(slot.end, timezone)
    return updated


def calculate_buffer_slots(slot: SlotRange, buffer_before: Optional[int] = None,
                           buffer_after: Optional[int] = None) -> Tuple[Optional[SlotRange], Optional[SlotRange]]:
    before = after = None
    if buffer_before and buffer_before > 0:
        before = SlotRange(start=slot.start - timedelta(minutes=buffer_before), end=slot.start)
    if buffer_after and buffer_after > 0:
        after = SlotRange(start=slot.end, end=slot.end + timedelta(minutes=buffer_after))
    return before, after
