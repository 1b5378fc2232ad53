"""
Weighted scoring of candidate slots.

Every factor yields a 0-100 value with a human-readable description; the
total is the weight-averaged value. Factor names, weights and descriptions
are returned to clients unchanged.
"""
import math
from datetime import datetime
from typing import List, Optional

from ...core.timeutils import as_utc, js_weekday, local_parts, parse_hhmm
from ...schemas.calendar import AvailabilityWindow, TimeSlot
from ...schemas.scheduling import SchedulingRuleSpec, ScoringFactor
from ...schemas.tasks import Priority, SchedulableTask, TaskType
from .rules import get_task_type

DEFAULT_WEIGHTS = {
    "taskTypePreference": 25,
    "dueDateProximity": 20,
    "bufferAvailability": 15,
    "contiguousTime": 15,
    "priorityAlignment": 15,
    "timeOfDay": 10,
}

ADJACENT_TIMES = {
    "morning": ["afternoon"],
    "afternoon": ["morning", "evening"],
    "evening": ["afternoon"],
}


def _factor(name: str, value: float, description: str, weight: Optional[int] = None) -> ScoringFactor:
    return ScoringFactor(
        name=name,
        weight=DEFAULT_WEIGHTS[name] if weight is None else weight,
        value=int(max(0, min(100, round(value)))),
        description=description,
    )


def time_of_day_category(hour: int) -> str:
    if hour < 12:
        return "morning"
    if hour < 17:
        return "afternoon"
    return "evening"


def _containing_slot(start: datetime, end: datetime, window: Optional[AvailabilityWindow]) -> Optional[TimeSlot]:
    if window is None:
        return None
    for slot in window.slots:
        if slot.available and as_utc(slot.start) <= start and as_utc(slot.end) >= end:
            return slot
    return None


def score_task_type_preference(start: datetime, end: datetime, task_type: Optional[TaskType],
                               rule: Optional[SchedulingRuleSpec], tz_name: str = "UTC") -> ScoringFactor:
    name = "taskTypePreference"
    if not task_type:
        return _factor(name, 50, "No task type specified")
    type_label = TaskType(task_type).value
    if rule is None or not rule.enabled:
        return _factor(name, 50, f"No specific rule for {type_label}")

    day, start_hour, start_minute = local_parts(start, tz_name)
    _, end_hour, end_minute = local_parts(end, tz_name)
    range_start = parse_hhmm(rule.preferred_time_range.start)
    range_end = parse_hhmm(rule.preferred_time_range.end)
    in_range = (start_hour, start_minute) >= range_start and (end_hour, end_minute) <= range_end
    preferred_day = not rule.preferred_days or js_weekday(day) in rule.preferred_days
    time_range = f"{rule.preferred_time_range.start}-{rule.preferred_time_range.end}"

    if in_range and preferred_day:
        return _factor(name, 100, f"Perfect match: {type_label} scheduled in preferred time ({time_range})")
    if in_range:
        return _factor(name, 80, f"Good time for {type_label}, but not preferred day")
    if preferred_day:
        return _factor(name, 60, f"Preferred day for {type_label}, but outside optimal hours")
    return _factor(name, 30, f"Outside preferred time and day for {type_label}")


def score_due_date_proximity(start: datetime, due_date: Optional[datetime], priority: Priority,
                             tz_name: str = "UTC") -> ScoringFactor:
    name = "dueDateProximity"
    priority = Priority(priority)
    if due_date is None:
        bonus = {Priority.HIGH: 60, Priority.MEDIUM: 50}.get(priority, 40)
        return _factor(name, bonus, "No due date - scored by priority only")

    slot_day, _, _ = local_parts(start, tz_name)
    due_day, _, _ = local_parts(due_date, tz_name)
    days = (due_day - slot_day).days

    if days < 0:
        return _factor(name, 10, "Slot is after due date - not recommended")
    if days == 0:
        return _factor(name, 95, "Slot is on due date - urgent")

    if days <= 1:
        base = 90
    elif days <= 3:
        base = 80
    elif days <= 7:
        base = 60
    else:
        base = 40
    multiplier = {Priority.HIGH: 1.2, Priority.MEDIUM: 1.0}.get(priority, 0.8)
    return _factor(
        name,
        min(100, round(base * multiplier)),
        f"{days} day(s) before due date ({priority.value} priority)"
    )


def score_buffer_availability(start: datetime, end: datetime, buffer_before: int, buffer_after: int,
                              window: Optional[AvailabilityWindow]) -> ScoringFactor:
    name = "bufferAvailability"
    if buffer_before == 0 and buffer_after == 0:
        return _factor(name, 100, "No buffer required")

    block = _containing_slot(start, end, window)
    if block is None:
        return _factor(name, 0, "Slot not in available period")

    free_before = (start - as_utc(block.start)).total_seconds() / 60
    free_after = (as_utc(block.end) - end).total_seconds() / 60
    before_pct = min(100.0, free_before / buffer_before * 100) if buffer_before > 0 else 100.0
    after_pct = min(100.0, free_after / buffer_after * 100) if buffer_after > 0 else 100.0
    value = round((before_pct + after_pct) / 2)

    if value == 100:
        description = f"Full buffer available: {buffer_before}min before, {buffer_after}min after"
    elif value >= 50:
        description = (
            f"Partial buffer: {round(free_before)}/{buffer_before}min before, "
            f"{round(free_after)}/{buffer_after}min after"
        )
    else:
        description = "Insufficient buffer time available"
    return _factor(name, value, description)


def score_contiguous_time(start: datetime, end: datetime, window: Optional[AvailabilityWindow],
                          task_duration: int) -> ScoringFactor:
    name = "contiguousTime"
    block = _containing_slot(start, end, window)
    if block is None:
        return _factor(name, 0, "Slot not in available period")

    block_minutes = block.duration_minutes
    ratio = block_minutes / task_duration if task_duration else math.inf
    if ratio >= 3:
        return _factor(name, 100, f"Large contiguous block ({round(block_minutes)} min) - plenty of flexibility")
    if ratio >= 2:
        return _factor(name, 85, f"Good contiguous block ({round(block_minutes)} min) - some flexibility")
    if ratio >= 1.5:
        return _factor(name, 70, f"Moderate contiguous block ({round(block_minutes)} min)")
    if ratio >= 1:
        return _factor(name, 50, f"Tight fit - block is {round(block_minutes)} min for {task_duration} min task")
    return _factor(name, 0, "Block too small for task")


def score_priority_alignment(start: datetime, priority: Priority, tz_name: str = "UTC") -> ScoringFactor:
    name = "priorityAlignment"
    priority = Priority(priority)
    _, hour, _ = local_parts(start, tz_name)
    prime = 9 <= hour < 12
    good = 8 <= hour < 14

    if priority == Priority.HIGH:
        if prime:
            return _factor(name, 100, "High priority task in prime morning hours (9am-12pm)")
        if good:
            return _factor(name, 70, "High priority task in good hours")
        return _factor(name, 40, "High priority task outside optimal hours")
    if priority == Priority.MEDIUM:
        return _factor(name, 70, "Medium priority task - time flexible")
    if prime:
        return _factor(name, 50, "Low priority task - consider saving prime hours for high-pri")
    return _factor(name, 80, "Low priority task in appropriate time slot")


def score_time_of_day(start: datetime, preferred: Optional[str], tz_name: str = "UTC") -> ScoringFactor:
    name = "timeOfDay"
    if not preferred:
        return _factor(name, 70, "No time preference specified")

    _, hour, _ = local_parts(start, tz_name)
    actual = time_of_day_category(hour)
    if actual == preferred:
        return _factor(name, 100, f"Matches preferred time: {preferred}")
    if actual in ADJACENT_TIMES.get(preferred, []):
        return _factor(name, 60, f"Close to preferred time ({preferred}), actual: {actual}")
    return _factor(name, 30, f"Far from preferred time ({preferred}), actual: {actual}")


def calculate_total_score(factors: List[ScoringFactor]) -> int:
    total_weight = sum(f.weight for f in factors)
    if not factors or total_weight == 0:
        return 0
    return round(sum(f.value * f.weight for f in factors) / total_weight)


def generate_reasoning(factors: List[ScoringFactor]) -> str:
    """Two strongest factors (>= 70) plus the first weak one (< 50)."""
    ranked = sorted(factors, key=lambda f: f.value * f.weight, reverse=True)
    strong = [f for f in ranked if f.value >= 70][:2]
    weak = [f for f in ranked if f.value < 50][:1]

    parts = []
    if strong:
        parts.append("; ".join(f.description for f in strong))
    if weak:
        parts.append("Note: " + "; ".join(f.description for f in weak))
    return ". ".join(parts) or "Standard slot selection"


def score_slot(start: datetime, end: datetime, task: SchedulableTask, rule: SchedulingRuleSpec,
               window: Optional[AvailabilityWindow], tz_name: str = "UTC"):
    """Score one placement; returns ``(total, factors, reasoning)``."""
    start, end = as_utc(start), as_utc(end)
    duration = task.time_estimate or rule.default_duration
    factors = [
        score_task_type_preference(start, end, get_task_type(task), rule, tz_name),
        score_due_date_proximity(start, task.due_date, task.priority, tz_name),
        score_buffer_availability(start, end, rule.buffer_before, rule.buffer_after, window),
        score_contiguous_time(start, end, window, duration),
        score_priority_alignment(start, task.priority, tz_name),
        score_time_of_day(start, task.preferred_time_of_day, tz_name),
    ]
    return calculate_total_score(factors), factors, generate_reasoning(factors)
