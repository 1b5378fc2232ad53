"""
Per-task-type scheduling rules.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ...core.timeutils import js_weekday, local_parts, parse_hhmm
from ...schemas.scheduling import SchedulingRuleSpec, TimeRange
from ...schemas.tasks import SchedulableTask, TaskType

WEEKDAYS = [1, 2, 3, 4, 5]
DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

DEFAULT_TASK_TYPE_RULES: Dict[TaskType, dict] = {
    TaskType.DEEP_WORK: {"range": ("09:00", "12:00"), "duration": 120, "before": 0, "after": 10, "days": WEEKDAYS},
    TaskType.CODING: {"range": ("09:00", "12:00"), "duration": 120, "before": 0, "after": 10, "days": WEEKDAYS},
    TaskType.CALL: {"range": ("14:00", "17:00"), "duration": 30, "before": 15, "after": 15, "days": WEEKDAYS},
    TaskType.MEETING: {"range": ("10:00", "16:00"), "duration": 60, "before": 10, "after": 5, "days": WEEKDAYS},
    TaskType.PERSONAL: {"range": ("08:00", "20:00"), "duration": 60, "before": 0, "after": 0, "days": [0, 1, 2, 3, 4, 5, 6]},
    TaskType.ADMIN: {"range": ("14:00", "17:00"), "duration": 30, "before": 0, "after": 0, "days": WEEKDAYS},
    TaskType.HEALTH: {"range": ("07:00", "09:00"), "duration": 60, "before": 0, "after": 15, "days": [1, 2, 3, 4, 5, 6]},
    TaskType.OTHER: {"range": ("09:00", "17:00"), "duration": 60, "before": 0, "after": 0, "days": WEEKDAYS},
}

# First matching group wins
TASK_TYPE_KEYWORDS = [
    (TaskType.CALL, ("call", "phone", "zoom", "teams call")),
    (TaskType.MEETING, ("meeting", "sync", "standup", "1:1", "one-on-one")),
    (TaskType.CODING, ("code", "coding", "develop", "implement", "fix bug", "debug")),
    (TaskType.DEEP_WORK, ("write", "design", "research", "plan", "strategy")),
    (TaskType.ADMIN, ("email", "inbox", "expense", "report", "paperwork")),
    (TaskType.HEALTH, ("exercise", "gym", "workout", "doctor", "dentist")),
    (TaskType.PERSONAL, ("personal", "family", "errand", "shopping")),
]


@dataclass
class RuleSatisfaction:
    satisfies: bool
    violations: List[str] = field(default_factory=list)
    partial_score: int = 100


def get_default_rule(task_type: Optional[TaskType]) -> SchedulingRuleSpec:
    task_type = TaskType(task_type) if task_type else TaskType.OTHER
    defaults = DEFAULT_TASK_TYPE_RULES.get(task_type, DEFAULT_TASK_TYPE_RULES[TaskType.OTHER])
    start, end = defaults["range"]
    return SchedulingRuleSpec(
        task_type=task_type,
        preferred_time_range=TimeRange(start=start, end=end),
        preferred_days=list(defaults["days"]),
        default_duration=defaults["duration"],
        buffer_before=defaults["before"],
        buffer_after=defaults["after"],
    )


def infer_task_type(content: str) -> TaskType:
    """Guess the task type from keywords in its content."""
    text = (content or "").lower()
    for task_type, keywords in TASK_TYPE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return task_type
    return TaskType.OTHER


def get_task_type(task: SchedulableTask) -> TaskType:
    return TaskType(task.task_type) if task.task_type else infer_task_type(task.content)


def get_effective_rules(task: SchedulableTask, user_rules: Iterable[SchedulingRuleSpec]) -> SchedulingRuleSpec:
    """
    Resolve the rule for a task.

    An enabled user rule for the task's type replaces the default; the task's
    own estimate and buffer overrides win over both.
    """
    task_type = get_task_type(task)
    rule = get_default_rule(task_type)

    user_rule = next(
        (r for r in user_rules if TaskType(r.task_type) == task_type and r.enabled),
        None
    )
    if user_rule:
        rule = user_rule.model_copy(deep=True)

    updates = {}
    if task.time_estimate:
        updates["default_duration"] = task.time_estimate
    if task.buffer_before is not None:
        updates["buffer_before"] = task.buffer_before
    if task.buffer_after is not None:
        updates["buffer_after"] = task.buffer_after
    return rule.model_copy(update=updates) if updates else rule


def get_total_duration_with_buffers(task: SchedulableTask, rule: SchedulingRuleSpec) -> int:
    duration = task.time_estimate or rule.default_duration
    before = task.buffer_before if task.buffer_before is not None else rule.buffer_before
    after = task.buffer_after if task.buffer_after is not None else rule.buffer_after
    return duration + before + after


def _format_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def _to_minutes(hhmm: str) -> int:
    hours, minutes = parse_hhmm(hhmm)
    return hours * 60 + minutes


def slot_satisfies_rules(start: datetime, end: datetime, rule: SchedulingRuleSpec,
                         tz_name: str = "UTC") -> RuleSatisfaction:
    """Check day, time-of-day and duration; the partial score is the share of checks passed."""
    violations = []
    passed = 0

    start_day, start_hour, start_minute = local_parts(start, tz_name)
    _, end_hour, end_minute = local_parts(end, tz_name)

    weekday = js_weekday(start_day)
    if rule.preferred_days and weekday not in rule.preferred_days:
        violations.append(f"{DAY_NAMES[weekday]} is not a preferred day for this task type")
    else:
        passed += 1

    slot_start = start_hour * 60 + start_minute
    slot_end = end_hour * 60 + end_minute
    range_start = _to_minutes(rule.preferred_time_range.start)
    range_end = _to_minutes(rule.preferred_time_range.end)
    if slot_start < range_start or slot_end > range_end:
        violations.append(
            f"Slot ({_format_minutes(slot_start)}-{_format_minutes(slot_end)}) is outside preferred "
            f"time range ({rule.preferred_time_range.start}-{rule.preferred_time_range.end})"
        )
    else:
        passed += 1

    duration = (end - start).total_seconds() / 60
    if duration < rule.default_duration:
        violations.append(
            f"Slot duration ({round(duration)} min) is less than required ({rule.default_duration} min)"
        )
    else:
        passed += 1

    return RuleSatisfaction(
        satisfies=not violations,
        violations=violations,
        partial_score=round(passed / 3 * 100),
    )


def rule_from_model(row) -> SchedulingRuleSpec:
    """Build a rule from a ``SchedulingRule`` row, filling gaps from the type default."""
    default = get_default_rule(row.task_type)
    return SchedulingRuleSpec(
        task_type=row.task_type,
        preferred_time_range=TimeRange(
            start=row.preferred_start or default.preferred_time_range.start,
            end=row.preferred_end or default.preferred_time_range.end,
        ),
        preferred_days=row.preferred_days if row.preferred_days else default.preferred_days,
        default_duration=row.default_duration or default.default_duration,
        buffer_before=row.buffer_before if row.buffer_before is not None else default.buffer_before,
        buffer_after=row.buffer_after if row.buffer_after is not None else default.buffer_after,
        enabled=bool(row.enabled),
    )
