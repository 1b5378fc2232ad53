"""
Core scheduling engine.

Assigns a prioritized batch of tasks to free time. All placements made in a
run are reserved in one ``IntervalSet`` together with their buffers, so no two
accepted assignments can overlap.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterator, List, Optional, Sequence, Set, Tuple

import structlog

from ...config import settings
from ...core.timeutils import as_utc, date_key, js_weekday, local_parts, parse_date_key, utcnow
from ...schemas.calendar import AvailabilityWindow, TimeSlot
from ...schemas.scheduling import (
    Conflict, ConflictType, Displacement, DisplacementAction, ProtectedSlotSpec,
    SchedulingPreferences, SchedulingRuleSpec, SlotRange, Suggestion, TaskAssignment,
    UnschedulableTask
)
from ...schemas.tasks import Priority, SchedulableTask
from ..availability import merge_contiguous
from .conflicts import can_displace_by_priority, priority_weight
from .intervals import IntervalSet
from .protected import can_override_protected, get_protected_conflicts, get_protected_times, is_urgent_task
from .rules import get_effective_rules, slot_satisfies_rules
from .scoring import score_slot

logger = structlog.get_logger(__name__)

ALREADY_SCHEDULED_REASON = "Task is already scheduled on the calendar"
NO_SLOT_REASON = "No available time slot found within the scheduling range"
MIN_RULE_SCORE = 33

Range = Tuple[datetime, datetime]


@dataclass
class ScheduledRange:
    """A managed task already on the calendar that a higher-priority task may displace."""
    task_id: str
    priority: Priority
    start: datetime
    end: datetime
    content: Optional[str] = None


@dataclass
class EngineResult:
    assignments: List[TaskAssignment] = field(default_factory=list)
    unschedulable: List[UnschedulableTask] = field(default_factory=list)
    displacements: List[Displacement] = field(default_factory=list)


def sort_tasks(tasks: Sequence[SchedulableTask]) -> List[SchedulableTask]:
    """High to low priority, then earliest due date; undated tasks last, ties keep input order."""
    return [task for _, task in sorted(enumerate(tasks), key=_sort_key)]


def _sort_key(indexed):
    index, task = indexed
    due = as_utc(task.due_date) if task.due_date else None
    return (-priority_weight(task.priority), due is None, due.timestamp() if due else 0.0, index)


def merge_ranges(ranges: Sequence[Range]) -> List[Range]:
    merged: List[Range] = []
    for start, end in sorted(ranges):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def subtract_ranges(ranges: Sequence[Range], blocked: Sequence[Range]) -> List[Range]:
    result = []
    for start, end in ranges:
        pieces = [(start, end)]
        for b_start, b_end in blocked:
            next_pieces = []
            for p_start, p_end in pieces:
                if b_end <= p_start or b_start >= p_end:
                    next_pieces.append((p_start, p_end))
                    continue
                if p_start < b_start:
                    next_pieces.append((p_start, b_start))
                if b_end < p_end:
                    next_pieces.append((b_end, p_end))
            pieces = next_pieces
        result.extend(pieces)
    return sorted(result)


class SchedulingEngine:
    """
    Places tasks into free blocks.

    Blocks are scanned earliest first and probed at a fixed granularity; the
    first candidate that fits (buffers included) and does not collide with an
    earlier placement of the same run wins.
    """

    def __init__(
        self,
        availability: Sequence[AvailabilityWindow],
        preferences: Optional[SchedulingPreferences] = None,
        rules: Sequence[SchedulingRuleSpec] = (),
        protected_slots: Sequence[ProtectedSlotSpec] = (),
        existing: Sequence[ScheduledRange] = (),
        now: Optional[datetime] = None,
        horizon_days: Optional[int] = None,
        horizon_end: Optional[datetime] = None,
        granularity_minutes: Optional[int] = None
    ):
        self.preferences = preferences or SchedulingPreferences()
        self.tz_name = self.preferences.timezone
        self.rules = list(rules)
        self.protected_slots = list(protected_slots)
        self.existing = list(existing)
        self.now = as_utc(now) if now else utcnow()
        days = horizon_days if horizon_days is not None else settings.SCHEDULING_HORIZON_DAYS
        self.horizon_end = as_utc(horizon_end) if horizon_end else self.now + timedelta(days=days)
        self.granularity = timedelta(minutes=granularity_minutes or settings.SLOT_GRANULARITY_MINUTES)

        self._free = self._collect_free(availability)
        first_day, _, _ = local_parts(self.now - timedelta(days=1), self.tz_name)
        last_day, _, _ = local_parts(self.horizon_end + timedelta(days=1), self.tz_name)
        self._protected = get_protected_times(first_day, last_day, self.protected_slots, self.tz_name)
        self._used = IntervalSet()
        self._displaced: Set[str] = set()

    def _collect_free(self, availability: Sequence[AvailabilityWindow]) -> List[Range]:
        """Free ranges on working days, clipped to ``[now, horizon_end)``."""
        ranges = []
        for window in availability:
            if js_weekday(parse_date_key(window.date)) not in self.preferences.working_days:
                continue
            for slot in merge_contiguous(window.slots):
                if not slot.available:
                    continue
                start = max(as_utc(slot.start), self.now)
                end = min(as_utc(slot.end), self.horizon_end)
                if start < end:
                    ranges.append((start, end))
        return merge_ranges(ranges)

    def _blocked_for(self, task: SchedulableTask) -> List[Range]:
        urgent = is_urgent_task(task, self.now)
        return [
            (p.start, p.end) for p in self._protected
            if not (urgent and can_override_protected(task, p.slot))
        ]

    def _blocks_for(self, task: SchedulableTask, extra: Sequence[Range] = ()) -> List[Range]:
        free = merge_ranges(list(self._free) + list(extra))
        return subtract_ranges(free, self._blocked_for(task))

    def _candidates(self, rule: SchedulingRuleSpec, blocks: Sequence[Range]) -> Iterator[Tuple[datetime, datetime, Range]]:
        duration = timedelta(minutes=rule.default_duration)
        before = timedelta(minutes=rule.buffer_before)
        after = timedelta(minutes=rule.buffer_after)
        for block in blocks:
            block_start, block_end = block
            if block_end - block_start < duration + before + after:
                continue
            start = block_start + before
            while start + duration + after <= block_end:
                end = start + duration
                if slot_satisfies_rules(start, end, rule, self.tz_name).partial_score >= MIN_RULE_SCORE:
                    yield start, end, block
                start += self.granularity

    @staticmethod
    def _reserved(start: datetime, end: datetime, rule: SchedulingRuleSpec) -> Range:
        return start - timedelta(minutes=rule.buffer_before), end + timedelta(minutes=rule.buffer_after)

    def _suggestion(self, task: SchedulableTask, rule: SchedulingRuleSpec, start: datetime, end: datetime,
                    block: Range) -> Suggestion:
        window = AvailabilityWindow(
            date=date_key(local_parts(start, self.tz_name)[0]),
            slots=[TimeSlot(start=block[0], end=block[1], available=True)],
        )
        total, factors, reasoning = score_slot(start, end, task, rule, window, self.tz_name)

        conflicts = get_protected_conflicts(start, end, self.protected_slots, task, self.tz_name)
        rule_check = slot_satisfies_rules(start, end, rule, self.tz_name)
        if not rule_check.satisfies:
            conflicts.append(Conflict(
                type=ConflictType.RULE_VIOLATION,
                description="; ".join(rule_check.violations),
                severity="info",
                resolution="Slot is outside preferred parameters but still usable",
            ))
        return Suggestion(
            slot=SlotRange(start=start, end=end),
            score=total,
            reasoning=reasoning,
            factors=factors,
            conflicts=conflicts,
        )

    def suggest(self, task: SchedulableTask, count: int = 5) -> List[Suggestion]:
        """Top ``count`` candidates by score; ties go to the earlier slot."""
        rule = get_effective_rules(task, self.rules)
        scored = []
        for start, end, block in self._candidates(rule, self._blocks_for(task)):
            if self._used.is_free(*self._reserved(start, end, rule)):
                scored.append(self._suggestion(task, rule, start, end, block))
        scored.sort(key=lambda s: (-s.score, s.slot.start))
        return scored[:count]

    def _place(self, task: SchedulableTask, rule: SchedulingRuleSpec,
               alternatives: int = 0) -> Optional[Tuple[Suggestion, List[Suggestion]]]:
        """Reserve the earliest feasible candidate; also returns the best-scored alternatives."""
        chosen = None
        others = []
        for start, end, block in self._candidates(rule, self._blocks_for(task)):
            if not self._used.is_free(*self._reserved(start, end, rule)):
                continue
            if chosen is None:
                chosen = self._suggestion(task, rule, start, end, block)
                if alternatives == 0:
                    break
            else:
                others.append(self._suggestion(task, rule, start, end, block))

        if chosen is None:
            return None
        self._used.insert_if_free(*self._reserved(chosen.slot.start, chosen.slot.end, rule), tag=task.id)
        others.sort(key=lambda s: (-s.score, s.slot.start))
        return chosen, others[:alternatives]

    def _relocate(self, victim: ScheduledRange, displaced_by: SchedulableTask) -> Displacement:
        minutes = max(int((victim.end - victim.start).total_seconds() // 60), 1)
        stand_in = SchedulableTask(
            id=victim.task_id,
            content=victim.content or f"Task {victim.task_id}",
            priority=victim.priority,
            time_estimate=minutes,
        )
        placed = self._place(stand_in, get_effective_rules(stand_in, self.rules))
        reason = (
            f"Higher priority task ({Priority(displaced_by.priority).value}) displacing "
            f"{Priority(victim.priority).value} priority task"
        )
        return Displacement(
            task_id=victim.task_id,
            task_content=victim.content,
            priority=victim.priority,
            original_start=victim.start,
            original_end=victim.end,
            action=DisplacementAction.MOVE if placed else DisplacementAction.DROP,
            new_slot=placed[0].slot if placed else None,
            displaced_by=displaced_by.id,
            reason=reason,
        )

    def _place_with_displacement(self, task: SchedulableTask, rule: SchedulingRuleSpec):
        victims = [
            e for e in self.existing
            if e.task_id not in self._displaced and e.task_id != task.id
            and can_displace_by_priority(task.priority, e.priority)
        ]
        if not victims:
            return None, []

        released = [(as_utc(v.start), as_utc(v.end)) for v in victims]
        for start, end, block in self._candidates(rule, self._blocks_for(task, released)):
            reserve = self._reserved(start, end, rule)
            overlapped = [v for v in victims if as_utc(v.start) < reserve[1] and as_utc(v.end) > reserve[0]]
            if not overlapped or not self._used.insert_if_free(*reserve, tag=task.id):
                continue
            for victim in overlapped:
                self._displaced.add(victim.task_id)
                self._free = merge_ranges(self._free + [(as_utc(victim.start), as_utc(victim.end))])
            chosen = self._suggestion(task, rule, start, end, block)
            displacements = [self._relocate(victim, task) for victim in overlapped]
            return chosen, displacements
        return None, []

    def schedule(
        self,
        tasks: Sequence[SchedulableTask],
        calendar_id: str = "primary",
        respect_priority: bool = True,
        allow_displacement: bool = True,
        alternatives: int = 3
    ) -> EngineResult:
        """Best-effort assignment of a batch; every skipped task gets a reason."""
        result = EngineResult()
        ordered = sort_tasks(tasks) if respect_priority else list(tasks)

        for task in ordered:
            if task.calendar_event_id:
                result.unschedulable.append(UnschedulableTask(task_id=task.id, reason=ALREADY_SCHEDULED_REASON))
                continue

            rule = get_effective_rules(task, self.rules)
            placed = self._place(task, rule, alternatives=alternatives)
            displacements: List[Displacement] = []
            if placed is None and allow_displacement:
                chosen, displacements = self._place_with_displacement(task, rule)
                placed = (chosen, []) if chosen else None

            if placed is None:
                result.unschedulable.append(UnschedulableTask(task_id=task.id, reason=NO_SLOT_REASON))
                continue

            chosen, others = placed
            result.assignments.append(TaskAssignment(
                task_id=task.id,
                task=task,
                calendar_id=task.calendar_id or calendar_id,
                slot=chosen.slot,
                buffer_before=rule.buffer_before,
                buffer_after=rule.buffer_after,
                suggestions=[chosen] + others,
                recommended_slot_index=0,
                conflicts=chosen.conflicts,
            ))
            result.displacements.extend(displacements)

        logger.info(
            "Scheduling run complete",
            tasks=len(tasks),
            scheduled=len(result.assignments),
            unschedulable=len(result.unschedulable),
            displacements=len(result.displacements)
        )
        return result
