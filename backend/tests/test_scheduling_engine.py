"""
Tests for batch placement, suggestions and displacement in the scheduling engine.
"""
from datetime import datetime

from brain_dumper.schemas.calendar import TimeSlot
from brain_dumper.schemas.scheduling import DisplacementAction, SchedulingPreferences
from brain_dumper.schemas.tasks import Priority, SchedulableTask, TaskType
from brain_dumper.services.availability import summarize
from brain_dumper.services.scheduling.engine import (
    ALREADY_SCHEDULED_REASON, NO_SLOT_REASON, ScheduledRange, SchedulingEngine, merge_ranges,
    sort_tasks, subtract_ranges
)
from brain_dumper.services.scheduling.protected import get_default_protected_slots

from conftest import at

ALL_DAYS = SchedulingPreferences(working_days=[0, 1, 2, 3, 4, 5, 6])


def window(day, *ranges):
    slots = [
        TimeSlot(start=at(f"{day}T{start}"), end=at(f"{day}T{end}"), available=available)
        for start, end, available in ranges
    ]
    return summarize(day, slots)


def task(task_id, minutes=60, priority="medium", **fields):
    fields.setdefault("task_type", TaskType.OTHER)
    return SchedulableTask(id=task_id, content=f"Task {task_id}", priority=priority, time_estimate=minutes, **fields)


def engine(availability, clock, **kwargs):
    kwargs.setdefault("preferences", ALL_DAYS)
    return SchedulingEngine(availability, now=clock.now, granularity_minutes=15, **kwargs)


def hhmm(value: datetime) -> str:
    return value.strftime("%H:%M")


class TestRangeHelpers:

    def test_merge_and_subtract(self):
        ranges = merge_ranges([(at("2024-01-16T10:00"), at("2024-01-16T11:00")),
                               (at("2024-01-16T09:00"), at("2024-01-16T10:00"))])
        assert ranges == [(at("2024-01-16T09:00"), at("2024-01-16T11:00"))]

        pieces = subtract_ranges(ranges, [(at("2024-01-16T09:30"), at("2024-01-16T10:00"))])
        assert pieces == [
            (at("2024-01-16T09:00"), at("2024-01-16T09:30")),
            (at("2024-01-16T10:00"), at("2024-01-16T11:00")),
        ]


class TestSortTasks:

    def test_priority_then_due_date_then_input_order(self):
        tasks = [
            task("low", priority="low"),
            task("med-undated", priority="medium"),
            task("med-late", priority="medium", due_date=at("2024-01-20T12:00")),
            task("high", priority="high"),
            task("med-early", priority="medium", due_date=at("2024-01-17T12:00")),
            task("med-undated-2", priority="medium"),
        ]
        assert [t.id for t in sort_tasks(tasks)] == [
            "high", "med-early", "med-late", "med-undated", "med-undated-2", "low"
        ]


class TestSchedule:
    """Batch placement."""

    def test_placements_never_overlap(self, clock):
        availability = [window("2024-01-16", ("09:00", "12:00", True))]
        tasks = [task(f"t{i}") for i in range(5)]

        result = engine(availability, clock).schedule(tasks, allow_displacement=False)

        assert len(result.assignments) == 3
        assert [u.reason for u in result.unschedulable] == [NO_SLOT_REASON, NO_SLOT_REASON]
        slots = sorted((a.slot.start, a.slot.end) for a in result.assignments)
        for (_, prev_end), (next_start, _) in zip(slots, slots[1:]):
            assert prev_end <= next_start

    def test_higher_priority_is_placed_first(self, clock):
        availability = [window("2024-01-16", ("09:00", "11:30", True))]
        tasks = [task("short", minutes=45, priority="medium"), task("long", minutes=90, priority="high")]

        result = engine(availability, clock).schedule(tasks, allow_displacement=False)

        placed = {a.task_id: a.slot for a in result.assignments}
        assert (hhmm(placed["long"].start), hhmm(placed["long"].end)) == ("09:00", "10:30")
        assert (hhmm(placed["short"].start), hhmm(placed["short"].end)) == ("10:30", "11:15")

    def test_task_that_no_longer_fits_is_unschedulable(self, clock):
        availability = [window("2024-01-16", ("09:00", "11:00", True))]
        tasks = [task("short", minutes=45, priority="medium"), task("long", minutes=90, priority="high")]

        result = engine(availability, clock).schedule(tasks, allow_displacement=False)

        assert [a.task_id for a in result.assignments] == ["long"]
        assert result.unschedulable[0].task_id == "short"

    def test_due_tomorrow_waits_for_a_block_that_fits(self, clock):
        availability = [
            window("2024-01-16", ("09:00", "09:45", True)),
            window("2024-01-17", ("09:00", "10:30", True)),
        ]
        urgent = task("urgent", minutes=60, priority="high", due_date=at("2024-01-16T17:00"))

        result = engine(availability, clock).schedule([urgent], allow_displacement=False)

        slot = result.assignments[0].slot
        assert (slot.start, slot.end) == (at("2024-01-17T09:00"), at("2024-01-17T10:00"))

    def test_blocks_beyond_the_horizon_are_not_searched(self, clock):
        # The clock is Monday 08:00, so the seven day horizon ends the next Monday at 08:00
        beyond = [window("2024-01-22", ("09:00", "12:00", True))]
        result = engine(beyond, clock).schedule([task("late")], allow_displacement=False)
        assert result.assignments == []
        assert result.unschedulable[0].reason == NO_SLOT_REASON

        inside = [window("2024-01-19", ("09:00", "12:00", True))]
        result = engine(inside, clock).schedule([task("late")], allow_displacement=False)
        assert result.assignments[0].slot.start == at("2024-01-19T09:00")

    def test_already_scheduled_tasks_are_skipped(self, clock):
        availability = [window("2024-01-16", ("09:00", "12:00", True))]
        scheduled = task("done", calendar_event_id="evt-1")

        result = engine(availability, clock).schedule([scheduled])

        assert result.assignments == []
        assert result.unschedulable[0].reason == ALREADY_SCHEDULED_REASON

    def test_buffers_are_reserved(self, clock):
        availability = [window("2024-01-16", ("14:00", "17:00", True))]
        calls = [task("call-1", minutes=30, task_type=TaskType.CALL),
                 task("call-2", minutes=30, task_type=TaskType.CALL)]

        result = engine(availability, clock).schedule(calls, allow_displacement=False)

        first, second = result.assignments
        assert (hhmm(first.slot.start), hhmm(first.slot.end)) == ("14:15", "14:45")
        assert (first.buffer_before, first.buffer_after) == (15, 15)
        assert (hhmm(second.slot.start), hhmm(second.slot.end)) == ("15:15", "15:45")

    def test_non_working_days_are_skipped(self, clock):
        # 2024-01-20 is a Saturday
        availability = [window("2024-01-20", ("09:00", "12:00", True))]

        result = SchedulingEngine(availability, now=clock.now).schedule([task("t1")])

        assert result.assignments == []

    def test_alternatives_are_ranked(self, clock):
        availability = [window("2024-01-16", ("09:00", "12:00", True))]

        result = engine(availability, clock).schedule([task("t1")], alternatives=3)

        assignment = result.assignments[0]
        assert assignment.recommended_slot_index == 0
        assert assignment.suggestions[0].slot == assignment.slot
        alternatives = [s.score for s in assignment.suggestions[1:]]
        assert len(alternatives) == 3
        assert alternatives == sorted(alternatives, reverse=True)


class TestProtectedTime:

    def test_lunch_cannot_be_used(self, clock):
        availability = [window("2024-01-16", ("12:00", "13:00", True))]

        result = engine(availability, clock, protected_slots=get_default_protected_slots()).schedule(
            [task("urgent", priority="high")]
        )

        assert result.assignments == []

    def test_urgent_tasks_override_call_hour(self, clock):
        availability = [window("2024-01-16", ("15:00", "16:00", True))]
        tasks = [task("urgent", priority="high"), task("normal", priority="medium")]

        result = engine(availability, clock, protected_slots=get_default_protected_slots()).schedule(
            tasks, allow_displacement=False
        )

        assert [a.task_id for a in result.assignments] == ["urgent"]
        assert result.assignments[0].conflicts[0].severity == "warning"
        assert result.unschedulable[0].task_id == "normal"


class TestDisplacement:

    def test_lower_priority_task_is_moved(self, clock):
        availability = [window(
            "2024-01-16", ("09:00", "09:30", False), ("09:30", "10:00", True),
            ("10:00", "13:00", False), ("13:00", "13:30", True)
        )]
        existing = [ScheduledRange("old", Priority.LOW, at("2024-01-16T09:00"), at("2024-01-16T09:30"), "Old task")]

        result = engine(availability, clock, existing=existing).schedule([task("new", priority="high")])

        assert (hhmm(result.assignments[0].slot.start), hhmm(result.assignments[0].slot.end)) == ("09:00", "10:00")
        displacement = result.displacements[0]
        assert displacement.task_id == "old"
        assert displacement.displaced_by == "new"
        assert displacement.action == DisplacementAction.MOVE
        assert (hhmm(displacement.new_slot.start), hhmm(displacement.new_slot.end)) == ("13:00", "13:30")

    def test_displaced_task_without_room_is_dropped(self, clock):
        availability = [window("2024-01-16", ("09:00", "10:00", False))]
        existing = [ScheduledRange("old", Priority.LOW, at("2024-01-16T09:00"), at("2024-01-16T10:00"))]

        result = engine(availability, clock, existing=existing).schedule([task("new", priority="high")])

        assert result.assignments[0].task_id == "new"
        assert result.displacements[0].action == DisplacementAction.DROP
        assert result.displacements[0].new_slot is None

    def test_equal_priority_is_never_displaced(self, clock):
        availability = [window("2024-01-16", ("09:00", "10:00", False))]
        existing = [ScheduledRange("old", Priority.HIGH, at("2024-01-16T09:00"), at("2024-01-16T10:00"))]

        result = engine(availability, clock, existing=existing).schedule([task("new", priority="high")])

        assert result.assignments == []
        assert result.displacements == []

    def test_displacement_can_be_disabled(self, clock):
        availability = [window("2024-01-16", ("09:00", "10:00", False))]
        existing = [ScheduledRange("old", Priority.LOW, at("2024-01-16T09:00"), at("2024-01-16T10:00"))]

        result = engine(availability, clock, existing=existing).schedule(
            [task("new", priority="high")], allow_displacement=False
        )

        assert result.assignments == []
        assert result.unschedulable[0].reason == NO_SLOT_REASON


class TestSuggest:

    def test_suggestions_sorted_by_score(self, clock):
        availability = [window("2024-01-16", ("09:00", "12:00", True))]

        suggestions = engine(availability, clock).suggest(task("t1", priority="high"), count=5)

        assert 0 < len(suggestions) <= 5
        scores = [s.score for s in suggestions]
        assert scores == sorted(scores, reverse=True)
        for suggestion in suggestions:
            assert suggestion.slot.start >= at("2024-01-16T09:00")
            assert suggestion.slot.end <= at("2024-01-16T12:00")

    def test_no_suggestions_without_free_time(self, clock):
        availability = [window("2024-01-16", ("09:00", "12:00", False))]
        assert engine(availability, clock).suggest(task("t1")) == []
