"""
Tests for managed event payloads and their parsing.
"""
import pytest

from brain_dumper.core.exceptions import ValidationError
from brain_dumper.schemas.scheduling import SlotRange
from brain_dumper.schemas.tasks import Priority, SchedulableTask, TaskType
from brain_dumper.services.event_builder import (
    BUFFER_AFTER, BUFFER_BEFORE, BUFFER_TYPE_KEY, PRIORITY_KEY, TASK_ID_KEY, build_buffer_event,
    build_task_event, calculate_buffer_slots, get_brain_dumper_metadata, get_color_for_priority,
    get_reminders_for_priority, is_brain_dumper_event, is_buffer_event, update_event_times
)
from brain_dumper.services.provider_events import AllDaySpan, TimedSpan, parse_provider_event

from conftest import at


@pytest.fixture
def task():
    return SchedulableTask(
        id="task-1",
        content="Prepare slides",
        priority=Priority.HIGH,
        task_type=TaskType.DEEP_WORK,
        time_estimate=90,
        due_date=at("2024-01-18T17:00"),
    )


@pytest.fixture
def slot():
    return SlotRange(start=at("2024-01-16T09:00"), end=at("2024-01-16T10:30"))


class TestTaskEvent:

    def test_task_event_body(self, task, slot):
        body = build_task_event(task, slot, "Europe/Berlin")

        assert body["summary"] == "[deep_work] Prepare slides"
        assert body["start"] == {"dateTime": "2024-01-16T09:00:00Z", "timeZone": "Europe/Berlin"}
        assert body["end"]["dateTime"] == "2024-01-16T10:30:00Z"
        assert body["colorId"] == "11"
        assert body["extendedProperties"]["private"][TASK_ID_KEY] == "task-1"
        assert body["extendedProperties"]["private"][PRIORITY_KEY] == "high"
        assert [r["minutes"] for r in body["reminders"]["overrides"]] == [30, 10]
        assert "Estimated time: 90 minutes" in body["description"]
        assert "Due: 2024-01-18T17:00:00Z" in body["description"]

    def test_priority_lookups(self):
        assert get_color_for_priority("low") == "9"
        assert get_color_for_priority("unknown") == "8"
        assert get_reminders_for_priority("unknown") == [{"method": "popup", "minutes": 10}]

    def test_update_event_times_copies(self, slot):
        original = {"summary": "x", "start": {"dateTime": "old"}}
        updated = update_event_times(original, slot)
        assert original["start"] == {"dateTime": "old"}
        assert updated["start"]["dateTime"] == "2024-01-16T09:00:00Z"


class TestBufferEvent:

    def test_before_buffer_ends_at_task_start(self, task, slot):
        body = build_buffer_event(task, BUFFER_BEFORE, 15, slot.start)

        assert body["start"]["dateTime"] == "2024-01-16T08:45:00Z"
        assert body["end"]["dateTime"] == "2024-01-16T09:00:00Z"
        assert body["summary"] == "Prep: Prepare slides"
        assert body["transparency"] == "transparent"
        assert body["reminders"]["overrides"] == []
        assert is_buffer_event(body)

    def test_after_buffer_starts_at_task_end(self, task, slot):
        body = build_buffer_event(task, BUFFER_AFTER, 10, slot.end)

        assert body["start"]["dateTime"] == "2024-01-16T10:30:00Z"
        assert body["end"]["dateTime"] == "2024-01-16T10:40:00Z"
        assert body["summary"] == "Wind-down: Prepare slides"

    def test_unknown_buffer_type(self, task, slot):
        with pytest.raises(ValueError):
            build_buffer_event(task, "during", 10, slot.start)

    def test_buffer_slots(self, slot):
        before, after = calculate_buffer_slots(slot, 15, 0)
        assert (before.start, before.end) == (at("2024-01-16T08:45"), slot.start)
        assert after is None


class TestMetadata:

    def test_metadata_round_trip(self, task, slot):
        body = build_buffer_event(task, BUFFER_AFTER, 10, slot.end)
        assert is_brain_dumper_event(body)
        assert get_brain_dumper_metadata(body) == {
            "task_id": "task-1", "priority": None, "buffer_type": BUFFER_AFTER, "version": "1"
        }

    def test_external_event_has_no_metadata(self):
        assert get_brain_dumper_metadata({"id": "x"}) is None
        assert not is_brain_dumper_event({"extendedProperties": {"private": {}}})


class TestParseProviderEvent:

    def test_timed_managed_event(self):
        event = parse_provider_event({
            "id": "evt-1",
            "summary": "Prepare slides",
            "start": {"dateTime": "2024-01-16T10:00:00+01:00"},
            "end": {"dateTime": "2024-01-16T11:00:00+01:00"},
            "extendedProperties": {"private": {TASK_ID_KEY: "task-1", BUFFER_TYPE_KEY: BUFFER_BEFORE}},
        })

        assert isinstance(event.span, TimedSpan)
        assert event.start == at("2024-01-16T09:00")
        assert event.link.task_id == "task-1"
        assert event.link.is_buffer
        assert not event.is_deleted

    def test_all_day_event(self):
        event = parse_provider_event({"id": "evt-2", "start": {"date": "2024-01-16"}, "end": {"date": "2024-01-17"}})

        assert isinstance(event.span, AllDaySpan)
        assert event.all_day
        assert (event.start, event.end) == (at("2024-01-16T00:00"), at("2024-01-17T00:00"))

    def test_cancelled_event_without_times(self):
        event = parse_provider_event({"id": "evt-3", "status": "cancelled"})

        assert event.is_deleted
        assert event.span is None
        assert event.link is None

    def test_transparency(self):
        event = parse_provider_event({"id": "evt-4", "transparency": "transparent"})
        assert event.transparent

    def test_invalid_payloads(self):
        with pytest.raises(ValidationError):
            parse_provider_event({"summary": "no id"})
        with pytest.raises(ValidationError):
            parse_provider_event({"id": "evt-5", "start": {"dateTime": "yesterday"}, "end": {"dateTime": "today"}})
