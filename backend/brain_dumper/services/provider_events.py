"""
Typed view of Google Calendar event payloads.

Provider payloads are parsed once here; everything downstream works with
``ProviderEvent`` and never digs through optional nested dicts again.
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Optional, Union

from ..core.exceptions import ValidationError
from ..core.timeutils import UTC, parse_iso_datetime
from .event_builder import get_brain_dumper_metadata

CANCELLED = "cancelled"


@dataclass(frozen=True)
class TimedSpan:
    start: datetime
    end: datetime

    @property
    def bounds(self):
        return self.start, self.end


@dataclass(frozen=True)
class AllDaySpan:
    """All-day range; ``end_date`` is exclusive as the provider reports it."""
    start_date: date
    end_date: date

    @property
    def bounds(self):
        start = datetime.combine(self.start_date, time(0), tzinfo=UTC)
        end = datetime.combine(self.end_date, time(0), tzinfo=UTC)
        if end <= start:
            end = start + timedelta(days=1)
        return start, end


Span = Union[TimedSpan, AllDaySpan]


@dataclass(frozen=True)
class TaskLink:
    """Back-reference from a managed event to its task."""
    task_id: str
    buffer_role: Optional[str] = None
    priority: Optional[str] = None

    @property
    def is_buffer(self) -> bool:
        return self.buffer_role is not None


@dataclass(frozen=True)
class ProviderEvent:
    id: str
    status: str = "confirmed"
    deleted: bool = False
    title: Optional[str] = None
    span: Optional[Span] = None
    transparent: bool = False
    recurring_event_id: Optional[str] = None
    link: Optional[TaskLink] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted or self.status == CANCELLED

    @property
    def all_day(self) -> bool:
        return isinstance(self.span, AllDaySpan)

    @property
    def start(self) -> Optional[datetime]:
        return self.span.bounds[0] if self.span else None

    @property
    def end(self) -> Optional[datetime]:
        return self.span.bounds[1] if self.span else None


def _parse_span(payload: Dict[str, Any]) -> Optional[Span]:
    start = payload.get("start") or {}
    end = payload.get("end") or {}
    try:
        if start.get("dateTime") and end.get("dateTime"):
            return TimedSpan(parse_iso_datetime(start["dateTime"]), parse_iso_datetime(end["dateTime"]))
        if start.get("date") and end.get("date"):
            return AllDaySpan(date.fromisoformat(start["date"]), date.fromisoformat(end["date"]))
    except ValueError as e:
        raise ValidationError(f"Invalid event time: {e}", event_id=payload.get("id"))
    return None


def parse_provider_event(payload: Dict[str, Any]) -> ProviderEvent:
    """Validate one provider event payload."""
    event_id = payload.get("id")
    if not event_id:
        raise ValidationError("Event payload has no id")

    link = None
    metadata = get_brain_dumper_metadata(payload)
    if metadata:
        link = TaskLink(
            task_id=metadata["task_id"],
            buffer_role=metadata["buffer_type"],
            priority=metadata["priority"],
        )

    return ProviderEvent(
        id=event_id,
        status=payload.get("status") or "confirmed",
        deleted=bool(payload.get("deleted")),
        title=payload.get("summary"),
        span=_parse_span(payload),
        transparent=payload.get("transparency") == "transparent",
        recurring_event_id=payload.get("recurringEventId"),
        link=link,
    )
