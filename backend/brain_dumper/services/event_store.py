"""
Local copy of provider events, used for availability and conflict checks.
"""
from typing import Optional

from sqlalchemy.orm import Session

from ..database.models import CalendarEvent
from .provider_events import ProviderEvent, TaskLink


def get_stored_event(db: Session, user_id: str, calendar_id: str, event_id: str) -> Optional[CalendarEvent]:
    return db.query(CalendarEvent).filter(
        CalendarEvent.user_id == user_id,
        CalendarEvent.calendar_id == calendar_id,
        CalendarEvent.provider_event_id == event_id
    ).first()


def upsert_event(db: Session, user_id: str, calendar_id: str, event: ProviderEvent,
                 link: Optional[TaskLink] = None, stored: Optional[CalendarEvent] = None) -> Optional[CalendarEvent]:
    """Insert or refresh the stored copy; events without times are not stored."""
    if event.span is None:
        return None
    if stored is None:
        stored = get_stored_event(db, user_id, calendar_id, event.id)
    if stored is None:
        stored = CalendarEvent(user_id=user_id, calendar_id=calendar_id, provider_event_id=event.id)
        db.add(stored)

    link = link if link is not None else event.link
    start, end = event.span.bounds
    stored.title = event.title or "Untitled Event"
    stored.start_time = start
    stored.end_time = end
    stored.all_day = event.all_day
    stored.status = event.status
    stored.transparent = event.transparent
    stored.recurring_event_id = event.recurring_event_id
    stored.linked_task_id = link.task_id if link else None
    stored.buffer_role = link.buffer_role if link else None
    stored.priority = link.priority if link else None
    return stored


def remove_event(db: Session, user_id: str, calendar_id: str, event_id: str) -> bool:
    stored = get_stored_event(db, user_id, calendar_id, event_id)
    if stored is None:
        return False
    db.delete(stored)
    return True
