"""
Calendar sync processing.

Turns webhook notifications and incremental deltas into updates of the local
event store and of the tasks linked to managed events.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from sqlalchemy.orm import Session
import structlog

from ..config import settings
from ..core.exceptions import AuthenticationExpired, ProviderNotFound, SyncCursorExpired, ValidationError
from ..core.locks import cursor_lock
from ..core.timeutils import as_utc, to_iso, utcnow
from ..database.models import CalendarEvent, SyncCursor, Task, WatchSubscription
from ..schemas.calendar import SyncResult, SyncStatus
from ..schemas.tasks import CALENDAR_EVENT_DELETED, SyncStatus as TaskSyncStatus
from .availability import availability_service
from .event_builder import BUFFER_AFTER, BUFFER_BEFORE, TASK_ID_KEY
from .event_store import get_stored_event, upsert_event
from .google_calendar import GoogleCalendarClient
from .proposals import proposal_coordinator
from .provider_events import ProviderEvent, TaskLink, TimedSpan, parse_provider_event
from .watch_manager import validate_token

logger = structlog.get_logger(__name__)


class ResourceState(str, Enum):
    """Value of the ``X-Goog-Resource-State`` header."""
    SYNC = "sync"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    UPDATE = "update"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ResourceState":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class WebhookAction(str, Enum):
    REJECT = "reject"
    ACKNOWLEDGE = "acknowledge"
    RENEW = "renew"
    SYNC = "sync"
    IGNORE = "ignore"


@dataclass(frozen=True)
class WebhookHeaders:
    method: str
    channel_id: Optional[str] = None
    resource_state: Optional[str] = None
    channel_token: Optional[str] = None
    resource_id: Optional[str] = None
    message_number: Optional[str] = None

    @classmethod
    def from_request(cls, method: str, headers: Mapping[str, str]) -> "WebhookHeaders":
        return cls(
            method=method.upper(),
            channel_id=headers.get("x-goog-channel-id") or None,
            resource_state=headers.get("x-goog-resource-state") or None,
            channel_token=headers.get("x-goog-channel-token") or None,
            resource_id=headers.get("x-goog-resource-id") or None,
            message_number=headers.get("x-goog-message-number") or None,
        )


@dataclass(frozen=True)
class WebhookDecision:
    action: WebhookAction
    status_code: int
    message: str


def classify_notification(headers: WebhookHeaders, subscription: Optional[WatchSubscription],
                          now: datetime) -> WebhookDecision:
    """
    Decide how to answer one push notification.

    Malformed or unauthenticated requests get a 4xx. Unknown and expired
    channels are acknowledged with 200 so the provider stops redelivering.
    """
    if headers.method != "POST":
        return WebhookDecision(WebhookAction.REJECT, 405, "Method not allowed")
    if not headers.channel_id:
        return WebhookDecision(WebhookAction.REJECT, 400, "Missing channel ID")
    if not headers.resource_state:
        return WebhookDecision(WebhookAction.REJECT, 400, "Missing resource state")

    state = ResourceState.parse(headers.resource_state)
    if state == ResourceState.SYNC:
        return WebhookDecision(WebhookAction.ACKNOWLEDGE, 200, "OK")
    if subscription is None:
        return WebhookDecision(WebhookAction.ACKNOWLEDGE, 200, "Unknown channel")
    if not validate_token(headers.channel_token, subscription):
        return WebhookDecision(WebhookAction.REJECT, 403, "Invalid token")
    if as_utc(subscription.expiration) <= as_utc(now):
        return WebhookDecision(WebhookAction.RENEW, 200, "Watch expired")
    if state in (ResourceState.EXISTS, ResourceState.UPDATE):
        return WebhookDecision(WebhookAction.SYNC, 200, "OK")
    return WebhookDecision(WebhookAction.IGNORE, 200, "Ignored")


class ChangeKind(str, Enum):
    DELETED = "deleted"
    RESCHEDULED = "rescheduled"
    UNCHANGED = "unchanged"


def time_changed(old: Optional[datetime], new: Optional[datetime], tolerance_seconds: Optional[int] = None) -> bool:
    """A missing new time is never a change; a missing old time always is."""
    if tolerance_seconds is None:
        tolerance_seconds = settings.RESCHEDULE_TOLERANCE_SECONDS
    if new is None:
        return False
    if old is None:
        return True
    return abs((as_utc(new) - as_utc(old)).total_seconds()) > tolerance_seconds


def _timed_bounds(event: ProviderEvent) -> Tuple[Optional[datetime], Optional[datetime]]:
    if isinstance(event.span, TimedSpan):
        return event.span.start, event.span.end
    return None, None


def classify_change(event: ProviderEvent, scheduled_start: Optional[datetime],
                    scheduled_end: Optional[datetime], tolerance_seconds: Optional[int] = None) -> ChangeKind:
    if event.is_deleted:
        return ChangeKind.DELETED
    new_start, new_end = _timed_bounds(event)
    if new_start is None or new_end is None:
        return ChangeKind.UNCHANGED
    if time_changed(scheduled_start, new_start, tolerance_seconds) or \
            time_changed(scheduled_end, new_end, tolerance_seconds):
        return ChangeKind.RESCHEDULED
    return ChangeKind.UNCHANGED


def mark_task_unscheduled(task: Task, now: datetime, reason: str = CALENDAR_EVENT_DELETED) -> None:
    task.scheduled_start = None
    task.scheduled_end = None
    task.calendar_event_id = None
    task.calendar_id = None
    task.unscheduled_reason = reason
    task.unscheduled_at = now
    task.sync_status = TaskSyncStatus.SYNCED.value


@dataclass
class _Applied:
    events_updated: int = 0
    events_deleted: int = 0
    tasks_updated: int = 0


class CalendarSyncProcessor:
    """
    Applies provider deltas for one (user, calendar) at a time.

    Fetch, apply and cursor write for a calendar run under a per-key lock
    shared through Redis by the API and worker processes; different calendars
    sync in parallel.
    """

    def __init__(self, client_factory: Optional[Callable[[Session, str], GoogleCalendarClient]] = None,
                 clock: Callable[[], datetime] = utcnow, locks=None):
        self.client_factory = client_factory or GoogleCalendarClient.for_user
        self.clock = clock
        self._locks = locks or cursor_lock()

    # Webhook entry point

    async def handle_notification(self, db: Session, headers: WebhookHeaders) -> WebhookDecision:
        """Classify a notification and run the sync it asks for."""
        subscription = None
        if headers.method == "POST" and headers.channel_id:
            subscription = db.query(WatchSubscription).filter(WatchSubscription.id == headers.channel_id).first()

        decision = classify_notification(headers, subscription, self.clock())
        logger.info(
            "Webhook classified",
            channel_id=headers.channel_id,
            resource_state=headers.resource_state,
            message_number=headers.message_number,
            action=decision.action.value,
            status_code=decision.status_code
        )

        if decision.action != WebhookAction.SYNC:
            return decision

        user_id, calendar_id = str(subscription.user_id), subscription.calendar_id
        try:
            result = await self.process_changes(db, user_id, calendar_id)
            logger.info(
                "Webhook sync processed",
                channel_id=headers.channel_id,
                tasks_updated=result.tasks_updated,
                full_resync=result.full_resync
            )
        except AuthenticationExpired as e:
            logger.warning("Calendar authentication expired during sync", user_id=user_id, error=e.message)
            return WebhookDecision(WebhookAction.REJECT, 401, e.message)
        except Exception as e:
            # Acknowledged anyway; the provider would otherwise redeliver forever
            logger.error(
                "Error processing calendar sync",
                user_id=user_id,
                calendar_id=calendar_id,
                error=str(e)
            )
        return decision

    # Cursor bookkeeping

    def _get_cursor(self, db: Session, user_id: str, calendar_id: str) -> Optional[SyncCursor]:
        return db.query(SyncCursor).filter(
            SyncCursor.user_id == user_id,
            SyncCursor.calendar_id == calendar_id
        ).first()

    def _save_cursor(self, db: Session, user_id: str, calendar_id: str, sync_token: Optional[str],
                     full: bool) -> None:
        cursor = self._get_cursor(db, user_id, calendar_id)
        if cursor is None:
            cursor = SyncCursor(user_id=user_id, calendar_id=calendar_id)
            db.add(cursor)
        now = self.clock()
        if sync_token:
            cursor.sync_token = sync_token
        cursor.last_sync_at = now
        if full:
            cursor.last_full_sync_at = now

    def get_last_sync_time(self, db: Session, user_id: str, calendar_id: str) -> Optional[datetime]:
        cursor = self._get_cursor(db, user_id, calendar_id)
        return as_utc(cursor.last_sync_at) if cursor else None

    async def clear_sync_token(self, db: Session, user_id: str, calendar_id: str) -> bool:
        """Forget the cursor so the next sync starts from scratch."""
        async with self._locks.hold((user_id, calendar_id)):
            cursor = self._get_cursor(db, user_id, calendar_id)
            if cursor is None:
                return False
            db.delete(cursor)
            db.commit()
        logger.info("Sync cursor cleared", user_id=user_id, calendar_id=calendar_id)
        return True

    def get_sync_status(self, db: Session, user_id: str, calendar_ids: Iterable[str]) -> List[SyncStatus]:
        statuses = []
        for calendar_id in calendar_ids:
            cursor = self._get_cursor(db, user_id, calendar_id)
            watch = db.query(WatchSubscription).filter(
                WatchSubscription.user_id == user_id,
                WatchSubscription.calendar_id == calendar_id
            ).order_by(WatchSubscription.expiration.desc()).first()
            statuses.append(SyncStatus(
                calendar_id=calendar_id,
                last_sync_at=as_utc(cursor.last_sync_at) if cursor else None,
                has_cursor=bool(cursor and cursor.sync_token),
                watch_expiration=as_utc(watch.expiration) if watch else None,
            ))
        return statuses

    # Fetching

    def _window(self) -> Dict[str, str]:
        now = self.clock()
        return {
            "timeMin": to_iso(now - timedelta(days=settings.SYNC_LOOKBACK_DAYS)),
            "timeMax": to_iso(now + timedelta(days=settings.SYNC_LOOKAHEAD_DAYS)),
        }

    async def _fetch_linked(self, client: GoogleCalendarClient, calendar_id: str) -> dict:
        """Cursorless fetch limited to managed events in the look-back window."""
        return await client.list_all_events(
            calendar_id,
            privateExtendedProperty=f"{TASK_ID_KEY}=*",
            singleEvents=True,
            maxResults=settings.SYNC_PAGE_SIZE,
            **self._window()
        )

    async def _fetch_window(self, client: GoogleCalendarClient, calendar_id: str) -> dict:
        return await client.list_all_events(
            calendar_id,
            singleEvents=True,
            maxResults=settings.SYNC_PAGE_SIZE,
            **self._window()
        )

    async def _fetch_delta(self, db: Session, client: GoogleCalendarClient, user_id: str,
                           calendar_id: str, cursorless_fetch) -> Tuple[dict, bool]:
        """
        Fetch changes since the stored cursor.

        A cursor the provider rejects is deleted before the replacement fetch,
        and the pages fetched with it are discarded.
        """
        cursor = self._get_cursor(db, user_id, calendar_id)
        if cursor is not None and cursor.sync_token:
            try:
                response = await client.list_all_events(
                    calendar_id, sync_token=cursor.sync_token, maxResults=settings.SYNC_PAGE_SIZE
                )
                return response, False
            except SyncCursorExpired:
                logger.warning("Sync token expired, performing full resync", user_id=user_id, calendar_id=calendar_id)
                db.delete(cursor)
                db.commit()
        return await cursorless_fetch(client, calendar_id), True

    # Applying

    def _parse_events(self, items: Iterable[dict], calendar_id: str) -> List[ProviderEvent]:
        events = []
        for payload in items:
            try:
                events.append(parse_provider_event(payload))
            except ValidationError as e:
                logger.warning("Skipping malformed event", calendar_id=calendar_id, error=e.message)
        return events

    def _resolve_link(self, db: Session, user_id: str, event: ProviderEvent,
                      stored: Optional[CalendarEvent]) -> Optional[TaskLink]:
        """
        Cancelled events arrive stripped of properties; fall back to the stored
        copy, then to the task that still points at the event.
        """
        if event.link is not None:
            return event.link
        if stored is not None and stored.linked_task_id:
            return TaskLink(task_id=stored.linked_task_id, buffer_role=stored.buffer_role, priority=stored.priority)
        if event.is_deleted:
            task = db.query(Task).filter(Task.user_id == user_id, Task.calendar_event_id == event.id).first()
            if task is not None:
                return TaskLink(task_id=str(task.id))
        return None

    def _store_event(self, db: Session, user_id: str, calendar_id: str, event: ProviderEvent,
                     stored: Optional[CalendarEvent], link: Optional[TaskLink]) -> bool:
        if event.is_deleted:
            if stored is not None:
                db.delete(stored)
                return True
            return False
        return upsert_event(db, user_id, calendar_id, event, link=link, stored=stored) is not None

    def _apply_to_task(self, db: Session, user_id: str, event: ProviderEvent, link: TaskLink) -> bool:
        """Reflect a managed event change on its task; returns True when the task changed."""
        task = db.query(Task).filter(Task.id == link.task_id, Task.user_id == user_id).first()
        if task is None:
            logger.info("Task not found for managed event", task_id=link.task_id, event_id=event.id)
            return False

        if link.is_buffer:
            # A removed buffer only drops its reference
            field = {BUFFER_BEFORE: "buffer_before_event_id", BUFFER_AFTER: "buffer_after_event_id"}.get(link.buffer_role)
            if event.is_deleted and field and getattr(task, field) == event.id:
                setattr(task, field, None)
                return True
            return False

        if task.calendar_event_id != event.id:
            return False

        change = classify_change(event, task.scheduled_start, task.scheduled_end)
        now = self.clock()
        if change == ChangeKind.DELETED:
            mark_task_unscheduled(task, now)
            logger.info("Calendar event deleted, task unscheduled", task_id=str(task.id), event_id=event.id)
            return True
        if change == ChangeKind.RESCHEDULED:
            task.scheduled_start, task.scheduled_end = _timed_bounds(event)
            task.rescheduled_externally = True
            task.rescheduled_at = now
            task.sync_status = TaskSyncStatus.SYNCED.value
            logger.info("Calendar event rescheduled externally", task_id=str(task.id), event_id=event.id)
            return True
        return False

    def _apply(self, db: Session, user_id: str, calendar_id: str, events: Iterable[ProviderEvent],
               touched: Set[str]) -> _Applied:
        applied = _Applied()
        for event in events:
            stored = get_stored_event(db, user_id, calendar_id, event.id)
            link = self._resolve_link(db, user_id, event, stored)
            if self._store_event(db, user_id, calendar_id, event, stored, link):
                if event.is_deleted:
                    applied.events_deleted += 1
                else:
                    applied.events_updated += 1
            if link is not None and self._apply_to_task(db, user_id, event, link):
                applied.tasks_updated += 1
                touched.add(link.task_id)
        db.flush()
        return applied

    def _invalidate_caches(self, user_id: str, task_ids: Iterable[str]) -> None:
        availability_service.invalidate_user(user_id)
        proposal_coordinator.invalidate_suggestions(task_ids)

    # Public sync operations

    async def process_changes(self, db: Session, user_id: str, calendar_id: str) -> SyncResult:
        """Incremental sync triggered by a notification."""
        async with self._locks.hold((user_id, calendar_id)):
            try:
                client = self.client_factory(db, user_id)
                response, full_resync = await self._fetch_delta(db, client, user_id, calendar_id, self._fetch_linked)

                touched: Set[str] = set()
                events = self._parse_events(response.get("items", []), calendar_id)
                applied = self._apply(db, user_id, calendar_id, events, touched)
                self._save_cursor(db, user_id, calendar_id, response.get("nextSyncToken"), full=full_resync)
                db.commit()
            except Exception as e:
                db.rollback()
                logger.error("Failed to process calendar changes", user_id=user_id, calendar_id=calendar_id, error=str(e))
                raise

        self._invalidate_caches(user_id, touched)
        logger.info(
            "Calendar changes processed",
            user_id=user_id,
            calendar_id=calendar_id,
            events=len(events),
            tasks_updated=applied.tasks_updated,
            full_resync=full_resync
        )
        return SyncResult(
            events_updated=applied.events_updated,
            events_deleted=applied.events_deleted,
            tasks_updated=applied.tasks_updated,
            full_resync=full_resync,
        )

    async def sync_calendar_events(self, db: Session, user_id: str, calendar_id: str,
                                   full_sync: bool = False) -> SyncResult:
        """
        Refresh the local event store for the look-back/look-ahead window.

        A full sync drops the calendar's stored events and cursor first.
        """
        async with self._locks.hold((user_id, calendar_id)):
            try:
                client = self.client_factory(db, user_id)
                if full_sync:
                    db.query(CalendarEvent).filter(
                        CalendarEvent.user_id == user_id,
                        CalendarEvent.calendar_id == calendar_id
                    ).delete(synchronize_session=False)
                    db.query(SyncCursor).filter(
                        SyncCursor.user_id == user_id,
                        SyncCursor.calendar_id == calendar_id
                    ).delete(synchronize_session=False)
                    db.commit()

                response, full_resync = await self._fetch_delta(db, client, user_id, calendar_id, self._fetch_window)

                touched: Set[str] = set()
                events = self._parse_events(response.get("items", []), calendar_id)
                applied = self._apply(db, user_id, calendar_id, events, touched)
                self._save_cursor(db, user_id, calendar_id, response.get("nextSyncToken"), full=full_resync)
                db.commit()
            except Exception as e:
                db.rollback()
                logger.error("Failed to sync calendar events", user_id=user_id, calendar_id=calendar_id, error=str(e))
                raise

        self._invalidate_caches(user_id, touched)
        logger.info(
            "Calendar sync completed",
            user_id=user_id,
            calendar_id=calendar_id,
            events_updated=applied.events_updated,
            events_deleted=applied.events_deleted,
            full_sync=full_sync
        )
        return SyncResult(
            events_updated=applied.events_updated,
            events_deleted=applied.events_deleted,
            tasks_updated=applied.tasks_updated,
            full_resync=full_resync,
        )

    async def process_single_event(self, db: Session, user_id: str, calendar_id: str, event_id: str) -> bool:
        """Re-read one event; returns True when it was a managed event."""
        async with self._locks.hold((user_id, calendar_id)):
            client = self.client_factory(db, user_id)
            try:
                payload = await client.get_event(calendar_id, event_id)
            except ProviderNotFound:
                payload = {"id": event_id, "status": "cancelled"}

            touched: Set[str] = set()
            event = parse_provider_event(payload)
            stored = get_stored_event(db, user_id, calendar_id, event_id)
            link = self._resolve_link(db, user_id, event, stored)

            self._store_event(db, user_id, calendar_id, event, stored, link)
            if link is not None and self._apply_to_task(db, user_id, event, link):
                touched.add(link.task_id)
            db.commit()

        self._invalidate_caches(user_id, touched)
        return link is not None


calendar_sync_processor = CalendarSyncProcessor()
