"""
Google Calendar API client.

Wraps the blocking ``googleapiclient`` calls in worker threads and translates
provider failures into the engine's error taxonomy.
"""
import asyncio
import socket
from typing import Optional, List, Dict, Any

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from sqlalchemy.orm import Session
import structlog

from ..config import settings
from ..core.exceptions import (
    AuthenticationExpired, ProviderNotFound, SyncCursorExpired, TransientNetworkError
)
from ..core.retry import retry_async_with_backoff
from ..core.timeutils import as_utc
from ..database.models import Calendar

logger = structlog.get_logger(__name__)

NOT_CONNECTED_MESSAGE = "Calendar not connected. Please connect your calendar first."


def _http_status(error: HttpError) -> int:
    return int(getattr(error.resp, "status", 0) or 0)


def translate_error(error: Exception, operation: str) -> Exception:
    """Map a provider/transport failure onto the engine's error classes."""
    if isinstance(error, RefreshError):
        return AuthenticationExpired(operation=operation)
    if isinstance(error, HttpError):
        status = _http_status(error)
        detail = str(error)
        if status == 401 or "invalid_grant" in detail:
            return AuthenticationExpired(operation=operation)
        if status == 404:
            return ProviderNotFound(f"{operation}: resource not found", operation=operation)
        if status == 410:
            return SyncCursorExpired("Sync token is no longer valid", operation=operation)
        if status == 429 or status >= 500:
            return TransientNetworkError(f"{operation} failed with HTTP {status}", status=status)
        return error
    if isinstance(error, (TransportError, socket.timeout, ConnectionError, TimeoutError)):
        return TransientNetworkError(f"{operation} failed: {error}")
    return error


class GoogleCalendarClient:
    """Authenticated Calendar v3 client for one user."""

    SCOPES = [
        'https://www.googleapis.com/auth/calendar',
        'https://www.googleapis.com/auth/calendar.events'
    ]

    def __init__(self, connection: Calendar, db: Optional[Session] = None):
        self.connection = connection
        self.db = db
        self._credentials: Optional[Credentials] = None
        self._service = None

    @classmethod
    def for_user(cls, db: Session, user_id: str) -> "GoogleCalendarClient":
        """Client using the first connected calendar that holds tokens; primary first."""
        connection = db.query(Calendar).filter(
            Calendar.user_id == user_id,
            Calendar.access_token.isnot(None)
        ).order_by(Calendar.is_primary.desc()).first()
        if connection is None:
            raise AuthenticationExpired(NOT_CONNECTED_MESSAGE, user_id=user_id)
        return cls(connection, db)

    def _get_credentials(self) -> Credentials:
        if self._credentials is None:
            expiry = self.connection.token_expiry
            self._credentials = Credentials(
                token=self.connection.access_token,
                refresh_token=self.connection.refresh_token,
                token_uri=settings.GOOGLE_TOKEN_URI,
                client_id=settings.GOOGLE_CLIENT_ID,
                client_secret=settings.GOOGLE_CLIENT_SECRET,
                scopes=self.SCOPES
            )
            if expiry is not None:
                # google-auth compares against naive UTC
                self._credentials.expiry = as_utc(expiry).replace(tzinfo=None)
        return self._credentials

    def _refresh_if_needed(self) -> None:
        credentials = self._get_credentials()
        if not (credentials.expired and credentials.refresh_token):
            return
        try:
            credentials.refresh(Request())
        except RefreshError as e:
            logger.warning(
                "Token refresh rejected",
                user_id=str(self.connection.user_id),
                error=str(e)
            )
            raise AuthenticationExpired(user_id=str(self.connection.user_id))

        self.connection.access_token = credentials.token
        if credentials.refresh_token:
            self.connection.refresh_token = credentials.refresh_token
        if credentials.expiry:
            self.connection.token_expiry = as_utc(credentials.expiry)
        if self.db is not None:
            self.db.commit()
        logger.info("Tokens refreshed successfully", user_id=str(self.connection.user_id))

    def _get_service(self):
        if self._service is None:
            self._service = build('calendar', 'v3', credentials=self._get_credentials(), cache_discovery=False)
        return self._service

    def _run(self, operation: str, make_request):
        """Blocking call body; runs in a worker thread."""
        try:
            self._refresh_if_needed()
            return make_request(self._get_service()).execute()
        except (AuthenticationExpired, TransientNetworkError):
            raise
        except Exception as e:
            translated = translate_error(e, operation)
            if translated is e:
                raise
            raise translated from e

    async def _call(self, operation: str, make_request):
        return await asyncio.to_thread(self._run, operation, make_request)

    @retry_async_with_backoff()
    async def list_events(self, calendar_id: str, sync_token: Optional[str] = None,
                          page_token: Optional[str] = None, **params: Any) -> Dict[str, Any]:
        """One page of ``events.list``; a rejected ``sync_token`` raises SyncCursorExpired."""
        query = dict(params)
        query['calendarId'] = calendar_id
        if sync_token:
            query['syncToken'] = sync_token
        if page_token:
            query['pageToken'] = page_token
        return await self._call("events.list", lambda s: s.events().list(**query))

    @retry_async_with_backoff()
    async def get_event(self, calendar_id: str, event_id: str) -> Dict[str, Any]:
        return await self._call(
            "events.get",
            lambda s: s.events().get(calendarId=calendar_id, eventId=event_id)
        )

    @retry_async_with_backoff()
    async def insert_event(self, calendar_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        created = await self._call(
            "events.insert",
            lambda s: s.events().insert(calendarId=calendar_id, body=body)
        )
        logger.info(
            "Event created in Google Calendar",
            calendar_id=calendar_id,
            google_event_id=created.get('id')
        )
        return created

    @retry_async_with_backoff()
    async def patch_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        updated = await self._call(
            "events.patch",
            lambda s: s.events().patch(calendarId=calendar_id, eventId=event_id, body=body)
        )
        logger.info("Event updated in Google Calendar", calendar_id=calendar_id, google_event_id=event_id)
        return updated

    @retry_async_with_backoff()
    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Delete an event; returns False when it was already gone."""
        try:
            await self._call(
                "events.delete",
                lambda s: s.events().delete(calendarId=calendar_id, eventId=event_id)
            )
        except (ProviderNotFound, SyncCursorExpired):
            # 410 Gone on delete means the event was already removed
            logger.info("Event already deleted", calendar_id=calendar_id, google_event_id=event_id)
            return False
        logger.info("Event deleted from Google Calendar", calendar_id=calendar_id, google_event_id=event_id)
        return True

    @retry_async_with_backoff()
    async def watch_events(self, calendar_id: str, channel_id: str, address: str,
                           token: str, expiration_ms: int) -> Dict[str, Any]:
        body = {
            'id': channel_id,
            'type': 'web_hook',
            'address': address,
            'token': token,
            'expiration': str(expiration_ms),
        }
        return await self._call(
            "events.watch",
            lambda s: s.events().watch(calendarId=calendar_id, body=body)
        )

    @retry_async_with_backoff()
    async def stop_channel(self, channel_id: str, resource_id: Optional[str]) -> None:
        body = {'id': channel_id, 'resourceId': resource_id}
        await self._call("channels.stop", lambda s: s.channels().stop(body=body))

    async def list_all_events(self, calendar_id: str, sync_token: Optional[str] = None,
                              **params: Any) -> Dict[str, Any]:
        """
        Follow ``nextPageToken`` until the last page.

        Returns ``{"items": [...], "nextSyncToken": ...}``. Pages are only
        returned once all of them were fetched, so a 410 mid-way leaves
        nothing half-applied.
        """
        items: List[Dict[str, Any]] = []
        page_token = None
        while True:
            page = await self.list_events(calendar_id, sync_token=sync_token, page_token=page_token, **params)
            items.extend(page.get('items', []))
            page_token = page.get('nextPageToken')
            if not page_token:
                return {'items': items, 'nextSyncToken': page.get('nextSyncToken')}
