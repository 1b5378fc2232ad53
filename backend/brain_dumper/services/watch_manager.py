"""
Push-notification channel lifecycle for Google Calendar watches.
"""
import re
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session
import structlog

from ..config import settings
from ..core.exceptions import AuthenticationExpired, ProviderNotFound, ValidationError
from ..core.timeutils import UTC, as_utc, utcnow
from ..database.models import WatchSubscription
from ..schemas.calendar import WatchRenewalResult, WatchStopResult
from .google_calendar import GoogleCalendarClient

logger = structlog.get_logger(__name__)

_UNSAFE_CHANNEL_CHARS = re.compile(r"[^a-zA-Z0-9]")


def make_channel_id(user_id: str, calendar_id: str, created_at: datetime) -> str:
    """``brain-dumper-{user}-{calendar}-{epoch ms}`` with the calendar id made provider-safe."""
    sanitized = _UNSAFE_CHANNEL_CHARS.sub("_", calendar_id)
    epoch_ms = int(as_utc(created_at).timestamp() * 1000)
    return f"brain-dumper-{user_id}-{sanitized}-{epoch_ms}"


def make_channel_token(user_id: str, calendar_id: str) -> str:
    return f"{user_id}:{calendar_id}"


def needs_renewal(subscription: WatchSubscription, threshold_hours: Optional[float] = None,
                  now: Optional[datetime] = None) -> bool:
    """True iff the channel expires within ``threshold_hours`` from now."""
    if threshold_hours is None:
        threshold_hours = settings.WATCH_RENEWAL_THRESHOLD_HOURS
    now = as_utc(now) if now else utcnow()
    return as_utc(subscription.expiration) <= now + timedelta(hours=threshold_hours)


def validate_token(header_token: Optional[str], subscription: WatchSubscription) -> bool:
    """Exact match against ``userId:calendarId``; empty tokens never match."""
    if not header_token:
        return False
    return header_token == make_channel_token(str(subscription.user_id), subscription.calendar_id)


class WatchChannelManager:
    """Creates, renews and stops watch channels and keeps their records."""

    def __init__(self, client_factory: Optional[Callable[[Session, str], GoogleCalendarClient]] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.client_factory = client_factory or GoogleCalendarClient.for_user
        self.clock = clock

    needs_renewal = staticmethod(needs_renewal)
    validate_token = staticmethod(validate_token)

    async def create(self, db: Session, user_id: str, calendar_id: str) -> WatchSubscription:
        """Register a channel with the provider and store the subscription."""
        address = settings.webhook_url
        if not address:
            raise ValidationError("WEBHOOK_BASE_URL is not configured")

        now = self.clock()
        channel_id = make_channel_id(user_id, calendar_id, now)
        channel_token = make_channel_token(user_id, calendar_id)
        requested_expiration = now + timedelta(days=settings.WATCH_TTL_DAYS)

        try:
            client = self.client_factory(db, user_id)
            response = await client.watch_events(
                calendar_id,
                channel_id=channel_id,
                address=address,
                token=channel_token,
                expiration_ms=int(requested_expiration.timestamp() * 1000)
            )

            if not response.get("resourceId"):
                raise ValidationError("Invalid response from events.watch", channel_id=channel_id)

            expiration = requested_expiration
            if response.get("expiration"):
                expiration = datetime.fromtimestamp(int(response["expiration"]) / 1000, tz=UTC)

            subscription = WatchSubscription(
                id=channel_id,
                resource_id=response["resourceId"],
                user_id=user_id,
                calendar_id=calendar_id,
                channel_token=channel_token,
                expiration=expiration
            )
            db.add(subscription)
            db.commit()
            db.refresh(subscription)

            logger.info(
                "Calendar watch created",
                user_id=user_id,
                calendar_id=calendar_id,
                channel_id=channel_id,
                expiration=expiration.isoformat()
            )
            return subscription

        except Exception as e:
            logger.error("Failed to create calendar watch", user_id=user_id, calendar_id=calendar_id, error=str(e))
            raise

    async def stop(self, db: Session, subscription: WatchSubscription) -> bool:
        """
        Stop a channel and drop its record.

        A channel the provider no longer knows counts as stopped. When the
        user's credentials are gone the record is still dropped, but the call
        reports failure.
        """
        channel_id = subscription.id
        stopped = True
        try:
            client = self.client_factory(db, str(subscription.user_id))
            await client.stop_channel(channel_id, subscription.resource_id)
        except ProviderNotFound:
            logger.info("Watch already stopped", channel_id=channel_id)
        except AuthenticationExpired:
            logger.warning("No credentials to stop watch, removing record", channel_id=channel_id)
            stopped = False
        except Exception as e:
            logger.error("Failed to stop watch", channel_id=channel_id, error=str(e))
            return False

        db.delete(subscription)
        db.commit()
        logger.info("Calendar watch stopped", channel_id=channel_id, user_id=str(subscription.user_id))
        return stopped

    async def renew(self, db: Session, subscription: WatchSubscription) -> WatchSubscription:
        user_id, calendar_id = str(subscription.user_id), subscription.calendar_id
        await self.stop(db, subscription)
        return await self.create(db, user_id, calendar_id)

    async def renew_expiring(self, db: Session, threshold_hours: Optional[float] = None) -> WatchRenewalResult:
        """Renew every channel expiring within the threshold."""
        if threshold_hours is None:
            threshold_hours = settings.WATCH_RENEWAL_THRESHOLD_HOURS
        cutoff = self.clock() + timedelta(hours=threshold_hours)
        expiring = db.query(WatchSubscription).filter(WatchSubscription.expiration <= cutoff).all()

        renewed = failed = 0
        for subscription in expiring:
            channel_id = subscription.id
            try:
                await self.renew(db, subscription)
                renewed += 1
            except Exception as e:
                failed += 1
                logger.error("Failed to renew watch", channel_id=channel_id, error=str(e))

        logger.info("Expiring watches renewed", renewed=renewed, failed=failed)
        return WatchRenewalResult(renewed=renewed, failed=failed)

    def get_by_channel(self, db: Session, channel_id: str) -> Optional[WatchSubscription]:
        return db.query(WatchSubscription).filter(WatchSubscription.id == channel_id).first()

    def get_for_user(self, db: Session, user_id: str) -> List[WatchSubscription]:
        return db.query(WatchSubscription).filter(WatchSubscription.user_id == user_id).all()

    async def stop_all_for_user(self, db: Session, user_id: str) -> WatchStopResult:
        stopped = failed = 0
        for subscription in self.get_for_user(db, user_id):
            if await self.stop(db, subscription):
                stopped += 1
            else:
                failed += 1
        logger.info("Stopped watches for user", user_id=user_id, stopped=stopped, failed=failed)
        return WatchStopResult(stopped=stopped, failed=failed)


watch_manager = WatchChannelManager()
