"""
Celery tasks for calendar synchronization and watch maintenance.
"""
import asyncio
from typing import Any, Dict, List

import structlog

from ..celery_app import celery_app
from ..core.exceptions import AuthenticationExpired, TransientNetworkError
from ..core.logging_config import LoggingContext
from ..database.base import SessionLocal
from ..database.models import Calendar, SyncCursor
from ..services.calendar_sync import calendar_sync_processor
from ..services.watch_manager import watch_manager

logger = structlog.get_logger(__name__)


@celery_app.task(bind=True, queue="calendar_sync")
def process_calendar_sync(self, user_id: str, calendar_id: str, full_sync: bool = False) -> Dict[str, Any]:
    """
    Refresh one calendar's stored events.

    Transient provider failures are retried; revoked credentials are not.
    """
    with LoggingContext(user_id=user_id, celery_task_id=self.request.id):
        try:
            with SessionLocal() as db:
                result = asyncio.run(
                    calendar_sync_processor.sync_calendar_events(db, user_id, calendar_id, full_sync=full_sync)
                )
            return result.model_dump()
        except AuthenticationExpired as e:
            logger.warning("Calendar sync skipped, access revoked", calendar_id=calendar_id, error=e.message)
            return {"success": False, "error": e.message}
        except TransientNetworkError as exc:
            logger.warning("Calendar sync hit a transient error", calendar_id=calendar_id, error=str(exc))
            raise self.retry(exc=exc, countdown=60, max_retries=3)


@celery_app.task(bind=True, queue="calendar_sync")
def create_watch(self, user_id: str, calendar_id: str) -> Dict[str, Any]:
    with LoggingContext(user_id=user_id, celery_task_id=self.request.id):
        try:
            with SessionLocal() as db:
                subscription = asyncio.run(watch_manager.create(db, user_id, calendar_id))
                return {
                    "channel_id": subscription.id,
                    "resource_id": subscription.resource_id,
                    "expiration": subscription.expiration.isoformat(),
                }
        except TransientNetworkError as exc:
            raise self.retry(exc=exc, countdown=60, max_retries=3)


@celery_app.task(bind=True, queue="calendar_sync")
def renew_watch(self, channel_id: str) -> Dict[str, Any]:
    """Replace one channel, typically after a notification arrived on an expired one."""
    with LoggingContext(celery_task_id=self.request.id, channel_id=channel_id):
        with SessionLocal() as db:
            subscription = watch_manager.get_by_channel(db, channel_id)
            if subscription is None:
                logger.info("Watch to renew no longer exists", channel_id=channel_id)
                return {"renewed": False}
            try:
                renewed = asyncio.run(watch_manager.renew(db, subscription))
            except TransientNetworkError as exc:
                raise self.retry(exc=exc, countdown=60, max_retries=3)
            return {"renewed": True, "channel_id": renewed.id}


@celery_app.task(bind=True, queue="calendar_sync")
def renew_expiring_watches(self) -> Dict[str, int]:
    with LoggingContext(celery_task_id=self.request.id):
        with SessionLocal() as db:
            result = asyncio.run(watch_manager.renew_expiring(db))
        return result.model_dump()


@celery_app.task(bind=True, queue="calendar_sync")
def periodic_calendar_sync(self) -> Dict[str, Any]:
    """
    Incremental sync for every enabled calendar that already has a cursor.

    One calendar failing does not stop the others.
    """
    with LoggingContext(celery_task_id=self.request.id):
        results: List[Dict[str, Any]] = []
        with SessionLocal() as db:
            pairs = db.query(SyncCursor.user_id, SyncCursor.calendar_id).join(
                Calendar,
                (Calendar.user_id == SyncCursor.user_id) & (Calendar.google_calendar_id == SyncCursor.calendar_id)
            ).filter(Calendar.enabled.is_(True)).all()

            for user_id, calendar_id in pairs:
                try:
                    result = asyncio.run(
                        calendar_sync_processor.sync_calendar_events(db, str(user_id), calendar_id)
                    )
                    results.append({
                        "user_id": str(user_id),
                        "calendar_id": calendar_id,
                        "status": "success",
                        "tasks_updated": result.tasks_updated,
                    })
                except Exception as e:
                    logger.error(
                        "Failed to sync calendar in periodic task",
                        user_id=str(user_id),
                        calendar_id=calendar_id,
                        error=str(e)
                    )
                    results.append({
                        "user_id": str(user_id),
                        "calendar_id": calendar_id,
                        "status": "error",
                        "error": str(e),
                    })

        logger.info(
            "Periodic calendar sync completed",
            calendars=len(results),
            failed=sum(1 for r in results if r["status"] == "error")
        )
        return {"calendars": len(results), "results": results}
