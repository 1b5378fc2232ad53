"""
Calendar API endpoints: watches, sync and availability.
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
import structlog

from ...core.exceptions import BrainDumperError
from ...database.base import get_db
from ...database.models import User
from ...middleware.auth import get_current_user
from ...schemas.calendar import (
    AvailabilityRequest, AvailabilityResponse, SyncRequest, SyncResult, SyncStatus,
    WatchCreateRequest, WatchStopResult, WatchSubscriptionOut
)
from ...services.availability import availability_service
from ...services.calendar_sync import calendar_sync_processor
from ...services.preferences import get_enabled_calendar_ids
from ...services.watch_manager import needs_renewal, watch_manager

logger = structlog.get_logger(__name__)

router = APIRouter()


def _watch_out(subscription) -> WatchSubscriptionOut:
    return WatchSubscriptionOut(
        id=subscription.id,
        resource_id=subscription.resource_id,
        calendar_id=subscription.calendar_id,
        user_id=str(subscription.user_id),
        expiration=subscription.expiration,
        needs_renewal=needs_renewal(subscription),
    )


@router.post("/watches", response_model=WatchSubscriptionOut)
async def create_watch(
    watch_request: WatchCreateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Register push notifications for one of the user's calendars."""
    try:
        subscription = await watch_manager.create(db, str(current_user.id), watch_request.calendar_id)
        return _watch_out(subscription)
    except (HTTPException, BrainDumperError):
        raise
    except Exception as e:
        logger.error("Failed to create watch", user_id=str(current_user.id), error=str(e))
        raise HTTPException(status_code=500, detail="Failed to create calendar watch")


@router.get("/watches", response_model=List[WatchSubscriptionOut])
async def list_watches(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return [_watch_out(s) for s in watch_manager.get_for_user(db, str(current_user.id))]


@router.delete("/watches", response_model=WatchStopResult)
async def stop_watches(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Stop every channel the user has open."""
    return await watch_manager.stop_all_for_user(db, str(current_user.id))


@router.post("/sync", response_model=SyncResult)
async def sync_calendar(
    sync_request: SyncRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    try:
        return await calendar_sync_processor.sync_calendar_events(
            db, str(current_user.id), sync_request.calendar_id, full_sync=sync_request.full_sync
        )
    except (HTTPException, BrainDumperError):
        raise
    except Exception as e:
        logger.error("Calendar sync failed", user_id=str(current_user.id), error=str(e))
        raise HTTPException(status_code=500, detail="Failed to sync calendar")


@router.get("/sync/status", response_model=List[SyncStatus])
async def get_sync_status(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    user_id = str(current_user.id)
    return calendar_sync_processor.get_sync_status(db, user_id, get_enabled_calendar_ids(db, user_id))


@router.delete("/sync/cursor")
async def clear_sync_cursor(
    calendar_id: str = "primary",
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Forget the sync token so the next sync starts from scratch."""
    cleared = await calendar_sync_processor.clear_sync_token(db, str(current_user.id), calendar_id)
    return {"calendar_id": calendar_id, "cleared": cleared}


@router.post("/availability", response_model=AvailabilityResponse)
async def get_availability(
    availability_request: AvailabilityRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    try:
        return await availability_service.get_availability(
            db,
            str(current_user.id),
            availability_request.start_date,
            availability_request.end_date,
            calendar_ids=availability_request.calendar_ids,
            working_hours=availability_request.working_hours,
            timezone=availability_request.timezone,
            include_protected=availability_request.include_protected,
            refresh=availability_request.refresh
        )
    except (HTTPException, BrainDumperError):
        raise
    except Exception as e:
        logger.error("Availability lookup failed", user_id=str(current_user.id), error=str(e))
        raise HTTPException(status_code=500, detail="Failed to compute availability")
