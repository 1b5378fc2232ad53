"""
Google Calendar push notification endpoint.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session
import structlog

from ...database.base import get_db
from ...services.calendar_sync import WebhookAction, WebhookHeaders, calendar_sync_processor
from ...tasks.calendar_sync import renew_watch

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.api_route("/calendar", methods=["GET", "POST", "PUT", "PATCH", "DELETE"], response_class=PlainTextResponse)
async def handle_calendar_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Receive a change notification.

    The provider only looks at the status code; bodies are plain text.
    """
    headers = WebhookHeaders.from_request(request.method, request.headers)
    decision = await calendar_sync_processor.handle_notification(db, headers)

    if decision.action == WebhookAction.RENEW:
        try:
            renew_watch.delay(headers.channel_id)
        except Exception as e:
            logger.error("Failed to enqueue watch renewal", channel_id=headers.channel_id, error=str(e))

    return PlainTextResponse(decision.message, status_code=decision.status_code)
