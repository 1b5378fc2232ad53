"""
Scheduling API endpoints: suggestions, proposals and single-task actions.
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
import structlog

from ...core.exceptions import BrainDumperError
from ...database.base import get_db
from ...database.models import User
from ...middleware.auth import get_current_user
from ...schemas.scheduling import (
    BatchSuggestionsRequest, ConfirmRequest, ConfirmResult, ProposeRequest, RescheduleTaskRequest,
    ScheduleActionResult, ScheduleProposal, ScheduleTaskRequest, SuggestionsRequest, SuggestionsResponse
)
from ...services.proposals import proposal_coordinator

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/suggestions", response_model=SuggestionsResponse)
async def get_suggestions(
    suggestions_request: SuggestionsRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Ranked candidate slots for one task."""
    try:
        return await proposal_coordinator.get_suggestions(
            db,
            str(current_user.id),
            suggestions_request.task_id,
            count=suggestions_request.count,
            start_date=suggestions_request.start_date,
            end_date=suggestions_request.end_date
        )
    except (HTTPException, BrainDumperError):
        raise
    except Exception as e:
        logger.error("Failed to get suggestions", user_id=str(current_user.id), error=str(e))
        raise HTTPException(status_code=500, detail="Failed to get scheduling suggestions")


@router.post("/suggestions/batch", response_model=List[SuggestionsResponse])
async def get_batch_suggestions(
    batch_request: BatchSuggestionsRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return await proposal_coordinator.get_batch_suggestions(db, str(current_user.id), batch_request)


@router.post("/proposals", response_model=ScheduleProposal)
async def create_proposal(
    propose_request: ProposeRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Run the scheduler over a batch of tasks without touching the calendar."""
    try:
        return await proposal_coordinator.propose(
            db, str(current_user.id), propose_request.task_ids, propose_request.options
        )
    except (HTTPException, BrainDumperError):
        raise
    except Exception as e:
        logger.error("Failed to create proposal", user_id=str(current_user.id), error=str(e))
        raise HTTPException(status_code=500, detail="Failed to create schedule proposal")


@router.get("/proposals/{proposal_id}", response_model=ScheduleProposal)
async def get_proposal(
    proposal_id: str,
    current_user: User = Depends(get_current_user)
):
    return proposal_coordinator.get_proposal(str(current_user.id), proposal_id)


@router.post("/proposals/{proposal_id}/confirm", response_model=ConfirmResult)
async def confirm_proposal(
    proposal_id: str,
    confirm_request: ConfirmRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Write the approved assignments to the calendar.

    A partial failure is answered with 207 and the per-task results.
    """
    return await proposal_coordinator.confirm(db, str(current_user.id), proposal_id, confirm_request)


@router.delete("/proposals/{proposal_id}")
async def discard_proposal(
    proposal_id: str,
    current_user: User = Depends(get_current_user)
):
    proposal_coordinator.discard(str(current_user.id), proposal_id)
    return {"proposal_id": proposal_id, "discarded": True}


@router.post("/tasks/{task_id}/schedule", response_model=ScheduleActionResult)
async def schedule_task(
    task_id: str,
    schedule_request: ScheduleTaskRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return await proposal_coordinator.schedule_task(db, str(current_user.id), task_id, schedule_request)


@router.post("/tasks/{task_id}/unschedule", response_model=ScheduleActionResult)
async def unschedule_task(
    task_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return await proposal_coordinator.unschedule_task(db, str(current_user.id), task_id)


@router.post("/tasks/{task_id}/reschedule", response_model=ScheduleActionResult)
async def reschedule_task(
    task_id: str,
    reschedule_request: RescheduleTaskRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return await proposal_coordinator.reschedule_task(db, str(current_user.id), task_id, reschedule_request)
