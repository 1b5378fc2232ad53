"""
Task Pydantic schemas.
"""
from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class Priority(str, Enum):
    """Task priority."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TaskType(str, Enum):
    """Kinds of work with their own scheduling rules."""
    DEEP_WORK = "deep_work"
    CODING = "coding"
    CALL = "call"
    MEETING = "meeting"
    PERSONAL = "personal"
    ADMIN = "admin"
    HEALTH = "health"
    OTHER = "other"


class SyncStatus(str, Enum):
    """Calendar sync state of a task."""
    PENDING = "pending"
    SYNCED = "synced"
    PENDING_UNSCHEDULED = "pending-unscheduled"
    ERROR = "error"


# Reason recorded when the linked provider event disappears
CALENDAR_EVENT_DELETED = "calendar_event_deleted"


class SchedulableTask(BaseModel):
    """The scheduling-relevant view of a task."""
    id: str
    content: str = Field(min_length=1)
    priority: Priority = Priority.MEDIUM
    task_type: Optional[TaskType] = None
    time_estimate: Optional[int] = Field(None, gt=0, le=24 * 60)
    due_date: Optional[datetime] = None
    buffer_before: Optional[int] = Field(None, ge=0)
    buffer_after: Optional[int] = Field(None, ge=0)
    preferred_time_of_day: Optional[str] = Field(None, pattern="^(morning|afternoon|evening)$")
    calendar_event_id: Optional[str] = None
    calendar_id: Optional[str] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, use_enum_values=False)


class TaskScheduleState(BaseModel):
    """Schedule fields of a task as stored."""
    id: str
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    calendar_event_id: Optional[str] = None
    calendar_id: Optional[str] = None
    buffer_before_event_id: Optional[str] = None
    buffer_after_event_id: Optional[str] = None
    sync_status: Optional[str] = None
    unscheduled_reason: Optional[str] = None
    rescheduled_externally: bool = False

    model_config = ConfigDict(from_attributes=True)
