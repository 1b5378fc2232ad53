"""
Pydantic schemas for watch channels, sync and availability.
"""
from typing import Optional, List
from datetime import datetime, date
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from ..config import settings
from ..core.exceptions import ValidationError
from ..core.timeutils import parse_hhmm


def check_hhmm(value: str) -> str:
    try:
        parse_hhmm(value)
    except ValidationError as e:
        raise ValueError(e.message)
    return value


class TimeSlot(BaseModel):
    """A half-open ``[start, end)`` range flagged free or busy."""
    start: datetime
    end: datetime
    available: bool = True

    @property
    def duration_minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60


class AvailabilityWindow(BaseModel):
    """Free/busy slots for one calendar day."""
    date: str = Field(..., description="YYYY-MM-DD")
    slots: List[TimeSlot] = Field(default_factory=list)
    total_free_minutes: int = 0
    total_busy_minutes: int = 0


class DailyStats(BaseModel):
    """Summary figures for one availability window."""
    date: str
    free_percentage: int
    largest_free_block_minutes: int
    free_block_count: int


class WorkingHours(BaseModel):
    """Daily working range in ``HH:MM`` (24-hour) wall-clock time."""
    start: str = "09:00"
    end: str = "17:00"

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, v):
        return check_hhmm(v)

    @model_validator(mode="after")
    def validate_order(self):
        if parse_hhmm(self.end) <= parse_hhmm(self.start):
            raise ValueError("Working hours end must be after start")
        return self


class AvailabilityRequest(BaseModel):
    """Schema for availability queries."""
    calendar_ids: Optional[List[str]] = None
    start_date: date
    end_date: date
    working_hours: Optional[WorkingHours] = None
    timezone: Optional[str] = None
    include_protected: bool = True
    refresh: bool = False

    @model_validator(mode="after")
    def validate_range(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if (self.end_date - self.start_date).days + 1 > settings.MAX_AVAILABILITY_RANGE_DAYS:
            raise ValueError(
                f"Date range cannot exceed {settings.MAX_AVAILABILITY_RANGE_DAYS} days"
            )
        return self


class AvailabilityResponse(BaseModel):
    """Schema for availability results."""
    availability: List[AvailabilityWindow]
    calendars_checked: List[str]
    total_available_minutes: int


class WatchCreateRequest(BaseModel):
    """Schema for enabling push notifications on a calendar."""
    calendar_id: str = Field("primary", min_length=1)


class WatchSubscriptionOut(BaseModel):
    """Schema for a registered watch channel."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    resource_id: Optional[str] = None
    calendar_id: str
    user_id: str
    expiration: datetime
    needs_renewal: bool = False


class WatchStopResult(BaseModel):
    """Schema for stopping all of a user's watches."""
    stopped: int
    failed: int = 0


class WatchRenewalResult(BaseModel):
    """Schema for a batch renewal run."""
    renewed: int
    failed: int


class SyncRequest(BaseModel):
    """Schema for an explicit calendar sync."""
    calendar_id: str = Field("primary", min_length=1)
    full_sync: bool = False


class SyncResult(BaseModel):
    """Schema for sync results."""
    success: bool = True
    events_updated: int = 0
    events_deleted: int = 0
    tasks_updated: int = 0
    full_resync: bool = False


class SyncStatus(BaseModel):
    """Schema for per-calendar sync state."""
    calendar_id: str
    last_sync_at: Optional[datetime] = None
    has_cursor: bool = False
    watch_expiration: Optional[datetime] = None
