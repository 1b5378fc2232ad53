"""
Pydantic schemas for scheduling, proposals and single-task actions.
"""
from datetime import datetime, date
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field, field_validator, model_validator

from .calendar import WorkingHours, check_hhmm
from .tasks import Priority, SchedulableTask, TaskType


class SlotRange(BaseModel):
    """A concrete ``[start, end)`` placement."""
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def validate_order(self):
        if self.end <= self.start:
            raise ValueError("Slot end must be after start")
        return self

    @property
    def duration_minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60


class TimeRange(BaseModel):
    """Wall-clock ``HH:MM`` range."""
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, v):
        return check_hhmm(v)


class SchedulingRuleSpec(BaseModel):
    """Effective rule for one task type."""
    task_type: TaskType
    preferred_time_range: TimeRange = Field(default_factory=lambda: TimeRange(start="09:00", end="17:00"))
    preferred_days: List[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])
    default_duration: int = Field(60, gt=0)
    buffer_before: int = Field(0, ge=0)
    buffer_after: int = Field(0, ge=0)
    enabled: bool = True
    calendar_id: Optional[str] = None


class ProtectedSlotSpec(BaseModel):
    """Recurring range treated as busy. Days are numbered 0=Sunday."""
    id: str
    name: str
    days_of_week: List[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])
    start_time: str
    end_time: str
    allow_override_for_urgent: bool = False
    enabled: bool = True

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, v):
        return check_hhmm(v)


class CallReservation(BaseModel):
    """Daily time kept free for ad-hoc calls."""
    duration_minutes: int = Field(60, gt=0, le=8 * 60)
    preferred_start: str = "15:00"
    days_of_week: List[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])

    @field_validator("preferred_start")
    @classmethod
    def validate_time(cls, v):
        return check_hhmm(v)


class SchedulingPreferences(BaseModel):
    """Per-user scheduling preferences."""
    default_calendar_id: str = "primary"
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    working_days: List[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])
    timezone: str = "UTC"
    keep_free_for_calls: Optional[CallReservation] = None
    prefer_contiguous_blocks: bool = True


class ConflictType(str, Enum):
    OVERLAP = "overlap"
    BUFFER = "buffer"
    RULE_VIOLATION = "rule_violation"
    PROTECTED_SLOT = "protected_slot"
    OUTSIDE_HOURS = "outside_hours"


class Conflict(BaseModel):
    """A warning or blocker attached to a candidate slot."""
    type: ConflictType
    description: str
    severity: str = Field("info", pattern="^(info|warning|error)$")
    resolution: Optional[str] = None
    conflicting_event_id: Optional[str] = None


class ScoringFactor(BaseModel):
    """One weighted contribution to a suggestion score."""
    name: str
    weight: int
    value: int = Field(ge=0, le=100)
    description: str


class Suggestion(BaseModel):
    """A ranked candidate slot for a task."""
    slot: SlotRange
    score: int = Field(ge=0, le=100)
    reasoning: str
    factors: List[ScoringFactor] = Field(default_factory=list)
    conflicts: List[Conflict] = Field(default_factory=list)


class DisplacementAction(str, Enum):
    MOVE = "move"
    DROP = "drop"


class Displacement(BaseModel):
    """A lower-priority scheduled task that must yield its time."""
    task_id: str
    task_content: Optional[str] = None
    priority: Priority
    original_start: datetime
    original_end: datetime
    action: DisplacementAction
    new_slot: Optional[SlotRange] = None
    displaced_by: str
    reason: str


class TaskAssignment(BaseModel):
    """Placement chosen for one task in a proposal."""
    task_id: str
    task: SchedulableTask
    calendar_id: str
    slot: SlotRange
    buffer_before: int = 0
    buffer_after: int = 0
    suggestions: List[Suggestion] = Field(default_factory=list)
    recommended_slot_index: int = 0
    conflicts: List[Conflict] = Field(default_factory=list)


class UnschedulableTask(BaseModel):
    """A task the engine could not place, with the reason."""
    task_id: str
    reason: str


class ProposalSummary(BaseModel):
    total_tasks: int
    scheduled: int
    unschedulable: int
    conflicts: int
    displacements: int


class ProposeOptions(BaseModel):
    """Options for generating a proposal."""
    respect_priority: bool = True
    include_buffers: bool = False
    allow_displacement: bool = True
    preferred_calendar_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @model_validator(mode="after")
    def validate_range(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class ScheduleProposal(BaseModel):
    """A full batch proposal awaiting approval."""
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    assignments: List[TaskAssignment] = Field(default_factory=list)
    unschedulable: List[UnschedulableTask] = Field(default_factory=list)
    displacements: List[Displacement] = Field(default_factory=list)
    summary: ProposalSummary
    options: ProposeOptions = Field(default_factory=ProposeOptions)


class ProposeRequest(BaseModel):
    """Schema for requesting a proposal."""
    task_ids: List[str] = Field(default_factory=list, max_length=100)
    options: ProposeOptions = Field(default_factory=ProposeOptions)


class ApprovalState(str, Enum):
    """Per-task state inside a proposal."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    MODIFIED = "modified"


class TaskApproval(BaseModel):
    """User decision for one task of a proposal."""
    task_id: str
    slot_index: int = Field(0, ge=0)
    confirmed: bool = True


class ConfirmRequest(BaseModel):
    """Schema for confirming a proposal."""
    approvals: List[TaskApproval] = Field(default_factory=list)
    displacements_approved: bool = False


class TaskCommitResult(BaseModel):
    """Outcome of committing one task."""
    task_id: str
    state: ApprovalState
    success: bool
    calendar_event_id: Optional[str] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    error: Optional[str] = None


class DisplacementResult(BaseModel):
    """Outcome of applying one displacement."""
    task_id: str
    action: DisplacementAction
    success: bool
    new_slot: Optional[SlotRange] = None
    error: Optional[str] = None


class ConfirmResult(BaseModel):
    """Per-task results of a confirm."""
    proposal_id: str
    success: bool
    results: List[TaskCommitResult] = Field(default_factory=list)
    displaced: List[DisplacementResult] = Field(default_factory=list)

    @property
    def failed_task_ids(self) -> List[str]:
        return [r.task_id for r in self.results if not r.success]


class SuggestionsRequest(BaseModel):
    """Schema for single-task suggestions."""
    task_id: str
    count: int = Field(5, ge=1, le=20)
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class BatchSuggestionsRequest(BaseModel):
    """Schema for suggestions across several tasks."""
    task_ids: List[str] = Field(..., min_length=1, max_length=20)
    count: int = Field(3, ge=1, le=20)
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class SuggestionsResponse(BaseModel):
    task_id: str
    suggestions: List[Suggestion] = Field(default_factory=list)
    cached: bool = False
    error: Optional[str] = None


class ScheduleTaskRequest(BaseModel):
    """Schema for placing one task at a chosen slot."""
    slot: SlotRange
    calendar_id: Optional[str] = None
    include_buffers: bool = False
    force: bool = False


class RescheduleTaskRequest(BaseModel):
    """Schema for moving an already scheduled task."""
    slot: SlotRange
    force: bool = False


class ScheduleActionResult(BaseModel):
    """Outcome of a single-task calendar action."""
    success: bool
    task_id: str
    calendar_event_id: Optional[str] = None
    calendar_id: Optional[str] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    conflicts: List[Conflict] = Field(default_factory=list)
    message: Optional[str] = None
