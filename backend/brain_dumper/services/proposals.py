"""
Schedule proposals: propose, confirm, discard and suggestions.

Proposals and suggestion results live in expiring in-memory stores owned by
the coordinator instance.
"""
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session
import structlog

from ..config import settings
from ..core.cache import TTLCache
from ..core.exceptions import BrainDumperError, PartialCommitFailure, ProposalNotFound
from ..core.timeutils import as_utc, at_local_time, local_parts, utcnow
from ..database.models import Task, User
from ..schemas.calendar import AvailabilityWindow
from ..schemas.scheduling import (
    ApprovalState, BatchSuggestionsRequest, ConfirmRequest, ConfirmResult, Displacement,
    DisplacementAction, DisplacementResult, ProposalSummary, ProposeOptions, ProtectedSlotSpec,
    RescheduleTaskRequest, ScheduleActionResult, ScheduleProposal, ScheduleTaskRequest,
    SchedulingPreferences, SchedulingRuleSpec, SuggestionsResponse, TaskApproval, TaskAssignment,
    TaskCommitResult, UnschedulableTask
)
from .availability import AvailabilityService, availability_service
from .preferences import get_enabled_calendar_ids, load_preferences, load_protected_slots, load_rules
from .scheduling.conflicts import find_conflicts
from .scheduling.engine import ScheduledRange, SchedulingEngine
from .scheduling.intervals import IntervalSet
from .task_actions import TaskActionService, task_action_service, to_schedulable

logger = structlog.get_logger(__name__)

TASK_NOT_FOUND_REASON = "Task not found"
DISPLACED_REASON = "displaced_by_higher_priority"


@dataclass
class _UserContext:
    preferences: SchedulingPreferences
    rules: List[SchedulingRuleSpec]
    protected: List[ProtectedSlotSpec]


class ProposalCoordinator:
    """Runs the scheduling engine for a user and commits approved results."""

    def __init__(self, actions: Optional[TaskActionService] = None,
                 availability: Optional[AvailabilityService] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.actions = actions or task_action_service
        self.availability = availability or availability_service
        self.clock = clock
        self._proposals = TTLCache(ttl_seconds=settings.PROPOSAL_TTL_MINUTES * 60, maxsize=1024)
        self._suggestions = TTLCache(ttl_seconds=settings.SUGGESTION_CACHE_TTL_SECONDS, maxsize=2048)

    # Caches

    def invalidate_suggestions(self, task_ids: Iterable[str]) -> int:
        ids = {str(task_id) for task_id in task_ids}
        if not ids:
            return 0
        return self._suggestions.invalidate_where(lambda key: key[0] in ids)

    # Inputs

    def _load_context(self, db: Session, user_id: str) -> _UserContext:
        user = db.query(User).filter(User.id == user_id).first()
        preferences = load_preferences(user)
        return _UserContext(
            preferences=preferences,
            rules=load_rules(db, user_id),
            protected=load_protected_slots(db, user_id, preferences),
        )

    def _date_range(self, preferences: SchedulingPreferences, start_date: Optional[date],
                    end_date: Optional[date]) -> Tuple[date, date, datetime]:
        """Inclusive local dates to search plus the UTC end of the horizon."""
        now = self.clock()
        today, _, _ = local_parts(now, preferences.timezone)
        start = start_date or today
        end = end_date or start + timedelta(days=settings.SCHEDULING_HORIZON_DAYS)
        max_span = settings.MAX_AVAILABILITY_RANGE_DAYS - 1
        if (end - start).days > max_span:
            end = start + timedelta(days=max_span)
        horizon_end = at_local_time(end + timedelta(days=1), "00:00", preferences.timezone)
        if end_date is None:
            # Default horizon is exactly SCHEDULING_HORIZON_DAYS from when the search begins
            search_start = max(now, at_local_time(start, "00:00", preferences.timezone))
            horizon_end = min(horizon_end, search_start + timedelta(days=settings.SCHEDULING_HORIZON_DAYS))
        return start, end, horizon_end

    async def _windows(self, db: Session, user_id: str, context: _UserContext, start: date, end: date,
                       calendar_ids: List[str]) -> List[AvailabilityWindow]:
        # Protected time is applied by the engine so urgent tasks can override it
        response = await self.availability.get_availability(
            db, user_id, start, end,
            calendar_ids=calendar_ids,
            working_hours=context.preferences.working_hours,
            timezone=context.preferences.timezone,
            include_protected=False
        )
        return response.availability

    def _displaceable_ranges(self, db: Session, user_id: str, calendar_ids: List[str],
                             range_start: datetime, range_end: datetime,
                             exclude: Iterable[str]) -> List[ScheduledRange]:
        """Scheduled tasks whose time is held by nothing but their own events."""
        excluded = set(exclude)
        rows = db.query(Task).filter(
            Task.user_id == user_id,
            Task.calendar_event_id.isnot(None),
            Task.calendar_id.in_(calendar_ids),
            Task.scheduled_start < range_end,
            Task.scheduled_end > range_start,
        ).all()

        ranges = []
        for row in rows:
            task_id = str(row.id)
            if task_id in excluded:
                continue
            others = find_conflicts(
                db, user_id, calendar_ids, row.scheduled_start, row.scheduled_end, exclude_task_id=task_id
            )
            if others:
                continue
            ranges.append(ScheduledRange(
                task_id=task_id,
                priority=row.priority or "medium",
                start=as_utc(row.scheduled_start),
                end=as_utc(row.scheduled_end),
                content=row.content,
            ))
        return ranges

    # Suggestions

    async def get_suggestions(self, db: Session, user_id: str, task_id: str, count: int = 5,
                              start_date: Optional[date] = None,
                              end_date: Optional[date] = None) -> SuggestionsResponse:
        """Ranked slots for one task, served from cache when fresh."""
        key = (
            str(task_id), count,
            start_date.isoformat() if start_date else None,
            end_date.isoformat() if end_date else None,
        )
        found, cached = self._suggestions.get(key)
        if found:
            return cached.model_copy(update={"cached": True})

        task = self.actions.get_task(db, user_id, task_id)
        context = self._load_context(db, user_id)
        start, end, horizon_end = self._date_range(context.preferences, start_date, end_date)
        calendar_ids = get_enabled_calendar_ids(db, user_id)
        windows = await self._windows(db, user_id, context, start, end, calendar_ids)

        engine = SchedulingEngine(
            windows,
            preferences=context.preferences,
            rules=context.rules,
            protected_slots=context.protected,
            now=self.clock(),
            horizon_end=horizon_end,
        )
        response = SuggestionsResponse(task_id=str(task_id), suggestions=engine.suggest(to_schedulable(task), count))
        self._suggestions.set(key, response)

        logger.info("Suggestions generated", user_id=user_id, task_id=task_id, count=len(response.suggestions))
        return response

    async def get_batch_suggestions(self, db: Session, user_id: str,
                                    request: BatchSuggestionsRequest) -> List[SuggestionsResponse]:
        """Suggestions per task; a failing task reports its error instead of failing the batch."""
        responses = []
        for task_id in request.task_ids:
            try:
                responses.append(await self.get_suggestions(
                    db, user_id, task_id, request.count, request.start_date, request.end_date
                ))
            except BrainDumperError as e:
                logger.warning("Suggestions failed for task", user_id=user_id, task_id=task_id, error=e.message)
                responses.append(SuggestionsResponse(task_id=task_id, error=e.message))
        return responses

    # Proposals

    def _summary(self, total: int, assignments: List[TaskAssignment], unschedulable: List[UnschedulableTask],
                 displacements: List[Displacement]) -> ProposalSummary:
        return ProposalSummary(
            total_tasks=total,
            scheduled=len(assignments),
            unschedulable=len(unschedulable),
            conflicts=sum(len(a.conflicts) for a in assignments),
            displacements=len(displacements),
        )

    async def propose(self, db: Session, user_id: str, task_ids: List[str],
                      options: Optional[ProposeOptions] = None) -> ScheduleProposal:
        """
        Build a proposal for the given tasks.

        An empty task list returns an empty proposal without running the
        engine; such proposals are not stored.
        """
        options = options or ProposeOptions()
        now = self.clock()
        expires_at = now + timedelta(minutes=settings.PROPOSAL_TTL_MINUTES)
        proposal_id = str(uuid.uuid4())

        if not task_ids:
            return ScheduleProposal(
                id=proposal_id,
                user_id=user_id,
                created_at=now,
                expires_at=expires_at,
                summary=self._summary(0, [], [], []),
                options=options,
            )

        try:
            rows = db.query(Task).filter(Task.user_id == user_id, Task.id.in_(task_ids)).all()
            by_id = {str(row.id): row for row in rows}
            unschedulable = [
                UnschedulableTask(task_id=task_id, reason=TASK_NOT_FOUND_REASON)
                for task_id in task_ids if task_id not in by_id
            ]
            tasks = [to_schedulable(by_id[task_id]) for task_id in task_ids if task_id in by_id]

            context = self._load_context(db, user_id)
            start, end, horizon_end = self._date_range(context.preferences, options.start_date, options.end_date)
            calendar_id = options.preferred_calendar_id or context.preferences.default_calendar_id
            calendar_ids = [options.preferred_calendar_id] if options.preferred_calendar_id \
                else get_enabled_calendar_ids(db, user_id)
            windows = await self._windows(db, user_id, context, start, end, calendar_ids)

            existing = []
            if options.allow_displacement:
                existing = self._displaceable_ranges(
                    db, user_id, calendar_ids, now, horizon_end, exclude=by_id.keys()
                )

            engine = SchedulingEngine(
                windows,
                preferences=context.preferences,
                rules=context.rules,
                protected_slots=context.protected,
                existing=existing,
                now=now,
                horizon_end=horizon_end,
            )
            result = engine.schedule(
                tasks,
                calendar_id=calendar_id,
                respect_priority=options.respect_priority,
                allow_displacement=options.allow_displacement,
            )
            unschedulable.extend(result.unschedulable)

            proposal = ScheduleProposal(
                id=proposal_id,
                user_id=user_id,
                created_at=now,
                expires_at=expires_at,
                assignments=result.assignments,
                unschedulable=unschedulable,
                displacements=result.displacements,
                summary=self._summary(len(task_ids), result.assignments, unschedulable, result.displacements),
                options=options,
            )
            self._proposals.set(proposal_id, proposal)

            logger.info(
                "Schedule proposal created",
                user_id=user_id,
                proposal_id=proposal_id,
                scheduled=proposal.summary.scheduled,
                unschedulable=proposal.summary.unschedulable,
                displacements=proposal.summary.displacements
            )
            return proposal

        except Exception as e:
            logger.error("Failed to create schedule proposal", user_id=user_id, error=str(e))
            raise

    def get_proposal(self, user_id: str, proposal_id: str) -> ScheduleProposal:
        found, proposal = self._proposals.get(proposal_id)
        if not found or proposal.user_id != user_id:
            raise ProposalNotFound(proposal_id)
        return proposal

    def discard(self, user_id: str, proposal_id: str) -> bool:
        self.get_proposal(user_id, proposal_id)
        self._proposals.invalidate(proposal_id)
        logger.info("Schedule proposal discarded", user_id=user_id, proposal_id=proposal_id)
        return True

    # Confirmation

    @staticmethod
    def approval_state(assignment: TaskAssignment, approval: Optional[TaskApproval]) -> ApprovalState:
        if approval is None:
            return ApprovalState.PENDING
        if not approval.confirmed:
            return ApprovalState.REJECTED
        if approval.slot_index != assignment.recommended_slot_index:
            return ApprovalState.MODIFIED
        return ApprovalState.APPROVED

    async def _apply_displacement(self, db: Session, user_id: str, displacement: Displacement) -> DisplacementResult:
        try:
            task = self.actions.get_task(db, user_id, displacement.task_id)
            if task.calendar_event_id:
                if displacement.action == DisplacementAction.MOVE and displacement.new_slot:
                    await self.actions.move_schedule(db, user_id, task, displacement.new_slot)
                else:
                    await self.actions.clear_schedule(db, user_id, task)
                    task.unscheduled_reason = DISPLACED_REASON
                    task.unscheduled_at = self.clock()
                    db.commit()
            return DisplacementResult(
                task_id=displacement.task_id,
                action=displacement.action,
                success=True,
                new_slot=displacement.new_slot,
            )
        except Exception as e:
            db.rollback()
            logger.error("Failed to apply displacement", user_id=user_id, task_id=displacement.task_id, error=str(e))
            return DisplacementResult(
                task_id=displacement.task_id,
                action=displacement.action,
                success=False,
                error=str(e),
            )

    def _slot_conflict(self, db: Session, user_id: str, proposal: ScheduleProposal, assignment: TaskAssignment,
                       start: datetime, end: datetime, committed: IntervalSet) -> Optional[str]:
        """Why ``[start, end)`` can no longer be written, or None when it is still free."""
        clashes = committed.overlapping(start, end)
        if clashes:
            return f"Selected slot conflicts with task {clashes[0][2]} confirmed in this proposal"

        preferred = proposal.options.preferred_calendar_id
        calendar_ids = {preferred} if preferred else set(get_enabled_calendar_ids(db, user_id))
        calendar_ids.add(assignment.calendar_id)
        events = find_conflicts(db, user_id, calendar_ids, start, end, exclude_task_id=assignment.task_id)
        if events:
            return "Selected slot conflicts with " + ", ".join(e.title for e in events)
        return None

    async def _commit_assignment(self, db: Session, user_id: str, proposal: ScheduleProposal,
                                 assignment: TaskAssignment, approval: TaskApproval,
                                 state: ApprovalState, committed: IntervalSet) -> TaskCommitResult:
        if approval.slot_index >= len(assignment.suggestions):
            return TaskCommitResult(task_id=assignment.task_id, state=state, success=False, error="Invalid slot index")
        slot = assignment.suggestions[approval.slot_index].slot if assignment.suggestions else assignment.slot

        include = proposal.options.include_buffers
        buffer_before = assignment.buffer_before if include else 0
        buffer_after = assignment.buffer_after if include else 0
        reserved_start = slot.start - timedelta(minutes=buffer_before)
        reserved_end = slot.end + timedelta(minutes=buffer_after)

        try:
            task = self.actions.get_task(db, user_id, assignment.task_id)
            if task.calendar_event_id:
                raise BrainDumperError("Task is already scheduled on the calendar")
            # Alternatives are not reserved against sibling assignments; the calendar may also have changed
            conflict = self._slot_conflict(db, user_id, proposal, assignment, reserved_start, reserved_end, committed)
            if conflict:
                logger.warning("Confirmed slot is no longer free", user_id=user_id, task_id=assignment.task_id,
                               state=state.value, error=conflict)
                return TaskCommitResult(task_id=assignment.task_id, state=state, success=False, error=conflict)

            event_id = await self.actions.write_schedule(
                db, user_id, task, slot, assignment.calendar_id,
                buffer_before=buffer_before,
                buffer_after=buffer_after,
            )
            committed.insert_if_free(reserved_start, reserved_end, tag=assignment.task_id)
            return TaskCommitResult(
                task_id=assignment.task_id,
                state=state,
                success=True,
                calendar_event_id=event_id,
                scheduled_start=slot.start,
                scheduled_end=slot.end,
            )
        except Exception as e:
            db.rollback()
            logger.error("Failed to commit assignment", user_id=user_id, task_id=assignment.task_id, error=str(e))
            message = e.message if isinstance(e, BrainDumperError) else str(e)
            return TaskCommitResult(task_id=assignment.task_id, state=state, success=False, error=message)

    async def confirm(self, db: Session, user_id: str, proposal_id: str, request: ConfirmRequest) -> ConfirmResult:
        """
        Commit the approved part of a proposal.

        Approved displacements go first. Writes are independent; nothing is
        rolled back when one fails, and the proposal is consumed either way.
        """
        proposal = self.get_proposal(user_id, proposal_id)
        approvals: Dict[str, TaskApproval] = {a.task_id: a for a in request.approvals}
        assignments = {a.task_id: a for a in proposal.assignments}
        result = ConfirmResult(proposal_id=proposal_id, success=True)

        needed: Dict[str, List[Displacement]] = {}
        for displacement in proposal.displacements:
            needed.setdefault(displacement.displaced_by, []).append(displacement)

        failed_displacements = set()
        if request.displacements_approved:
            for displacement in proposal.displacements:
                approval = approvals.get(displacement.displaced_by)
                if approval is None or not approval.confirmed:
                    continue
                outcome = await self._apply_displacement(db, user_id, displacement)
                result.displaced.append(outcome)
                if not outcome.success:
                    failed_displacements.add(displacement.displaced_by)

        touched = set()
        committed = IntervalSet()
        for approval in request.approvals:
            assignment = assignments.get(approval.task_id)
            if assignment is None:
                result.results.append(TaskCommitResult(
                    task_id=approval.task_id,
                    state=ApprovalState.PENDING,
                    success=False,
                    error="Task not found in proposal",
                ))
                continue

            state = self.approval_state(assignment, approval)
            if state == ApprovalState.REJECTED:
                result.results.append(TaskCommitResult(task_id=approval.task_id, state=state, success=True))
                continue
            if needed.get(approval.task_id) and not request.displacements_approved:
                result.results.append(TaskCommitResult(
                    task_id=approval.task_id, state=state, success=False,
                    error="Displacements required but not approved",
                ))
                continue
            if approval.task_id in failed_displacements:
                result.results.append(TaskCommitResult(
                    task_id=approval.task_id, state=state, success=False,
                    error="Displacement of a lower priority task failed",
                ))
                continue

            outcome = await self._commit_assignment(db, user_id, proposal, assignment, approval, state, committed)
            result.results.append(outcome)
            touched.add(approval.task_id)

        touched.update(d.task_id for d in result.displaced)
        self.invalidate_suggestions(touched)
        self._proposals.invalidate(proposal_id)

        result.success = all(r.success for r in result.results) and all(d.success for d in result.displaced)
        logger.info(
            "Schedule proposal confirmed",
            user_id=user_id,
            proposal_id=proposal_id,
            committed=sum(1 for r in result.results if r.success and r.state != ApprovalState.REJECTED),
            failed=len(result.failed_task_ids),
            displaced=len(result.displaced)
        )
        if result.failed_task_ids:
            raise PartialCommitFailure(result)
        return result

    # Single-task actions

    async def schedule_task(self, db: Session, user_id: str, task_id: str,
                            request: ScheduleTaskRequest) -> ScheduleActionResult:
        result = await self.actions.schedule_task(db, user_id, task_id, request)
        self.invalidate_suggestions([task_id])
        return result

    async def unschedule_task(self, db: Session, user_id: str, task_id: str) -> ScheduleActionResult:
        result = await self.actions.unschedule_task(db, user_id, task_id)
        self.invalidate_suggestions([task_id])
        return result

    async def reschedule_task(self, db: Session, user_id: str, task_id: str,
                              request: RescheduleTaskRequest) -> ScheduleActionResult:
        result = await self.actions.reschedule_task(db, user_id, task_id, request)
        self.invalidate_suggestions([task_id])
        return result


proposal_coordinator = ProposalCoordinator()
