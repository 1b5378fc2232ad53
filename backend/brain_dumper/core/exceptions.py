"""
Error taxonomy shared by the sync, availability and scheduling layers.
"""
from typing import Optional, Any


REVOKED_ACCESS_MESSAGE = "Calendar access has been revoked. Please reconnect your calendar."


class BrainDumperError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class AuthenticationExpired(BrainDumperError):
    """Provider credentials are invalid or revoked; the user must reconnect."""

    def __init__(self, message: str = REVOKED_ACCESS_MESSAGE, **context: Any):
        super().__init__(message, **context)


class SyncCursorExpired(BrainDumperError):
    """The provider rejected the stored sync cursor (HTTP 410)."""


class ValidationError(BrainDumperError):
    """A request or notification was malformed."""


class ProviderNotFound(BrainDumperError):
    """The provider reported the resource as missing (HTTP 404)."""


class TransientNetworkError(BrainDumperError):
    """A retryable provider or network failure."""

    def __init__(self, message: str = "", status: Optional[int] = None, **context: Any):
        super().__init__(message, **context)
        self.status = status


class NoAvailableSlot(BrainDumperError):
    """A task could not be placed inside the search horizon."""

    def __init__(self, task_id: str, reason: str):
        super().__init__(reason, task_id=task_id)
        self.task_id = task_id
        self.reason = reason


class PartialCommitFailure(BrainDumperError):
    """A confirm applied some assignments and failed others."""

    def __init__(self, result: Any):
        failed = [r.task_id for r in result.results if not r.success]
        super().__init__(f"{len(failed)} task(s) failed to commit", failed_task_ids=failed)
        self.result = result


class TaskNotFound(BrainDumperError):
    """The referenced task does not exist or belongs to another user."""

    def __init__(self, task_id: str):
        super().__init__("Task not found", task_id=task_id)
        self.task_id = task_id


class ProposalNotFound(BrainDumperError):
    """No live proposal exists for the given id."""

    def __init__(self, proposal_id: str):
        super().__init__("Proposal not found or expired", proposal_id=proposal_id)
        self.proposal_id = proposal_id
