"""
Error kinds raised by the plan engine.

Every error carries a machine-readable `code` so it can be copied verbatim
into an audit entry or a plan-level error record.
"""

from typing import Optional


class PlanEngineError(Exception):
    """Base class for all engine errors."""
    code = "ENGINE_ERROR"

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        file_change_id: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.step_id = step_id
        self.file_change_id = file_change_id


class InvalidTransition(PlanEngineError):
    """Illegal state-machine move. State is left unchanged."""
    code = "INVALID_TRANSITION"


class PendingApprovalRequired(PlanEngineError):
    """A confirmation-required item has not been reviewed yet."""
    code = "PENDING_APPROVAL_REQUIRED"


class RollbackUnavailable(PlanEngineError):
    """Rollback requested for a change with no backup reference."""
    code = "ROLLBACK_UNAVAILABLE"


class ValidationUnavailable(PlanEngineError):
    """The precondition validator is missing or unreachable."""
    code = "VALIDATION_UNAVAILABLE"


class PlanBusy(PlanEngineError):
    """Another execute/rollback is already in flight for this plan."""
    code = "PLAN_BUSY"


class InvalidArgument(PlanEngineError):
    """Malformed input, e.g. progress outside [0, 100] or a missing field."""
    code = "INVALID_ARGUMENT"


class DependencyCycle(PlanEngineError):
    """Step dependencies form a cycle."""
    code = "DEPENDENCY_CYCLE"


class BackingStoreFailure(PlanEngineError):
    """Wrapped failure from the backing store collaborator."""
    code = "BACKING_STORE_FAILURE"


class PlanNotFound(PlanEngineError):
    """No plan, step or file change with the given id."""
    code = "NOT_FOUND"
