"""
State machines for file changes, steps and plans.

WHY THIS FILE EXISTS:
--------------------
Three kinds of record move through statuses: file changes and steps share
ExecutionStatus, plans use ActionPlanStatus. Keeping the legal edges in
tables (rather than scattered if-statements) means one place answers
"may X go to Y?", and every setter refuses anything not listed.

EXECUTION STATUS:
----------------
    pending ──► running ──► completed ──► rollback_pending ──► rollback_running ──► rollback_completed
       │           │  └──► failed ◄───────────────────────────────────┘
       │           └─────► cancelled
       └─────────────────► cancelled
    failed ──► pending            (retry)

Two extra edge sets exist for human decisions:
- reviewer rejection of a file change: pending ──► failed
- manual override of a confirmation step: pending ──► completed | failed

PLAN STATUS:
-----------
    planning ──► pending ──► approved ──► applying ──► applied ──► rolled_back
                    │                        │
                    └──► rejected            └──► failed ──► applying (resume)
                                                     └─────► rolled_back
"""

from typing import Protocol

from .errors import InvalidTransition
from .schemas import ActionPlan, ActionPlanStatus, ExecutionStatus


# =============================================================================
# TRANSITION TABLES
# =============================================================================

EXECUTION_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.PENDING: {ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED},
    ExecutionStatus.RUNNING: {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.COMPLETED: {ExecutionStatus.ROLLBACK_PENDING},
    ExecutionStatus.ROLLBACK_PENDING: {ExecutionStatus.ROLLBACK_RUNNING},
    ExecutionStatus.ROLLBACK_RUNNING: {
        ExecutionStatus.ROLLBACK_COMPLETED,
        ExecutionStatus.FAILED,
    },
    ExecutionStatus.FAILED: {ExecutionStatus.PENDING},
    ExecutionStatus.CANCELLED: set(),
    ExecutionStatus.ROLLBACK_COMPLETED: set(),
}

# Reviewer rejects a file change before it ever runs
REVIEW_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.PENDING: {ExecutionStatus.FAILED},
}

# approve_step / reject_step on a confirmation-required step
OVERRIDE_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.PENDING: {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED},
}

PLAN_TRANSITIONS: dict[ActionPlanStatus, set[ActionPlanStatus]] = {
    ActionPlanStatus.PLANNING: {ActionPlanStatus.PENDING},
    ActionPlanStatus.PENDING: {ActionPlanStatus.APPROVED, ActionPlanStatus.REJECTED},
    ActionPlanStatus.APPROVED: {ActionPlanStatus.APPLYING},
    ActionPlanStatus.APPLYING: {ActionPlanStatus.APPLIED, ActionPlanStatus.FAILED},
    ActionPlanStatus.APPLIED: {ActionPlanStatus.ROLLED_BACK},
    ActionPlanStatus.FAILED: {ActionPlanStatus.APPLYING, ActionPlanStatus.ROLLED_BACK},
    ActionPlanStatus.REJECTED: set(),
    ActionPlanStatus.ROLLED_BACK: set(),
}

TERMINAL_PLAN_STATUSES = {ActionPlanStatus.REJECTED, ActionPlanStatus.ROLLED_BACK}


class _HasStatus(Protocol):
    id: str
    status: ExecutionStatus


# =============================================================================
# CHECKS
# =============================================================================

def can_transition(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    """Check if an execution-status transition is on the core graph."""
    return target in EXECUTION_TRANSITIONS.get(current, set())


def can_transition_plan(current: ActionPlanStatus, target: ActionPlanStatus) -> bool:
    """Check if a plan-status transition is valid."""
    return target in PLAN_TRANSITIONS.get(current, set())


# =============================================================================
# GUARDED SETTERS
# =============================================================================

def transition_status(
    record: _HasStatus,
    target: ExecutionStatus,
    extra_edges: dict[ExecutionStatus, set[ExecutionStatus]] = None
) -> ExecutionStatus:
    """
    Move a file change or step to a new status.

    Args:
        record: FileChange or PlanStep
        target: The status to move to
        extra_edges: Additional edges allowed for this call only
                     (REVIEW_TRANSITIONS or OVERRIDE_TRANSITIONS)

    Returns:
        The previous status

    Raises:
        InvalidTransition: If the edge is not allowed; record is untouched
    """
    current = record.status
    allowed = set(EXECUTION_TRANSITIONS.get(current, set()))
    if extra_edges:
        allowed |= extra_edges.get(current, set())

    if target not in allowed:
        raise InvalidTransition(
            f"Invalid transition for {record.id}: {current.value} -> {target.value}. "
            f"Allowed: {sorted(s.value for s in allowed)}"
        )

    record.status = target
    return current


def transition_plan(plan: ActionPlan, target: ActionPlanStatus) -> ActionPlanStatus:
    """
    Move a plan to a new status.

    Raises:
        InvalidTransition: If the transition is not allowed
    """
    current = plan.status
    if not can_transition_plan(current, target):
        raise InvalidTransition(
            f"Invalid plan transition: {current.value} -> {target.value}. "
            f"Allowed: {sorted(s.value for s in PLAN_TRANSITIONS.get(current, set()))}"
        )

    plan.status = target
    return current
