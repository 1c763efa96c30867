"""
Plan step execution.

WHAT THIS FILE DOES:
-------------------
StepRunner wraps one PlanStep and runs its file changes against a backing
store. Everything inside a step is sequential: file changes may depend on
each other ("create the module" before "add the test that imports it"), so
they are applied one at a time, in authored order, and the first failure
stops the step.

EXECUTION FLOW:
--------------
    can_execute()?  (pending, every dependency completed)
           │
           ▼
    pending ──► running  (started_at, step_started)
           │
           ▼
    For each FileChange (skip ones already completed):
    ├── mark running
    ├── backup (backup_created)
    ├── apply via store (file_applied)
    └── failed? ──► step failed (step_failed), stop
           │
           ▼
    running ──► completed  (completed_at, progress=100, step_completed)
"""

import logging
from datetime import datetime
from typing import Optional

from .audit import AuditLog
from .backing import BackingStore
from .errors import BackingStoreFailure, InvalidArgument, InvalidTransition
from .schemas import (
    AuditAction,
    AuditStatus,
    ExecutionStatus,
    FileChange,
    PlanStep,
    StoreResult,
)
from .tracker import FileChangeTracker
from .transitions import OVERRIDE_TRANSITIONS, transition_status

logger = logging.getLogger("planrunner.steps")


def step_confirmed(step: PlanStep) -> bool:
    """
    Whether a confirmation-required step has been dealt with.

    A step that needs confirmation counts as confirmed once it has left
    `pending`, or when it owns file changes and every one was reviewed
    (or is no longer pending).
    """
    if not step.metadata.requires_user_confirmation:
        return True
    if step.status != ExecutionStatus.PENDING:
        return True
    changes = step.file_changes
    return bool(changes) and all(
        c.is_reviewed or c.status != ExecutionStatus.PENDING for c in changes
    )


class StepRunner:
    """
    Drives one PlanStep through execution, overrides and rollback.

    Args:
        step: The step to drive
        audit: Journal to record transitions in
        plan_id: Owning plan id, stamped on audit entries
        backup_creates: Also back up `create` changes so they can be undone
    """

    def __init__(
        self,
        step: PlanStep,
        audit: AuditLog,
        plan_id: Optional[str] = None,
        backup_creates: bool = True
    ):
        self.step = step
        self.audit = audit
        self.plan_id = plan_id
        self.backup_creates = backup_creates

    @property
    def id(self) -> str:
        return self.step.id

    # =========================================================================
    # PREDICATES
    # =========================================================================

    def unmet_dependencies(self, steps_by_id: dict[str, PlanStep]) -> list[str]:
        """Dependency ids that are not completed (unknown ids count as unmet)."""
        unmet = []
        for dep_id in self.step.dependencies:
            dep = steps_by_id.get(dep_id)
            if dep is None or dep.status != ExecutionStatus.COMPLETED:
                unmet.append(dep_id)
        return unmet

    def can_execute(self, steps_by_id: dict[str, PlanStep]) -> bool:
        """True iff pending and every dependency is completed."""
        return (
            self.step.status == ExecutionStatus.PENDING
            and not self.unmet_dependencies(steps_by_id)
        )

    @property
    def is_confirmed(self) -> bool:
        return step_confirmed(self.step)

    def ensure_can_execute(self, steps_by_id: dict[str, PlanStep]) -> None:
        """
        Raises:
            InvalidTransition: If can_execute() is false
        """
        if self.can_execute(steps_by_id):
            return
        unmet = self.unmet_dependencies(steps_by_id)
        reason = (
            f"unmet dependencies {unmet}" if unmet
            else f"status is {self.step.status.value}"
        )
        raise InvalidTransition(f"Step {self.id} cannot execute: {reason}", step_id=self.id)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def execute(self, store: BackingStore, steps_by_id: dict[str, PlanStep]) -> bool:
        """
        Run every not-yet-completed file change of this step, in order.

        Returns:
            True if the step completed, False if it failed

        Raises:
            InvalidTransition: If can_execute() is false; the step is untouched
        """
        self.ensure_can_execute(steps_by_id)

        transition_status(self.step, ExecutionStatus.RUNNING)
        self.step.started_at = datetime.now()
        self.step.progress = 0

        self.audit.record(
            AuditAction.STEP_STARTED,
            f'Started step "{self.step.title}"',
            AuditStatus.RUNNING,
            plan_id=self.plan_id,
            step_id=self.id,
            metadata={
                "step_type": self.step.type.value,
                "file_changes_count": len(self.step.file_changes),
            },
        )
        logger.info(f"Step {self.id} started ({len(self.step.file_changes)} file changes)")

        total = len(self.step.file_changes)
        for index, change in enumerate(self.step.file_changes, 1):
            if change.status == ExecutionStatus.COMPLETED:
                continue

            if not await self.apply_change(change, store):
                self.fail(change.id, change.error_message or "file change failed")
                return False

            self.step.progress = int(index * 100 / total)

        self.complete()
        return True

    async def apply_change(self, change: FileChange, store: BackingStore, retry: bool = False) -> bool:
        """
        Apply a single file change: running, backup, apply, completed/failed.

        Store errors (returned or raised) are captured into the change's
        error_message; nothing is raised to the caller.

        Returns:
            True if the change completed
        """
        tracker = FileChangeTracker(change)

        if change.status == ExecutionStatus.FAILED:
            # Rejected by a reviewer, or failed earlier and never retried
            return False
        if change.status != ExecutionStatus.PENDING:
            change.error_message = f"file change is {change.status.value}, expected pending"
            return False

        tracker.mark_running()

        try:
            if change.requires_backup or self.backup_creates:
                backup_ref = await store.backup_file_change(change)
                tracker.set_backup(backup_ref)
                self.audit.record(
                    AuditAction.BACKUP_CREATED,
                    f"Backed up {change.file_path}",
                    AuditStatus.SUCCESS,
                    plan_id=self.plan_id,
                    step_id=self.id,
                    file_change_id=change.id,
                    files_affected=change.touched_paths,
                    metadata={"backup_ref": backup_ref, "operation": change.operation.value},
                )

            result = await store.apply_file_change(change)
        except Exception as e:
            failure = BackingStoreFailure(
                f"{type(e).__name__}: {e}", step_id=self.id, file_change_id=change.id
            )
            result = StoreResult(success=False, error=failure.message)

        if result.success:
            tracker.mark_completed(checksum=result.checksum)
            self.audit.record(
                AuditAction.FILE_APPLIED,
                f"Applied {change.operation.value} to {change.file_path}",
                AuditStatus.SUCCESS,
                plan_id=self.plan_id,
                step_id=self.id,
                file_change_id=change.id,
                files_affected=change.touched_paths,
                metadata={
                    "operation": change.operation.value,
                    "checksum": result.checksum,
                    "retry": retry,
                },
            )
            return True

        message = result.error or "backing store reported failure"
        tracker.mark_failed(message)
        self.audit.record(
            AuditAction.FILE_APPLIED,
            f"Failed to apply {change.operation.value} to {change.file_path}",
            AuditStatus.FAILED,
            plan_id=self.plan_id,
            step_id=self.id,
            file_change_id=change.id,
            files_affected=change.touched_paths,
            error_code=BackingStoreFailure.code,
            error_message=message,
            metadata={"operation": change.operation.value, "retry": retry},
        )
        logger.warning(f"File change {change.id} ({change.file_path}) failed: {message}")
        return False

    def complete(self, manual: bool = False) -> None:
        if manual:
            transition_status(self.step, ExecutionStatus.COMPLETED, extra_edges=OVERRIDE_TRANSITIONS)
        else:
            transition_status(self.step, ExecutionStatus.COMPLETED)
        self.step.completed_at = datetime.now()
        self.step.progress = 100

        self.audit.record(
            AuditAction.STEP_COMPLETED,
            f'Completed step "{self.step.title}"',
            AuditStatus.SUCCESS,
            plan_id=self.plan_id,
            step_id=self.id,
            files_affected=[
                c.file_path for c in self.step.file_changes
                if c.status == ExecutionStatus.COMPLETED
            ] or None,
            metadata={"file_changes_count": len(self.step.file_changes), "manual": manual},
        )

    def fail(self, file_change_id: Optional[str], message: str, manual: bool = False) -> None:
        if manual:
            transition_status(self.step, ExecutionStatus.FAILED, extra_edges=OVERRIDE_TRANSITIONS)
        else:
            transition_status(self.step, ExecutionStatus.FAILED)
        self.step.completed_at = datetime.now()

        self.audit.record(
            AuditAction.STEP_FAILED,
            f'Step "{self.step.title}" failed: {message}',
            AuditStatus.FAILED,
            plan_id=self.plan_id,
            step_id=self.id,
            file_change_id=file_change_id,
            error_code="STEP_FAILED",
            error_message=message,
            metadata={"manual": manual},
        )
        logger.warning(f"Step {self.id} failed: {message}")

    def skip(self, blocked_by: list[str]) -> None:
        """Cancel a pending step whose dependencies can no longer complete."""
        transition_status(self.step, ExecutionStatus.CANCELLED)
        self._cancel_pending_changes()
        self.audit.record(
            AuditAction.STEP_FAILED,
            f'Skipped step "{self.step.title}": blocked by {", ".join(blocked_by)}',
            AuditStatus.FAILED,
            plan_id=self.plan_id,
            step_id=self.id,
            metadata={"skipped": True, "blocked_by": blocked_by},
        )
        logger.info(f"Step {self.id} skipped, blocked by {blocked_by}")

    def cancel(self, reason: str) -> None:
        """Cancel a pending step that will not be started."""
        transition_status(self.step, ExecutionStatus.CANCELLED)
        self._cancel_pending_changes()
        self.audit.record(
            AuditAction.STEP_FAILED,
            f'Cancelled step "{self.step.title}": {reason}',
            AuditStatus.FAILED,
            plan_id=self.plan_id,
            step_id=self.id,
            metadata={"skipped": True},
        )

    def _cancel_pending_changes(self) -> None:
        for change in self.step.file_changes:
            if change.status == ExecutionStatus.PENDING:
                FileChangeTracker(change).mark_cancelled()

    # =========================================================================
    # MANUAL OVERRIDES
    # =========================================================================

    def _require_confirmation_pending(self, action: str) -> None:
        if not self.step.metadata.requires_user_confirmation:
            raise InvalidTransition(
                f"Cannot {action} step {self.id}: it does not require user confirmation",
                step_id=self.id
            )
        if self.step.status != ExecutionStatus.PENDING:
            raise InvalidTransition(
                f"Cannot {action} step {self.id}: status is {self.step.status.value}",
                step_id=self.id
            )

    def approve_step(self) -> None:
        """Mark a confirmation-required pending step completed without running it."""
        self._require_confirmation_pending("approve")
        self._cancel_pending_changes()
        self.complete(manual=True)

    def reject_step(self) -> None:
        """Mark a confirmation-required pending step failed without running it."""
        self._require_confirmation_pending("reject")
        self._cancel_pending_changes()
        self.fail(None, "rejected by reviewer", manual=True)

    def update_progress(self, pct: int) -> None:
        """
        Report progress while running. Not required to be monotonic.

        The argument is checked before the step status.

        Raises:
            InvalidArgument: If pct is not an int in [0, 100]
            InvalidTransition: If the step is not running
        """
        if isinstance(pct, bool) or not isinstance(pct, int) or not 0 <= pct <= 100:
            raise InvalidArgument(f"Progress must be an integer in [0, 100], got {pct!r}", step_id=self.id)
        if self.step.status != ExecutionStatus.RUNNING:
            raise InvalidTransition(
                f"Progress can only be set while step {self.id} is running "
                f"(status is {self.step.status.value})",
                step_id=self.id
            )
        self.step.progress = pct

    def retry(self) -> None:
        """Put a failed step back to pending so it can run again."""
        transition_status(self.step, ExecutionStatus.PENDING)
        self.step.completed_at = None

    # =========================================================================
    # ROLLBACK
    # =========================================================================

    def begin_rollback(self) -> None:
        transition_status(self.step, ExecutionStatus.ROLLBACK_PENDING)
        transition_status(self.step, ExecutionStatus.ROLLBACK_RUNNING)

    def finish_rollback(self, success: bool) -> None:
        if success:
            transition_status(self.step, ExecutionStatus.ROLLBACK_COMPLETED)
        else:
            transition_status(self.step, ExecutionStatus.FAILED)
