"""
File change tracker: the per-file slice of the state machine.

A FileChangeTracker wraps one FileChange model and is the only way its
status, review decision and bookkeeping fields get changed. The execution
engine calls the mark_* methods while applying; reviewers go through
approve()/reject(); rollback() and retry() handle recovery.

Usage:
    tracker = FileChangeTracker(change)
    tracker.approve()
    tracker.mark_running()
    tracker.set_backup("bk_1234")
    tracker.mark_completed(checksum="...")
    await tracker.rollback(store.restore_from_backup)
"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from .errors import InvalidTransition, RollbackUnavailable
from .schemas import ExecutionStatus, FileChange, ReviewDecision, StoreResult
from .transitions import REVIEW_TRANSITIONS, transition_status

logger = logging.getLogger("planrunner.tracker")

REJECTED_MESSAGE = "rejected by reviewer"

RestoreFn = Callable[[str], Awaitable[StoreResult]]


class FileChangeTracker:
    """Drives one FileChange through its transitions."""

    def __init__(self, change: FileChange):
        self.change = change

    @property
    def id(self) -> str:
        return self.change.id

    @property
    def status(self) -> ExecutionStatus:
        return self.change.status

    # -------------------------------------------------------------------------
    # Review
    # -------------------------------------------------------------------------

    def approve(self) -> bool:
        """
        Record reviewer approval.

        Approval is intent only; nothing runs. Calling it on a change that is
        no longer pending, or already approved, is a no-op.

        Returns:
            True if the review decision changed
        """
        if self.change.status != ExecutionStatus.PENDING:
            return False
        if self.change.review == ReviewDecision.APPROVED:
            return False

        self.change.review = ReviewDecision.APPROVED
        return True

    def reject(self) -> None:
        """
        Reject the change. Only valid while pending.

        Raises:
            InvalidTransition: If the change is not pending
        """
        if self.change.status != ExecutionStatus.PENDING:
            raise InvalidTransition(
                f"Cannot reject {self.id}: status is {self.change.status.value}",
                file_change_id=self.id
            )
        transition_status(self.change, ExecutionStatus.FAILED, extra_edges=REVIEW_TRANSITIONS)
        self.change.review = ReviewDecision.REJECTED
        self.change.error_message = REJECTED_MESSAGE

    # -------------------------------------------------------------------------
    # Execution (engine-only)
    # -------------------------------------------------------------------------

    def mark_running(self) -> None:
        transition_status(self.change, ExecutionStatus.RUNNING)

    def set_backup(self, backup_ref: str) -> None:
        if self.change.status != ExecutionStatus.RUNNING:
            raise InvalidTransition(
                f"Backup can only be recorded while {self.id} is running",
                file_change_id=self.id
            )
        self.change.backup_ref = backup_ref

    def mark_completed(self, checksum: Optional[str] = None) -> None:
        """
        Mark the change applied.

        Raises:
            InvalidTransition: If not running, or if a content-mutating change
                               has no backup reference yet
        """
        if (
            self.change.status == ExecutionStatus.RUNNING
            and self.change.requires_backup
            and not self.change.backup_ref
        ):
            raise InvalidTransition(
                f"{self.change.operation.value} of {self.change.file_path} "
                f"cannot complete without a backup reference",
                file_change_id=self.id
            )
        transition_status(self.change, ExecutionStatus.COMPLETED)
        self.change.applied_at = datetime.now()
        if checksum:
            self.change.checksum = checksum

    def mark_failed(self, message: str) -> None:
        transition_status(self.change, ExecutionStatus.FAILED)
        self.change.error_message = message or "unknown error"

    def mark_cancelled(self) -> None:
        transition_status(self.change, ExecutionStatus.CANCELLED)

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def rollback(self, restore: Optional[RestoreFn] = None) -> StoreResult:
        """
        Undo a completed change from its backup.

        Walks completed -> rollback_pending -> rollback_running ->
        rollback_completed. The running phase is where `restore` is awaited
        with the backup reference. A failed restore leaves the change
        `failed` with the store's error message.

        Raises:
            InvalidTransition: If the change is not completed
            RollbackUnavailable: If there is no backup reference
        """
        if self.change.status != ExecutionStatus.COMPLETED:
            raise InvalidTransition(
                f"Cannot roll back {self.id}: status is {self.change.status.value}",
                file_change_id=self.id
            )
        if not self.change.backup_ref:
            raise RollbackUnavailable(
                f"No backup reference for {self.change.file_path}",
                file_change_id=self.id
            )

        transition_status(self.change, ExecutionStatus.ROLLBACK_PENDING)
        transition_status(self.change, ExecutionStatus.ROLLBACK_RUNNING)

        if restore is None:
            result = StoreResult(success=True, output="no restore hook")
        else:
            try:
                result = await restore(self.change.backup_ref)
            except Exception as e:
                result = StoreResult(success=False, error=str(e))

        if result.success:
            transition_status(self.change, ExecutionStatus.ROLLBACK_COMPLETED)
            self.change.rollback_at = datetime.now()
        else:
            transition_status(self.change, ExecutionStatus.FAILED)
            self.change.error_message = f"rollback failed: {result.error}"
            logger.warning(f"Rollback of {self.id} failed: {result.error}")

        return result

    def retry(self) -> None:
        """
        Reset a failed change to pending and clear its error.

        A change that was rejected goes back to awaiting review.

        Raises:
            InvalidTransition: If the change is not failed
        """
        if self.change.status != ExecutionStatus.FAILED:
            raise InvalidTransition(
                f"Cannot retry {self.id}: status is {self.change.status.value}",
                file_change_id=self.id
            )
        transition_status(self.change, ExecutionStatus.PENDING)
        self.change.error_message = None
        if self.change.review == ReviewDecision.REJECTED:
            self.change.review = ReviewDecision.PENDING
