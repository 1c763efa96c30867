"""
Execution engine for action plans.

WHAT THIS FILE DOES:
-------------------
An AI collaborator proposes a plan of file edits; this module applies it
safely. The ExecutionEngine owns exactly one plan and is the only thing
that mutates it: reviewers approve or reject through it, it runs the steps
against a backing store, and it can undo what it applied.

HOW IT WORKS:
------------
1. create_plan(): AI content -> ActionPlan (planning -> pending)
2. approve_file_change() / approve_all() / approve_step(): reviewer intent
3. approve_plan(): pending -> approved, gated on confirmation steps
4. execute_plan(): approved -> applying -> applied | failed
5. rollback_plan(): applied | failed -> rolled_back, best-effort

EXECUTION FLOW:
--------------
    Approved plan
           │
           ▼
    Order steps (dependencies first, ties by authored position)
           │
           ▼
    For each pending step:
    ├── cancel requested?       ──► cancelled
    ├── dependency not completed ──► cancelled (cascade skip)
    └── run its file changes (StepRunner), fail-fast inside the step
           │
           ▼
    No failed steps ──► applied, plan_executed
    Otherwise       ──► failed, plan.error = first failure

Only one execute/rollback/retry may be in flight per plan. A second caller
gets PlanBusy immediately instead of queuing.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from typing import Optional, Union

from pydantic import ValidationError

from .audit import AuditListener, AuditLog
from .backing import BackingStore, PreconditionValidator
from .config import EngineConfig
from .errors import (
    InvalidArgument,
    InvalidTransition,
    PendingApprovalRequired,
    PlanBusy,
    PlanEngineError,
    PlanNotFound,
)
from .plan import approve_all, build_plan, check_plan, order_steps, summarize, unconfirmed_steps
from .schemas import (
    ActionPlan,
    ActionPlanStatus,
    AIResponse,
    AuditAction,
    AuditLogEntry,
    AuditStatus,
    ExecutionStatus,
    FileChange,
    PlanError,
    PlanStep,
    PlanSummary,
    ReviewDecision,
    ValidationResult,
)
from .steps import StepRunner
from .tracker import FileChangeTracker
from .transitions import TERMINAL_PLAN_STATUSES, can_transition_plan, transition_plan

logger = logging.getLogger("planrunner.engine")

# A dependency in one of these will never complete in this pass
BLOCKING_STATUSES = {
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.ROLLBACK_PENDING,
    ExecutionStatus.ROLLBACK_RUNNING,
    ExecutionStatus.ROLLBACK_COMPLETED,
}


class ExecutionEngine:
    """
    Owns one ActionPlan and drives it through its lifecycle.

    Usage:
        engine = ExecutionEngine(store=Workspace(files), validator=StaticValidator(accept_all=True))
        engine.create_plan(ai_response)
        engine.approve_all()
        engine.approve_plan()
        await engine.execute_plan()
        print(engine.get_plan_summary())
    """

    def __init__(
        self,
        store: BackingStore,
        validator: Optional[PreconditionValidator] = None,
        audit_log: Optional[AuditLog] = None,
        config: Optional[EngineConfig] = None,
        project_id: Optional[str] = None
    ):
        """
        Initialize the execution engine.

        Args:
            store: Backing store that applies, backs up and restores file changes
            validator: Pre-condition validator; without one, plans with
                       pre-conditions fail validation closed
            audit_log: Journal to append to (a fresh one is created if omitted)
            config: Engine settings
            project_id: Overrides config.project_id
        """
        self.store = store
        self.validator = validator
        self.config = config or EngineConfig()
        self.project_id = project_id or self.config.project_id
        self.audit = audit_log or AuditLog(self.project_id, capacity=self.config.audit_capacity)

        self.plan: Optional[ActionPlan] = None

        self._lock = asyncio.Lock()
        self._cancel_requested = False
        self._cancelled_steps = 0

    @classmethod
    def from_plan(
        cls,
        plan: ActionPlan,
        store: BackingStore,
        validator: Optional[PreconditionValidator] = None,
        audit_log: Optional[AuditLog] = None,
        config: Optional[EngineConfig] = None
    ) -> "ExecutionEngine":
        """Attach an engine to an existing (e.g. persisted) plan."""
        engine = cls(store, validator, audit_log, config, project_id=plan.project_id)
        engine.plan = plan
        return engine

    # =========================================================================
    # PLUMBING
    # =========================================================================

    def _require_plan(self) -> ActionPlan:
        if self.plan is None:
            raise PlanNotFound("No plan loaded; call create_plan() first")
        return self.plan

    def _require_open_plan(self) -> ActionPlan:
        plan = self._require_plan()
        if plan.status in TERMINAL_PLAN_STATUSES:
            raise InvalidTransition(f"Plan {plan.id} is {plan.status.value}")
        return plan

    def _get_step(self, step_id: str) -> PlanStep:
        step = self._require_plan().get_step(step_id)
        if step is None:
            raise PlanNotFound(f"Unknown step: {step_id}", step_id=step_id)
        return step

    def _get_change(self, step_id: str, file_change_id: str) -> tuple[PlanStep, FileChange]:
        step = self._get_step(step_id)
        change = step.get_file_change(file_change_id)
        if change is None:
            raise PlanNotFound(
                f"Unknown file change {file_change_id} in step {step_id}",
                step_id=step_id,
                file_change_id=file_change_id
            )
        return step, change

    def _runner(self, step: PlanStep) -> StepRunner:
        return StepRunner(
            step,
            self.audit,
            plan_id=self.plan.id if self.plan else None,
            backup_creates=self.config.backup_creates,
        )

    def _record_error(self, operation: str, error: PlanEngineError) -> None:
        self.audit.record(
            AuditAction.ERROR,
            f"{operation} failed: {error.message}",
            AuditStatus.FAILED,
            plan_id=self.plan.id if self.plan else None,
            step_id=error.step_id,
            file_change_id=error.file_change_id,
            error_code=error.code,
            error_message=error.message,
            metadata={"operation": operation},
        )
        logger.warning(f"{operation} failed [{error.code}]: {error.message}")

    @contextmanager
    def _audited(self, operation: str):
        """Append an `error` audit entry for any engine error, then re-raise."""
        try:
            yield
        except PlanEngineError as e:
            # Nested operations (validate inside execute) record once
            if not getattr(e, "audited", False):
                e.audited = True
                self._record_error(operation, e)
            raise

    @asynccontextmanager
    async def _exclusive(self, operation: str):
        """Hold the plan lock; refuse rather than wait if it is taken."""
        if self._lock.locked():
            plan_id = self.plan.id if self.plan else "?"
            raise PlanBusy(f"Plan {plan_id} is busy; {operation} refused")
        async with self._lock:
            yield

    def _refuse_if_busy(self, operation: str) -> None:
        if self._lock.locked():
            raise PlanBusy(f"Plan {self.plan.id} is busy; {operation} refused")

    # =========================================================================
    # CREATION
    # =========================================================================

    def create_plan(self, response: Union[AIResponse, dict]) -> ActionPlan:
        """
        Build a plan from AI content and move it to `pending`.

        Raises:
            InvalidArgument: Malformed content, duplicate ids, unknown dependencies
            DependencyCycle: Step dependencies form a cycle
            PlanBusy: The current plan is executing
        """
        with self._audited("create_plan"):
            if self._lock.locked():
                raise PlanBusy("Engine is busy with another plan")

            if isinstance(response, dict):
                try:
                    response = AIResponse.model_validate(response)
                except ValidationError as e:
                    error = e.errors()[0]
                    location = ".".join(str(part) for part in error["loc"])
                    raise InvalidArgument(f"Malformed AI response at {location}: {error['msg']}") from e

            self.audit.record(
                AuditAction.AI_RESPONSE,
                f'Received plan "{response.title}" with {len(response.steps)} steps',
                AuditStatus.SUCCESS,
                plan_id=response.id,
                metadata={
                    "steps_count": len(response.steps),
                    "file_changes_count": sum(len(s.file_changes) for s in response.steps),
                },
            )

            plan = build_plan(response, project_id=self.project_id)
            transition_plan(plan, ActionPlanStatus.PENDING)

            self.plan = plan
            self._cancel_requested = False
            self._cancelled_steps = 0

            self.audit.record(
                AuditAction.PLAN_CREATED,
                f'Created plan "{plan.title}"',
                AuditStatus.SUCCESS,
                plan_id=plan.id,
                files_affected=[c.file_path for c in plan.all_file_changes] or None,
                metadata={
                    "steps_count": len(plan.steps),
                    "total_files": plan.metadata.total_files,
                    "risk_level": plan.metadata.risk_level.value,
                },
            )
            logger.info(
                f"Plan {plan.id} created: {len(plan.steps)} steps, "
                f"{plan.metadata.total_files} file changes, risk {plan.metadata.risk_level.value}"
            )
            return plan

    # =========================================================================
    # REVIEW
    # =========================================================================

    def approve_file_change(self, step_id: str, file_change_id: str) -> bool:
        """
        Record reviewer approval. A no-op on anything not pending.

        Returns:
            True if the review decision changed
        """
        with self._audited("approve_file_change"):
            plan = self._require_open_plan()
            step, change = self._get_change(step_id, file_change_id)

            changed = FileChangeTracker(change).approve()
            if changed:
                self.audit.record(
                    AuditAction.FILE_APPROVED,
                    f"Approved {change.operation.value} of {change.file_path}",
                    AuditStatus.SUCCESS,
                    plan_id=plan.id,
                    step_id=step.id,
                    file_change_id=change.id,
                    files_affected=change.touched_paths,
                    metadata={"operation": change.operation.value, "bulk": False},
                )
            return changed

    def reject_file_change(self, step_id: str, file_change_id: str) -> None:
        """
        Reject a pending file change; its step will fail when it runs.

        Raises:
            InvalidTransition: If the change is not pending
        """
        with self._audited("reject_file_change"):
            plan = self._require_open_plan()
            step, change = self._get_change(step_id, file_change_id)

            FileChangeTracker(change).reject()
            self.audit.record(
                AuditAction.FILE_REJECTED,
                f"Rejected {change.operation.value} of {change.file_path}",
                AuditStatus.SUCCESS,
                plan_id=plan.id,
                step_id=step.id,
                file_change_id=change.id,
                files_affected=change.touched_paths,
                metadata={"operation": change.operation.value},
            )

    def approve_all(self) -> list[FileChange]:
        """
        Approve every pending, unreviewed file change. Executes nothing.

        Returns:
            The file changes newly approved (empty on a second call)
        """
        with self._audited("approve_all"):
            plan = self._require_open_plan()
            changed = approve_all(plan)

            for change in changed:
                step_id = next(
                    s.id for s in plan.steps
                    if any(c is change for c in s.file_changes)
                )
                self.audit.record(
                    AuditAction.FILE_APPROVED,
                    f"Approved {change.operation.value} of {change.file_path}",
                    AuditStatus.SUCCESS,
                    plan_id=plan.id,
                    step_id=step_id,
                    file_change_id=change.id,
                    files_affected=change.touched_paths,
                    metadata={"operation": change.operation.value, "bulk": True},
                )
            return changed

    def approve_plan(self) -> ActionPlan:
        """
        pending -> approved.

        Raises:
            InvalidTransition: If the plan is not pending
            PendingApprovalRequired: If a confirmation-required step is unresolved
        """
        with self._audited("approve_plan"):
            plan = self._require_plan()
            if not can_transition_plan(plan.status, ActionPlanStatus.APPROVED):
                raise InvalidTransition(f"Cannot approve plan {plan.id}: status is {plan.status.value}")

            blocking = unconfirmed_steps(plan)
            if blocking:
                raise PendingApprovalRequired(
                    f"Steps awaiting confirmation: {', '.join(s.id for s in blocking)}",
                    step_id=blocking[0].id
                )

            transition_plan(plan, ActionPlanStatus.APPROVED)
            approved = sum(1 for c in plan.all_file_changes if c.review == ReviewDecision.APPROVED)
            self.audit.record(
                AuditAction.PLAN_APPROVED,
                f'Approved plan "{plan.title}"',
                AuditStatus.SUCCESS,
                plan_id=plan.id,
                metadata={"approved_files": approved},
            )
            logger.info(f"Plan {plan.id} approved ({approved} file changes approved)")
            return plan

    def reject_plan(self, reason: Optional[str] = None) -> ActionPlan:
        """pending -> rejected. Every step is cancelled; nothing runs."""
        with self._audited("reject_plan"):
            plan = self._require_plan()
            transition_plan(plan, ActionPlanStatus.REJECTED)

            for step in plan.steps:
                if step.status == ExecutionStatus.PENDING:
                    self._runner(step).cancel("plan rejected")

            self.audit.record(
                AuditAction.PLAN_REJECTED,
                f'Rejected plan "{plan.title}"',
                AuditStatus.SUCCESS,
                plan_id=plan.id,
                metadata={"reason": reason} if reason else None,
            )
            logger.info(f"Plan {plan.id} rejected")
            return plan

    # =========================================================================
    # STEP OPERATIONS
    # =========================================================================

    def approve_step(self, step_id: str) -> None:
        """Manually complete a confirmation-required pending step."""
        with self._audited("approve_step"):
            self._require_open_plan()
            self._refuse_if_busy("approve_step")
            self._runner(self._get_step(step_id)).approve_step()

    def reject_step(self, step_id: str) -> None:
        """Manually fail a confirmation-required pending step."""
        with self._audited("reject_step"):
            self._require_open_plan()
            self._refuse_if_busy("reject_step")
            self._runner(self._get_step(step_id)).reject_step()

    def update_step_progress(self, step_id: str, pct: int) -> None:
        """
        Raises:
            InvalidTransition: If the step is not running
            InvalidArgument: If pct is outside [0, 100]
        """
        with self._audited("update_step_progress"):
            self._runner(self._get_step(step_id)).update_progress(pct)

    async def execute_step(self, step_id: str) -> bool:
        """
        Run a single step.

        The plan enters `applying` on the first step and settles (applied or
        failed) once no pending step can run any more.

        Returns:
            True if the step completed

        Raises:
            InvalidTransition: Plan not executable, or the step cannot execute
            PlanBusy: Another execute/rollback is in flight
        """
        with self._audited("execute_step"):
            plan = self._require_plan()
            step = self._get_step(step_id)

            async with self._exclusive("execute_step"):
                runner = self._runner(step)
                runner.ensure_can_execute(plan.steps_by_id)

                resumed = False
                if plan.status != ActionPlanStatus.APPLYING:
                    resumed = await self._begin_applying()

                started = time.monotonic()
                self._mark_started(step)
                completed = await runner.execute(self.store, plan.steps_by_id)
                self._settle(resumed, started)
                return completed

    # =========================================================================
    # PLAN EXECUTION
    # =========================================================================

    async def validate(self) -> ValidationResult:
        """
        Check the dependency graph and every pre-condition.

        Raises:
            ValidationUnavailable: Pre-conditions exist but no validator answered
        """
        with self._audited("validate_plan"):
            plan = self._require_plan()
            result = await check_plan(plan, self.validator)

            if not result.passed:
                self.audit.record(
                    AuditAction.VALIDATION_FAILED,
                    f"Plan {plan.id} failed validation: {'; '.join(result.violations)}",
                    AuditStatus.FAILED,
                    plan_id=plan.id,
                    metadata={"violations": result.violations},
                )
            return result

    async def validate_plan(self) -> bool:
        return (await self.validate()).passed

    async def _begin_applying(self) -> bool:
        """
        approved | failed -> applying.

        Returns:
            True if this resumes a failed plan
        """
        plan = self.plan
        if not can_transition_plan(plan.status, ActionPlanStatus.APPLYING):
            raise InvalidTransition(f"Cannot execute plan {plan.id}: status is {plan.status.value}")

        resumed = plan.status == ActionPlanStatus.FAILED
        if not resumed and self.config.validate_before_execute:
            result = await self.validate()
            if not result.passed:
                raise InvalidTransition(
                    f"Plan {plan.id} failed validation: {'; '.join(result.violations)}"
                )

        transition_plan(plan, ActionPlanStatus.APPLYING)
        plan.error = None
        if plan.timeline.started_at is None:
            plan.timeline.started_at = datetime.now()
        self._cancel_requested = False
        self._cancelled_steps = 0

        logger.info(f"Plan {plan.id} {'resumed' if resumed else 'applying'}")
        return resumed

    async def execute_plan(self, deadline: Optional[float] = None) -> ActionPlan:
        """
        Run every pending step in dependency order.

        File change failures do not raise: they land in the change's
        error_message, the step's status and plan.error. Calling this on a
        failed plan resumes it, running only steps still pending.

        Args:
            deadline: Optional limit in seconds. On expiry running work is
                      marked failed and unstarted steps are cancelled.

        Raises:
            InvalidTransition: Plan is not approved/failed, or fails validation
            ValidationUnavailable: Pre-conditions could not be checked
            PlanBusy: Another execute/rollback is in flight
        """
        with self._audited("execute_plan"):
            plan = self._require_plan()
            if deadline is not None and deadline <= 0:
                raise InvalidArgument(f"Deadline must be positive, got {deadline}")

            async with self._exclusive("execute_plan"):
                resumed = await self._begin_applying()
                started = time.monotonic()

                if deadline is None:
                    await self._run_steps()
                    self._finalize(resumed, started)
                    return plan

                try:
                    await asyncio.wait_for(self._run_steps(), timeout=deadline)
                except asyncio.TimeoutError:
                    running = self._expire()
                    self._finalize(resumed, started, PlanError(
                        code="DEADLINE_EXCEEDED",
                        message=f"Execution exceeded its {deadline}s deadline",
                        step_id=running,
                    ))
                    return plan

                self._finalize(resumed, started)
                return plan

    async def _run_steps(self) -> None:
        plan = self.plan
        for step in order_steps(plan.steps):
            if step.status != ExecutionStatus.PENDING:
                continue

            runner = self._runner(step)

            # Cancellation is only honoured between steps
            if self._cancel_requested:
                runner.cancel("execution cancelled")
                self._cancelled_steps += 1
                continue

            steps_by_id = plan.steps_by_id
            unmet = runner.unmet_dependencies(steps_by_id)
            if unmet:
                runner.skip(unmet)
                continue

            self._mark_started(step)
            await runner.execute(self.store, steps_by_id)

    def _mark_started(self, step: PlanStep) -> None:
        order = self.plan.execution_order
        if step.id in order:
            order.remove(step.id)
        order.append(step.id)

    def _expire(self) -> Optional[str]:
        """
        Deadline hit: fail whatever is running, cancel what never started.

        Returns:
            Id of the step that was running, if any
        """
        running_step = None
        for step in self.plan.steps:
            runner = self._runner(step)
            if step.status == ExecutionStatus.RUNNING:
                running_step = step.id
                change_id = None
                for change in step.file_changes:
                    if change.status == ExecutionStatus.RUNNING:
                        FileChangeTracker(change).mark_failed("deadline exceeded")
                        change_id = change.id
                runner.fail(change_id, "deadline exceeded")
            elif step.status == ExecutionStatus.PENDING:
                runner.cancel("deadline exceeded")
        return running_step

    def _first_failure(self) -> Optional[PlanError]:
        """The first failed step, in execution order, as a plan error."""
        plan = self.plan
        ordered = [plan.get_step(step_id) for step_id in plan.execution_order]
        ordered += [s for s in plan.steps if s.id not in plan.execution_order]

        for step in ordered:
            if step is None or step.status != ExecutionStatus.FAILED:
                continue
            for change in step.file_changes:
                if change.status == ExecutionStatus.FAILED:
                    return PlanError(
                        code="STEP_FAILED",
                        message=change.error_message or "file change failed",
                        step_id=step.id,
                        file_change_id=change.id,
                    )
            return PlanError(code="STEP_FAILED", message=f"Step {step.id} failed", step_id=step.id)
        return None

    def _cancel_pending(self) -> None:
        for step in self.plan.steps:
            if step.status == ExecutionStatus.PENDING:
                self._runner(step).cancel("execution cancelled")
                self._cancelled_steps += 1

    def _settle(self, resumed: bool, started: Optional[float]) -> None:
        """
        After a single step: finish the plan once no pending step can run.

        Pending steps stuck behind a failed or cancelled dependency are
        cascade-skipped first.
        """
        plan = self.plan
        if self._cancel_requested:
            self._cancel_pending()
            self._finalize(resumed, started)
            return

        dead = {s.id for s in plan.steps if s.status in BLOCKING_STATUSES}
        blocked: list[tuple[PlanStep, list[str]]] = []
        runnable = False

        for step in order_steps(plan.steps):
            if step.status != ExecutionStatus.PENDING:
                continue
            blockers = [dep for dep in step.dependencies if dep in dead]
            if blockers:
                dead.add(step.id)
                blocked.append((step, blockers))
            else:
                runnable = True

        if runnable:
            return

        for step, blockers in blocked:
            self._runner(step).skip(blockers)
        self._finalize(resumed, started)

    def _finalize(
        self,
        resumed: bool = False,
        started: Optional[float] = None,
        error: Optional[PlanError] = None
    ) -> None:
        """applying -> applied | failed, with the matching audit entry."""
        plan = self.plan
        now = datetime.now()
        plan.timeline.completed_at = now
        plan.rollback.is_available = any(
            c.status == ExecutionStatus.COMPLETED and c.backup_ref
            for c in plan.all_file_changes
        )
        duration_ms = int((time.monotonic() - started) * 1000) if started is not None else None

        if error is None:
            error = self._first_failure()
        if error is None and self._cancelled_steps:
            # Only a cancel that actually stopped a step fails the plan
            error = PlanError(code="EXECUTION_CANCELLED", message="Execution cancelled by caller")

        if error is None:
            transition_plan(plan, ActionPlanStatus.APPLIED)
            plan.timeline.applied_at = now
            completed = sum(1 for s in plan.steps if s.status == ExecutionStatus.COMPLETED)
            self.audit.record(
                AuditAction.PLAN_EXECUTED,
                f'Applied plan "{plan.title}"',
                AuditStatus.SUCCESS,
                plan_id=plan.id,
                files_affected=[
                    c.file_path for c in plan.all_file_changes
                    if c.status == ExecutionStatus.COMPLETED
                ] or None,
                metadata={
                    "completed_steps": completed,
                    "cancelled_steps": sum(1 for s in plan.steps if s.status == ExecutionStatus.CANCELLED),
                    "resumed": resumed,
                },
                duration_ms=duration_ms,
            )
            logger.info(f"Plan {plan.id} applied ({completed} steps)")
            return

        transition_plan(plan, ActionPlanStatus.FAILED)
        plan.error = error
        self.audit.record(
            AuditAction.ERROR,
            f'Plan "{plan.title}" failed: {error.message}',
            AuditStatus.FAILED,
            plan_id=plan.id,
            step_id=error.step_id,
            file_change_id=error.file_change_id,
            error_code=error.code,
            error_message=error.message,
            metadata={"operation": "execute_plan"},
            duration_ms=duration_ms,
        )
        logger.warning(f"Plan {plan.id} failed [{error.code}]: {error.message}")

    def cancel(self) -> None:
        """
        Request cooperative cancellation.

        During execute_plan() the flag is checked between steps; steps not yet
        started become cancelled. In step-by-step mode the remaining pending
        steps are cancelled right away.
        The plan fails with EXECUTION_CANCELLED only if a step was actually
        cancelled and no step failed first.

        Raises:
            InvalidTransition: If the plan is not applying
        """
        with self._audited("cancel"):
            plan = self._require_plan()
            if plan.status != ActionPlanStatus.APPLYING:
                raise InvalidTransition(f"Cannot cancel plan {plan.id}: status is {plan.status.value}")

            self._cancel_requested = True
            logger.info(f"Cancellation requested for plan {plan.id}")

            if not self._lock.locked():
                self._cancel_pending()
                self._finalize()

    # =========================================================================
    # RECOVERY
    # =========================================================================

    async def retry_file_change(self, step_id: str, file_change_id: str) -> bool:
        """
        Retry one failed file change without re-running the plan.

        The step is completed if every one of its changes is now completed,
        or put back to pending if some were never reached; either way the
        plan stays failed until execute_plan() is called again to resume.

        Returns:
            True if the change applied this time

        Raises:
            InvalidTransition: Plan not failed, change not failed, or the step
                               already cascaded a skip to its dependents
            PlanBusy: Another execute/rollback is in flight
        """
        with self._audited("retry_file_change"):
            plan = self._require_plan()
            step, change = self._get_change(step_id, file_change_id)

            async with self._exclusive("retry_file_change"):
                if plan.status != ActionPlanStatus.FAILED:
                    raise InvalidTransition(
                        f"File changes can only be retried on a failed plan (status is {plan.status.value})",
                        step_id=step.id,
                        file_change_id=change.id
                    )
                if change.status != ExecutionStatus.FAILED or step.status != ExecutionStatus.FAILED:
                    raise InvalidTransition(
                        f"Cannot retry {change.id}: change is {change.status.value}, "
                        f"step is {step.status.value}",
                        step_id=step.id,
                        file_change_id=change.id
                    )

                skipped = [
                    s.id for s in plan.steps
                    if s.status == ExecutionStatus.CANCELLED and step.id in s.dependencies
                ]
                if skipped:
                    raise InvalidTransition(
                        f"Cannot retry {change.id}: step {step.id} already cascaded a skip "
                        f"to {', '.join(skipped)}",
                        step_id=step.id,
                        file_change_id=change.id
                    )

                FileChangeTracker(change).retry()
                runner = self._runner(step)
                applied = await runner.apply_change(change, self.store, retry=True)

                if applied:
                    runner.retry()
                    if all(c.status == ExecutionStatus.COMPLETED for c in step.file_changes):
                        await runner.execute(self.store, plan.steps_by_id)

                plan.rollback.is_available = any(
                    c.status == ExecutionStatus.COMPLETED and c.backup_ref
                    for c in plan.all_file_changes
                )
                logger.info(f"Retry of {change.id} {'succeeded' if applied else 'failed'}")
                return applied

    async def rollback_plan(self) -> ActionPlan:
        """
        Undo applied file changes and move the plan to `rolled_back`.

        Steps are undone in reverse execution order, and changes within a
        step last-applied-first. Rollback is best-effort across steps: a step
        that cannot be undone (no backup, restore failure, can_rollback off)
        is recorded in plan.error and the audit trail, and the remaining
        steps are still rolled back.

        Raises:
            InvalidTransition: If the plan is not applied or failed
            PlanBusy: Another execute/rollback is in flight
        """
        with self._audited("rollback_plan"):
            plan = self._require_plan()

            async with self._exclusive("rollback_plan"):
                if not can_transition_plan(plan.status, ActionPlanStatus.ROLLED_BACK):
                    raise InvalidTransition(f"Cannot roll back plan {plan.id}: status is {plan.status.value}")

                started = time.monotonic()
                failures: list[PlanError] = []
                rolled_back = 0

                for step in self._rollback_order():
                    applied = [c for c in step.file_changes if c.status == ExecutionStatus.COMPLETED]
                    if not applied:
                        continue

                    if not step.metadata.can_rollback:
                        failures.append(PlanError(
                            code="ROLLBACK_NOT_SUPPORTED",
                            message=f"Step {step.id} does not support rollback",
                            step_id=step.id,
                        ))
                        continue

                    missing = [c for c in applied if not c.backup_ref]
                    if missing:
                        failures.append(PlanError(
                            code="ROLLBACK_FAILED",
                            message=f"No backup reference for {missing[0].file_path}",
                            step_id=step.id,
                            file_change_id=missing[0].id,
                        ))
                        continue

                    count, failure = await self._rollback_step(step, applied)
                    rolled_back += count
                    if failure:
                        failures.append(failure)

                for failure in failures:
                    self.audit.record(
                        AuditAction.ERROR,
                        f"Rollback of step {failure.step_id} incomplete: {failure.message}",
                        AuditStatus.FAILED,
                        plan_id=plan.id,
                        step_id=failure.step_id,
                        file_change_id=failure.file_change_id,
                        error_code=failure.code,
                        error_message=failure.message,
                        metadata={"operation": "rollback_plan"},
                    )

                transition_plan(plan, ActionPlanStatus.ROLLED_BACK)
                plan.timeline.rolled_back_at = datetime.now()
                plan.rollback.is_available = False
                if failures:
                    plan.error = failures[0]

                self.audit.record(
                    AuditAction.PLAN_ROLLED_BACK,
                    f'Rolled back plan "{plan.title}"'
                    + (f" with {len(failures)} step(s) left in place" if failures else ""),
                    AuditStatus.FAILED if failures else AuditStatus.ROLLED_BACK,
                    plan_id=plan.id,
                    metadata={
                        "rolled_back_files": rolled_back,
                        "failed_steps": [f.step_id for f in failures],
                    },
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
                logger.info(f"Plan {plan.id} rolled back ({rolled_back} file changes, {len(failures)} failures)")
                return plan

    def _rollback_order(self) -> list[PlanStep]:
        """Steps in reverse execution order, then any never-started ones."""
        plan = self.plan
        ordered = [plan.get_step(step_id) for step_id in reversed(plan.execution_order)]
        ordered = [s for s in ordered if s is not None]
        ordered += [s for s in reversed(plan.steps) if s.id not in plan.execution_order]
        return ordered

    async def _rollback_step(
        self,
        step: PlanStep,
        applied: list[FileChange]
    ) -> tuple[int, Optional[PlanError]]:
        """
        Undo one step's applied changes, last-applied-first.

        Stops at the first failed restore.

        Returns:
            (changes rolled back, failure or None)
        """
        runner = self._runner(step)
        step_completed = step.status == ExecutionStatus.COMPLETED
        if step_completed:
            runner.begin_rollback()

        count = 0
        for change in reversed(applied):
            backup_ref = change.backup_ref
            result = await FileChangeTracker(change).rollback(self.store.restore_from_backup)

            if result.success:
                count += 1
                self.audit.record(
                    AuditAction.FILE_ROLLBACK,
                    f"Rolled back {change.operation.value} of {change.file_path}",
                    AuditStatus.ROLLED_BACK,
                    plan_id=self.plan.id,
                    step_id=step.id,
                    file_change_id=change.id,
                    files_affected=change.touched_paths,
                    metadata={"operation": change.operation.value, "backup_ref": backup_ref},
                )
                self.audit.record(
                    AuditAction.BACKUP_RESTORED,
                    f"Restored backup {backup_ref}",
                    AuditStatus.SUCCESS,
                    plan_id=self.plan.id,
                    step_id=step.id,
                    file_change_id=change.id,
                    metadata={"backup_ref": backup_ref},
                )
                continue

            self.audit.record(
                AuditAction.FILE_ROLLBACK,
                f"Failed to roll back {change.file_path}",
                AuditStatus.FAILED,
                plan_id=self.plan.id,
                step_id=step.id,
                file_change_id=change.id,
                files_affected=change.touched_paths,
                error_code="ROLLBACK_FAILED",
                error_message=change.error_message,
                metadata={"operation": change.operation.value, "backup_ref": backup_ref},
            )
            if step_completed:
                runner.finish_rollback(success=False)
            return count, PlanError(
                code="ROLLBACK_FAILED",
                message=change.error_message or "restore failed",
                step_id=step.id,
                file_change_id=change.id,
            )

        if step_completed:
            runner.finish_rollback(success=True)
        return count, None

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_plan_summary(self) -> PlanSummary:
        with self._audited("get_plan_summary"):
            return summarize(self._require_plan())

    def get_audit_logs(self, limit: Optional[int] = None) -> tuple[AuditLogEntry, ...]:
        """Audit entries, newest first, at most audit capacity."""
        return self.audit.entries(limit)

    def subscribe(self, listener: AuditListener) -> None:
        """Call `listener(entry)` for every audit entry appended from now on."""
        self.audit.subscribe(listener)

    def unsubscribe(self, listener: AuditListener) -> None:
        self.audit.unsubscribe(listener)
