"""
Action plan construction, ordering and validation.

WHY THIS FILE EXISTS:
--------------------
AI-supplied plan content arrives as an AIResponse with optional ids and
loose structure. Before the engine can run it we need to:

1. Give every step and file change a stable id
2. Check the dependency graph (unknown ids, cycles)
3. Derive plan metadata (file count, duration, overall risk)
4. Order steps so dependencies run first, deterministically

The functions here are pure with respect to the engine: they read or fill
in a plan but never touch a backing store or the audit log.
"""

import heapq
import uuid
from typing import Optional

from pydantic import ValidationError

from .backing import PreconditionValidator
from .errors import DependencyCycle, InvalidArgument, ValidationUnavailable
from .schemas import (
    RISK_ORDER,
    ActionPlan,
    ActionPlanStatus,
    AIResponse,
    ExecutionStatus,
    FileChange,
    FileChangeDraft,
    FileChangeMetadata,
    PlanMetadata,
    PlanStep,
    PlanSummary,
    RiskLevel,
    RollbackInfo,
    StepMetadata,
    ValidationResult,
)
from .steps import step_confirmed
from .tracker import FileChangeTracker


def new_id() -> str:
    return str(uuid.uuid4())[:8]


# =============================================================================
# CONSTRUCTION
# =============================================================================

def _build_file_change(draft: FileChangeDraft, change_id: str) -> FileChange:
    lines_added = sum(chunk.added_count for chunk in draft.diff)
    lines_removed = sum(chunk.removed_count for chunk in draft.diff)

    if draft.size_bytes is not None:
        size_bytes = draft.size_bytes
    else:
        new_text = "\n".join(line for chunk in draft.diff for line in chunk.new_side())
        size_bytes = len(new_text.encode(draft.encoding or "utf-8"))

    try:
        return FileChange(
            id=change_id,
            operation=draft.operation,
            file_path=draft.file_path,
            new_path=draft.new_path,
            description=draft.description,
            diff=list(draft.diff),
            metadata=FileChangeMetadata(
                size_bytes=size_bytes,
                lines_added=lines_added,
                lines_removed=lines_removed,
                file_type=draft.file_type or "text",
                encoding=draft.encoding,
            ),
        )
    except ValidationError as e:
        raise InvalidArgument(
            f"Invalid file change {change_id}: {e.errors()[0]['msg']}",
            file_change_id=change_id
        ) from e


def build_plan(response: AIResponse, project_id: str = "default") -> ActionPlan:
    """
    Turn AI content into an ActionPlan in `planning` status.

    Missing ids are generated: plans get a short uuid, steps `step1..N`
    (by position), file changes `<step_id>_fc1..N`.

    Raises:
        InvalidArgument: Duplicate ids, unknown dependencies, malformed file changes
        DependencyCycle: If the step dependencies form a cycle
    """
    steps: list[PlanStep] = []
    seen_steps: set[str] = set()
    seen_changes: set[str] = set()

    for index, draft in enumerate(response.steps, 1):
        step_id = draft.id or f"step{index}"
        if step_id in seen_steps:
            raise InvalidArgument(f"Duplicate step id: {step_id}", step_id=step_id)
        seen_steps.add(step_id)

        changes = []
        for fc_index, fc_draft in enumerate(draft.file_changes, 1):
            change_id = fc_draft.id or f"{step_id}_fc{fc_index}"
            if change_id in seen_changes:
                raise InvalidArgument(f"Duplicate file change id: {change_id}", file_change_id=change_id)
            seen_changes.add(change_id)
            changes.append(_build_file_change(fc_draft, change_id))

        steps.append(PlanStep(
            id=step_id,
            type=draft.type,
            title=draft.title,
            description=draft.description,
            priority=draft.priority,
            dependencies=draft.dependencies,
            file_changes=changes,
            metadata=StepMetadata(
                estimated_duration_sec=draft.estimated_duration_sec,
                risk_level=draft.risk_level,
                requires_user_confirmation=draft.requires_user_confirmation,
                can_rollback=draft.can_rollback,
            ),
        ))

    plan = ActionPlan(
        id=response.id or new_id(),
        project_id=project_id,
        title=response.title,
        description=response.description,
        status=ActionPlanStatus.PLANNING,
        priority=response.priority,
        steps=steps,
        rollback=RollbackInfo(is_available=False, rollback_point=response.rollback_point),
        validation=response.validation.model_copy(deep=True),
    )

    check_dependencies(plan)
    order_steps(plan.steps)
    plan.metadata = derive_metadata(plan, response)
    return plan


def derive_metadata(plan: ActionPlan, response: Optional[AIResponse] = None) -> PlanMetadata:
    """File count, summed step duration and the highest step risk."""
    risk = RiskLevel.LOW
    for step in plan.steps:
        if RISK_ORDER[step.metadata.risk_level] > RISK_ORDER[risk]:
            risk = step.metadata.risk_level

    return PlanMetadata(
        total_files=len(plan.all_file_changes),
        estimated_duration_sec=sum(s.metadata.estimated_duration_sec or 0 for s in plan.steps),
        risk_level=risk,
        requires_git=response.requires_git if response else plan.metadata.requires_git,
        requires_build=response.requires_build if response else plan.metadata.requires_build,
        requires_test=response.requires_test if response else plan.metadata.requires_test,
    )


# =============================================================================
# DEPENDENCY GRAPH
# =============================================================================

def check_dependencies(plan: ActionPlan) -> None:
    """
    Raises:
        DependencyCycle: If a step depends on itself
        InvalidArgument: If a step depends on an unknown step
    """
    known = {step.id for step in plan.steps}
    for step in plan.steps:
        for dep in step.dependencies:
            if dep == step.id:
                raise DependencyCycle(f"Step {step.id} depends on itself", step_id=step.id)
            if dep not in known:
                raise InvalidArgument(
                    f"Step {step.id} depends on unknown step {dep}",
                    step_id=step.id
                )


def order_steps(steps: list[PlanStep]) -> list[PlanStep]:
    """
    Order steps respecting dependencies (topological sort).

    Kahn's algorithm with a heap keyed on original position, so ties are
    broken by authored order and the result is deterministic.

    Raises:
        DependencyCycle: If not every step can be ordered
    """
    position = {step.id: index for index, step in enumerate(steps)}
    in_degree = {step.id: 0 for step in steps}
    dependents: dict[str, list[str]] = {step.id: [] for step in steps}

    for step in steps:
        for dep in step.dependencies:
            if dep in position:
                in_degree[step.id] += 1
                dependents[dep].append(step.id)

    queue = [position[step_id] for step_id, degree in in_degree.items() if degree == 0]
    heapq.heapify(queue)
    ordered: list[PlanStep] = []

    while queue:
        current = steps[heapq.heappop(queue)]
        ordered.append(current)

        for dependent in dependents[current.id]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(queue, position[dependent])

    if len(ordered) != len(steps):
        stuck = sorted((s for s in steps if in_degree[s.id] > 0), key=lambda s: position[s.id])
        raise DependencyCycle(
            f"Dependency cycle detected among steps: {', '.join(s.id for s in stuck)}",
            step_id=stuck[0].id
        )

    return ordered


# =============================================================================
# VALIDATION
# =============================================================================

async def check_plan(
    plan: ActionPlan,
    validator: Optional[PreconditionValidator]
) -> ValidationResult:
    """
    Check the dependency graph and every pre-condition.

    Graph problems and unmet pre-conditions come back as violations.
    A missing or failing validator is not a violation: validation fails
    closed by raising.

    Raises:
        ValidationUnavailable: Pre-conditions exist but the validator is
                               absent or raised
    """
    violations: list[str] = []

    try:
        check_dependencies(plan)
        order_steps(plan.steps)
    except (InvalidArgument, DependencyCycle) as e:
        violations.append(e.message)

    conditions = plan.validation.pre_conditions
    if conditions and validator is None:
        raise ValidationUnavailable(
            f"No pre-condition validator configured; {len(conditions)} condition(s) unchecked"
        )

    for condition in conditions:
        try:
            holds = await validator.check(condition, plan)
        except Exception as e:
            raise ValidationUnavailable(
                f"Validator failed on {condition!r}: {type(e).__name__}: {e}"
            ) from e
        if not holds:
            violations.append(condition)

    return ValidationResult(passed=not violations, violations=violations)


# =============================================================================
# REVIEW
# =============================================================================

def approve_all(plan: ActionPlan) -> list[FileChange]:
    """
    Record reviewer approval on every pending, unreviewed file change.

    Runs nothing. Calling it twice leaves the same state as calling it once.

    Returns:
        The file changes whose review decision changed
    """
    return [c for c in plan.all_file_changes if FileChangeTracker(c).approve()]


def unconfirmed_steps(plan: ActionPlan) -> list[PlanStep]:
    """Confirmation-required steps still blocking plan approval."""
    return [step for step in plan.steps if not step_confirmed(step)]


# =============================================================================
# SUMMARY
# =============================================================================

def summarize(plan: ActionPlan) -> PlanSummary:
    changes = plan.all_file_changes
    completed_changes = [c for c in changes if c.status == ExecutionStatus.COMPLETED]

    can_rollback = (
        plan.status in (ActionPlanStatus.APPLIED, ActionPlanStatus.FAILED)
        and plan.rollback.is_available
        and any(c.backup_ref for c in completed_changes)
    )

    return PlanSummary(
        total_steps=len(plan.steps),
        completed_steps=sum(1 for s in plan.steps if s.status == ExecutionStatus.COMPLETED),
        total_file_changes=len(changes),
        completed_file_changes=len(completed_changes),
        estimated_duration=plan.metadata.estimated_duration_sec,
        risk_level=plan.metadata.risk_level,
        can_rollback=can_rollback,
        requires_user_action=plan.status in (ActionPlanStatus.PENDING, ActionPlanStatus.FAILED),
        failed_steps=sum(1 for s in plan.steps if s.status == ExecutionStatus.FAILED),
        pending_steps=sum(1 for s in plan.steps if s.status == ExecutionStatus.PENDING),
    )
