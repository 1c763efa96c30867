"""
Plan Construction Tests: ids, dependency graph, ordering, validation

Test list:
1. test_build_plan_ids_and_metadata - Generated ids and derived metadata
2. test_build_plan_rejects_bad_graphs - Duplicates, unknown deps, cycles
3. test_order_steps_stable - Dependencies first, ties by authored position
4. test_check_plan_preconditions - Violations listed; validator consulted
5. test_check_plan_fails_closed - No validator / raising validator
6. test_approve_all_idempotent - Second call changes nothing
7. test_summarize - Roll-up numbers
"""

from unittest.mock import AsyncMock

import pytest

from .backing import StaticValidator
from .errors import DependencyCycle, InvalidArgument, ValidationUnavailable
from .plan import approve_all, build_plan, check_plan, order_steps, summarize
from .schemas import (
    ActionPlanStatus,
    AIResponse,
    ExecutionStatus,
    ReviewDecision,
    RiskLevel,
)


def _plan(data):
    return build_plan(AIResponse.model_validate(data), project_id="test")


# =============================================================================
# TEST 1: Ids and metadata
# =============================================================================

def test_build_plan_ids_and_metadata():
    """
    Test 1: Generated ids and derived metadata.

    Verifies:
    - Missing ids become step1..N and <step>_fc1..N
    - Plan starts in planning
    - total_files, summed duration and highest risk are derived
    - Line counts land in file change metadata
    """
    plan = _plan({
        "title": "Ids",
        "rollback_point": "abc123",
        "requires_git": True,
        "steps": [
            {"title": "One", "estimated_duration_sec": 10, "file_changes": [
                {"operation": "create", "file_path": "a.txt",
                 "diff": [{"id": "c1", "start_line": 1, "end_line": 2, "lines": [
                     {"kind": "added", "content": "x"}, {"kind": "added", "content": "y"}]}]},
                {"operation": "delete", "file_path": "b.txt"},
            ]},
            {"title": "Two", "risk_level": "high", "estimated_duration_sec": 5},
        ],
    })

    assert plan.status == ActionPlanStatus.PLANNING
    assert plan.project_id == "test"
    assert len(plan.id) == 8
    assert [s.id for s in plan.steps] == ["step1", "step2"]
    assert [c.id for c in plan.steps[0].file_changes] == ["step1_fc1", "step1_fc2"]
    assert plan.metadata.total_files == 2
    assert plan.metadata.estimated_duration_sec == 15
    assert plan.metadata.risk_level == RiskLevel.HIGH
    assert plan.metadata.requires_git is True
    assert plan.rollback.rollback_point == "abc123"
    assert plan.rollback.is_available is False

    created = plan.steps[0].file_changes[0]
    assert created.metadata.lines_added == 2
    assert created.metadata.size_bytes == len("x\ny")

    print("✓ Test 1 passed: plan construction fills ids and metadata")


# =============================================================================
# TEST 2: Bad graphs
# =============================================================================

def test_build_plan_rejects_bad_graphs():
    """
    Test 2: Duplicates, unknown deps, cycles.
    """
    with pytest.raises(InvalidArgument):
        _plan({"title": "dup", "steps": [{"id": "a", "title": "A"}, {"id": "a", "title": "B"}]})

    with pytest.raises(InvalidArgument):
        _plan({"title": "unknown", "steps": [{"id": "a", "title": "A", "dependencies": ["zzz"]}]})

    with pytest.raises(DependencyCycle):
        _plan({"title": "self", "steps": [{"id": "a", "title": "A", "dependencies": ["a"]}]})

    with pytest.raises(DependencyCycle) as exc:
        _plan({"title": "cycle", "steps": [
            {"id": "a", "title": "A", "dependencies": ["c"]},
            {"id": "b", "title": "B", "dependencies": ["a"]},
            {"id": "c", "title": "C", "dependencies": ["b"]},
            {"id": "d", "title": "D"},
        ]})
    assert "a, b, c" in exc.value.message

    with pytest.raises(InvalidArgument):
        _plan({"title": "bad move", "steps": [{"title": "A", "file_changes": [
            {"operation": "move", "file_path": "a.txt"}]}]})

    print("✓ Test 2 passed: malformed graphs rejected at creation")


# =============================================================================
# TEST 3: Ordering
# =============================================================================

def test_order_steps_stable():
    """
    Test 3: Dependencies first, ties by authored position.
    """
    plan = _plan({"title": "order", "steps": [
        {"id": "deploy", "title": "Deploy", "dependencies": ["build", "test"]},
        {"id": "test", "title": "Test", "dependencies": ["build"]},
        {"id": "docs", "title": "Docs"},
        {"id": "build", "title": "Build"},
    ]})

    assert [s.id for s in order_steps(plan.steps)] == ["docs", "build", "test", "deploy"]
    # Authored order is untouched
    assert [s.id for s in plan.steps] == ["deploy", "test", "docs", "build"]

    print("✓ Test 3 passed: topological order is deterministic")


# =============================================================================
# TEST 4: Pre-conditions
# =============================================================================

@pytest.mark.asyncio
async def test_check_plan_preconditions():
    """
    Test 4: Violations listed; validator consulted.
    """
    plan = _plan({
        "title": "pre",
        "validation": {"pre_conditions": ["Git repository is clean", "Tests pass"]},
    })

    result = await check_plan(plan, StaticValidator(satisfied=["git repository is clean"]))
    assert result.passed is False
    assert result.violations == ["Tests pass"]

    result = await check_plan(plan, StaticValidator(accept_all=True))
    assert result.passed is True
    assert result.violations == []

    # No pre-conditions: no validator needed
    bare = _plan({"title": "bare"})
    assert (await check_plan(bare, None)).passed

    print("✓ Test 4 passed: pre-conditions are checked")


# =============================================================================
# TEST 5: Fail closed
# =============================================================================

@pytest.mark.asyncio
async def test_check_plan_fails_closed():
    """
    Test 5: No validator / raising validator.

    Verifies:
    - Missing validator raises ValidationUnavailable
    - A validator that raises is treated as unavailable, not as a pass
    """
    plan = _plan({"title": "pre", "validation": {"pre_conditions": ["Network is up"]}})

    with pytest.raises(ValidationUnavailable):
        await check_plan(plan, None)

    broken = StaticValidator()
    broken.check = AsyncMock(side_effect=ConnectionError("validator unreachable"))
    with pytest.raises(ValidationUnavailable) as exc:
        await check_plan(plan, broken)
    assert "validator unreachable" in exc.value.message

    print("✓ Test 5 passed: validation fails closed")


# =============================================================================
# TEST 6: approve_all
# =============================================================================

def test_approve_all_idempotent(button_response):
    """
    Test 6: Second call changes nothing.
    """
    plan = _plan(button_response)

    first = approve_all(plan)
    snapshot = [(c.status, c.review) for c in plan.all_file_changes]
    second = approve_all(plan)

    assert len(first) == 2
    assert second == []
    assert [(c.status, c.review) for c in plan.all_file_changes] == snapshot
    assert all(c.review == ReviewDecision.APPROVED for c in plan.all_file_changes)
    assert all(c.status == ExecutionStatus.PENDING for c in plan.all_file_changes)

    print("✓ Test 6 passed: approve_all is idempotent")


# =============================================================================
# TEST 7: Summary
# =============================================================================

def test_summarize(button_response):
    """
    Test 7: Roll-up numbers.
    """
    plan = _plan(button_response)
    plan.status = ActionPlanStatus.PENDING
    plan.steps[0].status = ExecutionStatus.COMPLETED
    plan.steps[0].file_changes[0].status = ExecutionStatus.COMPLETED

    summary = summarize(plan)

    assert summary.total_steps == 2
    assert summary.completed_steps == 1
    assert summary.pending_steps == 1
    assert summary.failed_steps == 0
    assert summary.total_file_changes == 2
    assert summary.completed_file_changes == 1
    assert summary.estimated_duration == 45
    assert summary.risk_level == RiskLevel.MEDIUM
    assert summary.requires_user_action is True
    assert summary.can_rollback is False

    print("✓ Test 7 passed: summary numbers add up")
