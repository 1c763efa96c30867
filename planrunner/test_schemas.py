"""
Schema Tests: diff model, file changes, plans and audit entries

Test list:
1. test_diff_chunk_counts - Added/removed counts and old/new sides
2. test_diff_chunk_is_frozen - Chunks can't be mutated after construction
3. test_diff_chunk_bounds - end_line before start_line is rejected
4. test_file_change_new_path_rules - new_path only (and always) for rename/move
5. test_step_dependencies_deduplicated - Dependency list keeps first-seen order
6. test_audit_metadata_keys - Unknown metadata keys are rejected per action
7. test_audit_entry_is_frozen - Entries are immutable
8. test_plan_round_trip - JSON round-trip keeps order, statuses, nullable timestamps
9. test_json_schema_for_ai_response - Schema export works for the inbound shape
"""

from datetime import datetime

import pytest
from pydantic import ValidationError

from .conftest import added, chunk, context, removed
from .schemas import (
    ActionPlan,
    ActionPlanStatus,
    AIResponse,
    AuditAction,
    AuditLogEntry,
    AuditStatus,
    DiffChunk,
    ExecutionStatus,
    FileChange,
    FileOperation,
    PlanStep,
    get_json_schema,
)


# =============================================================================
# TEST 1: Diff chunk counts
# =============================================================================

def test_diff_chunk_counts():
    """
    Test 1: Added/removed counts and old/new sides.

    Verifies:
    - added_count / removed_count count only their own kind
    - old_side is context + removed, new_side is context + added
    - FileChange aggregates counts across chunks
    """
    c = DiffChunk.model_validate(chunk(
        3,
        context("a") + removed("b", "c") + added("B") + context("d"),
        end=6,
    ))

    assert c.added_count == 1
    assert c.removed_count == 2
    assert c.old_side() == ["a", "b", "c", "d"]
    assert c.new_side() == ["a", "B", "d"]

    change = FileChange(
        id="fc1",
        operation=FileOperation.MODIFY,
        file_path="x.txt",
        diff=[c, DiffChunk.model_validate(chunk(10, added("e", "f"), chunk_id="c2"))],
    )
    assert change.lines_added == 3
    assert change.lines_removed == 2

    print("✓ Test 1 passed: diff counts are derived correctly")


# =============================================================================
# TEST 2: Frozen chunks
# =============================================================================

def test_diff_chunk_is_frozen():
    """
    Test 2: Chunks can't be mutated after construction.
    """
    c = DiffChunk.model_validate(chunk(1, added("x")))

    with pytest.raises(ValidationError):
        c.start_line = 5

    print("✓ Test 2 passed: diff chunks are immutable")


# =============================================================================
# TEST 3: Chunk bounds
# =============================================================================

def test_diff_chunk_bounds():
    """
    Test 3: end_line before start_line is rejected.

    Verifies:
    - Ordered bounds are required
    - Line numbers are 1-based
    """
    with pytest.raises(ValidationError):
        DiffChunk.model_validate(chunk(5, added("x"), end=4))

    with pytest.raises(ValidationError):
        DiffChunk.model_validate(chunk(0, added("x"), end=1))

    print("✓ Test 3 passed: chunk bounds are validated")


# =============================================================================
# TEST 4: new_path rules
# =============================================================================

def test_file_change_new_path_rules():
    """
    Test 4: new_path only (and always) for rename/move.

    Verifies:
    - rename without new_path fails
    - modify with new_path fails
    - move with new_path is fine and touches both paths
    - create needs no backup, everything else does
    """
    with pytest.raises(ValidationError):
        FileChange(id="fc1", operation=FileOperation.RENAME, file_path="a.txt")

    with pytest.raises(ValidationError):
        FileChange(id="fc1", operation=FileOperation.MODIFY, file_path="a.txt", new_path="b.txt")

    move = FileChange(id="fc1", operation=FileOperation.MOVE, file_path="a.txt", new_path="lib/a.txt")
    assert move.touched_paths == ["a.txt", "lib/a.txt"]
    assert move.requires_backup is True

    create = FileChange(id="fc2", operation=FileOperation.CREATE, file_path="c.txt")
    assert create.requires_backup is False
    assert create.touched_paths == ["c.txt"]

    print("✓ Test 4 passed: new_path rules enforced")


# =============================================================================
# TEST 5: Dependencies
# =============================================================================

def test_step_dependencies_deduplicated():
    """
    Test 5: Dependency list keeps first-seen order with duplicates dropped.
    """
    step = PlanStep(id="s3", type="test", title="t", dependencies=["s2", "s1", "s2"])

    assert step.dependencies == ["s2", "s1"]

    print("✓ Test 5 passed: dependencies behave as an ordered set")


# =============================================================================
# TEST 6: Audit metadata schema
# =============================================================================

def test_audit_metadata_keys():
    """
    Test 6: Unknown metadata keys are rejected per action.

    Verifies:
    - Allowed keys pass
    - Keys belonging to another action are refused
    """
    entry = AuditLogEntry(
        id="a1",
        action=AuditAction.PLAN_CREATED,
        description="Created",
        status=AuditStatus.SUCCESS,
        project_id="p",
        metadata={"steps_count": 2, "total_files": 3},
    )
    assert entry.metadata["steps_count"] == 2

    with pytest.raises(ValidationError) as exc:
        AuditLogEntry(
            id="a2",
            action=AuditAction.PLAN_CREATED,
            description="Created",
            status=AuditStatus.SUCCESS,
            project_id="p",
            metadata={"backup_ref": "bk_1"},
        )
    assert "backup_ref" in str(exc.value)

    print("✓ Test 6 passed: audit metadata is schema-checked")


# =============================================================================
# TEST 7: Frozen audit entries
# =============================================================================

def test_audit_entry_is_frozen():
    """
    Test 7: Entries are immutable.
    """
    entry = AuditLogEntry(
        id="a1",
        action=AuditAction.ERROR,
        description="boom",
        status=AuditStatus.FAILED,
        project_id="p",
    )

    with pytest.raises(ValidationError):
        entry.description = "changed"

    print("✓ Test 7 passed: audit entries are frozen")


# =============================================================================
# TEST 8: Plan round trip
# =============================================================================

def test_plan_round_trip():
    """
    Test 8: JSON round-trip keeps order, statuses, nullable timestamps.

    Verifies:
    - Step order and dependency lists survive
    - Enum statuses survive as enums
    - None and set datetimes both survive
    """
    plan = ActionPlan(
        id="p1",
        title="Round trip",
        status=ActionPlanStatus.FAILED,
        steps=[
            PlanStep(id="b", type="analysis", title="B", status=ExecutionStatus.COMPLETED,
                     completed_at=datetime(2024, 1, 2, 3, 4, 5)),
            PlanStep(id="a", type="test", title="A", dependencies=["b"],
                     status=ExecutionStatus.CANCELLED),
        ],
        execution_order=["b"],
    )

    restored = ActionPlan.model_validate_json(plan.model_dump_json())

    assert restored == plan
    assert [s.id for s in restored.steps] == ["b", "a"]
    assert restored.steps[1].dependencies == ["b"]
    assert restored.status is ActionPlanStatus.FAILED
    assert restored.steps[0].completed_at == datetime(2024, 1, 2, 3, 4, 5)
    assert restored.steps[1].started_at is None

    print("✓ Test 8 passed: plans round-trip losslessly")


# =============================================================================
# TEST 9: JSON schema export
# =============================================================================

def test_json_schema_for_ai_response():
    """
    Test 9: Schema export works for the inbound shape.
    """
    schema = get_json_schema(AIResponse)

    assert schema["title"] == "AIResponse"
    assert "steps" in schema["properties"]
    assert "title" in schema["required"]

    print("✓ Test 9 passed: AIResponse schema exports")
