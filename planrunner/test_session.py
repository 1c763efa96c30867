"""
Session Persistence Tests

Test list:
1. test_create_save_load - Session id is the plan id; state survives a reload
2. test_resume_from_session - A reloaded failed plan can be retried and resumed
3. test_rollback_from_session - Backups survive persistence
4. test_listing - list_all / list_resumable / exists / delete / cleanup_old
"""

import os
import time

import pytest

from .backing import StaticValidator
from .config import EngineConfig
from .conftest import BUTTON_SOURCE, FlakyWorkspace
from .execution import ExecutionEngine
from .schemas import ActionPlanStatus, AuditAction, ExecutionStatus
from .session import SessionManager


async def _run(engine, response):
    engine.create_plan(response)
    engine.approve_all()
    engine.approve_plan()
    return await engine.execute_plan()


def _reattach(session):
    return ExecutionEngine.from_plan(
        session.get_plan(),
        session.get_workspace(),
        validator=StaticValidator(accept_all=True),
        audit_log=session.get_audit_log(),
        config=EngineConfig(project_id="test"),
    )


# =============================================================================
# TEST 1: Create / save / load
# =============================================================================

def test_create_save_load(tmp_path, engine, workspace, button_response):
    """
    Test 1: Session id is the plan id; state survives a reload.

    Verifies:
    - Plan, audit trail and workspace come back equal
    - Loading an unknown id raises FileNotFoundError
    """
    manager = SessionManager(tmp_path / "plans")
    plan = engine.create_plan(button_response)
    engine.approve_all()

    session = manager.create(plan, engine.audit, workspace, source="plan.yaml")
    path = manager.save(session)

    assert session.session_id == plan.id
    assert path == tmp_path / "plans" / f"{plan.id}.json"

    loaded = manager.load(plan.id)
    assert loaded.source == "plan.yaml"
    assert loaded.status == "pending"
    assert loaded.get_plan() == plan
    assert loaded.get_audit_log().entries() == engine.audit.entries()
    assert loaded.get_workspace().read_file("src/Button.tsx") == BUTTON_SOURCE

    with pytest.raises(FileNotFoundError):
        manager.load("missing")

    print("✓ Test 1 passed: sessions persist")


# =============================================================================
# TEST 2: Resume
# =============================================================================

@pytest.mark.asyncio
async def test_resume_from_session(tmp_path, button_files, button_response):
    """
    Test 2: A reloaded failed plan can be retried and resumed.
    """
    manager = SessionManager(tmp_path)
    store = FlakyWorkspace(button_files, fail_paths=["src/Button.test.tsx"])
    engine = ExecutionEngine(
        store=store,
        validator=StaticValidator(accept_all=True),
        config=EngineConfig(project_id="test"),
    )
    plan = await _run(engine, button_response)
    assert plan.status == ActionPlanStatus.FAILED

    manager.save(manager.create(plan, engine.audit, store))

    resumed = _reattach(manager.load(plan.id))
    assert resumed.plan.error.step_id == "s2"
    assert await resumed.retry_file_change("s2", "s2_fc1") is True
    await resumed.execute_plan()

    assert resumed.plan.status == ActionPlanStatus.APPLIED
    assert resumed.store.file_exists("src/Button.test.tsx")
    # The trail continues from the persisted entries
    assert resumed.audit.filter(action=AuditAction.PLAN_CREATED)

    print("✓ Test 2 passed: failed plans resume after reload")


# =============================================================================
# TEST 3: Rollback
# =============================================================================

@pytest.mark.asyncio
async def test_rollback_from_session(tmp_path, workspace, engine, button_response):
    """
    Test 3: Backups survive persistence, so a reloaded plan rolls back.
    """
    manager = SessionManager(tmp_path)
    plan = await _run(engine, button_response)
    manager.save(manager.create(plan, engine.audit, workspace))

    restored = _reattach(manager.load(plan.id))
    await restored.rollback_plan()

    assert restored.plan.status == ActionPlanStatus.ROLLED_BACK
    assert all(s.status == ExecutionStatus.ROLLBACK_COMPLETED for s in restored.plan.steps)
    assert restored.store.read_file("src/Button.tsx") == BUTTON_SOURCE
    assert not restored.store.file_exists("src/Button.test.tsx")

    print("✓ Test 3 passed: rollback after reload")


# =============================================================================
# TEST 4: Listing
# =============================================================================

@pytest.mark.asyncio
async def test_listing(tmp_path, workspace, button_response, create_response):
    """
    Test 4: list_all / list_resumable / exists / delete / cleanup_old.
    """
    manager = SessionManager(tmp_path)

    pending = ExecutionEngine(store=workspace, config=EngineConfig(project_id="test"))
    pending_plan = pending.create_plan(button_response)
    manager.save(manager.create(pending_plan, pending.audit, workspace))

    done = ExecutionEngine(
        store=workspace,
        validator=StaticValidator(accept_all=True),
        config=EngineConfig(project_id="test"),
    )
    done_plan = await _run(done, create_response)
    manager.save(manager.create(done_plan, done.audit, workspace))

    (tmp_path / "garbage.json").write_text("{not json")

    listed = {s["session_id"]: s for s in manager.list_all()}
    assert set(listed) == {pending_plan.id, done_plan.id}
    assert listed[pending_plan.id]["title"] == "Refactor Button"
    assert listed[pending_plan.id]["steps"] == 2
    assert listed[done_plan.id]["status"] == "applied"

    resumable = [s["session_id"] for s in manager.list_resumable()]
    assert resumable == [pending_plan.id]

    assert manager.exists(done_plan.id)
    assert manager.delete(done_plan.id) is True
    assert manager.delete(done_plan.id) is False
    assert not manager.exists(done_plan.id)

    # Age the remaining session past the cutoff
    stale = tmp_path / f"{pending_plan.id}.json"
    old = time.time() - 40 * 24 * 60 * 60
    os.utime(stale, (old, old))
    (tmp_path / "garbage.json").unlink()

    assert manager.cleanup_old(days=30) == 1
    assert manager.list_all() == []

    print("✓ Test 4 passed: session listing and cleanup")
