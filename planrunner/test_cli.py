"""
CLI Tests: argument parsing, plan documents, end-to-end commands

Test list:
1. test_parser - Subcommands and flags parse
2. test_load_plan_document - YAML and JSON, with a files map
3. test_run_list_show_audit_rollback - Full command flow against a temp store
4. test_run_without_approval - Confirmation steps block, session still saved
5. test_alerts_follow_audit - AlertManager renders notable entries
"""

import io
import json

import pytest
import yaml
from rich.console import Console

from .alerts import AlertManager
from .audit import AuditLog
from .cli import async_main, create_parser, load_plan_document
from .config import Config, save_config
from .conftest import BUTTON_SOURCE
from .schemas import AuditAction, AuditStatus
from .session import SessionManager


@pytest.fixture
def config_path(tmp_path):
    config = Config()
    config.storage.directory = str(tmp_path / "plans")
    config.validator.accept_all = True
    config.alerts.terminal = False
    path = tmp_path / "config.yaml"
    save_config(config, path)
    return path


@pytest.fixture
def plan_file(tmp_path, button_response, button_files):
    document = dict(button_response)
    document["files"] = button_files
    path = tmp_path / "button.yaml"
    path.write_text(yaml.safe_dump(document, sort_keys=False))
    return path


def _args(*argv):
    return create_parser().parse_args([str(a) for a in argv])


# =============================================================================
# TEST 1: Parser
# =============================================================================

def test_parser():
    """
    Test 1: Subcommands and flags parse.
    """
    args = _args("run", "plan.yaml", "--approve-all", "--deadline", "2.5", "--no-validate")
    assert args.command == "run"
    assert args.approve_all is True
    assert args.interactive is False
    assert args.no_validate is True
    assert args.deadline == 2.5

    args = _args("-v", "show", "abc", "--tree", "--files")
    assert args.verbose is True
    assert args.plan_id == "abc"
    assert args.tree and args.files and not args.diffs

    assert _args("audit", "abc", "-n", "5").limit == 5
    assert _args().command is None

    print("✓ Test 1 passed: parser")


# =============================================================================
# TEST 2: Plan documents
# =============================================================================

def test_load_plan_document(tmp_path, button_response):
    """
    Test 2: YAML and JSON, with a files map.

    Verifies:
    - `files` is split off as workspace seed content
    - Non-mapping documents are refused
    """
    path = tmp_path / "plan.json"
    path.write_text(json.dumps({**button_response, "files": {"a.txt": "a\n"}}))

    document, files = load_plan_document(path)
    assert files == {"a.txt": "a\n"}
    assert "files" not in document
    assert document["title"] == "Refactor Button"

    path = tmp_path / "plan.yaml"
    path.write_text(yaml.safe_dump(button_response))
    document, files = load_plan_document(path)
    assert files == {}
    assert len(document["steps"]) == 2

    path = tmp_path / "list.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        load_plan_document(path)

    with pytest.raises(FileNotFoundError):
        load_plan_document(tmp_path / "missing.yaml")

    print("✓ Test 2 passed: plan documents load")


# =============================================================================
# TEST 3: Command flow
# =============================================================================

@pytest.mark.asyncio
async def test_run_list_show_audit_rollback(tmp_path, config_path, plan_file):
    """
    Test 3: Full command flow against a temp store.

    Verifies:
    - run --approve-all applies the plan and saves it
    - list / show / audit read the saved session
    - rollback restores the saved workspace
    - Unknown plan ids exit 1
    - A negative audit limit exits 1
    """
    assert await async_main(_args("-c", config_path, "run", plan_file, "--approve-all")) == 0

    manager = SessionManager(tmp_path / "plans")
    [saved] = manager.list_all()
    plan_id = saved["session_id"]
    assert saved["status"] == "applied"
    assert saved["source"] == str(plan_file)

    assert await async_main(_args("-c", config_path, "list", "--prune", "30")) == 0
    assert manager.exists(plan_id)
    assert await async_main(_args("-c", config_path, "show", plan_id, "--tree", "--diffs", "--files")) == 0
    assert await async_main(_args("-c", config_path, "audit", plan_id, "-n", "5")) == 0
    assert await async_main(_args("-c", config_path, "audit", plan_id, "-n", "-5")) == 1
    assert await async_main(_args("-c", config_path, "rollback", plan_id)) == 0

    session = manager.load(plan_id)
    assert session.status == "rolled_back"
    assert session.get_workspace().read_file("src/Button.tsx") == BUTTON_SOURCE

    assert await async_main(_args("-c", config_path, "rollback", plan_id)) == 1
    assert await async_main(_args("-c", config_path, "show", "nope")) == 1

    print("✓ Test 3 passed: command flow")


# =============================================================================
# TEST 4: Approval required
# =============================================================================

@pytest.mark.asyncio
async def test_run_without_approval(tmp_path, config_path, button_response, button_files):
    """
    Test 4: Confirmation steps block a plain run; the session is still saved.
    """
    button_response["steps"][0]["requires_user_confirmation"] = True
    path = tmp_path / "confirm.json"
    path.write_text(json.dumps({**button_response, "files": button_files}))

    assert await async_main(_args("-c", config_path, "run", path)) == 1

    [saved] = SessionManager(tmp_path / "plans").list_all()
    assert saved["status"] == "pending"

    assert await async_main(_args("-c", config_path, "validate", path)) == 0
    assert await async_main(_args("-c", tmp_path / "missing.yaml", "list")) == 1

    print("✓ Test 4 passed: approval gate in the CLI")


# =============================================================================
# TEST 5: Alerts
# =============================================================================

def test_alerts_follow_audit():
    """
    Test 5: AlertManager renders notable entries, stays quiet when disabled.
    """
    buffer = io.StringIO()
    alerts = AlertManager(console=Console(file=buffer, width=100))
    log = AuditLog()
    log.subscribe(alerts.on_audit)

    log.record(AuditAction.STEP_STARTED, "Started step one", AuditStatus.RUNNING)
    log.record(AuditAction.ERROR, "boom", AuditStatus.FAILED,
               error_code="STEP_FAILED", error_message="disk full")
    log.record(AuditAction.FILE_APPLIED, "Applied create", AuditStatus.SUCCESS)

    output = buffer.getvalue()
    assert "Started step one" in output
    assert "STEP_FAILED" in output
    assert "disk full" in output
    assert "Applied create" not in output

    quiet = io.StringIO()
    muted = AlertManager(terminal=False, console=Console(file=quiet))
    muted.on_audit(log.entries()[1])
    assert quiet.getvalue() == ""

    print("✓ Test 5 passed: alerts follow the audit trail")
