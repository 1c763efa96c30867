"""
Shared fixtures for the planrunner test modules.

Plans are built from small AIResponse dicts against an in-memory Workspace,
so nothing here touches the real file system except the tmp_path-based
persistence fixtures.
"""

from typing import Optional

import pytest

from .audit import AuditLog
from .backing import StaticValidator
from .config import EngineConfig
from .execution import ExecutionEngine
from .schemas import (
    DiffChunk,
    DiffLine,
    DiffLineKind,
    FileChange,
    FileOperation,
    PlanStep,
    StepMetadata,
    StepType,
    StoreResult,
)
from .workspace import Workspace


BUTTON_SOURCE = (
    "export const Button = () => {\n"
    "  return <button />;\n"
    "};\n"
)


# =============================================================================
# DIFF HELPERS
# =============================================================================

def added(*lines: str) -> list[dict]:
    return [{"kind": "added", "content": line} for line in lines]


def removed(*lines: str) -> list[dict]:
    return [{"kind": "removed", "content": line} for line in lines]


def context(*lines: str) -> list[dict]:
    return [{"kind": "context", "content": line} for line in lines]


def chunk(start: int, lines: list[dict], end: Optional[int] = None, chunk_id: str = "c1") -> dict:
    return {"id": chunk_id, "start_line": start, "end_line": end or start, "lines": lines}


# =============================================================================
# STORES
# =============================================================================

class FlakyWorkspace(Workspace):
    """Workspace whose applies fail (or raise) for chosen paths."""

    def __init__(self, files=None, fail_paths=(), raise_paths=(), fail_restore=False):
        super().__init__(files)
        self.fail_paths = set(fail_paths)
        self.raise_paths = set(raise_paths)
        self.fail_restore = fail_restore
        self.applied: list[str] = []
        self.restored: list[str] = []

    async def apply_file_change(self, change: FileChange) -> StoreResult:
        if change.file_path in self.raise_paths:
            raise OSError(f"device unavailable for {change.file_path}")
        if change.file_path in self.fail_paths:
            return StoreResult(success=False, error=f"disk full writing {change.file_path}")
        result = await super().apply_file_change(change)
        if result.success:
            self.applied.append(change.id)
        return result

    async def restore_from_backup(self, backup_ref: str) -> StoreResult:
        self.restored.append(backup_ref)
        if self.fail_restore:
            return StoreResult(success=False, error="backup volume offline")
        return await super().restore_from_backup(backup_ref)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def button_files():
    return {"src/Button.tsx": BUTTON_SOURCE}


@pytest.fixture
def workspace(button_files):
    return Workspace(button_files, name="demo")


@pytest.fixture
def flaky_workspace(button_files):
    """Factory: flaky_workspace(fail_paths=[...], raise_paths=[...], fail_restore=...)"""
    def build(**kwargs):
        return FlakyWorkspace(dict(button_files), **kwargs)
    return build


@pytest.fixture
def button_response():
    """Two steps: modify Button (s1), then create its test (s2 depends on s1)."""
    return {
        "title": "Refactor Button",
        "description": "Add a variant prop and a test",
        "steps": [
            {
                "id": "s1",
                "title": "Add variants",
                "estimated_duration_sec": 30,
                "risk_level": "medium",
                "file_changes": [{
                    "operation": "modify",
                    "file_path": "src/Button.tsx",
                    "diff": [chunk(2, removed("  return <button />;")
                                   + added("  return <button className={variant} />;"))],
                }],
            },
            {
                "id": "s2",
                "title": "Add tests",
                "type": "test",
                "dependencies": ["s1"],
                "estimated_duration_sec": 15,
                "file_changes": [{
                    "operation": "create",
                    "file_path": "src/Button.test.tsx",
                    "diff": [chunk(1, added(
                        "import { Button } from './Button';",
                        "test('renders', () => {});",
                    ), end=2)],
                }],
            },
        ],
    }


@pytest.fixture
def create_response():
    """One step with one create and no dependencies."""
    return {
        "title": "Add README",
        "steps": [{
            "id": "s1",
            "title": "Write README",
            "file_changes": [{
                "operation": "create",
                "file_path": "README.md",
                "diff": [chunk(1, added("# Demo"))],
            }],
        }],
    }


@pytest.fixture
def cascade_response():
    """S1 (fails) -> S2 (depends on S1); S3 independent."""
    return {
        "title": "Cascade",
        "steps": [
            {
                "id": "S1",
                "title": "Broken step",
                "file_changes": [{
                    "operation": "create",
                    "file_path": "broken.txt",
                    "diff": [chunk(1, added("never written"))],
                }],
            },
            {
                "id": "S2",
                "title": "Needs S1",
                "dependencies": ["S1"],
                "file_changes": [{
                    "operation": "create",
                    "file_path": "after.txt",
                    "diff": [chunk(1, added("after"))],
                }],
            },
            {
                "id": "S3",
                "title": "Independent",
                "file_changes": [{
                    "operation": "create",
                    "file_path": "independent.txt",
                    "diff": [chunk(1, added("fine"))],
                }],
            },
        ],
    }


@pytest.fixture
def engine_config():
    return EngineConfig(project_id="test", validate_before_execute=True)


@pytest.fixture
def engine(workspace, engine_config):
    return ExecutionEngine(
        store=workspace,
        validator=StaticValidator(accept_all=True),
        config=engine_config,
    )


@pytest.fixture
def audit_log():
    return AuditLog(project_id="test")


@pytest.fixture
def make_change():
    """Factory for standalone FileChange models."""
    def build(change_id="fc1", operation="create", file_path="new.txt", lines=("hello",), **kwargs):
        diff = []
        if lines:
            diff = [DiffChunk(
                id=f"{change_id}_c1",
                start_line=1,
                end_line=len(lines),
                lines=tuple(DiffLine(kind=DiffLineKind.ADDED, content=line) for line in lines),
            )]
        return FileChange(
            id=change_id,
            operation=FileOperation(operation),
            file_path=file_path,
            diff=diff,
            **kwargs
        )
    return build


@pytest.fixture
def make_step():
    """Factory for standalone PlanStep models."""
    def build(step_id="s1", file_changes=(), dependencies=(), confirm=False, can_rollback=True):
        return PlanStep(
            id=step_id,
            type=StepType.FILE_OPERATION,
            title=f"Step {step_id}",
            dependencies=list(dependencies),
            file_changes=list(file_changes),
            metadata=StepMetadata(requires_user_confirmation=confirm, can_rollback=can_rollback),
        )
    return build
