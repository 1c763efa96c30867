"""
Session management for planrunner.

WHY THIS FILE EXISTS:
--------------------
A plan outlives a single CLI invocation: it is run, inspected later, and
maybe rolled back a day after. A session bundles everything needed to pick
a plan back up:
- The ActionPlan itself (every field, statuses and timestamps included)
- The audit trail so far
- The workspace snapshot, including backups needed for rollback

PERSISTENCE:
-----------
Sessions are stored as JSON files in ~/.planrunner/plans/ (configurable).
Each session is named after its plan id and can be loaded by that id.
"""

import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from .audit import DEFAULT_CAPACITY, AuditLog
from .schemas import ActionPlan, ActionPlanStatus
from .workspace import Workspace

# Plans in these statuses still have something to do
RESUMABLE_STATUSES = {
    ActionPlanStatus.PENDING.value,
    ActionPlanStatus.APPROVED.value,
    ActionPlanStatus.APPLYING.value,
    ActionPlanStatus.FAILED.value,
}


# =============================================================================
# SESSION DATA CLASS
# =============================================================================

@dataclass
class PlanSession:
    """
    Complete persisted state of one plan run.

    Models are stored as dicts for JSON serialization and rebuilt through
    model_validate on the way back.
    """
    session_id: str
    created_at: str
    updated_at: str

    plan: dict
    source: str = "direct"  # path of the plan file, or "direct"
    audit: list = field(default_factory=list)
    workspace: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PlanSession":
        return cls(**data)

    @property
    def status(self) -> str:
        return self.plan.get("status", "unknown")

    def get_plan(self) -> ActionPlan:
        """Get the plan as a Pydantic model."""
        return ActionPlan.model_validate(self.plan)

    def get_audit_log(self, capacity: int = DEFAULT_CAPACITY) -> AuditLog:
        plan = self.get_plan()
        return AuditLog.from_list(self.audit, project_id=plan.project_id, capacity=capacity)

    def get_workspace(self) -> Workspace:
        return Workspace.from_snapshot(self.workspace) if self.workspace else Workspace()

    def update(
        self,
        plan: ActionPlan,
        audit: Optional[AuditLog] = None,
        workspace: Optional[Workspace] = None
    ) -> None:
        """Store the latest state of the plan and its collaborators."""
        self.plan = plan.model_dump(mode="json")
        if audit is not None:
            self.audit = audit.to_list()
        if workspace is not None:
            self.workspace = workspace.snapshot()
        self.updated_at = datetime.now().isoformat()


# =============================================================================
# SESSION MANAGER
# =============================================================================

class SessionManager:
    """
    Manages session persistence and lifecycle.

    Usage:
        manager = SessionManager(config.storage.directory_path)
        session = manager.create(engine.plan, engine.audit, workspace)
        manager.save(session)

        # Later...
        session = manager.load(plan_id)
        engine = ExecutionEngine.from_plan(session.get_plan(), session.get_workspace())
    """

    def __init__(self, base_path: Optional[Path] = None):
        """
        Args:
            base_path: Directory for session files.
                       Defaults to ~/.planrunner/plans
        """
        self.base_path = Path(base_path or Path.home() / ".planrunner" / "plans").expanduser()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _session_path(self, session_id: str) -> Path:
        return self.base_path / f"{session_id}.json"

    def create(
        self,
        plan: ActionPlan,
        audit: Optional[AuditLog] = None,
        workspace: Optional[Workspace] = None,
        source: str = "direct"
    ) -> PlanSession:
        """Create a session for a plan. The session id is the plan id."""
        now = datetime.now().isoformat()
        session = PlanSession(
            session_id=plan.id,
            created_at=now,
            updated_at=now,
            plan={},
            source=source,
        )
        session.update(plan, audit, workspace)
        return session

    def save(self, session: PlanSession) -> Path:
        """Save a session to disk."""
        session.updated_at = datetime.now().isoformat()
        path = self._session_path(session.session_id)

        with open(path, "w") as f:
            json.dump(session.to_dict(), f, indent=2, default=str)

        return path

    def load(self, session_id: str) -> PlanSession:
        """
        Raises:
            FileNotFoundError: If session doesn't exist
        """
        path = self._session_path(session_id)

        if not path.exists():
            raise FileNotFoundError(f"Session not found: {session_id}")

        with open(path) as f:
            data = json.load(f)

        return PlanSession.from_dict(data)

    def exists(self, session_id: str) -> bool:
        return self._session_path(session_id).exists()

    def delete(self, session_id: str) -> bool:
        """
        Returns:
            True if deleted, False if didn't exist
        """
        path = self._session_path(session_id)
        if path.exists():
            path.unlink()
            return True
        return False

    def list_all(self) -> list[dict]:
        """
        List all sessions with summary info, most recently updated first.

        Returns:
            List of dicts with session_id, title, status, counts and timestamps
        """
        sessions = []

        for path in sorted(self.base_path.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True):
            try:
                with open(path) as f:
                    data = json.load(f)
                plan = data.get("plan", {})
                sessions.append({
                    "session_id": data.get("session_id", path.stem),
                    "title": plan.get("title", ""),
                    "status": plan.get("status", "unknown"),
                    "steps": len(plan.get("steps", [])),
                    "source": data.get("source", "direct"),
                    "created_at": data.get("created_at", ""),
                    "updated_at": data.get("updated_at", ""),
                })
            except (json.JSONDecodeError, KeyError, AttributeError):
                # Skip invalid session files
                continue

        return sessions

    def list_resumable(self) -> list[dict]:
        """Sessions whose plan is not yet applied, rejected or rolled back."""
        return [s for s in self.list_all() if s.get("status") in RESUMABLE_STATUSES]

    def cleanup_old(self, days: int = 30) -> int:
        """
        Delete sessions older than specified days.

        Returns:
            Number of sessions deleted
        """
        cutoff = time.time() - (days * 24 * 60 * 60)
        deleted = 0

        for path in self.base_path.glob("*.json"):
            if path.stat().st_mtime < cutoff:
                path.unlink()
                deleted += 1

        return deleted
