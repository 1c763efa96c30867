"""
Collaborator interfaces the engine calls but does not implement.

WHAT THIS FILE DOES:
-------------------
The engine never touches files or decides whether a precondition holds.
It delegates to two collaborators:

1. BackingStore: applies file changes, takes backups, restores them
2. PreconditionValidator: decides whether a plan's pre-conditions hold

Workspace (workspace.py) is the in-memory BackingStore shipped with
planrunner; StaticValidator below is the config-driven validator used by
the CLI.
"""

from abc import ABC, abstractmethod
from typing import Iterable, Optional

from .schemas import ActionPlan, FileChange, StoreResult


class BackingStore(ABC):
    """
    Base class for backing stores.

    All stores must implement:
    - apply_file_change(): Apply one change atomically
    - backup_file_change(): Snapshot whatever the change is about to touch
    - restore_from_backup(): Put a snapshot back
    """

    @abstractmethod
    async def apply_file_change(self, change: FileChange) -> StoreResult:
        """
        Apply a file change.

        A change is applied entirely or not at all. Failures are reported
        through StoreResult(success=False, error=...); raising is also
        tolerated and treated the same way by the engine.
        """
        pass

    @abstractmethod
    async def backup_file_change(self, change: FileChange) -> str:
        """
        Snapshot every path the change touches.

        Returns:
            Opaque backup reference, later handed to restore_from_backup()
        """
        pass

    @abstractmethod
    async def restore_from_backup(self, backup_ref: str) -> StoreResult:
        """Restore the snapshot identified by backup_ref."""
        pass


class PreconditionValidator(ABC):
    """
    Decides whether a plan pre-condition holds.

    Raising any exception from check() means the validator is unavailable;
    the engine then fails validation closed.
    """

    @abstractmethod
    async def check(self, condition: str, plan: ActionPlan) -> bool:
        pass


class StaticValidator(PreconditionValidator):
    """
    Validator backed by a fixed list of conditions known to hold.

    Example:
        validator = StaticValidator(satisfied=["Git repository is clean"])
        await validator.check("Git repository is clean", plan)   # True
        await validator.check("All tests pass currently", plan)  # False
    """

    def __init__(self, satisfied: Optional[Iterable[str]] = None, accept_all: bool = False):
        self.satisfied = {c.strip().lower() for c in (satisfied or [])}
        self.accept_all = accept_all

    async def check(self, condition: str, plan: ActionPlan) -> bool:
        if self.accept_all:
            return True
        return condition.strip().lower() in self.satisfied
