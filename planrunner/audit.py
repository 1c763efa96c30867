"""
Append-only, bounded audit journal.

Every transition the engine makes is recorded here as a frozen
AuditLogEntry. The journal keeps the most recent `capacity` entries
(1000 by default) and evicts the oldest first.

One writer (the engine) appends; any number of observers may read. Reads
hand back a tuple copy, so a reader never sees a half-applied append.
"""

import logging
import threading
import uuid
from collections import deque
from typing import Any, Callable, Iterable, Optional

from .errors import InvalidArgument
from .schemas import AuditAction, AuditError, AuditLogEntry, AuditStatus

logger = logging.getLogger("planrunner.audit")

DEFAULT_CAPACITY = 1000

AuditListener = Callable[[AuditLogEntry], None]


class AuditLog:
    """
    Bounded FIFO journal of audit entries.

    Usage:
        log = AuditLog(project_id="1")
        log.record(AuditAction.PLAN_CREATED, "Created plan", AuditStatus.SUCCESS, plan_id="p1")
        newest_first = log.entries()
    """

    def __init__(self, project_id: str = "default", capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"Audit capacity must be positive, got {capacity}")
        self.project_id = project_id
        self.capacity = capacity
        self._entries: deque[AuditLogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._listeners: list[AuditListener] = []

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Append a pre-built entry, evicting the oldest if full."""
        with self._lock:
            self._entries.append(entry)

        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception as e:
                logger.warning(f"Audit listener {listener!r} failed on {entry.action.value}: {e}")

        return entry

    def record(
        self,
        action: AuditAction,
        description: str,
        status: AuditStatus,
        plan_id: Optional[str] = None,
        step_id: Optional[str] = None,
        file_change_id: Optional[str] = None,
        files_affected: Optional[Iterable[str]] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        error_stack: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        duration_ms: Optional[int] = None,
    ) -> AuditLogEntry:
        """Build an entry and append it."""
        error = None
        if error_code or error_message:
            error = AuditError(
                code=error_code or "ERROR",
                message=error_message or description,
                stack=error_stack,
            )

        entry = AuditLogEntry(
            id=str(uuid.uuid4())[:8],
            action=action,
            description=description,
            status=status,
            project_id=self.project_id,
            plan_id=plan_id,
            step_id=step_id,
            file_change_id=file_change_id,
            files_affected=tuple(files_affected) if files_affected else None,
            error=error,
            metadata=metadata or None,
            duration_ms=duration_ms,
        )
        logger.debug(f"[{entry.action.value}/{entry.status.value}] {entry.description}")
        return self.append(entry)

    def entries(self, limit: Optional[int] = None) -> tuple[AuditLogEntry, ...]:
        """
        Snapshot of the journal, newest first.

        Args:
            limit: Return at most this many entries

        Raises:
            InvalidArgument: If limit is negative
        """
        if limit is not None and limit < 0:
            raise InvalidArgument(f"Audit limit must be non-negative, got {limit}")
        with self._lock:
            snapshot = tuple(reversed(self._entries))
        return snapshot[:limit] if limit is not None else snapshot

    def filter(
        self,
        action: Optional[AuditAction] = None,
        step_id: Optional[str] = None,
        status: Optional[AuditStatus] = None,
    ) -> list[AuditLogEntry]:
        """Entries matching all given criteria, newest first."""
        return [
            e for e in self.entries()
            if (action is None or e.action == action)
            and (step_id is None or e.step_id == step_id)
            and (status is None or e.status == status)
        ]

    def subscribe(self, listener: AuditListener) -> None:
        """Call `listener(entry)` after every append."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: AuditListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # -------------------------------------------------------------------------
    # Persistence helpers
    # -------------------------------------------------------------------------

    def to_list(self) -> list[dict]:
        """Oldest-first list of JSON-ready dicts."""
        with self._lock:
            return [e.model_dump(mode="json") for e in self._entries]

    @classmethod
    def from_list(
        cls,
        data: list[dict],
        project_id: str = "default",
        capacity: int = DEFAULT_CAPACITY
    ) -> "AuditLog":
        """Rebuild a journal from to_list() output."""
        log = cls(project_id=project_id, capacity=capacity)
        for item in data:
            log._entries.append(AuditLogEntry.model_validate(item))
        return log
