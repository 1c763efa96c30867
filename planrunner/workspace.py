"""
In-memory workspace used as the engine's backing store.

WHAT THIS FILE DOES:
-------------------
Holds a project's files as a {path: text} map and implements BackingStore
on top of it: applies diff hunks, takes backups, restores them. Nothing
here touches the real file system, so a whole plan can be dry-run, rolled
back and persisted as a snapshot.

OPERATIONS:
----------
- create:        file must not exist; content is the diff's new side
- modify:        hunks applied against current content; context and removed
                 lines must match or the apply fails with a conflict
- delete:        file must exist
- rename / move: optional hunks, then relocate to new_path (must be free)
- copy:          writes the diff's new side at file_path, overwriting

BACKUPS:
-------
    backup_file_change(fc)  ──► bk_<id>: {path: prior text | None (absent)}
    restore_from_backup(ref) ──► every path put back; absent ones deleted

Every apply is all-or-nothing: the new content is computed first and only
then written.
"""

import fnmatch
import hashlib
import logging
import posixpath
import uuid
from typing import Optional

from .backing import BackingStore
from .schemas import DiffChunk, FileChange, FileOperation, StoreResult

logger = logging.getLogger("planrunner.workspace")


class ApplyConflict(Exception):
    """A hunk or file-existence check did not match the workspace."""


def _split(text: str) -> list[str]:
    return text.splitlines()


def _join(lines: list[str], final_newline: bool = True) -> str:
    if not lines:
        return ""
    return "\n".join(lines) + ("\n" if final_newline else "")


def checksum(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def apply_hunks(path: str, content: str, diff: list[DiffChunk]) -> str:
    """
    Apply hunks to text.

    Hunks are applied in start_line order against the original content; each
    must match its old side (context + removed lines) exactly at start_line.

    Raises:
        ApplyConflict: Overlapping hunks, hunk past end of file, or mismatch
    """
    source = _split(content)
    result: list[str] = []
    cursor = 0

    for chunk in sorted(diff, key=lambda c: c.start_line):
        start = chunk.start_line - 1
        if start < cursor:
            raise ApplyConflict(f"Hunk {chunk.id} overlaps a previous hunk in {path}")
        if start > len(source):
            raise ApplyConflict(
                f"Hunk {chunk.id} starts at line {chunk.start_line}, "
                f"but {path} has {len(source)} lines"
            )

        old = chunk.old_side()
        if source[start:start + len(old)] != old:
            raise ApplyConflict(f"Hunk {chunk.id} does not match {path} at line {chunk.start_line}")

        result.extend(source[cursor:start])
        result.extend(chunk.new_side())
        cursor = start + len(old)

    result.extend(source[cursor:])
    # Keep the source's final-newline state; new files get one
    return _join(result, final_newline=not content or content.endswith("\n"))


class Workspace(BackingStore):
    """
    In-memory file tree implementing BackingStore.

    Usage:
        workspace = Workspace({"src/app.py": "print('hi')\\n"})
        engine = ExecutionEngine(store=workspace)
        ...
        print(workspace.get_structure())
    """

    def __init__(self, files: Optional[dict[str, str]] = None, name: str = "workspace"):
        self.name = name
        self._files: dict[str, str] = {}
        self._backups: dict[str, dict[str, Optional[str]]] = {}

        for path, content in (files or {}).items():
            self.write_file(path, content)

    # =========================================================================
    # PATHS AND FILES
    # =========================================================================

    def _resolve_path(self, path: str) -> str:
        """
        Normalize a path within the workspace, preventing directory traversal.

        Raises:
            ValueError: If path attempts to escape the workspace
        """
        path = path.replace("\\", "/").lstrip("/")
        normalized = posixpath.normpath(path)

        if normalized in (".", "") or normalized == ".." or normalized.startswith("../"):
            raise ValueError(f"Path '{path}' attempts to escape workspace")

        return normalized

    def write_file(self, path: str, content: str) -> str:
        """Write content directly, bypassing the engine. Used for seeding."""
        resolved = self._resolve_path(path)
        self._files[resolved] = content
        return resolved

    def read_file(self, path: str) -> str:
        """
        Raises:
            FileNotFoundError: If file doesn't exist
        """
        resolved = self._resolve_path(path)
        if resolved not in self._files:
            raise FileNotFoundError(f"File not found: {path}")
        return self._files[resolved]

    def file_exists(self, path: str) -> bool:
        try:
            return self._resolve_path(path) in self._files
        except ValueError:
            return False

    def list_files(self, pattern: str = "*") -> list[str]:
        """List files matching a glob pattern, sorted."""
        return sorted(p for p in self._files if fnmatch.fnmatch(p, pattern))

    # =========================================================================
    # BACKING STORE
    # =========================================================================

    def _compute(self, change: FileChange) -> dict[str, Optional[str]]:
        """
        Work out every write an apply would make, without making it.

        Returns:
            {path: new text, or None to delete}
        """
        path = self._resolve_path(change.file_path)
        exists = path in self._files
        op = change.operation

        if op == FileOperation.CREATE:
            if exists:
                raise ApplyConflict(f"Cannot create {path}: file already exists")
            return {path: _join([line for c in change.diff for line in c.new_side()])}

        if op == FileOperation.COPY:
            return {path: _join([line for c in change.diff for line in c.new_side()])}

        if not exists:
            raise ApplyConflict(f"Cannot {op.value} {path}: file does not exist")

        if op == FileOperation.MODIFY:
            return {path: apply_hunks(path, self._files[path], change.diff)}

        if op == FileOperation.DELETE:
            return {path: None}

        # rename / move
        target = self._resolve_path(change.new_path)
        if target == path:
            raise ApplyConflict(f"Cannot {op.value} {path} onto itself")
        if target in self._files:
            raise ApplyConflict(f"Cannot {op.value} {path} to {target}: destination exists")
        content = self._files[path]
        if change.diff:
            content = apply_hunks(path, content, change.diff)
        return {path: None, target: content}

    async def apply_file_change(self, change: FileChange) -> StoreResult:
        try:
            writes = self._compute(change)
        except (ApplyConflict, ValueError) as e:
            logger.debug(f"Apply of {change.id} rejected: {e}")
            return StoreResult(success=False, error=str(e))

        for path, content in writes.items():
            if content is None:
                self._files.pop(path, None)
            else:
                self._files[path] = content

        written = [c for c in writes.values() if c is not None]
        digest = checksum(written[-1]) if written else None
        summary = ", ".join(
            f"{'deleted' if c is None else 'wrote'} {p}" for p, c in writes.items()
        )
        return StoreResult(success=True, output=summary, checksum=digest)

    async def backup_file_change(self, change: FileChange) -> str:
        """
        Snapshot every path the change touches, including absent ones.

        Raises:
            ValueError: If a path escapes the workspace
        """
        snapshot = {}
        for path in change.touched_paths:
            resolved = self._resolve_path(path)
            snapshot[resolved] = self._files.get(resolved)

        backup_ref = f"bk_{str(uuid.uuid4())[:8]}"
        self._backups[backup_ref] = snapshot
        return backup_ref

    async def restore_from_backup(self, backup_ref: str) -> StoreResult:
        snapshot = self._backups.get(backup_ref)
        if snapshot is None:
            return StoreResult(success=False, error=f"Unknown backup reference: {backup_ref}")

        for path, content in snapshot.items():
            if content is None:
                self._files.pop(path, None)
            else:
                self._files[path] = content

        return StoreResult(success=True, output=f"restored {', '.join(snapshot)}")

    def has_backup(self, backup_ref: str) -> bool:
        return backup_ref in self._backups

    # =========================================================================
    # PERSISTENCE AND DISPLAY
    # =========================================================================

    def snapshot(self) -> dict:
        """JSON-ready copy of files and backups."""
        return {
            "name": self.name,
            "files": dict(self._files),
            "backups": {ref: dict(snap) for ref, snap in self._backups.items()},
        }

    @classmethod
    def from_snapshot(cls, data: dict) -> "Workspace":
        workspace = cls(files=data.get("files", {}), name=data.get("name", "workspace"))
        workspace._backups = {ref: dict(snap) for ref, snap in data.get("backups", {}).items()}
        return workspace

    def get_structure(self, max_depth: int = 3) -> str:
        """
        Get a tree view of the workspace structure.

        Returns:
            ASCII tree representation
        """
        if not self._files:
            return "(workspace is empty)"

        tree: dict = {}
        for path in self._files:
            node = tree
            for part in path.split("/"):
                node = node.setdefault(part, {})

        lines = [self.name + "/"]
        self._build_tree(tree, "", lines, 0, max_depth)
        return "\n".join(lines)

    def _build_tree(
        self,
        node: dict,
        prefix: str,
        lines: list[str],
        depth: int,
        max_depth: int
    ) -> None:
        """Build tree representation recursively."""
        if depth >= max_depth:
            return

        # Directories first, then files
        children = sorted(node.items(), key=lambda kv: (not kv[1], kv[0].lower()))

        for i, (name, child) in enumerate(children):
            is_last = i == len(children) - 1
            connector = "└── " if is_last else "├── "

            if child:
                lines.append(f"{prefix}{connector}{name}/")
                new_prefix = prefix + ("    " if is_last else "│   ")
                self._build_tree(child, new_prefix, lines, depth + 1, max_depth)
            else:
                lines.append(f"{prefix}{connector}{name}")

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "file_count": len(self._files),
            "total_size_bytes": sum(len(c.encode("utf-8")) for c in self._files.values()),
            "backups": len(self._backups),
        }
