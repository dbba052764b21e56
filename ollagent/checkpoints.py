"""Checkpoints: per-task pre-images of edited files, undoable per file or in bulk."""

from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from ollagent.session import SessionStore
from ollagent.types import (
    CheckpointStatus,
    FileSnapshot,
    SnapshotAction,
    SnapshotStatus,
)

logger = logging.getLogger("ollagent.checkpoints")


@dataclass
class UndoResult:
    success: bool
    errors: list[str] = field(default_factory=list)
    reverted: list[str] = field(default_factory=list)


@dataclass
class DiffStats:
    path: str
    additions: int
    deletions: int
    action: SnapshotAction

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "additions": self.additions,
            "deletions": self.deletions,
            "action": self.action.value,
        }


def _read_exact(path: Path) -> str:
    """File text with line endings left untouched."""
    with open(path, encoding="utf-8", newline="") as f:
        return f.read()


def _write_exact(path: Path, content: str) -> None:
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(content)


def derive_checkpoint_status(statuses: Iterable[SnapshotStatus]) -> CheckpointStatus:
    """Aggregate status from file statuses: uniform -> that status, mixed -> partial."""
    distinct = set(statuses)
    if not distinct or distinct == {SnapshotStatus.PENDING}:
        return CheckpointStatus.PENDING
    if distinct == {SnapshotStatus.KEPT}:
        return CheckpointStatus.KEPT
    if distinct == {SnapshotStatus.UNDONE}:
        return CheckpointStatus.UNDONE
    return CheckpointStatus.PARTIAL


class CheckpointManager:
    """Snapshots files before their first write and reverts or keeps them later."""

    def __init__(self, store: SessionStore, working_dir: str | Path):
        self.store = store
        self.working_dir = Path(working_dir).resolve()

    def _key(self, path: str | Path) -> str:
        """Snapshot key: path relative to the working dir when inside it."""
        p = Path(path)
        resolved = p.resolve() if p.is_absolute() else (self.working_dir / p).resolve()
        try:
            return resolved.relative_to(self.working_dir).as_posix()
        except ValueError:
            return resolved.as_posix()

    def _abs(self, key: str) -> Path:
        p = Path(key)
        return p if p.is_absolute() else self.working_dir / p

    def create_checkpoint(self, session_id: str) -> str:
        return self.store.create_checkpoint(session_id).id

    def snapshot_before_edit(self, checkpoint_id: str, path: str | Path) -> FileSnapshot | None:
        """Record the pre-image of *path* unless this checkpoint already has one.

        Returns the new snapshot, or None when one already existed.
        """
        key = self._key(path)
        if self.store.get_snapshot_for_file(checkpoint_id, key) is not None:
            return None

        target = self._abs(key)
        if target.is_file():
            try:
                content = _read_exact(target)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Could not snapshot %s: %s", key, e)
                content = None
            action = SnapshotAction.MODIFIED
        else:
            content = None
            action = SnapshotAction.CREATED

        snapshot = FileSnapshot(
            checkpoint_id=checkpoint_id,
            path=key,
            original_content=content,
            action=action,
        )
        if not self.store.insert_file_snapshot(snapshot):
            return None
        logger.debug(
            "Snapshot %s (%s)", key, action.value,
            extra={"checkpoint_id": checkpoint_id},
        )
        return snapshot

    def keep_file(self, checkpoint_id: str, path: str | Path) -> bool:
        """Accept one pending file. False when there is no pending change for it."""
        key = self._key(path)
        snapshot = self.store.get_snapshot_for_file(checkpoint_id, key)
        if snapshot is None or snapshot.status != SnapshotStatus.PENDING:
            return False
        if not self.store.update_file_snapshot_status(checkpoint_id, key, SnapshotStatus.KEPT):
            return False
        self.refresh_status(checkpoint_id)
        return True

    def undo_file(self, checkpoint_id: str, path: str | Path) -> UndoResult:
        """Revert one file to its pre-checkpoint state."""
        key = self._key(path)
        snapshot = self.store.get_snapshot_for_file(checkpoint_id, key)
        if snapshot is None:
            return UndoResult(False, [f"No snapshot for {key}"])
        if snapshot.status != SnapshotStatus.PENDING:
            return UndoResult(False, [f"{key} was already {snapshot.status.value}"])
        if snapshot.action == SnapshotAction.MODIFIED and snapshot.original_content is None:
            return UndoResult(False, [f"Original content of {key} is no longer available"])

        error = self._revert(snapshot)
        if error:
            return UndoResult(False, [error])
        self.store.update_file_snapshot_status(checkpoint_id, key, SnapshotStatus.UNDONE)
        self.refresh_status(checkpoint_id)
        return UndoResult(True, reverted=[key])

    def keep_all(self, checkpoint_id: str) -> CheckpointStatus:
        """Accept every pending file and prune their original content."""
        snapshots = self.store.get_file_snapshots(checkpoint_id)
        self.store.update_file_snapshot_statuses(
            checkpoint_id,
            {s.path: SnapshotStatus.KEPT for s in snapshots if s.status == SnapshotStatus.PENDING},
        )
        status = self.refresh_status(checkpoint_id)
        if status == CheckpointStatus.KEPT:
            self.store.prune_kept_checkpoint_content(checkpoint_id)
        return status

    def undo_all(self, checkpoint_id: str) -> UndoResult:
        """Revert every pending file.

        Modified files are restored first, then created files are deleted.
        A failure on one file does not stop the others; all errors are returned.
        """
        pending = [
            s for s in self.store.get_file_snapshots(checkpoint_id)
            if s.status == SnapshotStatus.PENDING
        ]
        ordered = (
            [s for s in pending if s.action == SnapshotAction.MODIFIED]
            + [s for s in pending if s.action == SnapshotAction.CREATED]
        )

        errors: list[str] = []
        reverted: list[str] = []
        for snapshot in ordered:
            if snapshot.action == SnapshotAction.MODIFIED and snapshot.original_content is None:
                errors.append(f"Original content of {snapshot.path} is no longer available")
                continue
            error = self._revert(snapshot)
            if error:
                errors.append(error)
            else:
                reverted.append(snapshot.path)

        self.store.update_file_snapshot_statuses(
            checkpoint_id, {path: SnapshotStatus.UNDONE for path in reverted},
        )
        self.refresh_status(checkpoint_id)
        if errors:
            logger.warning(
                "Undo of %s finished with %d error(s)", checkpoint_id, len(errors),
                extra={"checkpoint_id": checkpoint_id},
            )
        return UndoResult(success=not errors, errors=errors, reverted=reverted)

    def refresh_status(self, checkpoint_id: str) -> CheckpointStatus:
        """Recompute and store the aggregate checkpoint status."""
        status = derive_checkpoint_status(
            s.status for s in self.store.get_file_snapshots(checkpoint_id)
        )
        self.store.update_checkpoint_status(checkpoint_id, status)
        return status

    def compute_diff_stats(self, checkpoint_id: str) -> list[DiffStats]:
        """Lines added/removed per file since the checkpoint's snapshots."""
        stats = []
        for snapshot in self.store.get_file_snapshots(checkpoint_id):
            target = self._abs(snapshot.path)
            try:
                current = _read_exact(target) if target.is_file() else ""
            except (OSError, UnicodeDecodeError):
                current = ""
            original = snapshot.original_content or ""
            additions = deletions = 0
            for line in difflib.unified_diff(
                original.splitlines(), current.splitlines(), lineterm="", n=0,
            ):
                if line.startswith("+") and not line.startswith("+++"):
                    additions += 1
                elif line.startswith("-") and not line.startswith("---"):
                    deletions += 1
            stats.append(DiffStats(snapshot.path, additions, deletions, snapshot.action))
        return stats

    def diff_text(self, checkpoint_id: str, path: str | Path) -> str:
        """Unified diff between the snapshot and the file's current content."""
        key = self._key(path)
        snapshot = self.store.get_snapshot_for_file(checkpoint_id, key)
        if snapshot is None:
            return ""
        target = self._abs(key)
        try:
            current = _read_exact(target) if target.is_file() else ""
        except (OSError, UnicodeDecodeError):
            current = ""
        return "".join(difflib.unified_diff(
            (snapshot.original_content or "").splitlines(keepends=True),
            current.splitlines(keepends=True),
            fromfile=f"a/{key}",
            tofile=f"b/{key}",
        ))

    def _revert(self, snapshot: FileSnapshot) -> str | None:
        """Apply a snapshot to disk. Returns an error string on failure."""
        target = self._abs(snapshot.path)
        try:
            if snapshot.action == SnapshotAction.CREATED:
                if target.exists():
                    target.unlink()
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                _write_exact(target, snapshot.original_content or "")
        except OSError as e:
            return f"Error reverting {snapshot.path}: {e}"
        return None
