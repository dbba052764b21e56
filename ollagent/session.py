"""JSON persistence for sessions, messages and checkpoints.

Layout under the store root::

    <session_id>/session.json
    <session_id>/messages.jsonl
    <session_id>/checkpoints/<checkpoint_id>.json

Checkpoints and messages live inside their session directory, so deleting a
session removes everything it owns.
"""

from __future__ import annotations

import json
import logging
import os
import random
import shutil
import tempfile
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from ollagent.config import SESSIONS_DIR
from ollagent.errors import CheckpointNotFoundError, SessionNotFoundError
from ollagent.types import (
    Checkpoint,
    CheckpointStatus,
    FileSnapshot,
    MessageRecord,
    Session,
    SnapshotStatus,
)

logger = logging.getLogger("ollagent.session")


def _atomic_write(path: Path, data: dict):
    """Write JSON atomically using temp + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp, path)
    except Exception:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def new_checkpoint_id() -> str:
    return f"ckpt_{int(time.time() * 1000)}_{random.randrange(16 ** 6):06x}"


class SessionStore:
    """File-backed store for everything a session owns.

    All read-modify-write operations hold a re-entrant lock, so concurrent
    controllers working on different sessions never interleave partial writes.
    """

    def __init__(self, root: Path | str | None = None):
        self.root = Path(root) if root is not None else SESSIONS_DIR
        self._lock = threading.RLock()

    # ── Sessions ──────────────────────────────────────────────────────────

    def _session_dir(self, session_id: str) -> Path:
        return self.root / session_id

    def _session_file(self, session_id: str) -> Path:
        return self._session_dir(session_id) / "session.json"

    def create_session(self, session: Session | None = None, **fields: Any) -> Session:
        session = session or Session(**fields)
        with self._lock:
            _atomic_write(self._session_file(session.id), session.to_dict())
        logger.info("Created session %s", session.id, extra={"session_id": session.id})
        return session

    def get_session(self, session_id: str) -> Session:
        path = self._session_file(session_id)
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            raise SessionNotFoundError(f"Session not found: {session_id}") from None
        return Session.from_dict(data)

    def update_session(self, session_id: str, **changes: Any) -> Session:
        with self._lock:
            session = self.get_session(session_id)
            for key, value in changes.items():
                if not hasattr(session, key):
                    raise AttributeError(f"Session has no field {key!r}")
                setattr(session, key, value)
            session.updated_at = time.time()
            _atomic_write(self._session_file(session_id), session.to_dict())
        return session

    def list_sessions(self) -> list[Session]:
        if not self.root.exists():
            return []
        sessions = []
        for path in self.root.glob("*/session.json"):
            try:
                sessions.append(Session.from_dict(json.loads(path.read_text())))
            except (json.JSONDecodeError, KeyError, ValueError, OSError):
                logger.warning("Skipping unreadable session file %s", path)
        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    def delete_session(self, session_id: str) -> bool:
        """Delete a session together with its messages and checkpoints."""
        directory = self._session_dir(session_id)
        with self._lock:
            if not directory.exists():
                return False
            shutil.rmtree(directory)
        logger.info("Deleted session %s", session_id, extra={"session_id": session_id})
        return True

    # ── Messages ──────────────────────────────────────────────────────────

    def add_message(
        self,
        session_id: str,
        role: str,
        content: str,
        meta: dict[str, Any] | None = None,
    ) -> MessageRecord:
        if not self._session_file(session_id).exists():
            raise SessionNotFoundError(f"Session not found: {session_id}")
        record = MessageRecord(role=role, content=content, meta=dict(meta or {}))
        with self._lock:
            with open(self._session_dir(session_id) / "messages.jsonl", "a") as f:
                f.write(json.dumps(record.to_dict(), default=str) + "\n")
        return record

    def get_messages(self, session_id: str) -> list[MessageRecord]:
        path = self._session_dir(session_id) / "messages.jsonl"
        if not path.exists():
            return []
        records = []
        for line in path.read_text().splitlines():
            if not line.strip():
                continue
            try:
                records.append(MessageRecord.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError):
                logger.warning("Skipping corrupt message line in session %s", session_id)
        return records

    # ── Checkpoints ───────────────────────────────────────────────────────

    def _checkpoint_file(self, session_id: str, checkpoint_id: str) -> Path:
        return self._session_dir(session_id) / "checkpoints" / f"{checkpoint_id}.json"

    def _find_checkpoint_file(self, checkpoint_id: str) -> Path:
        matches = list(self.root.glob(f"*/checkpoints/{checkpoint_id}.json"))
        if not matches:
            raise CheckpointNotFoundError(f"Checkpoint not found: {checkpoint_id}")
        return matches[0]

    def _save_checkpoint(self, checkpoint: Checkpoint) -> None:
        _atomic_write(self._checkpoint_file(checkpoint.session_id, checkpoint.id), checkpoint.to_dict())

    def create_checkpoint(self, session_id: str) -> Checkpoint:
        if not self._session_file(session_id).exists():
            raise SessionNotFoundError(f"Session not found: {session_id}")
        checkpoint = Checkpoint(id=new_checkpoint_id(), session_id=session_id)
        with self._lock:
            self._save_checkpoint(checkpoint)
        logger.debug(
            "Created checkpoint %s", checkpoint.id,
            extra={"session_id": session_id, "checkpoint_id": checkpoint.id},
        )
        return checkpoint

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint:
        path = self._find_checkpoint_file(checkpoint_id)
        return Checkpoint.from_dict(json.loads(path.read_text()))

    def get_checkpoints(self, session_id: str) -> list[Checkpoint]:
        directory = self._session_dir(session_id) / "checkpoints"
        if not directory.exists():
            return []
        checkpoints = []
        for path in directory.glob("*.json"):
            try:
                checkpoints.append(Checkpoint.from_dict(json.loads(path.read_text())))
            except (json.JSONDecodeError, KeyError, ValueError):
                logger.warning("Skipping unreadable checkpoint %s", path)
        return sorted(checkpoints, key=lambda c: c.created_at)

    def update_checkpoint_status(self, checkpoint_id: str, status: CheckpointStatus) -> None:
        with self._lock:
            checkpoint = self.get_checkpoint(checkpoint_id)
            checkpoint.status = status
            self._save_checkpoint(checkpoint)

    # ── File snapshots ────────────────────────────────────────────────────

    def insert_file_snapshot(self, snapshot: FileSnapshot) -> bool:
        """Store a snapshot unless one already exists for (checkpoint, path)."""
        with self._lock:
            checkpoint = self.get_checkpoint(snapshot.checkpoint_id)
            if snapshot.path in checkpoint.snapshots:
                return False
            checkpoint.snapshots[snapshot.path] = snapshot
            self._save_checkpoint(checkpoint)
        return True

    def get_file_snapshots(self, checkpoint_id: str) -> list[FileSnapshot]:
        return list(self.get_checkpoint(checkpoint_id).snapshots.values())

    def get_snapshot_for_file(self, checkpoint_id: str, path: str) -> FileSnapshot | None:
        return self.get_checkpoint(checkpoint_id).snapshots.get(path)

    def update_file_snapshot_status(
        self,
        checkpoint_id: str,
        path: str,
        status: SnapshotStatus,
    ) -> bool:
        with self._lock:
            checkpoint = self.get_checkpoint(checkpoint_id)
            snapshot = checkpoint.snapshots.get(path)
            if snapshot is None:
                return False
            snapshot.status = status
            self._save_checkpoint(checkpoint)
        return True

    def update_file_snapshot_statuses(
        self,
        checkpoint_id: str,
        statuses: dict[str, SnapshotStatus],
    ) -> None:
        """Apply several snapshot status changes in one write."""
        with self._lock:
            checkpoint = self.get_checkpoint(checkpoint_id)
            for path, status in statuses.items():
                if path in checkpoint.snapshots:
                    checkpoint.snapshots[path].status = status
            self._save_checkpoint(checkpoint)

    def prune_kept_checkpoint_content(self, checkpoint_id: str) -> int:
        """Drop original content of kept snapshots. Irreversible."""
        pruned = 0
        with self._lock:
            checkpoint = self.get_checkpoint(checkpoint_id)
            for snapshot in checkpoint.snapshots.values():
                if snapshot.status == SnapshotStatus.KEPT and snapshot.original_content is not None:
                    snapshot.original_content = None
                    pruned += 1
            if pruned:
                self._save_checkpoint(checkpoint)
        return pruned


def export_as_markdown(messages: list[MessageRecord], filepath: str | None = None) -> str:
    """Export a session's turns as a markdown file. Returns the file path."""
    if filepath is None:
        filepath = f"session_{datetime.now().strftime('%Y%m%d_%H%M%S')}.md"

    path = Path(filepath)

    lines = [f"# Session Export ({datetime.now().strftime('%Y-%m-%d %H:%M:%S')})\n"]

    for msg in messages:
        if msg.role == "system":
            lines.append("## System Prompt\n")
            lines.append(f"```\n{msg.content}\n```\n")
        elif msg.role == "user":
            lines.append("## User\n")
            lines.append(f"{msg.content}\n")
        elif msg.role == "assistant":
            lines.append("## Assistant\n")
            lines.append(f"{msg.content}\n")
            for tc in msg.meta.get("tool_calls", []):
                func = tc.get("function", {})
                lines.append(f"\n**Tool Call: {func.get('name', 'unknown')}**\n")
                lines.append(f"```json\n{json.dumps(func.get('arguments', {}), indent=2)}\n```\n")
        elif msg.role == "tool":
            lines.append(f"## Tool Result ({msg.meta.get('tool_name', 'unknown')})\n")
            lines.append(f"```\n{msg.content}\n```\n")
        elif msg.role == "thinking":
            lines.append("## Reasoning (interrupted)\n")
            lines.append(f"> {msg.content}\n")
        elif msg.role == "error":
            lines.append("## Error\n")
            lines.append(f"{msg.content}\n")

    path.write_text("\n".join(lines))
    return str(path)
