"""Persistent records: sessions, messages, checkpoints and file snapshots."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ollagent.config import DEFAULT_MODE, DEFAULT_MODEL, DEFAULT_SENSITIVE_FILE_PATTERNS


class CheckpointStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    KEPT = "kept"
    UNDONE = "undone"


class SnapshotAction(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"


class SnapshotStatus(str, Enum):
    PENDING = "pending"
    KEPT = "kept"
    UNDONE = "undone"


@dataclass
class Session:
    """Long-lived container for conversation turns and checkpoints."""

    id: str = field(default_factory=lambda: f"session_{uuid.uuid4().hex[:12]}")
    title: str = ""
    mode: str = DEFAULT_MODE
    model: str = DEFAULT_MODEL
    auto_approve_commands: bool = False
    auto_approve_sensitive_edits: bool = False
    sensitive_file_patterns: dict[str, bool] = field(
        default_factory=lambda: dict(DEFAULT_SENSITIVE_FILE_PATTERNS)
    )
    status: str = "idle"
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "mode": self.mode,
            "model": self.model,
            "auto_approve_commands": self.auto_approve_commands,
            "auto_approve_sensitive_edits": self.auto_approve_sensitive_edits,
            "sensitive_file_patterns": self.sensitive_file_patterns,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            mode=data.get("mode", DEFAULT_MODE),
            model=data.get("model", DEFAULT_MODEL),
            auto_approve_commands=data.get("auto_approve_commands", False),
            auto_approve_sensitive_edits=data.get("auto_approve_sensitive_edits", False),
            sensitive_file_patterns=data.get(
                "sensitive_file_patterns", dict(DEFAULT_SENSITIVE_FILE_PATTERNS)
            ),
            status=data.get("status", "idle"),
            created_at=data.get("created_at", time.time()),
            updated_at=data.get("updated_at", time.time()),
        )


@dataclass
class MessageRecord:
    """One persisted conversation turn.

    ``meta`` carries role-specific extras: ``tool_calls`` on assistant turns,
    ``tool_name``/``tool_input``/``error`` on tool turns, ``checkpoint_id``.
    """

    role: str
    content: str = ""
    meta: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "meta": self.meta,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessageRecord:
        return cls(
            role=data["role"],
            content=data.get("content", ""),
            meta=data.get("meta", {}),
            id=data.get("id", uuid.uuid4().hex[:12]),
            timestamp=data.get("timestamp", time.time()),
        )

    def to_chat_message(self) -> dict[str, Any]:
        """Convert to the chat API message shape."""
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.meta.get("tool_calls"):
            msg["tool_calls"] = self.meta["tool_calls"]
        if self.meta.get("tool_name"):
            msg["tool_name"] = self.meta["tool_name"]
        return msg


@dataclass
class FileSnapshot:
    """Pre-image of one file, taken before its first write in a checkpoint."""

    checkpoint_id: str
    path: str
    original_content: str | None
    action: SnapshotAction
    status: SnapshotStatus = SnapshotStatus.PENDING
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "path": self.path,
            "original_content": self.original_content,
            "action": self.action.value,
            "status": self.status.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileSnapshot:
        return cls(
            checkpoint_id=data["checkpoint_id"],
            path=data["path"],
            original_content=data.get("original_content"),
            action=SnapshotAction(data.get("action", "modified")),
            status=SnapshotStatus(data.get("status", "pending")),
            created_at=data.get("created_at", time.time()),
        )


@dataclass
class Checkpoint:
    """File snapshots taken during one top-level task invocation."""

    id: str
    session_id: str
    status: CheckpointStatus = CheckpointStatus.PENDING
    created_at: float = field(default_factory=time.time)
    snapshots: dict[str, FileSnapshot] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "snapshots": {path: snap.to_dict() for path, snap in self.snapshots.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            status=CheckpointStatus(data.get("status", "pending")),
            created_at=data.get("created_at", time.time()),
            snapshots={
                path: FileSnapshot.from_dict(snap)
                for path, snap in data.get("snapshots", {}).items()
            },
        )
