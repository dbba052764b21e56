"""Structured logging and the audit trail.

Two destinations live under ``~/.ollagent/logs/``:

- ``ollagent.log``: every ``ollagent.*`` record as one JSON object per line
- ``audit.jsonl``: one entry per tool execution and per approval decision

Loop code attaches run context (session, iteration, phase) through
``extra=``; the formatter copies those fields into the JSON entry.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
from datetime import datetime
from pathlib import Path

from ollagent.config import DATA_DIR

LOGS_DIR = DATA_DIR / "logs"
AUDIT_LOG_FILE = LOGS_DIR / "audit.jsonl"
APP_LOG_FILE = LOGS_DIR / "ollagent.log"

MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3
AUDIT_PREVIEW_CHARS = 500

EXTRA_FIELDS = (
    "event",
    "session_id",
    "checkpoint_id",
    "iteration",
    "phase",
    "mode",
    "model",
    "tool_name",
    "tool_args",
    "tool_result",
    "tool_error",
    "duration_s",
    "cached",
    "approval_kind",
    "subject",
    "severity",
    "approved",
)


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with run context fields when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = f"{type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        entry.update({
            key: getattr(record, key)
            for key in EXTRA_FIELDS
            if getattr(record, key, None) is not None
        })
        return json.dumps(entry, default=str)


def _rotating_handler(path: Path) -> logging.handlers.RotatingFileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        str(path), maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUP_COUNT,
    )
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging(verbose: bool = False) -> None:
    """Route ``ollagent.*`` records to the JSON log, and to stderr when *verbose*.

    Safe to call more than once; earlier handlers are replaced. The audit
    logger keeps its own file and does not propagate.
    """
    root = logging.getLogger("ollagent")
    root.setLevel(logging.DEBUG)
    root.handlers.clear()
    root.addHandler(_rotating_handler(APP_LOG_FILE))

    if verbose:
        console = logging.StreamHandler()
        console.setLevel(logging.DEBUG)
        console.setFormatter(logging.Formatter("[%(name)s] %(levelname)s %(message)s"))
        root.addHandler(console)


def get_audit_logger() -> logging.Logger:
    """The ``ollagent.audit`` logger, attached to the current audit file."""
    logger = logging.getLogger("ollagent.audit")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    target = str(AUDIT_LOG_FILE)
    if not any(getattr(h, "baseFilename", None) == target for h in logger.handlers):
        # AUDIT_LOG_FILE moved (tests redirect it): drop the stale handler
        for stale in list(logger.handlers):
            logger.removeHandler(stale)
            stale.close()
        logger.addHandler(_rotating_handler(AUDIT_LOG_FILE))
    return logger


def log_tool_execution(
    tool_name: str,
    tool_args: dict,
    result: str,
    duration_s: float,
    error: str | None = None,
    session_id: str | None = None,
    cached: bool = False,
) -> None:
    """Record one tool execution; results are cut to a short preview."""
    get_audit_logger().info(
        "Tool executed: %s", tool_name,
        extra={
            "event": "tool_execution",
            "tool_name": tool_name,
            "tool_args": tool_args,
            "tool_result": result[:AUDIT_PREVIEW_CHARS],
            "tool_error": error,
            "duration_s": round(duration_s, 3),
            "session_id": session_id,
            "cached": cached,
        },
    )


def log_approval_decision(
    kind: str,
    subject: str,
    severity: str,
    approved: bool,
    session_id: str | None = None,
) -> None:
    """Record how an approval request was resolved."""
    get_audit_logger().info(
        "Approval %s: %s", "granted" if approved else "declined", subject,
        extra={
            "event": "approval",
            "approval_kind": kind,
            "subject": subject,
            "severity": severity,
            "approved": approved,
            "session_id": session_id,
        },
    )
