"""Severity classification for shell commands and file edits.

Decides whether an action must pass through the approval gate. Commands are
matched against per-platform danger patterns; file paths are matched against
the session's sensitive-file globs (last match wins) and ranked by how much
damage an unreviewed edit could do.
"""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

from ollagent.config import DANGEROUS_COMMAND_PATTERNS, DEFAULT_SENSITIVE_FILE_PATTERNS


class Severity(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.NONE: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}

DEFAULT_COMMAND_REASON = "Command requires approval"

CRITICAL_PATH_PATTERNS = [
    re.compile(r"(^|/)\.env(\.|$)", re.IGNORECASE),
    re.compile(r"secrets?", re.IGNORECASE),
    re.compile(r"\.(pem|key|pfx|p12)$", re.IGNORECASE),
    re.compile(r"(^|/)id_(rsa|ed25519)$", re.IGNORECASE),
]
HIGH_PATH_PATTERNS = [
    re.compile(r"(^|/)package\.json$", re.IGNORECASE),
    re.compile(r"(^|/)(package-lock\.json|yarn\.lock|pnpm-lock\.yaml)$", re.IGNORECASE),
    re.compile(r"(^|/)(tsconfig|jsconfig)\.json$", re.IGNORECASE),
    re.compile(r"(^|/)dockerfile$", re.IGNORECASE),
    re.compile(r"docker-compose.*\.ya?ml$", re.IGNORECASE),
    re.compile(r"(^|/)\.github/workflows/", re.IGNORECASE),
    re.compile(r"(^|/)\.npmrc$", re.IGNORECASE),
    re.compile(r"(^|/)\.yarnrc(\.yml)?$", re.IGNORECASE),
    re.compile(r"(^|/)\.vscode/.*\.json$", re.IGNORECASE),
    re.compile(r"(^|/)(pyproject\.toml|requirements[^/]*\.txt)$", re.IGNORECASE),
]


@dataclass
class ApprovalDecision:
    """Whether an action needs a human decision, and how it is presented."""

    requires_approval: bool
    severity: Severity
    reason: str = ""
    matched_pattern: str | None = None


@dataclass
class CommandMatch:
    severity: Severity
    reason: str = ""
    pattern: str | None = None


def _platform_key(platform: str | None) -> str:
    platform = platform or sys.platform
    if platform.startswith("win"):
        return "win32"
    if platform == "darwin":
        return "darwin"
    return "linux"


class CommandSafety:
    """Classifies shell commands against the danger pattern table."""

    def __init__(self, patterns: list[tuple[str, str, str, tuple[str, ...]]] | None = None):
        table = DANGEROUS_COMMAND_PATTERNS if patterns is None else patterns
        self._patterns = [
            (re.compile(regex, re.IGNORECASE), Severity(severity), reason, platforms)
            for regex, severity, reason, platforms in table
        ]

    def classify(self, command: str, platform: str | None = None) -> CommandMatch:
        """Return the most severe matching pattern for this platform."""
        key = _platform_key(platform)
        best = CommandMatch(severity=Severity.NONE)
        for regex, severity, reason, platforms in self._patterns:
            if key not in platforms and "all" not in platforms:
                continue
            if regex.search(command) and severity.rank > best.severity.rank:
                best = CommandMatch(severity=severity, reason=reason, pattern=regex.pattern)
        return best


@lru_cache(maxsize=256)
def _glob_to_regex(pattern: str) -> re.Pattern:
    """Translate a path glob (``**``, ``*``, ``?``) into an anchored regex.

    Dot files match like any other name and matching ignores case.
    """
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
            continue
        if pattern.startswith("**", i):
            out.append(".*")
            i += 2
            continue
        if ch == "*":
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("^" + "".join(out) + "$", re.IGNORECASE)


def _normalize_path(path: str) -> str:
    return path.replace("\\", "/")


def file_severity(path: str) -> Severity:
    """Rank a file path by the damage an unreviewed edit could do."""
    normalized = _normalize_path(path)
    if any(p.search(normalized) for p in CRITICAL_PATH_PATTERNS):
        return Severity.CRITICAL
    if any(p.search(normalized) for p in HIGH_PATH_PATTERNS):
        return Severity.HIGH
    return Severity.MEDIUM


class FileSensitivity:
    """Evaluates a path against glob -> auto-approvable patterns."""

    def __init__(self, patterns: dict[str, bool] | None = None):
        self.patterns = dict(DEFAULT_SENSITIVE_FILE_PATTERNS if patterns is None else patterns)

    def evaluate(self, path: str) -> tuple[bool, str | None]:
        """Return (auto_approvable, matched_pattern). The last match wins."""
        normalized = _normalize_path(path).lstrip("/")
        matched_pattern = None
        matched_value = True
        for pattern, value in self.patterns.items():
            if _glob_to_regex(pattern).match(normalized):
                matched_pattern = pattern
                matched_value = bool(value)
        return matched_value, matched_pattern


_command_safety = CommandSafety()


def compute_command_approval(
    command: str,
    auto_approve: bool,
    platform: str | None = None,
) -> ApprovalDecision:
    """Approval policy for terminal commands.

    Critical commands always need approval; everything else only when the
    session has not enabled auto-approve.
    """
    match = _command_safety.classify(command, platform)
    severity = Severity.MEDIUM if match.severity == Severity.NONE else match.severity
    return ApprovalDecision(
        requires_approval=match.severity == Severity.CRITICAL or not auto_approve,
        severity=severity,
        reason=match.reason or DEFAULT_COMMAND_REASON,
        matched_pattern=match.pattern,
    )


def compute_file_edit_approval(
    path: str,
    patterns: dict[str, bool] | None,
    auto_approve: bool,
) -> ApprovalDecision:
    """Approval policy for file writes.

    Critical paths always need approval. Other paths need it when a
    sensitive pattern matches and the session has not enabled auto-approve.
    """
    auto_approvable, matched = FileSensitivity(patterns).evaluate(path)
    severity = file_severity(path)
    sensitive = not auto_approvable
    requires = severity == Severity.CRITICAL or (sensitive and not auto_approve)
    if sensitive and matched:
        reason = f"Matched sensitive pattern: {matched}"
    elif severity == Severity.CRITICAL:
        reason = "Critical file"
    else:
        reason = ""
    return ApprovalDecision(
        requires_approval=requires,
        severity=severity,
        reason=reason,
        matched_pattern=matched,
    )
