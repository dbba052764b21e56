"""Abstract base class for all tools."""

from __future__ import annotations

import asyncio
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from ollagent.tools import ExecutionContext


class PathSandboxError(Exception):
    """Raised when a file path violates sandboxing rules."""


class BaseTool(ABC):
    """Base class that all tools must inherit from."""

    # Pure inspection: results may be cached and calls run in parallel
    read_only: bool = False
    # Writes files: snapshot and sensitivity check before executing
    mutates_files: bool = False
    # Drives the shared model backend: run one at a time after local calls
    calls_llm: bool = False
    # Runs shell commands: classified by command severity before executing
    executes_commands: bool = False
    # Argument a reviewer may replace when approving the call
    editable_argument: str | None = None

    def __init__(self, working_dir: str):
        self.working_dir = Path(working_dir).resolve()

    @property
    @abstractmethod
    def name(self) -> str:
        """Tool name as the model will call it."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description for the model."""
        ...

    @property
    @abstractmethod
    def parameters(self) -> dict:
        """JSON Schema for the tool's parameters."""
        ...

    @abstractmethod
    def execute(self, **kwargs: Any) -> str:
        """Execute the tool. Must always return a string, never raise."""
        ...

    async def run(self, arguments: dict[str, Any], context: ExecutionContext) -> str:
        """Async entry point. Blocking tools run in a worker thread."""
        return await asyncio.to_thread(self.execute, **arguments)

    def target_path(self, arguments: dict[str, Any]) -> Path | None:
        """Resolved file this call would write, for mutating tools."""
        if not self.mutates_files:
            return None
        path = arguments.get("path")
        if not path:
            return None
        try:
            return self._resolve_path(str(path))
        except PathSandboxError:
            return None

    def _resolve_path(self, path: str) -> Path:
        """Resolve a path relative to working_dir, with sandboxing.

        After resolving, verifies:
        1. The path is a descendant of working_dir OR an allowed extra path.
        2. The path does not point to a known sensitive location.

        Raises PathSandboxError if the path is disallowed.
        """
        p = Path(path)
        if p.is_absolute():
            resolved = p.resolve()
        else:
            resolved = (self.working_dir / p).resolve()

        self._check_sandbox(resolved)
        return resolved

    def _check_sandbox(self, resolved: Path) -> None:
        """Verify a resolved path is within the sandbox."""
        from ollagent.config import ALLOWED_EXTRA_PATHS, SENSITIVE_PATHS

        resolved_str = str(resolved)

        for sensitive in SENSITIVE_PATHS:
            expanded = str(Path(os.path.expanduser(sensitive)).resolve())
            if resolved_str == expanded or resolved_str.startswith(expanded + os.sep):
                raise PathSandboxError(
                    f"Access denied: {resolved} is in a sensitive location ({sensitive})"
                )

        try:
            resolved.relative_to(self.working_dir)
            return
        except ValueError:
            pass

        for allowed in ALLOWED_EXTRA_PATHS:
            allowed_resolved = Path(os.path.expanduser(allowed)).resolve()
            try:
                resolved.relative_to(allowed_resolved)
                return
            except ValueError:
                continue

        raise PathSandboxError(
            f"Access denied: {resolved} is outside the working directory ({self.working_dir}). "
            f"Only paths within the working directory or {ALLOWED_EXTRA_PATHS} are allowed."
        )

    def to_tool_definition(self) -> dict:
        """Convert to the chat API's function tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
