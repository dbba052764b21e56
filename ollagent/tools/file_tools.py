"""File operation tools: read, write, edit, with path sandboxing and atomic writes."""

from __future__ import annotations

import difflib
import os
import tempfile
from pathlib import Path
from typing import Any

from ollagent.config import MAX_FILE_READ_CHARS
from ollagent.tools.base import BaseTool, PathSandboxError


def _atomic_write(path: Path, content: str) -> None:
    """Write content to path atomically using a temp file + os.replace()."""
    parent = path.parent
    parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _display_path(tool: BaseTool, path: Path) -> str:
    try:
        return path.relative_to(tool.working_dir).as_posix()
    except ValueError:
        return str(path)


class ReadFileTool(BaseTool):
    read_only = True

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return (
            "Read file contents with line numbers. Always read a file before editing it. "
            f"Truncates at {MAX_FILE_READ_CHARS} chars; use offset (1-based line) and "
            "limit (number of lines) for large files."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "File path (absolute or relative to working directory)",
                },
                "offset": {
                    "type": "integer",
                    "description": "Starting line number (1-based). Optional.",
                },
                "limit": {
                    "type": "integer",
                    "description": "Maximum number of lines to read. Optional.",
                },
            },
            "required": ["path"],
        }

    def execute(self, **kwargs: Any) -> str:
        path_str = kwargs.get("path", "")
        offset = kwargs.get("offset") or 1
        limit = kwargs.get("limit")

        if not path_str:
            return "Error: path is required"

        try:
            path = self._resolve_path(path_str)
        except PathSandboxError as e:
            return f"Error: {e}"

        if not path.exists():
            return f"Error: File not found: {path_str}"
        if not path.is_file():
            return f"Error: Not a file: {path_str}"

        try:
            content = path.read_text(errors="replace")
        except PermissionError:
            return f"Error: Permission denied: {path_str}"
        except OSError as e:
            return f"Error reading file: {e}"

        lines = content.splitlines()
        total_lines = len(lines)
        try:
            start = max(int(offset) - 1, 0)
            end = start + int(limit) if limit else total_lines
        except (TypeError, ValueError):
            return "Error: offset and limit must be integers"

        numbered = [f"{i:>6}\t{line}" for i, line in enumerate(lines[start:end], start=start + 1)]
        result = "\n".join(numbered)

        if len(result) > MAX_FILE_READ_CHARS:
            result = result[:MAX_FILE_READ_CHARS] + f"\n... [truncated at {MAX_FILE_READ_CHARS} chars]"

        header = f"File: {_display_path(self, path)} ({total_lines} lines)"
        if start > 0 or end < total_lines:
            header += f" [showing lines {start + 1}-{min(end, total_lines)}]"

        return f"{header}\n{result}"


class WriteFileTool(BaseTool):
    mutates_files = True
    editable_argument = "content"

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return (
            "Write the ENTIRE content of a file, creating it and its parent directories "
            "if needed. Existing content is replaced. For small changes to an existing "
            "file, prefer edit_file."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "File path (absolute or relative to working directory)",
                },
                "content": {
                    "type": "string",
                    "description": "The complete new content of the file",
                },
            },
            "required": ["path", "content"],
        }

    def execute(self, **kwargs: Any) -> str:
        path_str = kwargs.get("path", "")
        content = kwargs.get("content", "")

        if not path_str:
            return "Error: path is required"
        if not isinstance(content, str):
            return "Error: content must be a string"

        try:
            path = self._resolve_path(path_str)
        except PathSandboxError as e:
            return f"Error: {e}"

        existed = path.exists()
        try:
            _atomic_write(path, content)
        except PermissionError:
            return f"Error: Permission denied: {path_str}"
        except OSError as e:
            return f"Error writing file: {e}"

        lines = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
        verb = "Updated" if existed else "Created"
        return f"{verb} {_display_path(self, path)} ({lines} lines, {len(content)} bytes)"


class EditFileTool(BaseTool):
    mutates_files = True
    editable_argument = "new_string"

    @property
    def name(self) -> str:
        return "edit_file"

    @property
    def description(self) -> str:
        return (
            "Edit a file by replacing an exact string match. old_string must match "
            "exactly once, including whitespace and indentation; include a few lines of "
            "context to make it unique. Returns a unified diff of the change."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "File path (absolute or relative to working directory)",
                },
                "old_string": {
                    "type": "string",
                    "description": "The exact string to find and replace. Must match exactly once.",
                },
                "new_string": {
                    "type": "string",
                    "description": "The replacement string.",
                },
            },
            "required": ["path", "old_string", "new_string"],
        }

    def execute(self, **kwargs: Any) -> str:
        path_str = kwargs.get("path", "")
        old_string = kwargs.get("old_string", "")
        new_string = kwargs.get("new_string", "")

        if not path_str:
            return "Error: path is required"

        try:
            path = self._resolve_path(path_str)
        except PathSandboxError as e:
            return f"Error: {e}"

        if not path.is_file():
            return f"Error: File not found: {path_str}"

        try:
            content = path.read_text()
        except (OSError, UnicodeDecodeError) as e:
            return f"Error reading file: {e}"

        if old_string == "":
            new_content = new_string + content
        else:
            count = content.count(old_string)
            if count == 0:
                first_line = old_string.splitlines()[0] if old_string.splitlines() else old_string
                partial = [
                    f"  Line {i + 1}: {line.rstrip()}"
                    for i, line in enumerate(content.splitlines())
                    if first_line.strip() and first_line.strip() in line
                ]
                hint = "\n\nPartial matches found:\n" + "\n".join(partial[:5]) if partial else ""
                return (
                    f"Error: old_string not found in {path_str}. "
                    f"Make sure the string matches exactly, including whitespace and indentation.{hint}"
                )
            if count > 1:
                return (
                    f"Error: old_string found {count} times in {path_str}. "
                    "Provide more surrounding context to make the match unique."
                )
            new_content = content.replace(old_string, new_string, 1)

        try:
            _atomic_write(path, new_content)
        except OSError as e:
            return f"Error writing file: {e}"

        display = _display_path(self, path)
        return f"Edited {display}\n\n{_make_diff(display, content, new_content)}"


def _make_diff(display: str, old_content: str, new_content: str) -> str:
    """Generate a unified diff string between old and new content."""
    diff = difflib.unified_diff(
        old_content.splitlines(keepends=True),
        new_content.splitlines(keepends=True),
        fromfile=f"a/{display}",
        tofile=f"b/{display}",
    )
    return "".join(diff)
