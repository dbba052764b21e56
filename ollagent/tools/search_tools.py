"""Workspace search and directory listing tools."""

from __future__ import annotations

import fnmatch
import os
import re
from pathlib import Path
from typing import Any

from ollagent.config import MAX_GLOB_RESULTS, MAX_GREP_MATCHES
from ollagent.tools.base import BaseTool, PathSandboxError

# Directories to always skip
SKIP_DIRS = {
    ".git", "__pycache__", "node_modules", ".venv", "venv",
    ".tox", ".mypy_cache", ".pytest_cache", "dist", "build",
    ".eggs", "out", ".next",
}

# Binary file extensions to skip when searching contents
BINARY_EXTENSIONS = {
    ".pyc", ".pyo", ".so", ".o", ".a", ".lib", ".dll", ".exe",
    ".bin", ".dat", ".db", ".sqlite", ".sqlite3",
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".svg",
    ".pdf", ".zip", ".tar", ".gz", ".bz2", ".xz", ".7z",
    ".mp3", ".mp4", ".avi", ".mov", ".wav",
    ".woff", ".woff2", ".ttf", ".eot",
}

MAX_MATCHES_PER_FILE = 5
MAX_SEARCH_FILE_BYTES = 1_000_000


def _should_skip_dir(name: str) -> bool:
    return name in SKIP_DIRS or name.endswith(".egg-info")


def _walk_files(root: Path):
    for current, dirs, filenames in os.walk(root):
        dirs[:] = sorted(d for d in dirs if not _should_skip_dir(d))
        for fname in sorted(filenames):
            yield Path(current) / fname


class SearchWorkspaceTool(BaseTool):
    read_only = True

    @property
    def name(self) -> str:
        return "search_workspace"

    @property
    def description(self) -> str:
        return (
            "Search file contents across the workspace. Plain text by default, regex with "
            "is_regex=true. Case-insensitive unless the query contains capitals. Returns "
            f"'file:line: text' (at most {MAX_MATCHES_PER_FILE} per file, "
            f"{MAX_GREP_MATCHES} total)."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Text or regular expression to search for",
                },
                "file_pattern": {
                    "type": "string",
                    "description": "Optional glob to filter files (e.g., '*.py' or 'src/**/*.ts')",
                },
                "is_regex": {
                    "type": "boolean",
                    "description": "Treat query as a regular expression (default: false)",
                },
                "context_lines": {
                    "type": "integer",
                    "description": "Lines of context to show around each match (default: 0)",
                },
            },
            "required": ["query"],
        }

    def execute(self, **kwargs: Any) -> str:
        query = kwargs.get("query", "")
        file_pattern = kwargs.get("file_pattern") or ""
        is_regex = bool(kwargs.get("is_regex", False))
        context_lines = int(kwargs.get("context_lines") or 0)

        if not query:
            return "Error: query is required"

        flags = 0 if any(c.isupper() for c in query) else re.IGNORECASE
        try:
            regex = re.compile(query if is_regex else re.escape(query), flags)
        except re.error as e:
            return f"Error: Invalid regex pattern: {e}"

        results: list[str] = []
        total = 0
        for path in _walk_files(self.working_dir):
            if total >= MAX_GREP_MATCHES:
                break
            rel = path.relative_to(self.working_dir).as_posix()
            if path.suffix.lower() in BINARY_EXTENSIONS:
                continue
            if file_pattern and not (fnmatch.fnmatch(rel, file_pattern) or fnmatch.fnmatch(path.name, file_pattern)):
                continue
            try:
                if path.stat().st_size > MAX_SEARCH_FILE_BYTES:
                    continue
                lines = path.read_text(errors="replace").splitlines()
            except OSError:
                continue

            in_file = 0
            for i, line in enumerate(lines):
                if not regex.search(line):
                    continue
                if context_lines > 0:
                    start, end = max(0, i - context_lines), min(len(lines), i + context_lines + 1)
                    block = [
                        f"{'>' if j == i else ' '} {rel}:{j + 1}: {lines[j].rstrip()[:300]}"
                        for j in range(start, end)
                    ]
                    if results:
                        results.append("---")
                    results.extend(block)
                else:
                    results.append(f"{rel}:{i + 1}: {line.rstrip()[:300]}")
                total += 1
                in_file += 1
                if in_file >= MAX_MATCHES_PER_FILE or total >= MAX_GREP_MATCHES:
                    break

        if not total:
            return f"No matches found for: {query}"
        output = "\n".join(results)
        if total >= MAX_GREP_MATCHES:
            output += f"\n... [capped at {MAX_GREP_MATCHES} matches]"
        return f"Found {total} match(es):\n{output}"


class FindFilesTool(BaseTool):
    read_only = True

    @property
    def name(self) -> str:
        return "find_files"

    @property
    def description(self) -> str:
        return (
            "Find files by glob pattern, e.g. '**/*.py' or 'src/**/test_*.ts'. Returns "
            f"paths relative to the workspace, capped at {MAX_GLOB_RESULTS} results."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Glob pattern to match files (e.g., '**/*.py')",
                },
                "path": {
                    "type": "string",
                    "description": "Directory to search in (default: working directory)",
                },
            },
            "required": ["pattern"],
        }

    def execute(self, **kwargs: Any) -> str:
        pattern = kwargs.get("pattern", "")
        path_str = kwargs.get("path", "")

        if not pattern:
            return "Error: pattern is required"

        try:
            search_dir = self._resolve_path(path_str) if path_str else self.working_dir
        except PathSandboxError as e:
            return f"Error: {e}"
        if not search_dir.is_dir():
            return f"Error: Directory not found: {path_str}"

        matches = []
        try:
            for match in sorted(search_dir.glob(pattern)):
                parts = match.relative_to(search_dir).parts
                if any(_should_skip_dir(p) for p in parts) or not match.is_file():
                    continue
                try:
                    matches.append(match.relative_to(self.working_dir).as_posix())
                except ValueError:
                    matches.append(str(match))
                if len(matches) >= MAX_GLOB_RESULTS:
                    break
        except (ValueError, OSError) as e:
            return f"Error during file search: {e}"

        if not matches:
            return f"No files found matching pattern: {pattern}"

        result = "\n".join(matches)
        if len(matches) == MAX_GLOB_RESULTS:
            result += f"\n... [capped at {MAX_GLOB_RESULTS} results]"
        return f"Found {len(matches)} file(s):\n{result}"


class ListFilesTool(BaseTool):
    read_only = True

    @property
    def name(self) -> str:
        return "list_files"

    @property
    def description(self) -> str:
        return (
            "List a directory (non-recursive). Directories first, then files with sizes. "
            "Use find_files to locate files by pattern."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Directory path (default: working directory)",
                },
            },
            "required": [],
        }

    def execute(self, **kwargs: Any) -> str:
        path_str = kwargs.get("path", "")
        try:
            directory = self._resolve_path(path_str) if path_str else self.working_dir
        except PathSandboxError as e:
            return f"Error: {e}"

        if not directory.exists():
            return f"Error: Directory not found: {path_str}"
        if not directory.is_dir():
            return f"Error: Not a directory: {path_str}"

        try:
            entries = sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
        except PermissionError:
            return f"Error: Permission denied: {path_str}"

        entries = [e for e in entries if not (e.is_dir() and _should_skip_dir(e.name))]
        label = path_str or "."
        if not entries:
            return f"Directory is empty: {label}"

        lines = []
        for entry in entries:
            if entry.is_dir():
                lines.append(f"  {entry.name}/")
            else:
                try:
                    lines.append(f"  {entry.name}  ({_format_size(entry.stat().st_size)})")
                except OSError:
                    lines.append(f"  {entry.name}")
        return f"Contents of {label}:\n" + "\n".join(lines)


def _format_size(size: int) -> str:
    """Format file size in human-readable form."""
    if size < 1024:
        return f"{size} B"
    elif size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"
