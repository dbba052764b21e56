"""Tool registry - instantiates and manages all available tools."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from ollagent.logging_config import log_tool_execution
from ollagent.tools.base import BaseTool
from ollagent.tools.file_tools import EditFileTool, ReadFileTool, WriteFileTool
from ollagent.tools.search_tools import FindFilesTool, ListFilesTool, SearchWorkspaceTool
from ollagent.tools.subagent_tool import SubagentTool
from ollagent.tools.terminal_tool import TerminalCommandTool

logger = logging.getLogger("ollagent.tools")


@dataclass
class ExecutionContext:
    """Per-call environment handed to tools."""

    working_dir: str
    session_id: str | None = None
    cancel_event: asyncio.Event | None = None
    # (task, mode) -> findings; None where sub-tasks are not allowed
    spawn_subtask: Callable[[str, str], Awaitable[str]] | None = None
    is_subagent: bool = False


@dataclass
class ToolOutput:
    """Result of one tool call. Errors are data, never exceptions."""

    tool: str
    input: dict[str, Any]
    output: str
    error: str | None = None
    timestamp: float = field(default_factory=time.time)
    duration_s: float = 0.0
    cached: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class ToolRegistry:
    """Registry that holds all tool instances and provides lookup."""

    def __init__(self, working_dir: str, tools: list[BaseTool] | None = None):
        self.working_dir = working_dir
        self._tools: dict[str, BaseTool] = {}
        for tool in tools if tools is not None else self._default_tools(working_dir):
            self.register(tool)

    @staticmethod
    def _default_tools(working_dir: str) -> list[BaseTool]:
        return [
            ReadFileTool(working_dir),
            WriteFileTool(working_dir),
            EditFileTool(working_dir),
            ListFilesTool(working_dir),
            FindFilesTool(working_dir),
            SearchWorkspaceTool(working_dir),
            TerminalCommandTool(working_dir),
            SubagentTool(working_dir),
        ]

    def register(self, tool: BaseTool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> BaseTool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def all_tools(self) -> list[BaseTool]:
        """Return all registered tools."""
        return list(self._tools.values())

    @property
    def tool_names(self) -> list[str]:
        return sorted(self._tools)

    def tool_definitions(self) -> list[dict]:
        return [tool.to_tool_definition() for tool in self._tools.values()]

    def read_only_tool_names(self) -> set[str]:
        return {name for name, tool in self._tools.items() if tool.read_only}

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        context: ExecutionContext,
    ) -> ToolOutput:
        """Run a tool and audit-log it. Never raises for tool failures."""
        tool = self.get(name)
        if tool is None:
            return ToolOutput(name, arguments, f"Error: Unknown tool: {name}", error=f"Unknown tool: {name}")

        start = time.time()
        try:
            output = await tool.run(arguments, context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Tool %s raised", name)
            output = f"Error: {name} failed: {e}"
        duration = time.time() - start

        error = output.strip() if output.startswith("Error") else None
        log_tool_execution(
            name, arguments, output, duration,
            error=error, session_id=context.session_id,
        )
        return ToolOutput(name, arguments, output, error=error, duration_s=duration)
