"""Shell command execution tool."""

from __future__ import annotations

import subprocess
from typing import Any

from ollagent.config import DEFAULT_COMMAND_TIMEOUT, MAX_TOOL_OUTPUT_CHARS
from ollagent.tools.base import BaseTool


class TerminalCommandTool(BaseTool):
    """Runs a command in the working directory.

    Safety classification and approval happen in the agent loop before this
    tool is reached.
    """

    executes_commands = True
    editable_argument = "command"

    @property
    def name(self) -> str:
        return "run_terminal_command"

    @property
    def description(self) -> str:
        return (
            "Run a shell command in the working directory and return its output. "
            f"Output is truncated at {MAX_TOOL_OUTPUT_CHARS} characters; default timeout "
            f"{DEFAULT_COMMAND_TIMEOUT}s. Use for tests, builds, package managers and git. "
            "If a command fails, read stderr and adjust instead of retrying blindly."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The shell command to execute",
                },
                "timeout": {
                    "type": "integer",
                    "description": f"Timeout in seconds (default: {DEFAULT_COMMAND_TIMEOUT})",
                },
            },
            "required": ["command"],
        }

    def execute(self, **kwargs: Any) -> str:
        command = kwargs.get("command", "")
        timeout = kwargs.get("timeout") or DEFAULT_COMMAND_TIMEOUT

        if not command:
            return "Error: command is required"

        try:
            result = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=str(self.working_dir),
            )
        except subprocess.TimeoutExpired:
            return f"Error: Command timed out after {timeout} seconds"
        except OSError as e:
            return f"Error executing command: {e}"

        output_parts = []
        if result.stdout:
            output_parts.append(result.stdout)
        if result.stderr:
            output_parts.append(f"[stderr]\n{result.stderr}")
        output = "\n".join(output_parts) if output_parts else "(no output)"

        if result.returncode != 0:
            output = f"[exit code: {result.returncode}]\n{output}"

        if len(output) > MAX_TOOL_OUTPUT_CHARS:
            output = output[:MAX_TOOL_OUTPUT_CHARS] + f"\n... [truncated at {MAX_TOOL_OUTPUT_CHARS} chars]"

        return output
