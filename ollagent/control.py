"""Pure helpers that steer the iteration loop.

Completion detection, control packets, continuation and reminder turns, and
error formatting. Nothing here does I/O, so the loop's decisions are testable
without a model.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ollagent.config import TASK_COMPLETE_SENTINEL
from ollagent.extractor import ToolCall

CONTROL_OPEN = "<agent_control>"
CONTROL_CLOSE = "</agent_control>"
CONTROL_PACKET_RE = re.compile(r"<agent_control>.*?</agent_control>", re.IGNORECASE | re.DOTALL)
SENTINEL_RE = re.compile(re.escape(TASK_COMPLETE_SENTINEL), re.IGNORECASE)
CONTROL_STATES = ("need_tools", "need_fixes", "need_summary", "complete")

MUTATION_TASK_RE = re.compile(
    r"\b(rename|change|modify|edit|update|add|create|write|fix|refactor|remove|delete"
    r"|implement|move|replace|insert|append|prepend)\b"
)
TERMINAL_TASK_RE = re.compile(
    r"\b(run|test|install|build|compile|execute|start|serve|deploy|lint|format"
    r"|npm|yarn|pip|cargo|make|docker)\b"
)

NO_MUTATION_MESSAGE = (
    "You indicated the task is complete, but NO files have been modified. Reading a file "
    "does NOT change it. You MUST call write_file or edit_file to actually make changes. "
    "If no changes are truly needed, explain why explicitly."
)
TERMINAL_NUDGE_MESSAGE = (
    "You indicated the task is complete, but no terminal command was executed. "
    "If the task requires running a command (test, build, install, etc.), use "
    "run_terminal_command. If no command is needed, explain why and respond with "
    "[TASK_COMPLETE]."
)
TRUNCATION_MESSAGE = (
    "Your response was truncated due to the output length limit. Break your work into "
    "smaller pieces. Continue EXACTLY where you left off and do not repeat what you "
    "already said. If you were in the middle of a tool call, re-emit the complete tool call."
)
WRAP_UP_PROBE = "If you are done, respond with [TASK_COMPLETE]. Otherwise, continue using tools."
FINAL_SYNTHESIS_MESSAGE = (
    "Stop calling tools. Using only what you have already learned, write your final "
    "answer for the task now."
)


class NoToolAction(str, Enum):
    BREAK_IMPLICIT = "break_implicit"
    BREAK_CONSECUTIVE = "break_consecutive"
    CONTINUE = "continue"


@dataclass
class ToolHistoryEntry:
    """One executed call, remembered for the already-called reminder."""

    name: str
    query: str
    result_summary: str


def is_mutation_task(task: str) -> bool:
    return bool(MUTATION_TASK_RE.search(task.lower()))


def is_terminal_task(task: str) -> bool:
    return bool(TERMINAL_TASK_RE.search(task.lower()))


def parse_control_state(text: str) -> str | None:
    """State of the last well-formed control packet in *text*."""
    start = text.rfind(CONTROL_OPEN)
    if start < 0:
        return None
    end = text.find(CONTROL_CLOSE, start)
    if end < 0:
        return None
    try:
        payload = json.loads(text[start + len(CONTROL_OPEN):end].strip())
    except json.JSONDecodeError:
        return None
    state = payload.get("state") if isinstance(payload, dict) else None
    return state if state in CONTROL_STATES else None


def is_completion_signaled(response: str, thinking: str = "") -> bool:
    """True for the sentinel (any case) or a ``complete`` control packet."""
    combined = f"{response} {thinking or ''}"
    return parse_control_state(combined) == "complete" or TASK_COMPLETE_SENTINEL.lower() in combined.lower()


def strip_control_markers(text: str) -> str:
    """Remove control packets and the completion sentinel from display text."""
    return SENTINEL_RE.sub("", CONTROL_PACKET_RE.sub("", text or "")).strip()


def check_no_tool_completion(
    response: str,
    thinking: str,
    has_written_files: bool,
    consecutive_no_tool: int,
) -> NoToolAction:
    """Decide whether a tool-less iteration ends the loop."""
    if not response.strip() and not thinking and has_written_files:
        return NoToolAction.BREAK_IMPLICIT
    if consecutive_no_tool >= 2:
        return NoToolAction.BREAK_CONSECUTIVE
    return NoToolAction.CONTINUE


def build_continuation_message(
    iteration: int,
    max_iterations: int,
    files_changed: list[str] | None = None,
    note: str | None = None,
    state: str = "need_tools",
) -> str:
    """Control packet for the next iteration, followed by a short directive."""
    packet: dict[str, Any] = {
        "state": state,
        "iteration": iteration + 1,
        "maxIterations": max_iterations,
        "remainingIterations": max_iterations - iteration - 1,
    }
    unique_files = list(dict.fromkeys(files_changed or []))
    if unique_files:
        packet["filesChanged"] = unique_files
    if note:
        packet["note"] = note
    return (
        f"{CONTROL_OPEN}{json.dumps(packet)}{CONTROL_CLOSE}\n"
        f"Proceed with tool calls or {TASK_COMPLETE_SENTINEL}."
    )


def _short_path(path: Any) -> str:
    if not path:
        return "?"
    parts = str(path).replace("\\", "/").split("/")
    return str(path) if len(parts) <= 2 else "/".join(parts[-2:])


def _truncate(value: Any, limit: int) -> str:
    if not value:
        return "..."
    text = str(value)
    return text if len(text) <= limit else text[:limit] + "..."


def describe_tool_call(call: ToolCall) -> str:
    args = call.arguments
    if call.name == "read_file":
        return f"read {_short_path(args.get('path'))}"
    if call.name == "write_file":
        return f"wrote {_short_path(args.get('path'))}"
    if call.name == "edit_file":
        return f"edited {_short_path(args.get('path'))}"
    if call.name == "search_workspace":
        return f'searched for "{_truncate(args.get("query"), 60)}"'
    if call.name == "find_files":
        return f'looked for files matching "{_truncate(args.get("pattern"), 60)}"'
    if call.name == "list_files":
        return f"listed {_short_path(args.get('path') or '.')}"
    if call.name == "run_terminal_command":
        return f"ran `{_truncate(args.get('command'), 40)}`"
    if call.name == "run_subagent":
        return "delegated a sub-task"
    return f"used {call.name}"


def build_tool_call_summary(calls: list[ToolCall]) -> str | None:
    """Deterministic one-line account of a batch, used as assistant content
    when the model produced tool calls without visible text."""
    if not calls:
        return None
    return "I " + ", then ".join(describe_tool_call(c) for c in calls) + "."


def summarize_result(output: str, error: str | None = None, limit: int = 80) -> str:
    if error:
        return f"error: {_truncate(error, limit)}"
    first_line = (output or "").strip().splitlines()[0] if (output or "").strip() else "(empty)"
    return _truncate(first_line, limit)


def history_entry(call: ToolCall, output: str, error: str | None = None) -> ToolHistoryEntry:
    args = call.arguments
    query = (
        args.get("path") or args.get("query") or args.get("pattern")
        or args.get("command") or args.get("task") or ""
    )
    return ToolHistoryEntry(call.name, _truncate(query, 60), summarize_result(output, error))


def build_tools_reminder(
    iteration: int,
    max_iterations: int,
    files_changed: list[str],
    history: list[ToolHistoryEntry],
) -> str:
    """Reminder turn appended after each tool batch."""
    remaining = max_iterations - iteration
    parts = [
        f"[Iteration {iteration + 1}/{max_iterations}, {remaining} remaining]",
        "Proceed directly with tool calls or [TASK_COMPLETE]. "
        "Do NOT restate your plan or summarize what you just did.",
    ]
    unique_files = list(dict.fromkeys(files_changed))
    if unique_files:
        shown = ", ".join(unique_files[:5])
        if len(unique_files) > 5:
            shown += f" (+{len(unique_files) - 5} more)"
        parts.append(f"Files modified so far: {shown}")
    if history:
        lines = [f"  - {h.name}({h.query}) -> {h.result_summary}" for h in history]
        parts.append("Tools already called this session (do NOT repeat these):\n" + "\n".join(lines))
    return "\n".join(parts)


def dedupe_thinking_echo(response: str, thinking: str) -> str:
    """Drop visible text that merely repeats the reasoning channel."""
    if not (thinking or "").strip() or not (response or "").strip():
        return response
    think, resp = thinking.strip(), response.strip()
    if resp == think or resp.startswith(think) or think.startswith(resp):
        return ""
    return response


def token_reminder(prompt_tokens: int, context_window: int) -> tuple[int, str] | None:
    """(threshold, message) when usage crossed 70% or 85% of the window."""
    if not prompt_tokens or not context_window:
        return None
    usage = round(prompt_tokens / context_window * 100)
    threshold = 85 if usage >= 85 else 70 if usage >= 70 else 0
    if not threshold:
        return None
    return threshold, (
        f"Context usage: ~{usage}% ({100 - usage}% remaining). Be concise to preserve "
        "remaining context. Focus on completing the task efficiently."
    )


def format_fatal_error(
    error: BaseException,
    model: str,
    mode: str,
    phase: str,
    iteration: int,
    max_iterations: int,
) -> str:
    """User-visible error text naming the phase, iteration and model."""
    name = type(error).__name__
    error_class = f"[{name}] " if name not in ("Exception", "Error") else ""
    message = str(error) or name
    status = getattr(error, "status_code", None)
    status_info = f" (HTTP {status})" if isinstance(status, int) and status > 0 else ""
    return (
        f"{error_class}{message}{status_info}\n"
        f"(model: {model}, mode: {mode}, phase: {phase}, iteration {iteration}/{max_iterations})"
    )
