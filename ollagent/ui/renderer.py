"""Rich-based terminal UI rendering."""

from __future__ import annotations

import asyncio
import difflib
import json
import time

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.status import Status
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from ollagent.approval import ApprovalGate
from ollagent.events import AgentEvent, EventType
from ollagent.types import Checkpoint, Session


console = Console()

SEVERITY_STYLES = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "green",
    "none": "dim",
}


def show_welcome(model: str, working_dir: str, session_id: str, mode: str):
    """Display welcome banner."""
    console.print()
    console.print(
        Panel(
            f"[bold cyan]ollagent[/bold cyan] - Local Coding Agent\n"
            f"Model: [green]{model}[/green]  |  Mode: [green]{mode}[/green]  |  Dir: [dim]{working_dir}[/dim]\n"
            f"Session: [dim]{session_id}[/dim]\n"
            f"Type [bold]/help[/bold] for commands, [bold]Ctrl+C[/bold] to cancel, [bold]Ctrl+D[/bold] to exit",
            border_style="cyan",
            padding=(1, 2),
        )
    )
    console.print()


def show_help():
    """Display help table."""
    table = Table(title="Commands", border_style="dim")
    table.add_column("Command", style="bold cyan", no_wrap=True)
    table.add_column("Description")
    table.add_row("/help", "Show this help message")
    table.add_row("/mode <name>", "Switch mode (agent, explore, review, deep-explore, deep-explore-write)")
    table.add_row("/checkpoints", "List checkpoints of this session")
    table.add_row("/diff [id]", "Show changes of a checkpoint (default: latest)")
    table.add_row("/keep [id]", "Keep all changes of a checkpoint (default: latest)")
    table.add_row("/undo [id]", "Undo all changes of a checkpoint (default: latest)")
    table.add_row("/export [file]", "Export conversation as markdown")
    table.add_row("/exit", "Exit")
    table.add_row("", "")
    table.add_row("[bold]Shortcuts[/bold]", "")
    table.add_row("Ctrl+C", "Cancel the running task")
    table.add_row("Ctrl+D", "Exit")
    table.add_row("Esc+Enter", "Insert newline in input")
    table.add_row("Up/Down", "Navigate command history")
    console.print(table)
    console.print()


def show_tool_action(data: dict):
    """Display one tool call as it starts and finishes."""
    tool = data.get("tool", "?")
    status = data.get("status")
    prefix = "  [dim]↳ sub-agent[/dim] " if data.get("subagent") else ""
    if status == "pending":
        console.print(f"{prefix}[dim]Preparing {tool}...[/dim]")
    elif status == "running":
        console.print(
            Panel(
                _format_tool_args(tool, data.get("arguments") or {}),
                title=f"{prefix}[bold yellow]Tool: {tool}[/bold yellow]",
                border_style="yellow",
                padding=(0, 1),
            )
        )
    elif status == "error":
        console.print(f"{prefix}[red]✗ {tool}:[/red] {data.get('summary', '')}")
    else:
        cached = " [dim](cached)[/dim]" if data.get("cached") else ""
        console.print(f"{prefix}[green]✓[/green] [dim]{data.get('summary', '')}[/dim]{cached}")


def show_approval_request(request: dict):
    """Display a pending approval with its severity."""
    severity = request.get("severity", "medium")
    style = SEVERITY_STYLES.get(severity, "yellow")
    details = request.get("details") or {}
    body = _format_tool_args(details.get("tool", ""), details.get("arguments") or {})
    reason = request.get("reason")
    content = Text()
    content.append(severity.upper(), style=style)
    if reason:
        content.append(f"  {reason}")
    content.append("\n")
    content.append(body)
    console.print(
        Panel(
            content,
            title=f"[{style}]Approve {request.get('kind', 'action')}: {request.get('subject', '')}[/{style}]",
            border_style=style,
            padding=(0, 1),
        )
    )


def ask_approval() -> tuple[bool, str | None]:
    """Ask the user to approve. Returns (approved, edited_payload)."""
    try:
        response = console.input(
            "[bold yellow]Allow? (y)es / (n)o / (e)dit: [/bold yellow]"
        ).strip().lower()
        if response in ("e", "edit"):
            edited = console.input("[bold yellow]Replacement: [/bold yellow]")
            return True, edited or None
        return response in ("y", "yes", ""), None
    except (EOFError, KeyboardInterrupt):
        return False, None


def render_final_text(text: str):
    """Render the final markdown text."""
    if text.strip():
        console.print(Markdown(text.strip()))


def show_token_usage(data: dict):
    """Display prompt usage against the context window."""
    prompt = data.get("prompt_tokens") or 0
    window = data.get("context_window") or 0
    completion = data.get("completion_tokens") or 0
    pct = f" ({prompt / window:.0%} of {window})" if window else ""
    console.print(f"[dim]tokens: {prompt} in{pct} / {completion} out[/dim]")


def show_files_changed(checkpoint_id: str, files: list[dict]):
    """Display per-file additions and deletions for a checkpoint."""
    table = Table(title=f"Changes in {checkpoint_id}", border_style="dim")
    table.add_column("File", style="bold")
    table.add_column("Action")
    table.add_column("+", style="green", justify="right")
    table.add_column("-", style="red", justify="right")
    for f in files:
        table.add_row(f.get("path", ""), f.get("action", ""), str(f.get("additions", 0)), str(f.get("deletions", 0)))
    console.print(table)
    console.print(f"[dim]Keep with [bold]ollagent keep {checkpoint_id}[/bold], revert with [bold]ollagent undo {checkpoint_id}[/bold][/dim]")


def show_sessions(sessions: list[Session]):
    """Display saved sessions."""
    if not sessions:
        show_info("No sessions.")
        return
    table = Table(title="Sessions", border_style="dim")
    table.add_column("ID", style="bold cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Mode")
    table.add_column("Model")
    table.add_column("Updated", style="dim")
    for s in sessions:
        table.add_row(s.id, s.title, s.mode, s.model, _format_time(s.updated_at))
    console.print(table)


def show_checkpoints(checkpoints: list[Checkpoint]):
    """Display checkpoints with their file counts and status."""
    if not checkpoints:
        show_info("No checkpoints.")
        return
    table = Table(title="Checkpoints", border_style="dim")
    table.add_column("ID", style="bold cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Files", justify="right")
    table.add_column("Created", style="dim")
    for c in checkpoints:
        table.add_row(c.id, c.status.value, str(len(c.snapshots)), _format_time(c.created_at))
    console.print(table)


def show_diff(diff: str):
    """Display a unified diff with syntax highlighting."""
    if not diff.strip():
        show_info("No changes.")
        return
    console.print(Syntax(diff, "diff", theme="monokai", line_numbers=False))


def _format_time(timestamp: float) -> str:
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(timestamp))


def _format_tool_args(tool_name: str, tool_args: dict) -> str | Text:
    """Format tool arguments for display."""
    if tool_name == "run_terminal_command":
        return tool_args.get("command", str(tool_args))
    elif tool_name == "read_file":
        path = tool_args.get("path", "")
        extra = ""
        if "offset" in tool_args:
            extra += f" (from line {tool_args['offset']})"
        if "limit" in tool_args:
            extra += f" (limit {tool_args['limit']} lines)"
        return f"{path}{extra}"
    elif tool_name == "write_file":
        path = tool_args.get("path", "")
        content = tool_args.get("content", "")
        lines = content.count("\n") + 1
        preview = content[:500]
        if len(content) > 500:
            preview += f"\n... [{len(content)} chars total]"
        return f"{path} ({lines} lines)\n{preview}"
    elif tool_name == "edit_file":
        return _format_edit_diff(
            tool_args.get("path", ""), tool_args.get("old_string", ""), tool_args.get("new_string", ""),
        )
    elif tool_name == "search_workspace":
        return tool_args.get("query", str(tool_args))
    elif tool_name == "find_files":
        return tool_args.get("pattern", str(tool_args))
    elif tool_name == "list_files":
        return tool_args.get("path", ".") or "."
    elif tool_name == "run_subagent":
        return tool_args.get("title") or tool_args.get("task", "")
    else:
        return json.dumps(tool_args, indent=2)


def _format_edit_diff(path: str, old: str, new: str) -> Text:
    """Format edit_file args as a unified diff."""
    diff = difflib.unified_diff(
        old.splitlines(keepends=True),
        new.splitlines(keepends=True),
        fromfile=path, tofile=path,
        lineterm="",
    )

    text = Text()
    text.append(f"{path}\n", style="bold")
    has_diff = False
    for line in diff:
        has_diff = True
        line_stripped = line.rstrip("\n")
        if line_stripped.startswith("---") or line_stripped.startswith("+++"):
            text.append(line_stripped + "\n", style="bold")
        elif line_stripped.startswith("@@"):
            text.append(line_stripped + "\n", style="cyan")
        elif line_stripped.startswith("-"):
            text.append(line_stripped + "\n", style="red")
        elif line_stripped.startswith("+"):
            text.append(line_stripped + "\n", style="green")
        else:
            text.append(line_stripped + "\n")

    if not has_diff:
        text.append(f"- {old}\n", style="red")
        text.append(f"+ {new}\n", style="green")

    return text


def start_thinking_spinner() -> Status:
    """Start a thinking spinner. Returns the Status object to stop later."""
    status = Status("[dim]Thinking...[/dim]", spinner="dots", console=console)
    status.start()
    return status


def stop_thinking_spinner(status: Status | None):
    """Stop the thinking spinner."""
    if status is not None:
        status.stop()


def show_warning(message: str):
    """Display a warning message."""
    console.print(f"[yellow]Warning:[/yellow] {message}")


def show_error(message: str):
    """Display an error message."""
    console.print(f"[bold red]Error:[/bold red] {message}")


def show_info(message: str):
    """Display an info message."""
    console.print(f"[dim]{message}[/dim]")


class ConsoleEventHandler:
    """Renders agent events and answers approval requests from the terminal.

    Without a terminal to ask on (``interactive=False``) gated actions are
    declined. Auto-approval is session policy and never reaches this handler
    except for critical actions, which always need a human.
    """

    def __init__(self, approvals: ApprovalGate, interactive: bool = True, verbose: bool = False):
        self.approvals = approvals
        self.interactive = interactive
        self.verbose = verbose
        self.last_text = ""
        self._spinner: Status | None = None
        # One approval prompt on the terminal at a time
        self._approval_lock = asyncio.Lock()

    async def __call__(self, event: AgentEvent) -> None:
        data = event.data
        if event.type == EventType.THINKING:
            if self._spinner is None:
                self._spinner = start_thinking_spinner()
            return
        self._stop_spinner()

        if event.type == EventType.STREAM_CHUNK:
            self.last_text = data.get("text", "")
            render_final_text(self.last_text)
        elif event.type == EventType.SHOW_TOOL_ACTION:
            show_tool_action(data)
        elif event.type == EventType.REQUEST_APPROVAL:
            await self._handle_approval(data["request"])
        elif event.type == EventType.TOKEN_USAGE:
            if self.verbose:
                show_token_usage(data)
        elif event.type == EventType.CONTEXT_COMPACTED:
            show_info(
                f"Context compacted: {data.get('summarized_messages')} messages summarized "
                f"({data.get('tokens_before')} -> {data.get('tokens_after')} tokens)"
            )
        elif event.type == EventType.FILES_CHANGED:
            show_files_changed(data.get("checkpoint_id", ""), data.get("files", []))
        elif event.type == EventType.SHOW_WARNING:
            show_warning(data.get("message", ""))
        elif event.type == EventType.SHOW_ERROR:
            show_error(data.get("message", ""))

    async def _handle_approval(self, request: dict):
        async with self._approval_lock:
            if not self.approvals.is_pending(request["id"]):
                # Resolved or cancelled while an earlier prompt was open
                return
            show_approval_request(request)
            if not self.interactive:
                show_warning("No terminal to ask for approval; declined.")
                self.approvals.resolve(request["id"], False)
                return
            approved, edited = await asyncio.to_thread(ask_approval)
            self.approvals.resolve(request["id"], approved, edited)

    def _stop_spinner(self):
        stop_thinking_spinner(self._spinner)
        self._spinner = None
