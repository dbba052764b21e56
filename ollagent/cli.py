"""ollagent - local coding agent. Command-line entry point."""

from __future__ import annotations

import asyncio
import os
import sys

import click

from ollagent.approval import ApprovalGate
from ollagent.checkpoints import CheckpointManager
from ollagent.config import AppConfig
from ollagent.controller import RunState
from ollagent.errors import AgentError
from ollagent.events import CallbackEventSink
from ollagent.logging_config import setup_logging
from ollagent.modes import AgentMode
from ollagent.runner import AgentRunner
from ollagent.session import SessionStore, export_as_markdown
from ollagent.ui import renderer

MODE_CHOICES = [m.value for m in AgentMode]


def _resolve_dir(working_dir: str | None) -> str:
    if not working_dir:
        return os.getcwd()
    wd = os.path.abspath(working_dir)
    if not os.path.isdir(wd):
        click.echo(f"Error: Directory not found: {wd}", err=True)
        sys.exit(1)
    return wd


def _checkpoints(ctx: click.Context) -> CheckpointManager:
    return CheckpointManager(SessionStore(), ctx.obj["working_dir"])


@click.group()
@click.option("-d", "--dir", "working_dir", default=None, help="Working directory")
@click.option("-v", "--verbose", is_flag=True, help="Show debug logs on stderr")
@click.pass_context
def main(ctx: click.Context, working_dir: str | None, verbose: bool):
    """ollagent - a local coding agent powered by Ollama."""
    setup_logging(verbose=verbose)
    ctx.ensure_object(dict)
    ctx.obj["working_dir"] = _resolve_dir(working_dir)
    ctx.obj["verbose"] = verbose


@main.command()
@click.argument("task")
@click.option("-m", "--model", default=None, help="Model to use")
@click.option("--mode", type=click.Choice(MODE_CHOICES), default=None, help="Agent mode")
@click.option("-y", "--yes", "auto_approve", is_flag=True,
              help="Auto-approve commands and sensitive edits (critical actions still ask)")
@click.option("--max-iterations", type=int, default=None, help="Override the iteration cap")
@click.option("--no-think", is_flag=True, help="Disable model reasoning output")
@click.option("--session", "session_id", default=None, help="Continue an existing session")
@click.pass_context
def run(ctx: click.Context, task: str, model: str | None, mode: str | None, auto_approve: bool,
        max_iterations: int | None, no_think: bool, session_id: str | None):
    """Run a single TASK to completion."""
    config = AppConfig.from_file_and_cli({
        "working_dir": ctx.obj["working_dir"],
        "model": model,
        "mode": mode,
        "max_iterations": max_iterations,
        "enable_thinking": False if no_think else None,
        "auto_approve_commands": True if auto_approve else None,
        "auto_approve_sensitive_edits": True if auto_approve else None,
        "verbose": ctx.obj["verbose"],
    })

    approvals = ApprovalGate()
    handler = renderer.ConsoleEventHandler(
        approvals, interactive=sys.stdin.isatty(), verbose=config.verbose,
    )
    runner = AgentRunner(config, events=CallbackEventSink(handler), approvals=approvals)

    try:
        if session_id:
            changes = {}
            if model:
                changes["model"] = model
            if auto_approve:
                changes["auto_approve_commands"] = True
                changes["auto_approve_sensitive_edits"] = True
            if changes:
                runner.store.update_session(session_id, **changes)
            else:
                runner.store.get_session(session_id)
        else:
            session_id = runner.create_session(title=task[:60]).id
    except AgentError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    from ollagent.repl import run_interruptible, show_result

    try:
        result = asyncio.run(run_interruptible(runner, session_id, task, mode=mode, max_iterations=max_iterations))
    except AgentError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    show_result(result, handler)
    click.echo(f"Session: {session_id}", err=True)
    if result.state == RunState.ABORTED:
        sys.exit(1)
    if result.state == RunState.CANCELLED:
        sys.exit(130)


@main.command()
@click.option("-m", "--model", default=None, help="Model to use")
@click.option("--mode", type=click.Choice(MODE_CHOICES), default=None, help="Agent mode")
@click.option("--session", "session_id", default=None, help="Resume an existing session")
@click.argument("prompt", required=False, default=None)
@click.pass_context
def chat(ctx: click.Context, model: str | None, mode: str | None, session_id: str | None, prompt: str | None):
    """Start an interactive session."""
    from ollagent.repl import REPL

    config = AppConfig.from_file_and_cli({
        "working_dir": ctx.obj["working_dir"],
        "model": model,
        "mode": mode,
        "verbose": ctx.obj["verbose"],
    })
    session = None
    if session_id:
        try:
            session = SessionStore().get_session(session_id)
        except AgentError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    repl = REPL(config, session=session)
    asyncio.run(repl.run(initial_prompt=prompt))


@main.command()
def sessions():
    """List saved sessions."""
    renderer.show_sessions(SessionStore().list_sessions())


@main.command()
@click.argument("session_id")
def checkpoints(session_id: str):
    """List the checkpoints of a session."""
    renderer.show_checkpoints(SessionStore().get_checkpoints(session_id))


@main.command()
@click.argument("checkpoint_id")
@click.argument("path", required=False, default=None)
@click.pass_context
def keep(ctx: click.Context, checkpoint_id: str, path: str | None):
    """Accept the changes of a checkpoint (or of one PATH in it)."""
    manager = _checkpoints(ctx)
    try:
        if path:
            if not manager.keep_file(checkpoint_id, path):
                click.echo(f"No pending change for {path}", err=True)
                sys.exit(1)
            click.echo(f"Kept {path}")
        else:
            status = manager.keep_all(checkpoint_id)
            click.echo(f"{checkpoint_id}: {status.value}")
    except AgentError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command()
@click.argument("checkpoint_id")
@click.argument("path", required=False, default=None)
@click.pass_context
def undo(ctx: click.Context, checkpoint_id: str, path: str | None):
    """Revert the changes of a checkpoint (or of one PATH in it)."""
    manager = _checkpoints(ctx)
    try:
        result = manager.undo_file(checkpoint_id, path) if path else manager.undo_all(checkpoint_id)
    except AgentError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    for reverted in result.reverted:
        click.echo(f"Reverted {reverted}")
    for error in result.errors:
        click.echo(f"Error: {error}", err=True)
    if not result.success:
        sys.exit(1)


@main.command()
@click.argument("checkpoint_id")
@click.argument("path", required=False, default=None)
@click.pass_context
def diff(ctx: click.Context, checkpoint_id: str, path: str | None):
    """Show the unified diff of a checkpoint's changes."""
    manager = _checkpoints(ctx)
    try:
        paths = [path] if path else [s.path for s in manager.store.get_file_snapshots(checkpoint_id)]
        for p in paths:
            renderer.show_diff(manager.diff_text(checkpoint_id, p))
    except AgentError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command()
@click.argument("session_id")
@click.option("-o", "--output", default=None, help="Output markdown file")
def export(session_id: str, output: str | None):
    """Export a session transcript as markdown."""
    store = SessionStore()
    try:
        store.get_session(session_id)
    except AgentError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(export_as_markdown(store.get_messages(session_id), output))


if __name__ == "__main__":
    main()
