"""Interactive chat loop: many tasks in one session."""

from __future__ import annotations

import asyncio
import signal

from rich.console import Console

from ollagent.approval import ApprovalGate
from ollagent.config import AppConfig
from ollagent.controller import AgentRunResult, RunState
from ollagent.errors import AgentError
from ollagent.events import CallbackEventSink
from ollagent.modes import AgentMode
from ollagent.runner import AgentRunner
from ollagent.session import export_as_markdown
from ollagent.types import Session
from ollagent.ui import renderer
from ollagent.ui.prompts import create_prompt_session, get_prompt_text

console = Console()


async def run_interruptible(
    runner: AgentRunner,
    session_id: str,
    task: str,
    mode: str | None = None,
    max_iterations: int | None = None,
) -> AgentRunResult:
    """Submit a task with Ctrl+C mapped to a cooperative cancel of that task."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, runner.cancel, session_id)
        installed = True
    except (NotImplementedError, RuntimeError):
        # No signal handlers off the main thread or on Windows loops
        installed = False
    try:
        return await runner.submit(session_id, task, mode=mode, max_iterations=max_iterations)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def show_result(result: AgentRunResult, handler: renderer.ConsoleEventHandler):
    """Render whatever the user has not already seen of a finished run."""
    if result.state == RunState.CANCELLED:
        renderer.show_info("[cancelled]")
    elif result.state == RunState.COMPLETED and result.final_text.strip() != handler.last_text.strip():
        renderer.render_final_text(result.final_text)


class REPL:
    """Interactive REPL that sends each input to the agent as a task."""

    def __init__(self, config: AppConfig, session: Session | None = None):
        self.config = config
        self.approvals = ApprovalGate()
        self.handler = renderer.ConsoleEventHandler(self.approvals, verbose=config.verbose)
        self.runner = AgentRunner(config, events=CallbackEventSink(self.handler), approvals=self.approvals)
        self.session = session or self.runner.create_session(title="chat")
        self.mode = self.session.mode
        self.prompt_session = create_prompt_session()
        self._running = True
        self._last_checkpoint: str | None = None

    def _resolve_checkpoint(self, arg: str) -> str | None:
        if arg:
            return arg
        if self._last_checkpoint:
            return self._last_checkpoint
        checkpoints = self.runner.store.get_checkpoints(self.session.id)
        if not checkpoints:
            renderer.show_info("No checkpoints in this session.")
            return None
        return checkpoints[-1].id

    def _handle_slash_command(self, text: str) -> bool:
        """Handle slash commands. Returns True if handled."""
        parts = text.strip().split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        if cmd == "/help":
            renderer.show_help()
            return True

        elif cmd == "/mode":
            if not arg:
                renderer.show_info(f"Current mode: {self.mode}")
                return True
            try:
                self.mode = AgentMode(arg).value
            except ValueError:
                renderer.show_error(f"Unknown mode: {arg}")
                return True
            self.runner.store.update_session(self.session.id, mode=self.mode)
            renderer.show_info(f"Mode: {self.mode}")
            return True

        elif cmd == "/checkpoints":
            renderer.show_checkpoints(self.runner.store.get_checkpoints(self.session.id))
            return True

        elif cmd in ("/diff", "/keep", "/undo"):
            checkpoint_id = self._resolve_checkpoint(arg)
            if checkpoint_id is None:
                return True
            manager = self.runner.checkpoints
            try:
                if cmd == "/diff":
                    for snapshot in self.runner.store.get_file_snapshots(checkpoint_id):
                        renderer.show_diff(manager.diff_text(checkpoint_id, snapshot.path))
                elif cmd == "/keep":
                    status = manager.keep_all(checkpoint_id)
                    renderer.show_info(f"{checkpoint_id}: {status.value}")
                else:
                    result = manager.undo_all(checkpoint_id)
                    for error in result.errors:
                        renderer.show_error(error)
                    renderer.show_info(f"Reverted {len(result.reverted)} file(s)")
            except AgentError as e:
                renderer.show_error(str(e))
            return True

        elif cmd == "/export":
            path = export_as_markdown(self.runner.store.get_messages(self.session.id), arg or None)
            renderer.show_info(f"Exported to {path}")
            return True

        elif cmd in ("/exit", "/quit"):
            self._running = False
            return True

        renderer.show_error(f"Unknown command: {cmd}. Type /help for commands.")
        return True

    async def _run_task(self, task: str):
        try:
            result = await run_interruptible(self.runner, self.session.id, task, mode=self.mode)
        except AgentError as e:
            renderer.show_error(str(e))
            return
        if result.files_changed:
            self._last_checkpoint = result.checkpoint_id
        show_result(result, self.handler)

    async def run(self, initial_prompt: str | None = None):
        """Main REPL loop."""
        renderer.show_welcome(self.config.model, self.config.working_dir, self.session.id, self.mode)

        if initial_prompt:
            renderer.show_info(f"> {initial_prompt[:200]}{'...' if len(initial_prompt) > 200 else ''}")
            await self._run_task(initial_prompt)

        while self._running:
            try:
                prompt = get_prompt_text(self.config.model, self.mode)
                user_input = (await self.prompt_session.prompt_async(prompt)).strip()

                if not user_input:
                    continue

                if user_input.startswith("/"):
                    if self._handle_slash_command(user_input):
                        continue

                await self._run_task(user_input)

            except KeyboardInterrupt:
                console.print()
                continue
            except EOFError:
                break

        console.print("[dim]Goodbye![/dim]")
