"""Iteration loop controller: drives one task from prompt to final answer.

Each ``run`` streams a model turn, executes the tool calls it contains and
feeds the results back, until the model signals completion, the run is
cancelled or aborted, a repetition hard break fires, or the iteration cap is
reached. Per-run state (result cache, repetition streaks, tool history) is
created inside ``run`` and never shared between invocations.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ollagent.approval import ApprovalGate, ApprovalKind, ApprovalRequest, ApprovalResponse
from ollagent.cache import ToolResultCache
from ollagent.checkpoints import CheckpointManager
from ollagent.compactor import ContextCompactor, estimate_messages_tokens, estimate_tokens_by_category
from ollagent.config import (
    MAX_COMPLETION_REJECTIONS,
    MAX_TOOLS_PER_BATCH,
    SUBAGENT_MAX_ITERATIONS,
    AppConfig,
)
from ollagent.control import (
    FINAL_SYNTHESIS_MESSAGE,
    NO_MUTATION_MESSAGE,
    TERMINAL_NUDGE_MESSAGE,
    TRUNCATION_MESSAGE,
    WRAP_UP_PROBE,
    NoToolAction,
    ToolHistoryEntry,
    build_continuation_message,
    build_tool_call_summary,
    build_tools_reminder,
    check_no_tool_completion,
    dedupe_thinking_echo,
    describe_tool_call,
    format_fatal_error,
    history_entry,
    is_completion_signaled,
    is_mutation_task,
    is_terminal_task,
    strip_control_markers,
    summarize_result,
    token_reminder,
)
from ollagent.errors import AgentError, ReasoningUnsupportedError
from ollagent.events import AgentEvent, EventSink, EventType, NullEventSink
from ollagent.extractor import ToolCall, extract_tool_calls, recover_tool_call_from_error, remove_tool_calls
from ollagent.file_lock import FileLockManager
from ollagent.llm import TRANSIENT_ERRORS, ChatRequest, LLMClient, StreamAccumulator, build_chat_request
from ollagent.logging_config import log_approval_decision, log_tool_execution
from ollagent.modes import WRITE_TOOLS, AgentMode, FilteredToolRegistry
from ollagent.repetition import CALL_CORRECTION_MESSAGE, TEXT_CORRECTION_MESSAGE, RepetitionDetector
from ollagent.safety import ApprovalDecision, compute_command_approval, compute_file_edit_approval
from ollagent.session import SessionStore
from ollagent.system_prompt import build_system_prompt
from ollagent.tools import ExecutionContext, ToolOutput, ToolRegistry
from ollagent.tools.base import BaseTool
from ollagent.types import Session

logger = logging.getLogger("ollagent.controller")

# Prompt tokens below this share of our own estimate suggest the server cut the prompt
TRUNCATION_SUSPECT_RATIO = 0.5
TRUNCATION_SUSPECT_MIN_TOKENS = 1000


class RunState(str, Enum):
    STARTING = "starting"
    STREAMING = "streaming"
    PARSING = "parsing"
    TOOL_EXECUTING = "tool_executing"
    NO_TOOL_CONTINUE = "no_tool_continue"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


class StopReason(str, Enum):
    COMPLETED = "completed"
    IMPLICIT = "implicit"
    HARD_BREAK = "hard_break"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class AgentRunResult:
    final_text: str
    checkpoint_id: str | None
    state: RunState
    iterations: int
    files_changed: list[str] = field(default_factory=list)
    error: str | None = None
    stop_reason: StopReason | None = None


@dataclass
class _Run:
    """Mutable state of one ``AgentController.run`` call."""

    task: str
    mode: AgentMode
    max_iterations: int
    cancel_event: asyncio.Event
    tools: FilteredToolRegistry
    messages: list[dict[str, Any]]
    cache: ToolResultCache
    think: bool
    detector: RepetitionDetector = field(default_factory=RepetitionDetector)
    checkpoint_id: str | None = None
    state: RunState = RunState.STARTING
    stop_reason: StopReason | None = None
    phase: str = "preparing request"
    iteration: int = 0
    history: list[ToolHistoryEntry] = field(default_factory=list)
    files_changed: list[str] = field(default_factory=list)
    visible_texts: list[str] = field(default_factory=list)
    pending_notes: list[str] = field(default_factory=list)
    reminders_sent: set[int] = field(default_factory=set)
    prompt_tokens: int | None = None
    ran_command: bool = False
    consecutive_no_tool: int = 0
    completion_rejections: int = 0
    terminal_nudge_sent: bool = False
    final_text: str | None = None
    error: str | None = None

    @property
    def has_written_files(self) -> bool:
        return bool(self.files_changed)


class _SubagentEventSink(EventSink):
    """Forwards only a sub-agent's progress and approval events to the parent sink."""

    FORWARDED = {
        EventType.SHOW_TOOL_ACTION,
        EventType.REQUEST_APPROVAL,
        EventType.APPROVAL_RESOLVED,
        EventType.SHOW_WARNING,
    }

    def __init__(self, parent: EventSink):
        self._parent = parent

    async def emit(self, event: AgentEvent) -> None:
        if event.type in self.FORWARDED:
            event.data["subagent"] = True
            await self._parent.emit(event)


class AgentController:
    """Runs tasks for one session.

    The controller depends on the tool registry interface only. Concrete
    tools declare what they are (read-only, file-mutating, command-running,
    model-calling) and the loop routes them accordingly.
    """

    def __init__(
        self,
        session: Session,
        config: AppConfig,
        registry: ToolRegistry,
        store: SessionStore | None = None,
        llm: LLMClient | None = None,
        approvals: ApprovalGate | None = None,
        events: EventSink | None = None,
        compactor: ContextCompactor | None = None,
        checkpoints: CheckpointManager | None = None,
        file_locks: FileLockManager | None = None,
        is_subagent: bool = False,
    ):
        self.session = session
        self.config = config
        self.registry = registry
        self.store = store
        self.llm = llm or LLMClient(config.ollama_host)
        self.approvals = approvals or ApprovalGate()
        self.events = events or NullEventSink()
        self.compactor = compactor or ContextCompactor(self.llm)
        self.file_locks = file_locks or FileLockManager()
        self.is_subagent = is_subagent
        # Sub-agents neither persist turns nor own a checkpoint
        self.persist = store is not None and not is_subagent
        if checkpoints is None and self.persist:
            checkpoints = CheckpointManager(store, registry.working_dir)
        self.checkpoints = checkpoints if not is_subagent else None

    # ── Public API ────────────────────────────────────────────────────────

    async def run(
        self,
        task: str,
        mode: AgentMode | str | None = None,
        max_iterations: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AgentRunResult:
        """Drive *task* to completion and return the final answer."""
        mode = AgentMode(mode or self.session.mode)
        if max_iterations is None:
            max_iterations = (
                SUBAGENT_MAX_ITERATIONS if self.is_subagent
                else self.config.max_iterations_for(mode.value)
            )
        tools = FilteredToolRegistry(
            self.registry, mode, exclude={"run_subagent"} if self.is_subagent else None,
        )
        run = _Run(
            task=task,
            mode=mode,
            max_iterations=max_iterations,
            cancel_event=cancel_event or asyncio.Event(),
            tools=tools,
            messages=self._initial_messages(task, mode, tools),
            cache=ToolResultCache(self.registry.read_only_tool_names()),
            think=self.config.enable_thinking,
        )

        if self.checkpoints is not None:
            run.checkpoint_id = self.checkpoints.create_checkpoint(self.session.id)
        self._persist("user", task, {"mode": mode.value, "checkpoint_id": run.checkpoint_id})
        if self.persist:
            self.store.update_session(self.session.id, status="running")

        logger.info(
            "Run started (%s, cap %d)", mode.value, max_iterations,
            extra={"session_id": self.session.id, "checkpoint_id": run.checkpoint_id},
        )
        try:
            await self._loop(run)
            return await self._finish(run)
        finally:
            if self.persist:
                self.store.update_session(self.session.id, status="idle")

    # ── Loop ──────────────────────────────────────────────────────────────

    async def _loop(self, run: _Run) -> None:
        while run.iteration < run.max_iterations:
            if run.cancel_event.is_set():
                self._mark_cancelled(run)
                return
            run.iteration += 1
            try:
                if await self._iterate(run):
                    return
            except Exception as e:
                await self._abort(run, e)
                return

        run.stop_reason = StopReason.MAX_ITERATIONS
        logger.info(
            "Iteration cap reached (%d)", run.max_iterations,
            extra={"session_id": self.session.id, "iteration": run.iteration},
        )

    async def _iterate(self, run: _Run) -> bool:
        """One model turn plus its tool batch. Returns True when the loop must stop."""
        run.phase = "preparing request"
        if run.iteration > 1:
            await self._maybe_compact(run)
        for note in run.pending_notes:
            run.messages.append({"role": "user", "content": note})
        run.pending_notes.clear()

        request = build_chat_request(
            model=self.session.model,
            messages=run.messages,
            tools=run.tools.tool_definitions(),
            think=run.think,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            context_window=self.config.context_window,
            keep_alive=self.config.keep_alive,
        )

        run.phase = "streaming response from model"
        run.state = RunState.STREAMING
        acc, cancelled = await self._stream_turn(run, request)
        if cancelled:
            if acc.thinking:
                self._persist("thinking", acc.thinking, {"iteration": run.iteration, "cancelled": True})
            self._mark_cancelled(run)
            return True
        await self._track_tokens(run, acc)

        run.phase = "parsing tool calls"
        run.state = RunState.PARSING
        response = dedupe_thinking_echo(acc.text, acc.thinking)
        visible = strip_control_markers(remove_tool_calls(response))
        if visible:
            run.visible_texts.append(visible)
            await self._emit(EventType.STREAM_CHUNK, text=visible, iteration=run.iteration)

        if is_completion_signaled(response, acc.thinking):
            return self._handle_completion(run, visible)

        calls = extract_tool_calls(acc.text, acc.tool_calls, known_tools=set(self.registry.tool_names))
        if not calls:
            calls = [
                call for call in (
                    recover_tool_call_from_error(error, acc.tool_calls)
                    for error in acc.tool_parse_errors
                ) if call is not None
            ]
            if calls:
                logger.info("Recovered %d tool call(s) from backend parse errors", len(calls))

        if acc.truncated and not calls:
            logger.info("Turn truncated at the output limit; asking the model to continue")
            run.messages.append({"role": "assistant", "content": acc.text})
            run.messages.append({"role": "user", "content": TRUNCATION_MESSAGE})
            if visible:
                self._persist("assistant", visible, {"iteration": run.iteration, "truncated": True})
            return False

        calls = await self._filter_calls(run, calls)
        if not calls:
            return self._handle_no_tools(run, visible, acc.thinking)
        run.consecutive_no_tool = 0

        verdict = run.detector.check(visible, [c.signature() for c in calls], acc.thinking)
        content = visible or build_tool_call_summary(calls) or ""
        if verdict.should_hard_break:
            logger.warning(
                "Repetition hard break: %s", verdict.reason,
                extra={"session_id": self.session.id, "iteration": run.iteration},
            )
            run.messages.append({"role": "assistant", "content": content})
            self._persist("assistant", content, {"iteration": run.iteration})
            run.stop_reason = StopReason.HARD_BREAK
            await self._emit(EventType.SHOW_WARNING, message=f"Stopping: {verdict.reason}")
            return True
        if verdict.skip_execution:
            run.messages.append({"role": "assistant", "content": content})
            run.messages.append({"role": "user", "content": CALL_CORRECTION_MESSAGE})
            self._persist("assistant", content, {"iteration": run.iteration, "skipped_calls": True})
            return False

        wire_calls = [c.to_wire() for c in calls]
        run.messages.append({"role": "assistant", "content": content, "tool_calls": wire_calls})
        self._persist("assistant", content, {"iteration": run.iteration, "tool_calls": wire_calls})

        run.phase = "executing tools: " + ", ".join(c.name for c in calls)
        run.state = RunState.TOOL_EXECUTING
        outputs = await self._execute_batch(run, calls)
        for call, output in zip(calls, outputs):
            run.messages.append({"role": "tool", "content": output.output, "tool_name": call.name})
            self._persist("tool", output.output, {
                "tool_name": call.name,
                "tool_input": call.arguments,
                "error": output.error,
                "cached": output.cached,
            })
            run.history.append(history_entry(call, output.output, output.error))

        if run.cancel_event.is_set():
            self._mark_cancelled(run)
            return True

        if verdict.inject_correction:
            run.messages.append({"role": "user", "content": TEXT_CORRECTION_MESSAGE})
        run.messages.append({
            "role": "user",
            "content": build_tools_reminder(run.iteration, run.max_iterations, run.files_changed, run.history),
        })
        return False

    async def _stream_turn(self, run: _Run, request: ChatRequest) -> tuple[StreamAccumulator, bool]:
        """Consume one streamed turn. Returns (accumulator, cancelled)."""
        acc = StreamAccumulator()
        try:
            async with aclosing(self.llm.stream_chat(request)) as stream:
                async for chunk in stream:
                    if run.cancel_event.is_set():
                        return acc, True
                    partial = acc.add(chunk)
                    if chunk.thinking:
                        await self._emit(EventType.THINKING, text=chunk.thinking)
                    if partial:
                        await self._emit(EventType.SHOW_TOOL_ACTION, tool=partial, status="pending")
        except ReasoningUnsupportedError:
            if not request.think or acc.chunks:
                raise
            logger.warning(
                "Model %s rejected reasoning mode; retrying without it", request.model,
                extra={"session_id": self.session.id, "iteration": run.iteration},
            )
            run.think = False
            request.think = False
            return await self._stream_turn(run, request)
        return acc, run.cancel_event.is_set()

    async def _track_tokens(self, run: _Run, acc: StreamAccumulator) -> None:
        if not acc.prompt_tokens:
            return
        estimate = estimate_messages_tokens(run.messages)
        if estimate > TRUNCATION_SUSPECT_MIN_TOKENS and acc.prompt_tokens < estimate * TRUNCATION_SUSPECT_RATIO:
            logger.warning(
                "Possible server-side prompt truncation: %d prompt tokens vs ~%d estimated",
                acc.prompt_tokens, estimate,
                extra={"session_id": self.session.id, "iteration": run.iteration},
            )
        run.prompt_tokens = acc.prompt_tokens
        breakdown = estimate_tokens_by_category(run.messages, len(run.tools.tool_names), acc.prompt_tokens)
        await self._emit(
            EventType.TOKEN_USAGE,
            prompt_tokens=acc.prompt_tokens,
            completion_tokens=acc.completion_tokens,
            context_window=self.config.context_window,
            breakdown=breakdown.to_dict(),
        )

        reminder = token_reminder(acc.prompt_tokens, self.config.context_window)
        if reminder and reminder[0] not in run.reminders_sent:
            run.reminders_sent.add(reminder[0])
            run.pending_notes.append(reminder[1])

    async def _maybe_compact(self, run: _Run) -> None:
        result = await self.compactor.compact_if_needed(
            run.messages, self.config.context_window, self.session.model, run.prompt_tokens,
        )
        if result is None:
            return
        # The last real count described the uncompacted prompt
        run.prompt_tokens = None
        await self._emit(
            EventType.CONTEXT_COMPACTED,
            summarized_messages=result.summarized_messages,
            tokens_before=result.tokens_before,
            tokens_after=result.tokens_after,
        )

    # ── Completion ────────────────────────────────────────────────────────

    def _completion_rejection(self, run: _Run) -> str | None:
        """Corrective turn when stopping now would be premature, else None."""
        if run.completion_rejections >= MAX_COMPLETION_REJECTIONS:
            return None
        can_write = any(run.tools.is_allowed(name) for name in WRITE_TOOLS)
        if can_write and not run.has_written_files and is_mutation_task(run.task):
            run.completion_rejections += 1
            logger.info("Rejected completion: mutation task with no file changes")
            return NO_MUTATION_MESSAGE
        if (
            not run.terminal_nudge_sent
            and not run.ran_command
            and run.tools.is_allowed("run_terminal_command")
            and is_terminal_task(run.task)
        ):
            run.terminal_nudge_sent = True
            run.completion_rejections += 1
            logger.info("Rejected completion: terminal task with no command run")
            return TERMINAL_NUDGE_MESSAGE
        return None

    def _handle_completion(self, run: _Run, visible: str) -> bool:
        run.messages.append({"role": "assistant", "content": visible})
        if visible:
            self._persist("assistant", visible, {"iteration": run.iteration})
        rejection = self._completion_rejection(run)
        if rejection is not None:
            run.messages.append({"role": "user", "content": rejection})
            return False
        run.final_text = visible or None
        run.stop_reason = StopReason.COMPLETED
        return True

    def _handle_no_tools(self, run: _Run, visible: str, thinking: str) -> bool:
        run.state = RunState.NO_TOOL_CONTINUE
        run.consecutive_no_tool += 1
        run.messages.append({"role": "assistant", "content": visible})
        if visible:
            self._persist("assistant", visible, {"iteration": run.iteration})

        action = check_no_tool_completion(visible, thinking, run.has_written_files, run.consecutive_no_tool)
        if action != NoToolAction.CONTINUE:
            rejection = self._completion_rejection(run)
            if rejection is None:
                logger.info("Implicit completion (%s)", action.value)
                run.final_text = visible or None
                run.stop_reason = StopReason.IMPLICIT
                return True
            run.messages.append({"role": "user", "content": rejection})
            return False

        if run.has_written_files:
            probe = WRAP_UP_PROBE
        else:
            probe = build_continuation_message(run.iteration, run.max_iterations, run.files_changed)
        run.messages.append({"role": "user", "content": probe})
        return False

    # ── Tool execution ────────────────────────────────────────────────────

    async def _filter_calls(self, run: _Run, calls: list[ToolCall]) -> list[ToolCall]:
        """Drop calls the mode forbids and intra-batch duplicates, then cap the batch."""
        permitted: list[ToolCall] = []
        seen: set[str] = set()
        for call in calls:
            if not run.tools.is_allowed(call.name):
                logger.info("Dropping %s: not available in %s mode", call.name, run.mode.value)
                await self._emit(
                    EventType.SHOW_WARNING,
                    message=f"{call.name} is not available in {run.mode.value} mode",
                )
                continue
            signature = call.signature()
            if signature in seen:
                continue
            seen.add(signature)
            permitted.append(call)

        if len(permitted) > MAX_TOOLS_PER_BATCH:
            logger.warning("Batch of %d calls capped at %d", len(permitted), MAX_TOOLS_PER_BATCH)
            permitted = permitted[:MAX_TOOLS_PER_BATCH]
        return permitted

    async def _execute_batch(self, run: _Run, calls: list[ToolCall]) -> list[ToolOutput]:
        """Local calls run concurrently; model-calling tools after them, one at a time."""

        async def spawn(task: str, mode: str) -> str:
            return await self._spawn_subtask(run, task, mode)

        context = ExecutionContext(
            working_dir=self.registry.working_dir,
            session_id=self.session.id,
            cancel_event=run.cancel_event,
            spawn_subtask=None if self.is_subagent else spawn,
            is_subagent=self.is_subagent,
        )
        outputs: list[ToolOutput | None] = [None] * len(calls)
        local: list[int] = []
        external: list[int] = []
        for index, call in enumerate(calls):
            tool = self.registry.get(call.name)
            (external if tool is not None and tool.calls_llm else local).append(index)

        async def run_one(index: int) -> None:
            outputs[index] = await self._execute_call(run, calls[index], context)

        await asyncio.gather(*(run_one(i) for i in local))
        for index in external:
            await run_one(index)
        return outputs

    async def _execute_call(self, run: _Run, call: ToolCall, context: ExecutionContext) -> ToolOutput:
        if run.cancel_event.is_set():
            return ToolOutput(call.name, call.arguments, "Cancelled before execution.", error="cancelled")

        await self._emit(
            EventType.SHOW_TOOL_ACTION,
            tool=call.name,
            status="running",
            description=describe_tool_call(call),
            arguments=call.arguments,
        )

        cached = run.cache.get(call)
        if cached is not None:
            log_tool_execution(call.name, call.arguments, cached, 0.0, session_id=self.session.id, cached=True)
            output = ToolOutput(call.name, call.arguments, cached, cached=True)
        else:
            tool = self.registry.get(call.name)
            if tool is not None and tool.mutates_files:
                output = await self._execute_file_write(run, call, tool, context)
            elif tool is not None and tool.executes_commands:
                output = await self._execute_command(run, call, tool, context)
            else:
                output = await self.registry.execute(call.name, call.arguments, context)
            run.cache.put(call, output.output, output.error)

        await self._emit(
            EventType.SHOW_TOOL_ACTION,
            tool=call.name,
            status="error" if output.error else "done",
            description=describe_tool_call(call),
            summary=summarize_result(output.output, output.error),
            cached=output.cached,
        )
        return output

    async def _execute_file_write(
        self,
        run: _Run,
        call: ToolCall,
        tool: BaseTool,
        context: ExecutionContext,
    ) -> ToolOutput:
        """Snapshot, gate and execute one file-mutating call under the path's lock."""
        target = tool.target_path(call.arguments)
        if target is None:
            # Missing or sandbox-violating path: the tool reports it
            return await self.registry.execute(call.name, call.arguments, context)

        display = self._display_path(target)
        async with self.file_locks.locked(str(target)):
            if self.checkpoints is not None and run.checkpoint_id:
                self.checkpoints.snapshot_before_edit(run.checkpoint_id, target)

            arguments = call.arguments
            decision = compute_file_edit_approval(
                display,
                self.session.sensitive_file_patterns,
                self.session.auto_approve_sensitive_edits,
            )
            if decision.requires_approval:
                response = await self._request_approval(
                    run, ApprovalKind.FILE_EDIT, display, decision,
                    {"tool": call.name, "arguments": call.arguments},
                )
                if not response.approved:
                    return ToolOutput(call.name, arguments, f"Skipped by user: edit to {display} was not approved.")
                if response.edited_payload is not None and tool.editable_argument:
                    arguments = {**arguments, tool.editable_argument: response.edited_payload}

            output = await self.registry.execute(call.name, arguments, context)

        if output.ok:
            if display not in run.files_changed:
                run.files_changed.append(display)
            run.cache.invalidate()
        return output

    async def _execute_command(
        self,
        run: _Run,
        call: ToolCall,
        tool: BaseTool,
        context: ExecutionContext,
    ) -> ToolOutput:
        command = str(call.arguments.get("command") or "")
        arguments = call.arguments
        if command:
            decision = compute_command_approval(command, self.session.auto_approve_commands)
            if decision.requires_approval:
                response = await self._request_approval(
                    run, ApprovalKind.COMMAND, command, decision,
                    {"tool": call.name, "arguments": call.arguments},
                )
                if not response.approved:
                    return ToolOutput(call.name, arguments, f"Skipped by user: command `{command}` was not approved.")
                if response.edited_payload and tool.editable_argument:
                    arguments = {**arguments, tool.editable_argument: response.edited_payload}

        output = await self.registry.execute(call.name, arguments, context)
        run.ran_command = True
        # A command may have changed any file
        run.cache.invalidate()
        return output

    async def _request_approval(
        self,
        run: _Run,
        kind: ApprovalKind,
        subject: str,
        decision: ApprovalDecision,
        details: dict[str, Any],
    ) -> ApprovalResponse:
        request = ApprovalRequest(
            kind=kind,
            subject=subject,
            severity=decision.severity,
            reason=decision.reason,
            session_id=self.session.id,
            details=details,
        )
        self.approvals.open(request)
        await self._emit(EventType.REQUEST_APPROVAL, request=request.to_dict())
        response = await self.approvals.wait(request.id, run.cancel_event)
        log_approval_decision(kind.value, subject, decision.severity.value, response.approved, self.session.id)
        await self._emit(EventType.APPROVAL_RESOLVED, request_id=request.id, approved=response.approved)
        return response

    async def _spawn_subtask(self, run: _Run, task: str, mode: str) -> str:
        child = AgentController(
            session=self.session,
            config=self.config,
            registry=self.registry,
            llm=self.llm,
            approvals=self.approvals,
            events=_SubagentEventSink(self.events),
            compactor=self.compactor,
            file_locks=self.file_locks,
            is_subagent=True,
        )
        result = await child.run(task, mode=mode, cancel_event=run.cancel_event)
        if result.state == RunState.ABORTED:
            raise AgentError(result.error or "sub-agent aborted")
        return result.final_text

    # ── Termination ───────────────────────────────────────────────────────

    def _mark_cancelled(self, run: _Run) -> None:
        run.state = RunState.CANCELLED
        run.stop_reason = StopReason.CANCELLED
        logger.info(
            "Run cancelled at iteration %d", run.iteration,
            extra={"session_id": self.session.id, "iteration": run.iteration},
        )

    async def _abort(self, run: _Run, error: Exception) -> None:
        message = format_fatal_error(
            error, self.session.model, run.mode.value, run.phase, run.iteration, run.max_iterations,
        )
        logger.error(
            "Run aborted: %s", message, exc_info=error,
            extra={"session_id": self.session.id, "iteration": run.iteration, "phase": run.phase},
        )
        run.state = RunState.ABORTED
        run.stop_reason = StopReason.ERROR
        run.error = message
        try:
            self._persist("error", message, {"iteration": run.iteration, "phase": run.phase})
        except (OSError, AgentError):
            logger.exception("Could not persist error turn")
        await self._emit(EventType.SHOW_ERROR, message=message)

    async def _finish(self, run: _Run) -> AgentRunResult:
        if run.state not in (RunState.CANCELLED, RunState.ABORTED):
            if run.stop_reason == StopReason.HARD_BREAK:
                run.final_text = await self._final_synthesis(run)
                self._persist("assistant", run.final_text, {"synthesis": True})
            elif run.final_text is None:
                run.final_text = self._fallback_text(run)
                self._persist("assistant", run.final_text, {"summary": True})
            run.state = RunState.COMPLETED

        final_text = run.final_text or self._fallback_text(run)
        result = AgentRunResult(
            final_text=final_text,
            checkpoint_id=run.checkpoint_id,
            state=run.state,
            iterations=run.iteration,
            files_changed=list(run.files_changed),
            error=run.error,
            stop_reason=run.stop_reason,
        )
        logger.info(
            "Run finished: %s (%s) after %d iteration(s)",
            result.state.value, result.stop_reason.value if result.stop_reason else "-", result.iterations,
            extra={"session_id": self.session.id, "checkpoint_id": run.checkpoint_id},
        )

        if self.is_subagent:
            return result
        if run.files_changed and run.checkpoint_id and self.checkpoints is not None:
            try:
                stats = self.checkpoints.compute_diff_stats(run.checkpoint_id)
            except (OSError, AgentError):
                logger.exception("Could not compute diff stats for %s", run.checkpoint_id)
                stats = []
            await self._emit(
                EventType.FILES_CHANGED,
                checkpoint_id=run.checkpoint_id,
                files=[s.to_dict() for s in stats],
            )
        await self._emit(
            EventType.FINAL_MESSAGE,
            text=final_text,
            state=result.state.value,
            checkpoint_id=run.checkpoint_id,
        )
        return result

    async def _final_synthesis(self, run: _Run) -> str:
        """Ask for a final answer without tools after a repetition hard break."""
        messages = [*run.messages, {"role": "user", "content": FINAL_SYNTHESIS_MESSAGE}]
        try:
            text = await self.llm.complete(
                self.session.model,
                messages,
                {"temperature": self.config.temperature, "num_predict": self.config.max_tokens},
            )
        except TRANSIENT_ERRORS as e:
            logger.warning("Final synthesis failed: %s", e)
            text = ""
        return strip_control_markers(text) or self._fallback_text(run)

    def _fallback_text(self, run: _Run) -> str:
        """Best available summary built from what the run already produced."""
        parts = []
        if run.stop_reason == StopReason.MAX_ITERATIONS:
            parts.append(f"Stopped after reaching the iteration limit ({run.max_iterations}).")
        elif run.stop_reason == StopReason.HARD_BREAK:
            parts.append("Stopped because the model kept repeating itself.")
        elif run.stop_reason == StopReason.CANCELLED:
            parts.append("Cancelled.")
        elif run.stop_reason == StopReason.ERROR:
            parts.append("Stopped on an error.")
        if run.visible_texts:
            parts.append(run.visible_texts[-1])
        if run.files_changed:
            parts.append("Files changed: " + ", ".join(run.files_changed))
        if run.history:
            lines = [f"- {h.name}({h.query}) -> {h.result_summary}" for h in run.history[-10:]]
            parts.append("Tools used:\n" + "\n".join(lines))
        return "\n\n".join(parts) or "No response from the model."

    # ── Helpers ───────────────────────────────────────────────────────────

    def _initial_messages(self, task: str, mode: AgentMode, tools: FilteredToolRegistry) -> list[dict[str, Any]]:
        """System prompt, earlier user/answer turns of the session, then the task."""
        system = build_system_prompt(
            self.registry.working_dir, self.session.model, mode, tools.tool_names, self.is_subagent,
        )
        messages: list[dict[str, Any]] = [{"role": "system", "content": system}]
        if self.persist:
            for record in self.store.get_messages(self.session.id):
                if not record.content:
                    continue
                if record.role == "user" or (record.role == "assistant" and not record.meta.get("tool_calls")):
                    messages.append({"role": record.role, "content": record.content})
        messages.append({"role": "user", "content": task})
        return messages

    def _display_path(self, path: Path) -> str:
        try:
            return path.relative_to(Path(self.registry.working_dir).resolve()).as_posix()
        except ValueError:
            return path.as_posix()

    def _persist(self, role: str, content: str, meta: dict[str, Any] | None = None) -> None:
        if self.persist:
            self.store.add_message(self.session.id, role, content, meta)

    async def _emit(self, event_type: EventType, **data: Any) -> None:
        await self.events.emit(AgentEvent(event_type, self.session.id, data))
