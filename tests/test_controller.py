"""Tests for the iteration loop, driven by a scripted model backend."""

import asyncio

import pytest

from ollagent.approval import ApprovalGate
from ollagent.control import FINAL_SYNTHESIS_MESSAGE, NO_MUTATION_MESSAGE
from ollagent.controller import AgentController, RunState, StopReason
from ollagent.errors import ReasoningUnsupportedError
from ollagent.events import CollectingEventSink, EventType
from ollagent.llm import LLMChunk
from ollagent.modes import READ_ONLY_TOOLS
from ollagent.repetition import CALL_CORRECTION_MESSAGE
from ollagent.tools import ToolRegistry
from ollagent.types import CheckpointStatus, SnapshotAction, SnapshotStatus


class Responder(CollectingEventSink):
    """Collects events and answers approval requests like a user would."""

    def __init__(self, gate: ApprovalGate, approved: bool = True, edited: str | None = None,
                 cancel_event: asyncio.Event | None = None):
        super().__init__()
        self.gate = gate
        self.approved = approved
        self.edited = edited
        self.cancel_event = cancel_event

    async def emit(self, event):
        await super().emit(event)
        if event.type != EventType.REQUEST_APPROVAL:
            return
        if self.cancel_event is not None:
            self.cancel_event.set()
        else:
            self.gate.resolve(event.data["request"]["id"], self.approved, self.edited)


@pytest.fixture
def make_controller(store, config):
    def factory(llm, events=None, approvals=None, **session_fields):
        session = store.create_session(model=config.model, **session_fields)
        return AgentController(
            session=session,
            config=config,
            registry=ToolRegistry(config.working_dir),
            store=store,
            llm=llm,
            approvals=approvals or ApprovalGate(),
            events=events or CollectingEventSink(),
        )
    return factory


def _roles(controller):
    return [m.role for m in controller.store.get_messages(controller.session.id)]


def _contents(request):
    return [m["content"] for m in request.messages]


class TestCompletion:
    @pytest.mark.asyncio
    async def test_sentinel_completes(self, make_controller, scripted_llm):
        llm = scripted_llm(["The parser is in parse.py. [TASK_COMPLETE]"])
        controller = make_controller(llm)
        result = await controller.run("Explain the parser")

        assert result.state == RunState.COMPLETED
        assert result.stop_reason == StopReason.COMPLETED
        assert result.final_text == "The parser is in parse.py."
        assert result.iterations == 1
        assert _roles(controller) == ["user", "assistant"]
        assert controller.store.get_session(controller.session.id).status == "idle"

    @pytest.mark.asyncio
    async def test_final_message_event(self, make_controller, scripted_llm):
        events = CollectingEventSink()
        controller = make_controller(scripted_llm(["Done. [TASK_COMPLETE]"]), events=events)
        await controller.run("Explain the parser")
        [final] = events.of_type(EventType.FINAL_MESSAGE)
        assert final.data["text"] == "Done."
        assert final.data["state"] == "completed"

    @pytest.mark.asyncio
    async def test_two_tool_less_turns_complete_implicitly(self, make_controller, scripted_llm):
        llm = scripted_llm(["Let me think about it.", "The parser lives in parse.py."])
        result = await make_controller(llm).run("Explain the parser")
        assert result.stop_reason == StopReason.IMPLICIT
        assert result.final_text == "The parser lives in parse.py."
        assert any("<agent_control>" in c for c in _contents(llm.requests[1]))

    @pytest.mark.asyncio
    async def test_iteration_cap(self, make_controller, scripted_llm, tmp_workdir):
        for name in ("a", "b", "c"):
            (tmp_workdir / f"{name}.txt").write_text(name)
        llm = scripted_llm([
            {"name": "read_file", "arguments": {"path": f"{name}.txt"}} for name in ("a", "b", "c")
        ])
        result = await make_controller(llm).run("Explain these files", max_iterations=3)
        assert result.stop_reason == StopReason.MAX_ITERATIONS
        assert result.state == RunState.COMPLETED
        assert result.iterations == 3
        assert result.final_text.startswith("Stopped after reaching the iteration limit (3).")

    @pytest.mark.asyncio
    async def test_earlier_turns_replayed(self, make_controller, scripted_llm):
        llm = scripted_llm(["It is in parse.py. [TASK_COMPLETE]", "In lex.py. [TASK_COMPLETE]"])
        controller = make_controller(llm)
        await controller.run("Explain the parser")
        await controller.run("And the lexer?")
        second = llm.requests[1].messages
        assert [(m["role"], m["content"]) for m in second[1:]] == [
            ("user", "Explain the parser"),
            ("assistant", "It is in parse.py."),
            ("user", "And the lexer?"),
        ]


class TestMutationTasks:
    @pytest.mark.asyncio
    async def test_rename_end_to_end(self, make_controller, scripted_llm, tmp_workdir):
        source = tmp_workdir / "file.ts"
        original = "const x = 1;\nexport { x };\n"
        source.write_text(original)
        llm = scripted_llm([
            "Done. [TASK_COMPLETE]",
            {"name": "read_file", "arguments": {"path": "file.ts"}},
            {"name": "write_file", "arguments": {"path": "file.ts", "content": "const y = 1;\nexport { y };\n"}},
            "Renamed x to y. [TASK_COMPLETE]",
        ])
        controller = make_controller(llm)
        result = await controller.run("Rename variable `x` to `y` in file.ts")

        assert result.state == RunState.COMPLETED
        assert result.files_changed == ["file.ts"]
        assert result.final_text == "Renamed x to y."
        assert NO_MUTATION_MESSAGE in _contents(llm.requests[1])
        assert source.read_text() == "const y = 1;\nexport { y };\n"

        [snapshot] = controller.store.get_file_snapshots(result.checkpoint_id)
        assert snapshot.path == "file.ts"
        assert snapshot.action == SnapshotAction.MODIFIED
        assert snapshot.original_content == original

        assert controller.checkpoints.keep_all(result.checkpoint_id) == CheckpointStatus.KEPT
        kept = controller.store.get_snapshot_for_file(result.checkpoint_id, "file.ts")
        assert kept.status == SnapshotStatus.KEPT
        assert kept.original_content is None

    @pytest.mark.asyncio
    async def test_completion_gate_gives_up(self, make_controller, scripted_llm):
        llm = scripted_llm(["Nothing to do. [TASK_COMPLETE]"] * 3)
        result = await make_controller(llm).run("Fix the typo in README")
        assert result.stop_reason == StopReason.COMPLETED
        assert result.iterations == 3

    @pytest.mark.asyncio
    async def test_files_changed_event(self, make_controller, scripted_llm, tmp_workdir):
        events = CollectingEventSink()
        llm = scripted_llm([
            {"name": "write_file", "arguments": {"path": "notes.md", "content": "# Notes\n"}},
            "Created. [TASK_COMPLETE]",
        ])
        await make_controller(llm, events=events).run("Create notes.md")
        [changed] = events.of_type(EventType.FILES_CHANGED)
        assert changed.data["files"][0]["path"] == "notes.md"
        assert changed.data["files"][0]["additions"] == 1


class TestRepetition:
    @pytest.mark.asyncio
    async def test_duplicate_calls_skipped_then_hard_break(self, make_controller, scripted_llm):
        listing = {"name": "list_files", "arguments": {}}
        llm = scripted_llm([listing] * 4)
        controller = make_controller(llm)
        result = await controller.run("Explain the layout")

        assert result.stop_reason == StopReason.HARD_BREAK
        assert result.final_text == "Final synthesis."
        assert llm.completions[0][-1]["content"] == FINAL_SYNTHESIS_MESSAGE
        assert CALL_CORRECTION_MESSAGE in _contents(llm.requests[3])
        tool_turns = [m for m in controller.store.get_messages(controller.session.id) if m.role == "tool"]
        assert [t.meta["cached"] for t in tool_turns] == [False, True]

    @pytest.mark.asyncio
    async def test_repeated_text_hard_breaks(self, make_controller, scripted_llm, tmp_workdir):
        for i in range(8):
            (tmp_workdir / f"f{i}.txt").write_text(str(i))
        text = "I will now look at the next file in the list to find the parser."
        llm = scripted_llm([
            [
                LLMChunk(text=text, tool_calls=[
                    {"function": {"name": "read_file", "arguments": {"path": f"f{i}.txt"}}},
                ]),
                LLMChunk(done=True),
            ]
            for i in range(8)
        ])
        result = await make_controller(llm).run("Explain the parser")
        assert result.stop_reason == StopReason.HARD_BREAK
        # One baseline turn, then five similar ones
        assert result.iterations == 6
        assert len(llm.completions) == 1

    @pytest.mark.asyncio
    async def test_same_call_twice_in_one_turn_runs_once(self, make_controller, scripted_llm, sample_file):
        read = {"name": "read_file", "arguments": {"path": "hello.py"}}
        llm = scripted_llm([[read, read], "Read it. [TASK_COMPLETE]"])
        controller = make_controller(llm)
        await controller.run("Explain hello.py")
        assert _roles(controller).count("tool") == 1


class TestApprovals:
    @pytest.mark.asyncio
    async def test_approved_command_runs(self, make_controller, scripted_llm):
        gate = ApprovalGate()
        events = Responder(gate, approved=True)
        llm = scripted_llm([
            {"name": "run_terminal_command", "arguments": {"command": "echo hi"}},
            "Printed hi. [TASK_COMPLETE]",
        ])
        result = await make_controller(llm, events=events, approvals=gate).run("Show the greeting")
        assert result.state == RunState.COMPLETED
        assert "hi\n" in _contents(llm.requests[1])
        [request] = events.of_type(EventType.REQUEST_APPROVAL)
        assert request.data["request"]["kind"] == "command"
        assert events.of_type(EventType.APPROVAL_RESOLVED)[0].data["approved"]

    @pytest.mark.asyncio
    async def test_edited_command_runs_instead(self, make_controller, scripted_llm):
        gate = ApprovalGate()
        llm = scripted_llm([
            {"name": "run_terminal_command", "arguments": {"command": "echo hi"}},
            "Done. [TASK_COMPLETE]",
        ])
        events = Responder(gate, approved=True, edited="echo edited")
        await make_controller(llm, events=events, approvals=gate).run("Show the greeting")
        assert "edited\n" in _contents(llm.requests[1])

    @pytest.mark.asyncio
    async def test_declined_command_is_skipped(self, make_controller, scripted_llm, tmp_workdir):
        gate = ApprovalGate()
        llm = scripted_llm([
            {"name": "run_terminal_command", "arguments": {"command": "touch made.txt"}},
            "Skipped. [TASK_COMPLETE]",
        ])
        await make_controller(llm, events=Responder(gate, approved=False), approvals=gate).run("Show the greeting")
        assert not (tmp_workdir / "made.txt").exists()
        assert "Skipped by user: command `touch made.txt` was not approved." in _contents(llm.requests[1])

    @pytest.mark.asyncio
    async def test_auto_approved_commands_do_not_ask(self, make_controller, scripted_llm):
        events = CollectingEventSink()
        llm = scripted_llm([
            {"name": "run_terminal_command", "arguments": {"command": "echo hi"}},
            "Done. [TASK_COMPLETE]",
        ])
        await make_controller(llm, events=events, auto_approve_commands=True).run("Show the greeting")
        assert events.of_type(EventType.REQUEST_APPROVAL) == []

    @pytest.mark.asyncio
    async def test_sensitive_file_needs_approval(self, make_controller, scripted_llm, tmp_workdir, isolated_data_dir):
        gate = ApprovalGate()
        events = Responder(gate, approved=False)
        llm = scripted_llm([
            {"name": "write_file", "arguments": {"path": ".env", "content": "TOKEN=1\n"}},
            "Left it alone. [TASK_COMPLETE]",
        ])
        result = await make_controller(llm, events=events, approvals=gate).run("Store the token")
        assert not (tmp_workdir / ".env").exists()
        assert result.files_changed == []
        [request] = events.of_type(EventType.REQUEST_APPROVAL)
        assert request.data["request"]["kind"] == "fileEdit"
        assert request.data["request"]["severity"] == "critical"
        audit = (isolated_data_dir / "logs" / "audit.jsonl").read_text()
        assert '"event": "approval"' in audit
        assert '"approved": false' in audit

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_declines_and_stops(self, make_controller, scripted_llm, tmp_workdir):
        gate = ApprovalGate()
        cancel = asyncio.Event()
        llm = scripted_llm([
            {"name": "run_terminal_command", "arguments": {"command": "touch made.txt"}},
            "never reached",
        ])
        controller = make_controller(llm, events=Responder(gate, cancel_event=cancel), approvals=gate)
        result = await controller.run("Show the greeting", cancel_event=cancel)
        assert result.state == RunState.CANCELLED
        assert not (tmp_workdir / "made.txt").exists()
        assert len(llm.requests) == 1
        assert gate.pending_requests() == []


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_stream_keeps_reasoning(self, make_controller, scripted_llm):
        cancel = asyncio.Event()

        class CancelOnThinking(CollectingEventSink):
            async def emit(self, event):
                await super().emit(event)
                if event.type == EventType.THINKING:
                    cancel.set()

        llm = scripted_llm([[
            LLMChunk(thinking="Considering where the parser lives"),
            LLMChunk(text="The parser"),
            LLMChunk(done=True),
        ]])
        controller = make_controller(llm, events=CancelOnThinking())
        result = await controller.run("Explain the parser", cancel_event=cancel)

        assert result.state == RunState.CANCELLED
        assert result.stop_reason == StopReason.CANCELLED
        messages = controller.store.get_messages(controller.session.id)
        assert [m.role for m in messages] == ["user", "thinking"]
        assert messages[1].content == "Considering where the parser lives"

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, make_controller, scripted_llm):
        cancel = asyncio.Event()
        cancel.set()
        llm = scripted_llm(["unused"])
        result = await make_controller(llm).run("Explain the parser", cancel_event=cancel)
        assert result.state == RunState.CANCELLED
        assert llm.requests == []


class TestErrors:
    @pytest.mark.asyncio
    async def test_reasoning_rejection_retried_without_it(self, make_controller, scripted_llm, config):
        config.enable_thinking = True
        llm = scripted_llm([
            ReasoningUnsupportedError("think is not supported"),
            "Answer. [TASK_COMPLETE]",
        ])
        result = await make_controller(llm).run("Explain the parser")
        assert result.state == RunState.COMPLETED
        assert llm.thinks == [True, False]

    @pytest.mark.asyncio
    async def test_backend_failure_aborts(self, make_controller, scripted_llm):
        events = CollectingEventSink()
        controller = make_controller(scripted_llm([ConnectionError("backend down")]), events=events)
        result = await controller.run("Explain the parser")

        assert result.state == RunState.ABORTED
        assert result.stop_reason == StopReason.ERROR
        assert result.error.startswith("[ConnectionError] backend down")
        assert "model: test-model:7b" in result.error
        assert _roles(controller) == ["user", "error"]
        assert events.of_type(EventType.SHOW_ERROR)


class TestModesAndSubagents:
    @pytest.mark.asyncio
    async def test_explore_mode_drops_writes(self, make_controller, scripted_llm, tmp_workdir):
        events = CollectingEventSink()
        llm = scripted_llm([
            {"name": "write_file", "arguments": {"path": "x.py", "content": "x"}},
            "Nothing to change. [TASK_COMPLETE]",
        ])
        await make_controller(llm, events=events).run("Explain the parser", mode="explore")

        assert not (tmp_workdir / "x.py").exists()
        offered = {d["function"]["name"] for d in llm.requests[0].tools}
        assert offered == set(READ_ONLY_TOOLS)
        assert "not available in explore mode" in events.of_type(EventType.SHOW_WARNING)[0].data["message"]

    @pytest.mark.asyncio
    async def test_subagent_runs_after_local_calls(self, make_controller, scripted_llm, sample_file):
        events = CollectingEventSink()
        llm = scripted_llm([
            [
                {"name": "run_subagent", "arguments": {"task": "Find the parser"}},
                {"name": "read_file", "arguments": {"path": "hello.py"}},
            ],
            "The parser is in parse.py. [TASK_COMPLETE]",
            "Both done. [TASK_COMPLETE]",
        ])
        controller = make_controller(llm, events=events)
        result = await controller.run("Explain the parser")

        assert result.final_text == "Both done."
        child_tools = {d["function"]["name"] for d in llm.requests[1].tools}
        assert "run_subagent" not in child_tools
        assert "write_file" not in child_tools

        running = [
            e.data["tool"] for e in events.of_type(EventType.SHOW_TOOL_ACTION)
            if e.data.get("status") == "running" and not e.data.get("subagent")
        ]
        assert running == ["read_file", "run_subagent"]

        tool_turns = [m for m in controller.store.get_messages(controller.session.id) if m.role == "tool"]
        assert [t.meta["tool_name"] for t in tool_turns] == ["run_subagent", "read_file"]
        assert tool_turns[0].content == "The parser is in parse.py."
        # The sub-agent's own turns are not persisted
        assert _roles(controller).count("assistant") == 2
