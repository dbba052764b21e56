"""Tests for the loop's pure decision helpers."""

import json

from ollagent.control import (
    NoToolAction,
    build_continuation_message,
    build_tool_call_summary,
    build_tools_reminder,
    check_no_tool_completion,
    dedupe_thinking_echo,
    format_fatal_error,
    history_entry,
    is_completion_signaled,
    is_mutation_task,
    is_terminal_task,
    parse_control_state,
    strip_control_markers,
    summarize_result,
    token_reminder,
)
from ollagent.errors import ReasoningUnsupportedError
from ollagent.extractor import ToolCall


class TestTaskClassification:
    def test_mutation_vocabulary(self):
        assert is_mutation_task("Rename variable `x` to `y` in file.ts")
        assert is_mutation_task("please FIX the failing import")
        assert not is_mutation_task("Explain how the parser works")

    def test_terminal_vocabulary(self):
        assert is_terminal_task("run the unit tests")
        assert is_terminal_task("pip install the deps")
        assert not is_terminal_task("Explain how the parser works")


class TestCompletionSignal:
    def test_sentinel_any_case(self):
        assert is_completion_signaled("All done. [task_complete]")
        assert is_completion_signaled("Done [TASK_COMPLETE]")

    def test_sentinel_in_thinking(self):
        assert is_completion_signaled("", "I should say [TASK_COMPLETE]")

    def test_control_packet(self):
        assert is_completion_signaled('<agent_control>{"state": "complete"}</agent_control>')
        assert not is_completion_signaled('<agent_control>{"state": "need_tools"}</agent_control>')

    def test_plain_text(self):
        assert not is_completion_signaled("I will now read the file.")

    def test_last_packet_wins(self):
        text = (
            '<agent_control>{"state": "complete"}</agent_control> later '
            '<agent_control>{"state": "need_fixes"}</agent_control>'
        )
        assert parse_control_state(text) == "need_fixes"

    def test_malformed_packet(self):
        assert parse_control_state("<agent_control>{oops</agent_control>") is None
        assert parse_control_state('<agent_control>{"state": "dancing"}</agent_control>') is None
        assert parse_control_state("<agent_control>{") is None

    def test_strip_markers(self):
        text = 'Finished.\n<agent_control>{"state": "complete"}</agent_control>\n[TASK_COMPLETE]'
        assert strip_control_markers(text) == "Finished."


class TestNoToolCompletion:
    def test_empty_reply_after_writes_is_implicit(self):
        assert check_no_tool_completion("", "", True, 1) == NoToolAction.BREAK_IMPLICIT

    def test_two_tool_less_iterations_break(self):
        assert check_no_tool_completion("Thinking aloud", "", False, 2) == NoToolAction.BREAK_CONSECUTIVE

    def test_first_tool_less_iteration_continues(self):
        assert check_no_tool_completion("Let me look", "", False, 1) == NoToolAction.CONTINUE
        assert check_no_tool_completion("", "", False, 1) == NoToolAction.CONTINUE


class TestMessages:
    def test_continuation_packet(self):
        message = build_continuation_message(2, 10, ["a.py", "a.py", "b.py"], note="keep going")
        packet = json.loads(message.split("<agent_control>")[1].split("</agent_control>")[0])
        assert packet == {
            "state": "need_tools",
            "iteration": 3,
            "maxIterations": 10,
            "remainingIterations": 7,
            "filesChanged": ["a.py", "b.py"],
            "note": "keep going",
        }
        assert message.endswith("[TASK_COMPLETE].")

    def test_tools_reminder(self):
        history = [history_entry(ToolCall("read_file", {"path": "src/a.py"}), "line one\nline two")]
        reminder = build_tools_reminder(3, 10, ["src/a.py"], history)
        assert reminder.startswith("[Iteration 4/10, 7 remaining]")
        assert "Files modified so far: src/a.py" in reminder
        assert "read_file(src/a.py) -> line one" in reminder

    def test_tools_reminder_caps_file_list(self):
        files = [f"f{i}.py" for i in range(8)]
        assert "(+3 more)" in build_tools_reminder(1, 5, files, [])

    def test_tool_call_summary(self):
        calls = [
            ToolCall("read_file", {"path": "src/pkg/a.py"}),
            ToolCall("run_terminal_command", {"command": "pytest -q"}),
        ]
        assert build_tool_call_summary(calls) == "I read pkg/a.py, then ran `pytest -q`."
        assert build_tool_call_summary([]) is None

    def test_summarize_result(self):
        assert summarize_result("first\nsecond") == "first"
        assert summarize_result("") == "(empty)"
        assert summarize_result("x", error="boom") == "error: boom"


class TestThinkingEcho:
    def test_echo_suppressed(self):
        assert dedupe_thinking_echo("I will read a.py", "I will read a.py and then edit it") == ""

    def test_distinct_text_kept(self):
        assert dedupe_thinking_echo("Here is the answer.", "Let me reason first.") == "Here is the answer."

    def test_no_thinking(self):
        assert dedupe_thinking_echo("Answer", "") == "Answer"


class TestTokenReminder:
    def test_thresholds(self):
        assert token_reminder(500, 1000) is None
        assert token_reminder(720, 1000)[0] == 70
        assert token_reminder(900, 1000)[0] == 85
        assert token_reminder(0, 1000) is None


class TestFatalError:
    def test_includes_phase_iteration_model_mode(self):
        text = format_fatal_error(ConnectionError("refused"), "qwen3:8b", "agent", "streaming", 3, 25)
        assert text.startswith("[ConnectionError] refused")
        assert "model: qwen3:8b" in text
        assert "mode: agent" in text
        assert "phase: streaming" in text
        assert "iteration 3/25" in text

    def test_status_code(self):
        error = ReasoningUnsupportedError("think not supported", status_code=400)
        assert "(HTTP 400)" in format_fatal_error(error, "m", "agent", "streaming", 1, 5)
