"""Tests for tool call extraction from model output."""

from ollagent.extractor import (
    ToolCall,
    detect_partial_tool_call,
    extract_tool_calls,
    infer_tool_name,
    recover_tool_call_from_error,
    remove_tool_calls,
)

KNOWN = {"read_file", "write_file", "edit_file", "list_files", "search_workspace", "run_terminal_command"}


class TestXmlDialect:
    def test_complete_block(self):
        text = 'Reading it.\n<tool_call>{"name": "read_file", "arguments": {"path": "a.ts"}}</tool_call>'
        assert extract_tool_calls(text) == [ToolCall("read_file", {"path": "a.ts"})]

    def test_truncated_block_gets_closing_braces(self):
        text = '<tool_call>{"name":"read_file","arguments":{"path":"a.ts"'
        assert extract_tool_calls(text) == [ToolCall("read_file", {"path": "a.ts"})]

    def test_smart_quotes_match_straight_quotes(self):
        straight = '<tool_call>{"name": "read_file", "arguments": {"path": "a.ts"}}</tool_call>'
        curly = "<tool_call>{“name”: “read_file”, “arguments”: {“path”: “a.ts”}}</tool_call>"
        assert extract_tool_calls(curly) == extract_tool_calls(straight)

    def test_multiple_blocks(self):
        text = (
            '<tool_call>{"name": "read_file", "arguments": {"path": "a"}}</tool_call>\n'
            '<tool_call>{"name": "read_file", "arguments": {"path": "b"}}</tool_call>'
        )
        calls = extract_tool_calls(text)
        assert [c.arguments["path"] for c in calls] == ["a", "b"]

    def test_key_synonyms(self):
        text = '<tool_call>{"tool": "read_file", "args": {"path": "x"}}</tool_call>'
        assert extract_tool_calls(text) == [ToolCall("read_file", {"path": "x"})]

    def test_params_synonym(self):
        text = '<tool_call>{"function": "read_file", "params": {"path": "x"}}</tool_call>'
        assert extract_tool_calls(text) == [ToolCall("read_file", {"path": "x"})]

    def test_remaining_keys_become_arguments(self):
        text = '<tool_call>{"name": "read_file", "path": "x", "limit": 5}</tool_call>'
        assert extract_tool_calls(text) == [ToolCall("read_file", {"path": "x", "limit": 5})]

    def test_string_arguments_are_parsed(self):
        text = '<tool_call>{"name": "read_file", "arguments": "{\\"path\\": \\"x\\"}"}</tool_call>'
        assert extract_tool_calls(text) == [ToolCall("read_file", {"path": "x"})]

    def test_empty_name_dropped(self):
        text = '<tool_call>{"name": "", "arguments": {"path": "x"}}</tool_call>'
        assert extract_tool_calls(text) == []

    def test_unparseable_block_dropped(self):
        assert extract_tool_calls("<tool_call>this is not json</tool_call>") == []


class TestBracketDialect:
    def test_tool_calls_args(self):
        text = '[TOOL_CALLS] read_file [ARGS] {"path": "src/app.py"}'
        assert extract_tool_calls(text) == [ToolCall("read_file", {"path": "src/app.py"})]

    def test_unbracketed_variant(self):
        text = 'TOOL_CALL list_files ARGS {"path": "."}'
        assert extract_tool_calls(text) == [ToolCall("list_files", {"path": "."})]


class TestStructuredCalls:
    def test_structured_preferred_over_text(self):
        text = '<tool_call>{"name": "read_file", "arguments": {"path": "a"}}</tool_call>'
        structured = [{"function": {"name": "list_files", "arguments": {"path": "."}}}]
        assert extract_tool_calls(text, structured) == [ToolCall("list_files", {"path": "."})]

    def test_structured_object_attributes(self):
        class Function:
            name = "read_file"
            arguments = {"path": "a"}

        class Call:
            function = Function()

        assert extract_tool_calls("", [Call()]) == [ToolCall("read_file", {"path": "a"})]

    def test_structured_unknown_tool_filtered(self):
        structured = [{"function": {"name": "delete_everything", "arguments": {}}}]
        assert extract_tool_calls("", structured, KNOWN) == []


class TestKnownTools:
    def test_unknown_tool_dropped(self):
        text = '<tool_call>{"name": "teleport", "arguments": {}}</tool_call>'
        assert extract_tool_calls(text, known_tools=KNOWN) == []

    def test_bare_json_with_known_tool(self):
        text = 'I will call {"name": "read_file", "arguments": {"path": "a.py"}} now'
        assert extract_tool_calls(text, known_tools=KNOWN) == [ToolCall("read_file", {"path": "a.py"})]

    def test_bare_json_ignored_without_known_tools(self):
        text = 'Example: {"name": "read_file", "arguments": {"path": "a.py"}}'
        assert extract_tool_calls(text) == []

    def test_plain_text_has_no_calls(self):
        assert extract_tool_calls("All done, the file looks fine.", known_tools=KNOWN) == []


class TestPartialDetection:
    def test_name_visible_while_streaming(self):
        assert detect_partial_tool_call('<tool_call>{"name": "write_file", "argu') == "write_file"

    def test_bracket_name_visible(self):
        assert detect_partial_tool_call("[TOOL_CALLS] edit_file [AR") == "edit_file"

    def test_nothing_visible(self):
        assert detect_partial_tool_call("Let me think") is None
        assert detect_partial_tool_call("") is None


class TestRemoveToolCalls:
    def test_strips_xml_blocks_and_sentinel(self):
        text = 'Reading.\n<tool_call>{"name": "read_file", "arguments": {"path": "a"}}</tool_call>\n[TASK_COMPLETE]'
        assert remove_tool_calls(text) == "Reading."

    def test_strips_bracket_calls(self):
        text = 'Listing files. [TOOL_CALLS] list_files [ARGS] {"path": "."}'
        assert remove_tool_calls(text) == "Listing files."

    def test_plain_text_kept(self):
        assert remove_tool_calls("  Hello there  ") == "Hello there"


class TestRecovery:
    def test_infers_search_tool_from_query_key(self):
        error = "error parsing tool call: raw='{\"query\": “TODO”}', err=invalid character"
        assert recover_tool_call_from_error(error) == ToolCall("search_workspace", {"query": "TODO"})

    def test_payload_with_name(self):
        error = "error parsing tool call: raw='{\"name\": \"read_file\", \"arguments\": {\"path\": “a.ts”}}', err=x"
        assert recover_tool_call_from_error(error) == ToolCall("read_file", {"path": "a.ts"})

    def test_name_from_partial_structured_call(self):
        error = "error parsing tool call: raw='{\"path\": \"notes.md\", \"content\": “hi”}', err=x"
        structured = [{"function": {"name": "write_file", "arguments": {}}}]
        call = recover_tool_call_from_error(error, structured)
        assert call == ToolCall("write_file", {"path": "notes.md", "content": "hi"})

    def test_truncated_raw_payload(self):
        error = "error parsing tool call: raw='{\"command\": \"ls -la"
        assert recover_tool_call_from_error(error) == ToolCall("run_terminal_command", {"command": "ls -la"})

    def test_no_raw_payload(self):
        assert recover_tool_call_from_error("connection refused") is None

    def test_unrecognized_shape(self):
        error = "error parsing tool call: raw='{\"banana\": 1}', err=x"
        assert recover_tool_call_from_error(error) is None


class TestInferToolName:
    def test_shapes(self):
        assert infer_tool_name({"path": "a"}) == "read_file"
        assert infer_tool_name({"path": "a", "content": "b"}) == "write_file"
        assert infer_tool_name({"path": "a", "old_string": "x", "new_string": "y"}) == "edit_file"
        assert infer_tool_name({"query": "foo", "path": "src"}) == "search_workspace"
        assert infer_tool_name({"pattern": "*.py"}) == "find_files"
        assert infer_tool_name({"other": 1}) is None


class TestSignature:
    def test_key_order_irrelevant(self):
        a = ToolCall("read_file", {"path": "a", "offset": 1})
        b = ToolCall("read_file", {"offset": 1, "path": "a"})
        assert a.signature() == b.signature()

    def test_different_arguments_differ(self):
        assert ToolCall("read_file", {"path": "a"}).signature() != ToolCall("read_file", {"path": "b"}).signature()

    def test_to_wire(self):
        assert ToolCall("read_file", {"path": "a"}).to_wire() == {
            "function": {"name": "read_file", "arguments": {"path": "a"}}
        }
