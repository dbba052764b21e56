"""Tests for JSON repair of model-emitted payloads."""

from ollagent.json_repair import extract_json_object, normalize_quotes, repair_json


class TestRepairJson:
    def test_valid_json_passes_through(self):
        assert repair_json('{"a": 1}') == {"a": 1}

    def test_trailing_comma(self):
        assert repair_json('{"a": 1, "b": 2,}') == {"a": 1, "b": 2}

    def test_single_quotes(self):
        assert repair_json("{'path': 'src/main.py'}") == {"path": "src/main.py"}

    def test_unquoted_keys(self):
        assert repair_json('{path: "a.ts"}') == {"path": "a.ts"}

    def test_missing_closing_braces(self):
        assert repair_json('{"a": {"b": [1, 2') == {"a": {"b": [1, 2]}}

    def test_smart_quotes(self):
        assert repair_json("{“path”: “a.ts”}") == {"path": "a.ts"}

    def test_garbage_returns_none(self):
        assert repair_json("not json at all") is None

    def test_empty_returns_none(self):
        assert repair_json("   ") is None


class TestExtractJsonObject:
    def test_balanced_object_with_surrounding_text(self):
        assert extract_json_object('prefix {"a": {"b": 1}} suffix') == '{"a": {"b": 1}}'

    def test_braces_inside_strings_ignored(self):
        assert extract_json_object('{"a": "}{"} tail') == '{"a": "}{"}'

    def test_escaped_quote_inside_string(self):
        text = '{"a": "say \\"hi\\" }"}'
        assert extract_json_object(text) == text

    def test_truncated_object_is_closed(self):
        assert extract_json_object('{"a": [1, 2') == '{"a": [1, 2]}'

    def test_unterminated_string_is_closed(self):
        assert extract_json_object('{"a": "abc') == '{"a": "abc"}'

    def test_start_offset(self):
        assert extract_json_object('{"x": 1} {"y": 2}', start=3) == '{"y": 2}'

    def test_no_object(self):
        assert extract_json_object("no braces here") is None


class TestNormalizeQuotes:
    def test_curly_quotes_become_straight(self):
        assert normalize_quotes("“hello” ‘x’") == '"hello" "x"'

    def test_plain_text_unchanged(self):
        assert normalize_quotes('{"a": 1}') == '{"a": 1}'
