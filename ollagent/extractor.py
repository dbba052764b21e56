"""Tool call extraction from raw model output.

Models emit tool calls in several shapes. Structured calls from the chat API
are preferred; otherwise the text is scanned for:

- ``<tool_call>{"name": ..., "arguments": {...}}</tool_call>`` blocks, possibly
  truncated at stream end
- ``[TOOL_CALLS] name [ARGS] {...}`` bracket dialect
- bare JSON objects naming a known tool (only when the tool names are known)

Malformed output is dropped rather than raised.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from ollagent.config import TASK_COMPLETE_SENTINEL
from ollagent.json_repair import extract_json_object, normalize_quotes, repair_json

logger = logging.getLogger("ollagent.extractor")

NAME_KEYS = ("name", "tool", "tool_name", "function")
ARGUMENT_KEYS = ("arguments", "args", "params", "parameters", "input")

TOOL_CALL_OPEN_RE = re.compile(r"<tool_call>", re.IGNORECASE)
TOOL_CALL_BLOCK_RE = re.compile(r"<tool_call>.*?(?:</tool_call>|$)", re.IGNORECASE | re.DOTALL)
BRACKET_CALL_RE = re.compile(
    r"\[?TOOL_CALLS?\]?\s*([A-Za-z_][\w.-]*)\s*\[?ARGS\]?\s*(?=\{)",
)
PARTIAL_CALL_RE = re.compile(
    r'<tool_call>\s*\{\s*"(?:name|tool|tool_name)"\s*:\s*"([^"]+)"',
    re.IGNORECASE,
)
PARTIAL_BRACKET_RE = re.compile(r"\[TOOL_CALLS?\]\s*([A-Za-z_][\w.-]*)")
SENTINEL_RE = re.compile(re.escape(TASK_COMPLETE_SENTINEL), re.IGNORECASE)
RAW_ERROR_RE = re.compile(r"raw='")
RAW_ERROR_END_RE = re.compile(r"'\s*,?\s*err=")

# Argument shape -> tool name, checked in order, for calls whose name was lost
ARGUMENT_SHAPES: list[tuple[set[str], set[str], str]] = [
    ({"query"}, set(), "search_workspace"),
    ({"path", "old_string"}, set(), "edit_file"),
    ({"path", "content"}, set(), "write_file"),
    ({"command"}, set(), "run_terminal_command"),
    ({"task"}, set(), "run_subagent"),
    ({"pattern"}, set(), "find_files"),
    ({"path"}, {"query", "content", "old_string"}, "read_file"),
]


@dataclass
class ToolCall:
    """A single tool invocation requested by the model."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def signature(self) -> str:
        """Stable identity of the call: name plus sorted, JSON-encoded arguments."""
        parts = [
            f"{key}={json.dumps(self.arguments[key], sort_keys=True, default=str)}"
            for key in sorted(self.arguments)
        ]
        return f"{self.name}|{'&'.join(parts)}"

    def to_wire(self) -> dict[str, Any]:
        """Convert to the chat API's assistant tool_calls entry."""
        return {"function": {"name": self.name, "arguments": self.arguments}}


def extract_tool_calls(
    raw_text: str,
    structured_calls: Iterable[Any] | None = None,
    known_tools: set[str] | None = None,
) -> list[ToolCall]:
    """Parse tool calls from structured API calls or from raw text."""
    structured = list(structured_calls or [])
    if structured:
        calls = [call for call in (_from_structured(c) for c in structured) if call]
        return _filter_known(calls, known_tools)

    if not raw_text:
        return []

    calls = _extract_xml_calls(raw_text)
    calls.extend(_extract_bracket_calls(raw_text))
    if not calls and known_tools:
        calls = _extract_bare_calls(raw_text, known_tools)
    return _filter_known(calls, known_tools)


def detect_partial_tool_call(raw_text: str) -> str | None:
    """Return the name of a tool call that is still streaming, if visible."""
    if not raw_text:
        return None
    text = normalize_quotes(raw_text)
    matches = PARTIAL_CALL_RE.findall(text) or PARTIAL_BRACKET_RE.findall(text)
    return matches[-1] if matches else None


def remove_tool_calls(text: str) -> str:
    """Strip tool call markup and the completion sentinel from display text."""
    if not text:
        return ""
    cleaned = TOOL_CALL_BLOCK_RE.sub("", text)
    cleaned = _strip_bracket_calls(cleaned)
    cleaned = SENTINEL_RE.sub("", cleaned)
    return cleaned.strip()


def recover_tool_call_from_error(
    error_text: str,
    structured_calls: Iterable[Any] | None = None,
) -> ToolCall | None:
    """Rebuild a tool call from a backend tool-parse error message.

    The backend reports the offending payload as ``raw='{...}'``. The payload
    is re-parsed with quote normalization and brace balancing; the tool name
    comes from the payload, the last partial structured call, or the shape of
    the arguments.
    """
    match = RAW_ERROR_RE.search(error_text or "")
    if not match:
        logger.debug("Recovery: no raw payload in error text")
        return None

    raw = error_text[match.end():]
    closing = RAW_ERROR_END_RE.search(raw)
    if closing:
        raw = raw[:closing.start()]
    fragment = extract_json_object(normalize_quotes(raw.rstrip().rstrip("'")))
    if fragment is None:
        return None
    payload = repair_json(fragment)
    if not isinstance(payload, dict):
        logger.debug("Recovery: payload is not an object: %r", fragment[:200])
        return None

    call = _from_payload(payload)
    if call is not None:
        return call

    arguments = payload
    name = ""
    structured = list(structured_calls or [])
    if structured:
        previous = _from_structured(structured[-1])
        if previous is not None:
            name = previous.name
    if not name:
        name = infer_tool_name(arguments) or ""
    if not name:
        logger.debug("Recovery: could not determine tool name from %s", sorted(arguments))
        return None
    return ToolCall(name=name, arguments=arguments)


def infer_tool_name(arguments: dict[str, Any]) -> str | None:
    """Guess the tool from the argument keys it was called with."""
    keys = set(arguments)
    for required, excluded, name in ARGUMENT_SHAPES:
        if required <= keys and not (excluded & keys):
            return name
    return None


def _extract_xml_calls(text: str) -> list[ToolCall]:
    calls = []
    for match in TOOL_CALL_OPEN_RE.finditer(text):
        payload = _parse_object_at(text, match.end())
        call = _from_payload(payload) if payload is not None else None
        if call is not None:
            calls.append(call)
    return calls


def _extract_bracket_calls(text: str) -> list[ToolCall]:
    calls = []
    for match in BRACKET_CALL_RE.finditer(normalize_quotes(text)):
        arguments = _parse_object_at(text, match.end())
        if isinstance(arguments, dict):
            calls.append(ToolCall(name=match.group(1), arguments=arguments))
    return calls


def _extract_bare_calls(text: str, known_tools: set[str]) -> list[ToolCall]:
    calls = []
    position = 0
    while True:
        start = text.find("{", position)
        if start < 0:
            break
        fragment = extract_json_object(text, start)
        if fragment is None:
            break
        payload = _parse_fragment(fragment)
        call = _from_payload(payload) if payload is not None else None
        if call is not None and call.name in known_tools:
            calls.append(call)
            position = start + len(fragment)
        else:
            position = start + 1
    return calls


def _strip_bracket_calls(text: str) -> str:
    normalized = normalize_quotes(text)
    pieces = []
    position = 0
    for match in BRACKET_CALL_RE.finditer(normalized):
        if match.start() < position:
            continue
        fragment = extract_json_object(normalized, match.end()) or ""
        pieces.append(text[position:match.start()])
        position = match.end() + len(fragment)
    pieces.append(text[position:])
    return "".join(pieces)


def _parse_object_at(text: str, start: int) -> Any | None:
    fragment = extract_json_object(text, start)
    if fragment is None:
        return None
    payload = _parse_fragment(fragment)
    if payload is None:
        # Smart-quoted delimiters hide string boundaries from the first scan
        fragment = extract_json_object(normalize_quotes(text), start)
        payload = _parse_fragment(fragment) if fragment else None
    return payload


def _parse_fragment(fragment: str) -> Any | None:
    try:
        return json.loads(fragment)
    except json.JSONDecodeError:
        return repair_json(fragment)


def _from_payload(payload: Any) -> ToolCall | None:
    """Build a ToolCall from a parsed call object, tolerating key synonyms."""
    if not isinstance(payload, dict):
        return None

    function = payload.get("function")
    if isinstance(function, dict):
        return _from_payload(function)

    name_key = next(
        (k for k in NAME_KEYS if isinstance(payload.get(k), str) and payload[k].strip()),
        None,
    )
    if name_key is None:
        return None
    name = payload[name_key].strip()

    arg_key = next((k for k in ARGUMENT_KEYS if k in payload), None)
    if arg_key is None:
        arguments = {k: v for k, v in payload.items() if k != name_key}
    else:
        arguments = _coerce_arguments(payload[arg_key])
    return ToolCall(name=name, arguments=arguments)


def _from_structured(call: Any) -> ToolCall | None:
    """Normalize a chat API tool call (dict or ollama model) into a ToolCall."""
    try:
        function = call["function"]
        name = function["name"] or ""
        arguments = function["arguments"]
    except (KeyError, TypeError, AttributeError):
        function = getattr(call, "function", None)
        name = getattr(function, "name", "") or ""
        arguments = getattr(function, "arguments", None)
    name = name.strip()
    if not name:
        return None
    return ToolCall(name=name, arguments=_coerce_arguments(arguments))


def _coerce_arguments(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        parsed = repair_json(value)
        return parsed if isinstance(parsed, dict) else {"raw": value}
    if isinstance(value, dict):
        return dict(value)
    try:
        return dict(value)
    except (TypeError, ValueError):
        return {"raw": str(value)}


def _filter_known(calls: list[ToolCall], known_tools: set[str] | None) -> list[ToolCall]:
    kept = []
    for call in calls:
        if not call.name:
            continue
        if known_tools is not None and call.name not in known_tools:
            logger.debug("Dropping call to unknown tool %r", call.name)
            continue
        kept.append(call)
    return kept
