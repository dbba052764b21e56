"""Best-effort JSON recovery for tool call payloads emitted by small models.

Handles common issues:
- Typographic ("smart") quotes used as JSON string delimiters
- Trailing commas
- Missing closing braces/brackets (truncated at stream end)
- Single-quoted strings
- Unquoted keys
"""

from __future__ import annotations

import json
import re
from typing import Any

# Unicode quote variants models put around JSON keys and values
SMART_QUOTES_RE = re.compile(
    "[“”„‟‘’‚‛＂"
    "«»‹›「」『』"
    "﹁﹂﹃﹄]"
)


def normalize_quotes(text: str) -> str:
    """Replace every typographic quote variant with a plain double quote."""
    return SMART_QUOTES_RE.sub('"', text)


def extract_json_object(text: str, start: int = 0) -> str | None:
    """Return the JSON object starting at the first '{' at or after *start*.

    Scans character by character, honoring string and escape state. If the
    braces never balance (output truncated at stream end), the missing
    closers are synthesized instead of discarding the object.
    """
    begin = text.find("{", start)
    if begin < 0:
        return None

    stack: list[str] = []
    in_string = False
    escape = False

    for i in range(begin, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\" and in_string:
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            stack.append("}")
        elif ch == "[":
            stack.append("]")
        elif ch in ("}", "]"):
            if stack and stack[-1] == ch:
                stack.pop()
            if not stack:
                return text[begin:i + 1]

    fragment = text[begin:].rstrip()
    if in_string:
        fragment += '"'
    return _balance_brackets(fragment)


def repair_json(text: str) -> Any | None:
    """Try to parse JSON, repairing common issues if it fails.

    Returns the parsed value, or None when the text cannot be recovered.
    """
    text = text.strip()
    if not text:
        return None

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    repaired = normalize_quotes(text)
    repaired = _fix_single_quotes(repaired)

    # Trailing commas before } or ]
    repaired = re.sub(r",\s*([}\]])", r"\1", repaired)

    # Unquoted keys: {key: "value"} -> {"key": "value"}
    repaired = re.sub(
        r'(?<=[{,])\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*:',
        r' "\1":',
        repaired,
    )

    repaired = _balance_brackets(repaired)
    # A dangling comma left by truncation
    repaired = re.sub(r",\s*([}\]])", r"\1", repaired)

    try:
        return json.loads(repaired)
    except json.JSONDecodeError:
        return None


def _fix_single_quotes(text: str) -> str:
    """Replace single-quoted strings with double-quoted strings.

    Avoids replacing apostrophes within words or inside double-quoted strings.
    """
    result = []
    i = 0
    in_double_quote = False

    while i < len(text):
        ch = text[i]

        if ch == '"' and (i == 0 or text[i - 1] != "\\"):
            in_double_quote = not in_double_quote
            result.append(ch)
        elif ch == "'" and not in_double_quote:
            before = text[i - 1] if i > 0 else ""
            if before in (":", "[", "{", ",", " ", "\n", "\t", ""):
                j = text.find("'", i + 1)
                if j >= 0:
                    inner = text[i + 1:j].replace('"', '\\"')
                    result.append('"')
                    result.append(inner)
                    result.append('"')
                    i = j + 1
                    continue
            result.append(ch)
        else:
            result.append(ch)
        i += 1

    return "".join(result)


def _balance_brackets(text: str) -> str:
    """Add missing closing braces/brackets."""
    stack: list[str] = []
    in_string = False
    escape = False

    for ch in text:
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            stack.append("}")
        elif ch == "[":
            stack.append("]")
        elif ch in ("}", "]"):
            if stack and stack[-1] == ch:
                stack.pop()

    while stack:
        text += stack.pop()

    return text
