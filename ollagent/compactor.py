"""Context compaction: summarizes older turns when the prompt nears the window.

Token counts here are rough (words x 1.3). They only drive threshold checks;
real prompt token counts from the backend take precedence when known.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ollagent.config import (
    COMPACTION_MESSAGE_CAP,
    COMPACTION_PRESERVE_TAIL,
    COMPACTION_THRESHOLD,
    TOKENS_PER_TOOL_DEFINITION,
)

if TYPE_CHECKING:
    from ollagent.llm import LLMClient

logger = logging.getLogger("ollagent.compactor")

FILE_CONTEXT_RE = re.compile(
    r"<file_context>|User's selected code from|already provided, do not re-read"
)

SUMMARIZER_SYSTEM_PROMPT = "You are a conversation summarizer. Be thorough and specific."

SUMMARY_PROMPT = """You are summarizing a coding agent conversation to preserve context. The conversation history is getting long and needs compaction. Create a structured continuation summary that enables immediate resumption of the task.

CONVERSATION SEGMENT TO SUMMARIZE:
{transcript}

Create a summary with these sections:

1. TASK OVERVIEW: The user's core request and success criteria. Any clarifications or constraints they specified.
2. CURRENT STATE: What has been completed so far. List specific files created, modified, or analyzed with paths. Key outputs or artifacts produced.
3. IMPORTANT DISCOVERIES: Technical constraints or requirements uncovered. Decisions made and their rationale. Errors encountered and how they were resolved.
4. APPROACHES THAT FAILED: What was tried and didn't work, and why. Include error messages. This prevents repeating failed approaches.
5. PROMISES MADE: Any commitments to the user that must not be forgotten after compaction (e.g., "I'll also update the tests").
6. NEXT STEPS: Specific actions needed to complete the task. Any blockers or open questions. Priority order if multiple steps remain.
7. KEY CODE CONTEXT: Important file paths, function names, variable names, or patterns needed for reference.
8. USER INTENT (VERBATIM): Quote the user's most recent instructions word-for-word. This prevents intent drift after compaction. If the user corrected you or gave specific feedback, include those quotes too.

Be concise but complete. Include file paths, function names, error messages, and exact details. This summary replaces the original messages, so nothing can be looked up later. Err on the side of including information that prevents duplicate work or repeated mistakes."""

SUMMARY_MESSAGE = (
    "<context_summary>\n{summary}\n</context_summary>\n\n"
    "The above is a summary of our earlier conversation. Continue from where we left off."
)


def estimate_tokens(text: str) -> int:
    """Rough token estimate: word count x 1.3."""
    if not text:
        return 0
    return math.ceil(len(text.split()) * 1.3)


def estimate_messages_tokens(messages: list[dict[str, Any]]) -> int:
    return sum(
        estimate_tokens(m.get("content") or "") + estimate_tokens(m.get("thinking") or "")
        for m in messages
    )


@dataclass
class TokenBreakdown:
    system: int = 0
    tool_definitions: int = 0
    messages: int = 0
    tool_results: int = 0
    files: int = 0
    total: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "system": self.system,
            "tool_definitions": self.tool_definitions,
            "messages": self.messages,
            "tool_results": self.tool_results,
            "files": self.files,
            "total": self.total,
        }


def estimate_tokens_by_category(
    messages: list[dict[str, Any]],
    tool_definition_count: int = 0,
    actual_prompt_tokens: int | None = None,
) -> TokenBreakdown:
    """Split prompt usage into categories for display.

    With a real prompt token count the heuristic estimates are scaled so the
    categories add up to actual usage.
    """
    system = msgs = tool_results = files = 0
    for m in messages:
        content = m.get("content") or ""
        tokens = estimate_tokens(content) + estimate_tokens(m.get("thinking") or "")
        role = m.get("role")
        if role == "system":
            system += tokens
        elif role == "tool":
            tool_results += tokens
        elif role == "user" and FILE_CONTEXT_RE.search(content):
            files += tokens
        else:
            msgs += tokens

    tool_defs = tool_definition_count * TOKENS_PER_TOOL_DEFINITION
    estimated_total = system + tool_defs + msgs + tool_results + files

    if actual_prompt_tokens and estimated_total > 0:
        scale = actual_prompt_tokens / estimated_total
        return TokenBreakdown(
            system=round(system * scale),
            tool_definitions=round(tool_defs * scale),
            messages=round(msgs * scale),
            tool_results=round(tool_results * scale),
            files=round(files * scale),
            total=actual_prompt_tokens,
        )
    return TokenBreakdown(system, tool_defs, msgs, tool_results, files, estimated_total)


@dataclass
class CompactionResult:
    summarized_messages: int
    tokens_before: int
    tokens_after: int


def build_transcript(messages: list[dict[str, Any]]) -> str:
    lines = []
    for m in messages:
        role = {"assistant": "Assistant", "tool": "Tool"}.get(m.get("role"), "User")
        tool_tag = f" ({m['tool_name']})" if m.get("tool_name") else ""
        content = (m.get("content") or "")[:COMPACTION_MESSAGE_CAP]
        lines.append(f"[{role}{tool_tag}]: {content}")
    return "\n\n".join(lines)


class ContextCompactor:
    """Replaces the middle of a conversation with a model-written summary."""

    def __init__(
        self,
        llm: LLMClient,
        threshold: float = COMPACTION_THRESHOLD,
        preserve_tail: int = COMPACTION_PRESERVE_TAIL,
    ):
        self.llm = llm
        self.threshold = threshold
        self.preserve_tail = preserve_tail

    async def compact_if_needed(
        self,
        messages: list[dict[str, Any]],
        context_window: int,
        model: str,
        actual_prompt_tokens: int | None = None,
    ) -> CompactionResult | None:
        """Compact *messages* in place when over threshold.

        Keeps the system prompt and the last few turns. Returns None when no
        compaction happened.
        """
        current = actual_prompt_tokens or estimate_messages_tokens(messages)
        if current < math.floor(context_window * self.threshold):
            return None
        if len(messages) <= 4:
            return None

        preserve_start = len(messages) - min(self.preserve_tail, len(messages) - 1)
        # Tool results must stay with the assistant turn that requested them
        while preserve_start > 1 and messages[preserve_start].get("role") == "tool":
            preserve_start -= 1

        to_summarize = messages[1:preserve_start]
        if len(to_summarize) < 2:
            return None

        summary = await self._generate_summary(to_summarize, model)
        if not summary:
            return None

        messages[1:preserve_start] = [{
            "role": "user",
            "content": SUMMARY_MESSAGE.format(summary=summary),
        }]
        result = CompactionResult(
            summarized_messages=len(to_summarize),
            tokens_before=current,
            tokens_after=estimate_messages_tokens(messages),
        )
        logger.info(
            "Compacted %d messages (%d -> %d tokens)",
            result.summarized_messages, result.tokens_before, result.tokens_after,
        )
        return result

    async def _generate_summary(self, messages: list[dict[str, Any]], model: str) -> str:
        prompt = SUMMARY_PROMPT.format(transcript=build_transcript(messages))
        try:
            result = await self.llm.complete(
                model,
                [
                    {"role": "system", "content": SUMMARIZER_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            )
        except Exception as e:
            logger.warning("Compaction summary failed: %s", e)
            return ""
        return result.strip()
