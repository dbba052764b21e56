"""Repetition detection across agent iterations.

Two independent detectors:

- text: trigram Jaccard similarity between consecutive iterations' visible
  text (and, separately, reasoning), catching a model that restates its plan
- calls: overlap of tool call signatures between consecutive iterations,
  catching a model that re-issues the same tool calls
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass

from ollagent.config import (
    DUPLICATE_CALL_BREAK,
    DUPLICATE_CALL_CORRECTION,
    DUPLICATE_CALL_OVERLAP,
    MIN_SIMILARITY_LENGTH,
    REASONING_REPETITION_BREAK,
    REASONING_SIMILARITY_THRESHOLD,
    TEXT_REPETITION_BREAK,
    TEXT_SIMILARITY_THRESHOLD,
)

logger = logging.getLogger("ollagent.repetition")

_WHITESPACE_RE = re.compile(r"\s+")

TEXT_CORRECTION_MESSAGE = (
    "STOP. You are repeating yourself. Your last response was nearly identical "
    "to the previous one. Do NOT restate your plan or analysis. Proceed DIRECTLY "
    "with the next tool call, or output [TASK_COMPLETE] if done."
)
CALL_CORRECTION_MESSAGE = (
    "STOP. You are repeating the same tool calls you already made in previous "
    "iterations. The results have not changed. Either take a DIFFERENT approach "
    "to solve the task, or respond with [TASK_COMPLETE] explaining what you found."
)


def _normalize(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text.lower()).strip()


def _trigrams(text: str) -> set[str]:
    return {text[i:i + 3] for i in range(len(text) - 2)}


def text_similarity(a: str, b: str) -> float:
    """Trigram Jaccard similarity in [0, 1] over normalized text."""
    if not a or not b:
        return 0.0
    na, nb = _normalize(a), _normalize(b)
    if len(na) < MIN_SIMILARITY_LENGTH or len(nb) < MIN_SIMILARITY_LENGTH:
        return 0.0
    if na == nb:
        return 1.0
    ta, tb = _trigrams(na), _trigrams(nb)
    intersection = len(ta & tb)
    union = len(ta) + len(tb) - intersection
    return intersection / union if union else 0.0


@dataclass
class RepetitionVerdict:
    """Outcome of one repetition check."""

    is_repetitive: bool = False
    should_hard_break: bool = False
    inject_correction: bool = False
    skip_execution: bool = False
    reason: str = ""
    similarity: float = 0.0

    def merge(self, other: RepetitionVerdict) -> RepetitionVerdict:
        return RepetitionVerdict(
            is_repetitive=self.is_repetitive or other.is_repetitive,
            should_hard_break=self.should_hard_break or other.should_hard_break,
            inject_correction=self.inject_correction or other.inject_correction,
            skip_execution=self.skip_execution or other.skip_execution,
            reason="; ".join(r for r in (self.reason, other.reason) if r),
            similarity=max(self.similarity, other.similarity),
        )


class RepetitionDetector:
    """Tracks repetition streaks for a single task invocation."""

    def __init__(
        self,
        text_threshold: float = TEXT_SIMILARITY_THRESHOLD,
        reasoning_threshold: float = REASONING_SIMILARITY_THRESHOLD,
        text_break: int = TEXT_REPETITION_BREAK,
        reasoning_break: int = REASONING_REPETITION_BREAK,
        call_overlap: float = DUPLICATE_CALL_OVERLAP,
        call_correction: int = DUPLICATE_CALL_CORRECTION,
        call_break: int = DUPLICATE_CALL_BREAK,
    ):
        self.text_threshold = text_threshold
        self.reasoning_threshold = reasoning_threshold
        self.text_break = text_break
        self.reasoning_break = reasoning_break
        self.call_overlap = call_overlap
        self.call_correction = call_correction
        self.call_break = call_break
        self.reset()

    def reset(self) -> None:
        self.previous_text = ""
        self.previous_reasoning = ""
        self.previous_signatures: list[str] = []
        self.text_streak = 0
        self.reasoning_streak = 0
        self.duplicate_streak = 0

    def check(
        self,
        current_text: str,
        current_signatures: list[str],
        reasoning: str = "",
    ) -> RepetitionVerdict:
        """Run both detectors for one iteration."""
        return self.check_text(current_text, reasoning).merge(self.check_calls(current_signatures))

    def check_text(self, current_text: str, reasoning: str = "") -> RepetitionVerdict:
        """Compare this iteration's text and reasoning with the previous iteration's."""
        verdict = RepetitionVerdict()

        if reasoning.strip():
            similarity = text_similarity(reasoning, self.previous_reasoning)
            if similarity > self.reasoning_threshold:
                self.reasoning_streak += 1
                logger.info(
                    "Reasoning repetition (%.0f%% similar, streak %d)",
                    similarity * 100, self.reasoning_streak,
                )
                verdict.is_repetitive = True
                verdict.inject_correction = True
                verdict.similarity = similarity
                verdict.reason = f"reasoning repeated {self.reasoning_streak}x"
                if self.reasoning_streak >= self.reasoning_break:
                    verdict.should_hard_break = True
            else:
                self.reasoning_streak = 0
            self.previous_reasoning = reasoning

        similarity = text_similarity(current_text, self.previous_text)
        if similarity > self.text_threshold:
            self.text_streak += 1
            logger.info(
                "Text repetition (%.0f%% similar, streak %d)",
                similarity * 100, self.text_streak,
            )
            verdict = verdict.merge(RepetitionVerdict(
                is_repetitive=True,
                inject_correction=True,
                should_hard_break=self.text_streak >= self.text_break,
                reason=f"text repeated {self.text_streak}x",
                similarity=similarity,
            ))
        else:
            self.text_streak = 0
        self.previous_text = current_text
        return verdict

    def check_calls(self, current_signatures: list[str]) -> RepetitionVerdict:
        """Compare this iteration's tool call signatures with the previous iteration's."""
        verdict = RepetitionVerdict()
        if not current_signatures:
            return verdict

        previous = set(self.previous_signatures)
        duplicates = sum(1 for sig in current_signatures if sig in previous)
        is_duplicate = bool(previous) and duplicates >= math.ceil(
            len(current_signatures) * self.call_overlap
        )
        self.previous_signatures = list(current_signatures)

        if not is_duplicate:
            self.duplicate_streak = 0
            return verdict

        self.duplicate_streak += 1
        logger.info(
            "Duplicate tool calls (%d/%d repeated, streak %d)",
            duplicates, len(current_signatures), self.duplicate_streak,
        )
        verdict.is_repetitive = True
        verdict.reason = f"tool calls repeated {self.duplicate_streak}x"
        if self.duplicate_streak >= self.call_break:
            verdict.should_hard_break = True
        elif self.duplicate_streak >= self.call_correction:
            verdict.inject_correction = True
            verdict.skip_execution = True
        return verdict
