"""Streaming chat boundary over ``ollama.AsyncClient``.

The controller only sees ``LLMChunk`` values: incremental text, incremental
reasoning, fully formed tool calls, and a final chunk with token counts.
Opening a stream is retried with exponential backoff; once chunks flow, an
error ends the stream.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx
import ollama

from ollagent.config import (
    DEFAULT_KEEP_ALIVE,
    MAX_RETRIES,
    MIN_NUM_CTX,
    NUM_CTX_ALIGNMENT,
    NUM_CTX_BUFFER,
    OLLAMA_HOST,
    RETRY_BASE_DELAY,
)
from ollagent.errors import ReasoningUnsupportedError
from ollagent.extractor import detect_partial_tool_call

logger = logging.getLogger("ollagent.llm")

TRANSIENT_ERRORS = (ollama.ResponseError, ConnectionError, httpx.HTTPError)
TOOL_PARSE_ERROR_MARKER = "error parsing tool call"

# Keys the chat API accepts on a message; everything else stays local
WIRE_MESSAGE_KEYS = ("role", "content", "tool_calls", "tool_name", "images")


@dataclass
class ChatRequest:
    model: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] | None = None
    think: bool = False
    options: dict[str, Any] = field(default_factory=dict)
    keep_alive: str | None = DEFAULT_KEEP_ALIVE
    payload_tokens: int = 0


@dataclass
class LLMChunk:
    """One streamed piece of a model turn."""

    text: str = ""
    thinking: str = ""
    tool_calls: list[Any] = field(default_factory=list)
    done: bool = False
    done_reason: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    error: str | None = None


@dataclass
class StreamAccumulator:
    """Everything gathered from one streamed turn.

    Its final state is the only input to extraction and persistence.
    """

    text: str = ""
    thinking: str = ""
    tool_calls: list[Any] = field(default_factory=list)
    tool_parse_errors: list[str] = field(default_factory=list)
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    done_reason: str | None = None
    partial_tool_name: str | None = None
    chunks: int = 0

    def add(self, chunk: LLMChunk) -> str | None:
        """Fold a chunk in. Returns a newly visible in-progress tool name."""
        self.chunks += 1
        self.text += chunk.text
        self.thinking += chunk.thinking
        self.tool_calls.extend(chunk.tool_calls)
        if chunk.error:
            self.tool_parse_errors.append(chunk.error)
        if chunk.prompt_tokens is not None:
            self.prompt_tokens = chunk.prompt_tokens
        if chunk.completion_tokens is not None:
            self.completion_tokens = chunk.completion_tokens
        if chunk.done_reason:
            self.done_reason = chunk.done_reason

        if chunk.text:
            name = detect_partial_tool_call(self.text)
            if name and name != self.partial_tool_name:
                self.partial_tool_name = name
                return name
        return None

    @property
    def truncated(self) -> bool:
        return self.done_reason == "length"


def compute_dynamic_num_ctx(payload_tokens: int, num_predict: int, context_window: int) -> int:
    """Smallest aligned context size that fits the prompt plus the reply."""
    needed = payload_tokens + num_predict + NUM_CTX_BUFFER
    aligned = math.ceil(needed / NUM_CTX_ALIGNMENT) * NUM_CTX_ALIGNMENT
    return max(MIN_NUM_CTX, min(aligned, context_window))


def _wire_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [{k: m[k] for k in WIRE_MESSAGE_KEYS if k in m} for m in messages]


def build_chat_request(
    model: str,
    messages: list[dict[str, Any]],
    tools: list[dict[str, Any]] | None,
    think: bool,
    temperature: float,
    max_tokens: int,
    context_window: int,
    keep_alive: str | None = DEFAULT_KEEP_ALIVE,
) -> ChatRequest:
    """Assemble a request, sizing num_ctx from the payload estimate."""
    wire = _wire_messages(messages)
    message_chars = sum(len(str(m.get("content") or "")) for m in wire)
    tool_chars = len(json.dumps(tools)) if tools else 0
    payload_tokens = (message_chars + tool_chars) // 4
    options = {
        "temperature": temperature,
        "num_predict": max_tokens,
        "num_ctx": compute_dynamic_num_ctx(payload_tokens, max_tokens, context_window),
    }
    return ChatRequest(
        model=model,
        messages=wire,
        tools=tools or None,
        think=think,
        options=options,
        keep_alive=keep_alive,
        payload_tokens=payload_tokens,
    )


def _to_chunk(raw: Any) -> LLMChunk:
    msg = raw.get("message") or {}
    done = bool(raw.get("done", False))
    return LLMChunk(
        text=msg.get("content") or "",
        thinking=msg.get("thinking") or "",
        tool_calls=list(msg.get("tool_calls") or []),
        done=done,
        done_reason=raw.get("done_reason") if done else None,
        prompt_tokens=raw.get("prompt_eval_count") if done else None,
        completion_tokens=raw.get("eval_count") if done else None,
    )


def _status_code(error: Exception) -> int | None:
    return getattr(error, "status_code", None)


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, ollama.ResponseError):
        status = _status_code(error) or 0
        return not 400 <= status < 500 and TOOL_PARSE_ERROR_MARKER not in str(error)
    return isinstance(error, TRANSIENT_ERRORS)


class LLMClient:
    """Async streaming client for a local Ollama server."""

    def __init__(
        self,
        host: str = OLLAMA_HOST,
        client: Any | None = None,
        max_retries: int = MAX_RETRIES,
        retry_base_delay: float = RETRY_BASE_DELAY,
    ):
        self.client = client if client is not None else ollama.AsyncClient(host=host)
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

    async def _open_stream(self, request: ChatRequest):
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": request.messages,
            "stream": True,
            "options": request.options,
        }
        if request.tools:
            kwargs["tools"] = request.tools
        if request.think:
            kwargs["think"] = True
        if request.keep_alive:
            kwargs["keep_alive"] = request.keep_alive
        return await self.client.chat(**kwargs)

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[LLMChunk]:
        """Stream one model turn.

        Raises ReasoningUnsupportedError when the backend rejects ``think``.
        A tool-call parse failure reported by the backend is yielded as a
        final chunk carrying ``error`` so the caller can recover the call.
        """
        stream = None
        first = None
        for attempt in range(self.max_retries):
            try:
                stream = await self._open_stream(request)
                first = await anext(stream, None)
                break
            except TRANSIENT_ERRORS as e:
                if request.think and _status_code(e) == 400:
                    raise ReasoningUnsupportedError(str(e), status_code=400) from e
                if TOOL_PARSE_ERROR_MARKER in str(e):
                    yield LLMChunk(done=True, error=str(e))
                    return
                if not _is_retryable(e) or attempt == self.max_retries - 1:
                    raise
                delay = self.retry_base_delay * (2 ** attempt)
                logger.warning(
                    "Chat request failed (%s), retry %d/%d in %.1fs",
                    e, attempt + 1, self.max_retries, delay,
                )
                await asyncio.sleep(delay)

        if first is None:
            return
        yield _to_chunk(first)

        try:
            async for raw in stream:
                yield _to_chunk(raw)
        except ollama.ResponseError as e:
            if TOOL_PARSE_ERROR_MARKER not in str(e):
                raise
            logger.info("Backend failed to parse a tool call: %s", str(e)[:300])
            yield LLMChunk(done=True, error=str(e))

    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        options: dict[str, Any] | None = None,
    ) -> str:
        """Non-streaming chat without tools. Returns the reply text."""
        response = await self.client.chat(
            model=model,
            messages=_wire_messages(messages),
            stream=False,
            options=options or {},
        )
        message = response.get("message") or {}
        return message.get("content") or ""
