"""Typed events the agent core emits for a UI to render."""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

logger = logging.getLogger("ollagent.events")


class EventType(str, Enum):
    STREAM_CHUNK = "streamChunk"
    THINKING = "thinking"
    SHOW_TOOL_ACTION = "showToolAction"
    REQUEST_APPROVAL = "requestApproval"
    APPROVAL_RESOLVED = "approvalResolved"
    TOKEN_USAGE = "tokenUsage"
    CONTEXT_COMPACTED = "contextCompacted"
    FILES_CHANGED = "filesChanged"
    SHOW_WARNING = "showWarning"
    SHOW_ERROR = "showError"
    FINAL_MESSAGE = "finalMessage"


@dataclass
class AgentEvent:
    type: EventType
    session_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class EventSink:
    """Receives events. The core never waits on a reply through this channel."""

    async def emit(self, event: AgentEvent) -> None:
        raise NotImplementedError


class NullEventSink(EventSink):
    async def emit(self, event: AgentEvent) -> None:
        return None


class CollectingEventSink(EventSink):
    """Keeps every event in memory."""

    def __init__(self):
        self.events: list[AgentEvent] = []

    async def emit(self, event: AgentEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[AgentEvent]:
        return [e for e in self.events if e.type == event_type]


class CallbackEventSink(EventSink):
    """Forwards events to a sync or async callback.

    Callback failures are logged and never reach the agent loop.
    """

    def __init__(self, callback: Callable[[AgentEvent], Awaitable[None] | None]):
        self._callback = callback

    async def emit(self, event: AgentEvent) -> None:
        try:
            result = self._callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Event callback failed for %s", event.type.value)
