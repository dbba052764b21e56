"""Tests for the terminal event handler's approval prompts."""

import asyncio
import threading
import time

import pytest

from ollagent.approval import ApprovalGate, ApprovalKind, ApprovalRequest
from ollagent.events import AgentEvent, EventType
from ollagent.safety import Severity
from ollagent.ui import renderer


def _open(gate: ApprovalGate, subject: str) -> AgentEvent:
    request = gate.open(ApprovalRequest(ApprovalKind.COMMAND, subject, Severity.HIGH, session_id="s1"))
    return AgentEvent(EventType.REQUEST_APPROVAL, "s1", {"request": request.to_dict()})


class TestApprovalPrompts:
    @pytest.mark.asyncio
    async def test_concurrent_requests_prompt_one_at_a_time(self, monkeypatch):
        lock = threading.Lock()
        active = []
        overlap = []

        def fake_ask():
            with lock:
                active.append(1)
                overlap.append(len(active))
            time.sleep(0.05)
            with lock:
                active.pop()
            return True, None

        monkeypatch.setattr(renderer, "ask_approval", fake_ask)
        gate = ApprovalGate()
        handler = renderer.ConsoleEventHandler(gate, interactive=True)
        first, second = _open(gate, "rm -rf build"), _open(gate, "rm -rf dist")

        await asyncio.gather(handler(first), handler(second))

        assert overlap == [1, 1]
        for event in (first, second):
            assert (await gate.wait(event.data["request"]["id"])).approved

    @pytest.mark.asyncio
    async def test_request_resolved_while_queued_is_not_prompted(self, monkeypatch):
        asked = []
        monkeypatch.setattr(renderer, "ask_approval", lambda: asked.append(1) or (True, None))
        gate = ApprovalGate()
        handler = renderer.ConsoleEventHandler(gate, interactive=True)
        event = _open(gate, "make deploy")
        gate.cancel(event.data["request"]["id"])

        await handler(event)

        assert asked == []
        assert not (await gate.wait(event.data["request"]["id"])).approved

    @pytest.mark.asyncio
    async def test_non_interactive_declines(self):
        gate = ApprovalGate()
        event = _open(gate, "make deploy")
        await renderer.ConsoleEventHandler(gate, interactive=False)(event)
        assert not (await gate.wait(event.data["request"]["id"])).approved
