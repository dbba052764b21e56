"""Shared fixtures for ollagent tests."""

import asyncio
import logging
from pathlib import Path

import pytest

import ollagent.logging_config as logging_config
import ollagent.session as session_mod
from ollagent.config import AppConfig
from ollagent.llm import LLMChunk
from ollagent.session import SessionStore


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path: Path, monkeypatch):
    """Redirect logs and sessions away from the user's home directory."""
    logs_dir = tmp_path / "logs"
    sessions_dir = tmp_path / "sessions"
    monkeypatch.setattr(logging_config, "LOGS_DIR", logs_dir)
    monkeypatch.setattr(logging_config, "AUDIT_LOG_FILE", logs_dir / "audit.jsonl")
    monkeypatch.setattr(logging_config, "APP_LOG_FILE", logs_dir / "ollagent.log")
    monkeypatch.setattr(session_mod, "SESSIONS_DIR", sessions_dir)
    yield tmp_path
    for name in ("ollagent", "ollagent.audit"):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()


@pytest.fixture
def tmp_workdir(tmp_path: Path) -> Path:
    """Create a temporary working directory for tool tests."""
    workdir = tmp_path / "project"
    workdir.mkdir()
    return workdir


@pytest.fixture
def sample_file(tmp_workdir: Path) -> Path:
    """Create a sample source file in the temp workdir."""
    f = tmp_workdir / "hello.py"
    f.write_text('def greet(name):\n    return f"Hello, {name}!"\n')
    return f


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path / "store")


@pytest.fixture
def config(tmp_workdir: Path) -> AppConfig:
    return AppConfig(model="test-model:7b", working_dir=str(tmp_workdir), enable_thinking=False)


class ScriptedLLM:
    """Plays back one scripted turn per stream_chat call.

    A turn is a string (plain reply), a dict or list of dicts (tool calls as
    ``{"name": ..., "arguments": ...}``), a list of LLMChunk, or an exception
    raised before the first chunk.
    """

    def __init__(self, turns, summary: str = "Final synthesis."):
        self.turns = list(turns)
        self.summary = summary
        self.requests = []
        self.thinks = []
        self.completions = []
        self.gate: asyncio.Event | None = None

    async def stream_chat(self, request):
        self.requests.append(request)
        self.thinks.append(request.think)
        turn = self.turns.pop(0) if self.turns else "Nothing left to do. [TASK_COMPLETE]"
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(turn, Exception):
            raise turn
        for chunk in self._chunks(turn):
            await asyncio.sleep(0)
            yield chunk

    async def complete(self, model, messages, options=None):
        self.completions.append(messages)
        return self.summary

    @staticmethod
    def _chunks(turn) -> list[LLMChunk]:
        if isinstance(turn, str):
            return [LLMChunk(text=turn), LLMChunk(done=True, done_reason="stop")]
        if isinstance(turn, dict):
            turn = [turn]
        if turn and isinstance(turn[0], LLMChunk):
            return list(turn)
        calls = [{"function": {"name": c["name"], "arguments": c.get("arguments", {})}} for c in turn]
        return [LLMChunk(tool_calls=calls), LLMChunk(done=True, done_reason="stop")]


@pytest.fixture
def scripted_llm():
    """Factory for a fake model backend that replays scripted turns."""
    return ScriptedLLM
