"""File-level locking for concurrent tool writes within one batch."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator


class FileLockManager:
    """Manages per-file asyncio locks so writes to one path serialize.

    Reads don't take locks. Locks are keyed by resolved absolute path.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, path: str) -> asyncio.Lock:
        resolved = str(Path(path).resolve())
        if resolved not in self._locks:
            self._locks[resolved] = asyncio.Lock()
        return self._locks[resolved]

    @asynccontextmanager
    async def locked(self, path: str | None) -> AsyncIterator[None]:
        """Hold the lock for *path* for the duration of the block (no-op for None)."""
        if path is None:
            yield
            return
        lock = self._get_lock(path)
        async with lock:
            yield

    def is_locked(self, path: str) -> bool:
        lock = self._locks.get(str(Path(path).resolve()))
        return bool(lock and lock.locked())
