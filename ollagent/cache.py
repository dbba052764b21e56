"""Per-run memoization of read-only tool results."""

from __future__ import annotations

import logging
from typing import Iterable

from ollagent.extractor import ToolCall

logger = logging.getLogger("ollagent.cache")


class ToolResultCache:
    """Caches outputs of idempotent tool calls, keyed by call signature.

    One instance belongs to a single task invocation and is never shared.
    Any successful file mutation clears it, since cached reads may be stale.
    """

    def __init__(self, cacheable_tools: Iterable[str]):
        self.cacheable_tools = frozenset(cacheable_tools)
        self._entries: dict[str, str] = {}
        self.hits = 0
        self.misses = 0

    def is_cacheable(self, call: ToolCall) -> bool:
        return call.name in self.cacheable_tools

    def get(self, call: ToolCall) -> str | None:
        """Return the cached output for *call*, or None."""
        if not self.is_cacheable(call):
            return None
        output = self._entries.get(call.signature())
        if output is None:
            self.misses += 1
        else:
            self.hits += 1
            logger.debug("Cache hit for %s", call.name)
        return output

    def put(self, call: ToolCall, output: str, error: str | None = None) -> bool:
        """Store a result. Errors and non-cacheable tools are not stored."""
        if error or not self.is_cacheable(call):
            return False
        self._entries[call.signature()] = output
        return True

    def invalidate(self) -> None:
        if self._entries:
            logger.debug("Invalidating %d cached tool results", len(self._entries))
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, call: ToolCall) -> bool:
        return call.signature() in self._entries
