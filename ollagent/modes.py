"""Agent modes and the tool sets each one may call."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from ollagent.config import MODE_MAX_ITERATIONS

if TYPE_CHECKING:
    from ollagent.tools import ToolRegistry
    from ollagent.tools.base import BaseTool


class AgentMode(str, Enum):
    AGENT = "agent"
    EXPLORE = "explore"
    REVIEW = "review"
    DEEP_EXPLORE = "deep-explore"
    DEEP_EXPLORE_WRITE = "deep-explore-write"

    @property
    def max_iterations(self) -> int:
        return MODE_MAX_ITERATIONS[self.value]


READ_ONLY_TOOLS = frozenset({"read_file", "list_files", "find_files", "search_workspace"})
WRITE_TOOLS = frozenset({"write_file", "edit_file"})

# None = every registered tool
MODE_TOOLS: dict[AgentMode, frozenset[str] | None] = {
    AgentMode.AGENT: None,
    AgentMode.EXPLORE: READ_ONLY_TOOLS,
    AgentMode.REVIEW: READ_ONLY_TOOLS | {"run_terminal_command"},
    AgentMode.DEEP_EXPLORE: READ_ONLY_TOOLS | {"run_subagent"},
    AgentMode.DEEP_EXPLORE_WRITE: READ_ONLY_TOOLS | WRITE_TOOLS | {"run_subagent"},
}

SUBAGENT_MODES = (AgentMode.EXPLORE, AgentMode.REVIEW, AgentMode.DEEP_EXPLORE)


def allowed_tools(mode: AgentMode | str, available: set[str]) -> set[str]:
    """Tools *mode* may call, restricted to what is registered."""
    permitted = MODE_TOOLS[AgentMode(mode)]
    return set(available) if permitted is None else set(available) & permitted


class FilteredToolRegistry:
    """Wraps a ToolRegistry and exposes only the tools a mode allows.

    Provides the same lookup and definition interface as ToolRegistry.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        mode: AgentMode | str,
        exclude: set[str] | None = None,
    ):
        self._registry = registry
        self.mode = AgentMode(mode)
        self._allowed = allowed_tools(self.mode, set(registry.tool_names)) - (exclude or set())

    def get(self, name: str) -> BaseTool | None:
        """Get a tool by name if the mode allows it."""
        if name not in self._allowed:
            return None
        return self._registry.get(name)

    def all_tools(self) -> list[BaseTool]:
        return [tool for tool in self._registry.all_tools() if tool.name in self._allowed]

    def tool_definitions(self) -> list[dict]:
        return [tool.to_tool_definition() for tool in self.all_tools()]

    def is_allowed(self, name: str) -> bool:
        return name in self._allowed

    @property
    def tool_names(self) -> list[str]:
        return sorted(self._allowed)
