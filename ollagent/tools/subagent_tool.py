"""Sub-agent tool: delegates a focused, read-mostly task to a nested agent loop."""

from __future__ import annotations

import logging
from typing import Any, TYPE_CHECKING

from ollagent.config import MAX_SUBAGENT_RESULT_CHARS
from ollagent.modes import SUBAGENT_MODES
from ollagent.tools.base import BaseTool

if TYPE_CHECKING:
    from ollagent.tools import ExecutionContext

logger = logging.getLogger("ollagent.tools.subagent")

SUBAGENT_MODE_NAMES = [m.value for m in SUBAGENT_MODES]


class SubagentTool(BaseTool):
    """Runs another instance of the agent loop and returns its findings."""

    calls_llm = True

    @property
    def name(self) -> str:
        return "run_subagent"

    @property
    def description(self) -> str:
        return (
            "Launch a sub-agent for multi-step research: it can search, list and read "
            "files and returns its findings as text. The findings are NOT shown to the "
            "user; act on them yourself. The sub-agent cannot write files."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "task": {
                    "type": "string",
                    "description": "Detailed description of what to investigate and what to report back",
                },
                "title": {
                    "type": "string",
                    "description": "Short (3-5 word) label for progress display",
                },
                "context_hint": {
                    "type": "string",
                    "description": "Optional focus hint, e.g. 'start from src/auth/'",
                },
                "description": {
                    "type": "string",
                    "description": "One-sentence description shown to the user",
                },
                "mode": {
                    "type": "string",
                    "enum": SUBAGENT_MODE_NAMES,
                    "description": "explore (default), review, or deep-explore",
                },
            },
            "required": ["task"],
        }

    def execute(self, **kwargs: Any) -> str:
        return "Error: run_subagent must be run by the agent loop"

    async def run(self, arguments: dict[str, Any], context: ExecutionContext) -> str:
        task = (arguments.get("task") or "").strip()
        hint = (arguments.get("context_hint") or "").strip()
        mode = arguments.get("mode") or SUBAGENT_MODE_NAMES[0]

        if context.is_subagent or context.spawn_subtask is None:
            return "Error: Sub-agents cannot launch further sub-agents."
        if not task:
            return "Error: task is required"
        if mode not in SUBAGENT_MODE_NAMES:
            return f"Error: mode must be one of {', '.join(SUBAGENT_MODE_NAMES)}"

        effective_task = f"[Focus: {hint}]\n\n{task}" if hint else task
        title = arguments.get("title") or task[:40]
        logger.info("Sub-agent (%s): %s", mode, title, extra={"session_id": context.session_id})

        try:
            result = await context.spawn_subtask(effective_task, mode)
        except Exception as e:
            logger.warning("Sub-agent failed: %s", e)
            return f"Error: sub-agent failed: {e}"

        result = (result or "").strip()
        if not result:
            return "(Sub-agent returned no findings.)"
        if len(result) > MAX_SUBAGENT_RESULT_CHARS:
            return result[:MAX_SUBAGENT_RESULT_CHARS] + f"\n... [{len(result)} chars total]"
        return result
