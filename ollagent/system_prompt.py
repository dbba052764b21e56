"""System prompt template for the agent loop."""

from __future__ import annotations

import subprocess
from pathlib import Path

from ollagent.config import DATA_DIR, TASK_COMPLETE_SENTINEL
from ollagent.modes import AgentMode


# ── Core agentic identity ────────────────────────────────────────────────────

_AGENTIC_IDENTITY = f"""
You are an autonomous coding agent working inside a local workspace. You are a tool-using agent, not a chatbot.

CRITICAL RULES:
1. Use tools to accomplish the task. Never describe code the user should write; write it with write_file or edit_file.
2. Keep text responses SHORT. Your tool calls are the work.
3. Never repeat a tool call you already made with the same arguments. Use the results you have.
4. When the task is finished, reply with a brief summary followed by {TASK_COMPLETE_SENTINEL}.
""".strip()


# ── Workflow ─────────────────────────────────────────────────────────────────

_WORKFLOW = """
## Workflow

1. **EXPLORE**: search and read the relevant files first (search_workspace, find_files, list_files, read_file).
2. **PLAN**: state your plan in 1-3 sentences.
3. **EXECUTE**: make the changes with edit_file or write_file and run commands with run_terminal_command.
4. **VERIFY**: run tests or the program when the task calls for it, and fix failures.
""".strip()


_RULES = """
## Rules

### Tool Strategy
- Always read_file before edit_file. Never guess file contents.
- Prefer edit_file over write_file for existing files.
- Independent read-only calls may be issued together in one turn.
- Use run_subagent for broad research you do not need to see line by line.

### Editing Discipline
- Copy old_string exactly from read_file output, including whitespace and indentation.
- Include enough surrounding lines so old_string matches exactly once.
- Only change what was requested. Preserve the existing code style.

### Error Recovery
- If a tool fails, read the error and adjust. Do not retry the identical call.
- A result of "Skipped by user" means the user declined the action. Choose another approach.
""".strip()


# Mode-specific instructions
_MODE_RULES: dict[AgentMode, str] = {
    AgentMode.AGENT: "You may read, write and edit files and run terminal commands.",
    AgentMode.EXPLORE: (
        "You are in EXPLORE mode: read-only. Investigate and report findings. "
        "You cannot modify files or run commands."
    ),
    AgentMode.REVIEW: (
        "You are in REVIEW mode: read files and run commands (tests, linters) to review "
        "the code. Do not modify files. Report concrete findings with file and line."
    ),
    AgentMode.DEEP_EXPLORE: (
        "You are in DEEP EXPLORE mode: read-only, with sub-agents for parallel research. "
        "Delegate focused questions to run_subagent and synthesize their findings."
    ),
    AgentMode.DEEP_EXPLORE_WRITE: (
        "You are in DEEP EXPLORE WRITE mode: research with sub-agents, then edit files. "
        "Terminal commands are not available."
    ),
}

_SUBAGENT_RULES = """
## Sub-agent

You are a sub-agent launched by another agent. Your final answer is returned to it, not shown to the user.
Report findings concisely: file paths, line numbers, and the facts asked for. No preamble.
""".strip()


def _get_git_info(working_dir: str) -> str | None:
    """Get git branch and status info if in a git repo."""
    try:
        subprocess.run(
            ["git", "rev-parse", "--is-inside-work-tree"],
            cwd=working_dir,
            capture_output=True,
            text=True,
            timeout=5,
            check=True,
        )
        branch_result = subprocess.run(
            ["git", "branch", "--show-current"],
            cwd=working_dir,
            capture_output=True,
            text=True,
            timeout=5,
        )
        branch = branch_result.stdout.strip() or "HEAD (detached)"

        status_result = subprocess.run(
            ["git", "status", "--short"],
            cwd=working_dir,
            capture_output=True,
            text=True,
            timeout=5,
        )
        status = status_result.stdout.strip()
        status_summary = f"\n{status}" if status else " (clean)"

        return f"- Git branch: {branch}\n- Git status:{status_summary}"
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError):
        return None


def _load_project_instructions(working_dir: str) -> str | None:
    """Load AGENTS.md from the data dir and/or the project directory."""
    sections = []

    global_path = DATA_DIR / "AGENTS.md"
    if global_path.exists():
        try:
            content = global_path.read_text().strip()
            if content:
                sections.append(f"## User Instructions (Global)\n\n{content}")
        except OSError:
            pass

    project_path = Path(working_dir) / "AGENTS.md"
    if project_path.exists():
        try:
            content = project_path.read_text().strip()
            if content:
                sections.append(f"## Project Instructions (AGENTS.md)\n\n{content}")
        except OSError:
            pass

    return "\n\n".join(sections) if sections else None


def build_system_prompt(
    working_dir: str,
    model_name: str,
    mode: AgentMode | str = AgentMode.AGENT,
    tool_names: list[str] | None = None,
    is_subagent: bool = False,
) -> str:
    mode = AgentMode(mode)
    prompt = f"""{_AGENTIC_IDENTITY}

## Environment
- Working directory: {working_dir}
- Model: {model_name}
- Mode: {mode.value}"""

    git_info = _get_git_info(working_dir)
    if git_info:
        prompt += f"\n{git_info}"

    if tool_names:
        prompt += f"\n\n## Tools\n\nYou have {len(tool_names)} tools: {', '.join(tool_names)}."
    prompt += f"\n{_MODE_RULES[mode]}\n\n{_WORKFLOW}\n\n{_RULES}\n"

    if is_subagent:
        prompt += f"\n{_SUBAGENT_RULES}\n"
    else:
        instructions = _load_project_instructions(working_dir)
        if instructions:
            prompt += f"\n{instructions}\n"

    return prompt
