"""prompt_toolkit input configuration."""

from __future__ import annotations

from prompt_toolkit import PromptSession
from prompt_toolkit.auto_suggest import AutoSuggestFromHistory
from prompt_toolkit.history import FileHistory
from prompt_toolkit.key_binding import KeyBindings

from ollagent.config import DATA_DIR, HISTORY_FILE


def create_prompt_session() -> PromptSession:
    """Create a configured prompt_toolkit session."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)

    bindings = KeyBindings()

    @bindings.add("escape", "enter")
    def _(event):
        """Escape+Enter inserts a newline."""
        event.current_buffer.insert_text("\n")

    @bindings.add("enter")
    def _(event):
        """Enter submits the input."""
        event.current_buffer.validate_and_handle()

    return PromptSession(
        history=FileHistory(str(HISTORY_FILE)),
        auto_suggest=AutoSuggestFromHistory(),
        multiline=False,
        key_bindings=bindings,
        enable_history_search=True,
    )


def get_prompt_text(model_name: str, mode: str) -> str:
    """Build the prompt string showing the model and mode."""
    short = model_name.split(":")[0]
    return f"{short} [{mode}] > "
