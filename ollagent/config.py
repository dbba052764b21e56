"""Configuration constants and AppConfig dataclass."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path


# Default model for tool-calling tasks
DEFAULT_MODEL = "devstral-small-2:24b"
DEFAULT_MODE = "agent"

# Base directory for all ollagent data
DATA_DIR = Path.home() / ".ollagent"
SESSIONS_DIR = DATA_DIR / "sessions"
HISTORY_FILE = DATA_DIR / "history"
CONFIG_FILE = DATA_DIR / "config.toml"

# Tool limits
DEFAULT_COMMAND_TIMEOUT = 120  # seconds
MAX_TOOL_OUTPUT_CHARS = 30_000
MAX_FILE_READ_CHARS = 50_000
MAX_GLOB_RESULTS = 200
MAX_GREP_MATCHES = 100
MAX_SUBAGENT_RESULT_CHARS = 4000

# ── Iteration loop ───────────────────────────────────────────────────────────
MODE_MAX_ITERATIONS: dict[str, int] = {
    "agent": 25,
    "deep-explore-write": 25,
    "deep-explore": 20,
    "review": 15,
    "explore": 10,
}
SUBAGENT_MAX_ITERATIONS = 10
MAX_TOOLS_PER_BATCH = 10
MAX_COMPLETION_REJECTIONS = 2
MAX_ACTIVE_TASKS = 2
TASK_COMPLETE_SENTINEL = "[TASK_COMPLETE]"

# ── Repetition detection ─────────────────────────────────────────────────────
TEXT_SIMILARITY_THRESHOLD = 0.7
REASONING_SIMILARITY_THRESHOLD = 0.6
MIN_SIMILARITY_LENGTH = 10
TEXT_REPETITION_BREAK = 5
REASONING_REPETITION_BREAK = 4
DUPLICATE_CALL_OVERLAP = 0.5
DUPLICATE_CALL_CORRECTION = 2
DUPLICATE_CALL_BREAK = 3

# ── Context window ───────────────────────────────────────────────────────────
DEFAULT_CONTEXT_WINDOW = 32_768
DEFAULT_MAX_TOKENS = 4096
DEFAULT_TEMPERATURE = 0.2
MIN_NUM_CTX = 4096
NUM_CTX_ALIGNMENT = 2048
NUM_CTX_BUFFER = 512
COMPACTION_THRESHOLD = 0.70
COMPACTION_PRESERVE_TAIL = 6
COMPACTION_MESSAGE_CAP = 1500
TOKEN_REMINDER_THRESHOLDS: tuple[float, ...] = (0.70, 0.85)
TOKENS_PER_TOOL_DEFINITION = 30

# Ollama settings
OLLAMA_HOST = os.environ.get("OLLAMA_HOST", "http://localhost:11434")
DEFAULT_KEEP_ALIVE = "10m"

# Retry settings
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0

# ── Command safety ───────────────────────────────────────────────────────────
# (pattern, severity, reason, platforms)
DANGEROUS_COMMAND_PATTERNS: list[tuple[str, str, str, tuple[str, ...]]] = [
    (r"\brm\s+(-[^\n]*r[^\n]*f|--recursive|--force)\b", "critical",
     "Recursive or forced deletion", ("linux", "darwin")),
    (r"\b(Remove-Item|ri|del|rd|rmdir)\b[^\n]*(-Recurse|/s|-r)\b", "critical",
     "Recursive deletion (Windows)", ("win32",)),
    (r"\b(mkfs|fdisk|parted|diskpart|Format-Volume)\b", "critical",
     "Disk formatting or partitioning", ("linux", "darwin", "win32")),
    (r"\bdd\s+if=.*of=/dev/", "critical",
     "Direct write to block device", ("linux", "darwin")),
    (r":\(\)\s*\{\s*:\|:\s*&\s*\}\s*;?", "critical",
     "Fork bomb", ("linux", "darwin")),
    (r"\b(sudo|su\s+-?|doas)\b", "high",
     "Privilege escalation", ("linux", "darwin")),
    (r"\b(runas|gsudo|Start-Process\s+.*-Verb\s+RunAs)\b", "high",
     "Privilege escalation (Windows)", ("win32",)),
    (r"\b(curl|wget|fetch)\b[^\n]*\|\s*(ba)?sh\b", "high",
     "Remote script execution", ("linux", "darwin")),
    (r"\b(Invoke-Expression|iex)\b[^\n]*\b(Invoke-WebRequest|iwr|curl)\b", "high",
     "Remote script execution (PowerShell)", ("win32",)),
    (r"(\bkill\s+-9\s+-1\b|\bkillall\s+-9\b|\bpkill\s+-9\b|\btaskkill\s+.*/F\b|\bStop-Process\s+.*-Force\b)", "high",
     "Force kill processes", ("linux", "darwin", "win32")),
    (r"\bchmod\s+(-R\s+)?(777|666|a\+rwx)(\s|$)", "high",
     "Dangerous permission change", ("linux", "darwin")),
    (r"\bchown\s+-R\b", "high",
     "Recursive ownership change", ("linux", "darwin")),
    (r"\b(reg\s+delete|regedit|Remove-ItemProperty\s+.*Registry)\b", "high",
     "Registry modification", ("win32",)),
    (r"\bgit\s+(push\s+.*--force|reset\s+--hard|clean\s+-[fd]+)", "medium",
     "Destructive git operation", ("linux", "darwin", "win32")),
    (r"\b(apt|apt-get|yum|dnf|pacman)\s+(remove|purge|autoremove)\b", "medium",
     "Package removal", ("linux",)),
    (r"\bbrew\s+uninstall\b", "medium",
     "Package removal (Homebrew)", ("darwin",)),
    (r"\b(systemctl|service)\s+(stop|disable|mask)\b", "medium",
     "Service stop/disable", ("linux", "darwin")),
    (r"\b(Stop-Service|sc\s+stop)\b", "medium",
     "Service stop (Windows)", ("win32",)),
    (r"\b(iptables|ufw|firewall-cmd|netsh)\b[^\n]*\b(delete|remove|drop|reject|firewall)\b", "medium",
     "Firewall modification", ("linux", "darwin", "win32")),
]

# ── File sensitivity ─────────────────────────────────────────────────────────
# True = edits may be auto-approved, False = edits always need approval.
# The last matching glob wins.
DEFAULT_SENSITIVE_FILE_PATTERNS: dict[str, bool] = {
    "**/*": True,
    "**/.env*": False,
    "**/.vscode/*.json": False,
    "**/package.json": False,
    "**/package-lock.json": False,
    "**/yarn.lock": False,
    "**/pnpm-lock.yaml": False,
    "**/*.pem": False,
    "**/*.key": False,
    "**/*.pfx": False,
    "**/*.p12": False,
    "**/tsconfig.json": False,
    "**/jsconfig.json": False,
    "**/Dockerfile": False,
    "**/docker-compose*.yml": False,
    "**/docker-compose*.yaml": False,
    "**/.github/workflows/*": False,
    "**/.npmrc": False,
    "**/.yarnrc": False,
    "**/.yarnrc.yml": False,
    "**/*.secrets.*": False,
    "**/pyproject.toml": False,
    "**/requirements*.txt": False,
}

# File path sandboxing
SENSITIVE_PATHS: list[str] = [
    "~/.ssh",
    "~/.gnupg",
    "~/.aws",
    "~/.config/gcloud",
    "~/.kube",
    "~/.docker",
    "/etc/shadow",
    "/etc/passwd",
    "/etc/sudoers",
]

# Allowed paths outside working directory (always accessible)
ALLOWED_EXTRA_PATHS: list[str] = [
    "/tmp",
]


def load_config_file() -> dict:
    """Load settings from ~/.ollagent/config.toml. Returns empty dict if not found."""
    if not CONFIG_FILE.exists():
        return {}
    try:
        return tomllib.loads(CONFIG_FILE.read_text())
    except (tomllib.TOMLDecodeError, OSError):
        return {}


@dataclass
class AppConfig:
    """Runtime configuration for the application."""

    model: str = DEFAULT_MODEL
    working_dir: str = field(default_factory=lambda: os.getcwd())
    mode: str = DEFAULT_MODE
    ollama_host: str = OLLAMA_HOST
    context_window: int = DEFAULT_CONTEXT_WINDOW
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE
    enable_thinking: bool = True
    max_iterations: int | None = None
    auto_approve_commands: bool = False
    auto_approve_sensitive_edits: bool = False
    sensitive_file_patterns: dict[str, bool] = field(
        default_factory=lambda: dict(DEFAULT_SENSITIVE_FILE_PATTERNS)
    )
    max_active_tasks: int = MAX_ACTIVE_TASKS
    keep_alive: str = DEFAULT_KEEP_ALIVE
    verbose: bool = False

    @classmethod
    def from_file_and_cli(cls, cli_overrides: dict) -> "AppConfig":
        """Create AppConfig by merging config file defaults with CLI overrides.

        Priority: CLI flags > config.toml > dataclass defaults
        """
        file_config = load_config_file()

        merged: dict = {}
        for field_name in cls.__dataclass_fields__:
            if field_name in file_config:
                merged[field_name] = file_config[field_name]

        # A [sensitive_files] table extends the defaults instead of replacing them
        extra_patterns = file_config.get("sensitive_files")
        if isinstance(extra_patterns, dict):
            patterns = dict(DEFAULT_SENSITIVE_FILE_PATTERNS)
            patterns.update({str(k): bool(v) for k, v in extra_patterns.items()})
            merged["sensitive_file_patterns"] = patterns

        # CLI overrides take priority (only non-None values)
        for key, value in cli_overrides.items():
            if value is not None:
                merged[key] = value

        return cls(**merged)

    def max_iterations_for(self, mode: str) -> int:
        """Iteration cap for a mode, honoring an explicit override."""
        if self.max_iterations is not None:
            return self.max_iterations
        return MODE_MAX_ITERATIONS.get(mode, MODE_MAX_ITERATIONS[DEFAULT_MODE])

    @property
    def model_short_name(self) -> str:
        """Return model name without tag for display."""
        return self.model.split(":")[0]
