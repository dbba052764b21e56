"""Exception types raised by the agent core."""

from __future__ import annotations


class AgentError(Exception):
    """Base class for agent core errors."""


class ReasoningUnsupportedError(AgentError):
    """The backend rejected a request because reasoning mode was enabled."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class SessionNotFoundError(AgentError):
    """Raised when a session id does not exist in the store."""


class CheckpointNotFoundError(AgentError):
    """Raised when a checkpoint id does not exist in the store."""


class SessionBusyError(AgentError):
    """Raised when a session already has an active task."""


class TooManyActiveTasksError(AgentError):
    """Raised when the global limit of active tasks is reached."""
