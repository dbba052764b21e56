"""ollagent - tool-using agent loop for local Ollama models."""

from __future__ import annotations

__version__ = "0.1.0"
