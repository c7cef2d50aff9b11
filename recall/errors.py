"""
Exception types and error logging for recall.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


OFFLINE_MESSAGE = (
    "Models are offline or unreachable. Please start Ollama "
    "(or update the base URL in settings) and try again."
)


class RecallError(Exception):
    """Base class for recall errors."""


class ProviderError(RecallError):
    """A transient failure talking to the model provider (network, timeout, HTTP)."""


class ProviderUnavailable(ProviderError):
    """The model provider is not reachable at all."""

    def __init__(self, message: str = OFFLINE_MESSAGE):
        super().__init__(message)


class CaptureError(RecallError):
    """A malformed capture message."""


class IncompatibleEmbeddingError(RecallError):
    """Embedding dimension differs from the stored embedding metadata."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Embedding dimension {actual} does not match stored dimension {expected}")
        self.expected = expected
        self.actual = actual


class ImportFormatError(RecallError, ValueError):
    """An import payload that is not a page export."""


class ToolValidationError(RecallError):
    """
    A tool call that cannot be executed as requested.

    Carries the structured error returned to the model; never propagated
    out of the tool runtime.
    """

    def __init__(self, code: str, message: str, suggest: str | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggest = suggest

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "suggest": self.suggest}


def _error_log_path() -> Path:
    """Resolve error log path, respecting RECALL_STORE_PATH."""
    store = os.environ.get("RECALL_STORE_PATH")
    if store:
        return Path(store) / "recall-errors.log"
    return Path.home() / ".recall" / "recall-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # can't write the error log; nothing more to do
    return log_path
