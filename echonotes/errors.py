"""
Error types and error logging for echonotes.

A missing record is never an error: lookups return None.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class EchoError(Exception):
    """Base class for echonotes errors."""


class StoreUnavailable(EchoError):
    """The persistence backend is missing or broken. Fatal for the session."""


class TransactionFailed(EchoError):
    """A single store operation did not commit."""


class EnrichmentFailed(EchoError):
    """The enrichment collaborator failed or returned an invalid payload."""


class ValidationFailed(EchoError, ValueError):
    """Malformed input rejected before any write."""


def _error_log_path(store_path: Optional[Path] = None) -> Path:
    """Resolve error log path, respecting ECHO_STORE_PATH."""
    if store_path is not None:
        return Path(store_path) / "echo-errors.log"
    store = os.environ.get("ECHO_STORE_PATH")
    if store:
        return Path(store) / "echo-errors.log"
    return Path.home() / ".echo-notes" / "echo-errors.log"


def log_exception(exc: Exception, context: str = "", store_path: Optional[Path] = None) -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)
        store_path: Store directory; defaults to the configured store

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path(store_path)
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
        pass  # unwritable log must not mask the original error
    return log_path
