"""
Error types and helpers for sanitizing error messages.

Prevents internal implementation details from being exposed to API clients
while still logging detailed errors for debugging.
"""
import logging
import re
from typing import Optional

from config import ERROR_DETAIL_MAX_LENGTH, ERROR_SUMMARY_MAX_LENGTH

logger = logging.getLogger(__name__)


class LibraryError(Exception):
    """Base class for errors raised by the library engine."""


class CatalogUnavailableError(LibraryError):
    """The catalog could not be fetched and no cached copy exists."""

    def __init__(self, message: str = "Catalog is temporarily unavailable", retry_after: int = 30):
        super().__init__(message)
        self.retry_after = retry_after


# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r'/home/\w+/',           # Home directory paths
    r'/tmp/\w+',             # Temp paths
    r'/var/\w+/',            # Var paths
    r'line \d+',             # Line numbers in stack traces
    r'File "[^"]+\.py"',     # Python file paths
    r'Permission denied',
    r'UNIQUE constraint failed',
    r'duplicate key value',
    r'sqlite3?\.',
    r'asyncpg\.',
    r'\bSELECT\b.+\bFROM\b',  # Leaked SQL
    r'Error: .+\.py:\d+',
]

ERROR_MESSAGES = {
    "catalog": "The video library is temporarily unavailable. Please try again shortly.",
    "timeout": "The request timed out. Please try again.",
    "database": "A database error occurred. Please try again.",
    "duplicate": "An item with that name already exists.",
    "not_found": "The requested item was not found.",
    "permission": "Access to a required resource was denied.",
    "general": "An error occurred while processing your request. Please try again.",
}


def sanitize_error_message(
    error: Optional[str],
    log_original: bool = True,
    context: str = ""
) -> Optional[str]:
    """
    Sanitize an error message for safe display to API clients.

    Args:
        error: The original error message (may contain internal details)
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "video_id=123")

    Returns:
        A sanitized, user-friendly error message, or None if input was None
    """
    if error is None:
        return None

    if log_original and error:
        log_msg = "Original error"
        if context:
            log_msg += f" ({context})"
        log_msg += f": {error}"
        logger.warning(log_msg)

    error_lower = error.lower()

    if "unique constraint" in error_lower or "duplicate key" in error_lower:
        return ERROR_MESSAGES["duplicate"]

    if "catalog" in error_lower and "unavailable" in error_lower:
        return ERROR_MESSAGES["catalog"]

    if "timeout" in error_lower or "timed out" in error_lower:
        return ERROR_MESSAGES["timeout"]

    if "sqlite" in error_lower or "database" in error_lower or "constraint" in error_lower:
        return ERROR_MESSAGES["database"]

    if "permission" in error_lower:
        return ERROR_MESSAGES["permission"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    # Short messages without path-like segments are passed through
    if len(error) < 100 and "/" not in error and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]


def truncate_string(text: Optional[str], max_length: int) -> Optional[str]:
    """
    Truncate text to max_length characters, ending in "..." when shortened.

    With max_length below 4 there is no room for the ellipsis and the text is
    cut hard.
    """
    if text is None:
        return None
    if len(text) <= max_length:
        return text
    if max_length < 4:
        return text[:max_length]
    return text[: max_length - 3] + "..."


def truncate_error(error: Optional[str], max_length: int = ERROR_DETAIL_MAX_LENGTH) -> Optional[str]:
    """Truncate an error message for storage or logging."""
    return truncate_string(error, max_length)


def summarize_error(error: Optional[str]) -> Optional[str]:
    """Short single-line form of an error, for list views and CLI output."""
    if error is None:
        return None
    first_line = error.strip().splitlines()[0] if error.strip() else ""
    return truncate_string(first_line, ERROR_SUMMARY_MAX_LENGTH)


def is_unique_violation(error: Exception, column: Optional[str] = None) -> bool:
    """
    True when a database error is a unique constraint violation.

    Works from the driver's message so it covers both SQLite
    ("UNIQUE constraint failed: categories.name") and PostgreSQL
    ("duplicate key value violates unique constraint").
    """
    message = str(error).lower()
    if "unique" not in message and "duplicate key" not in message:
        return False
    if column is None:
        return True
    return column.lower() in message
