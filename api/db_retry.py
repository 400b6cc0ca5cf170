"""
Retry helpers for transient database errors.

Reads and writes against the catalog go through these wrappers so that lock
contention and dropped connections are retried with exponential backoff
before they surface as failures. Both backends are recognized:

SQLite: "database is locked", SQLITE_BUSY / SQLITE_LOCKED
PostgreSQL: deadlocks (40P01), serialization failures (40001), lock timeouts,
dropped or refused connections
"""

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from api.metrics import DB_QUERY_DURATION_SECONDS, DB_QUERY_RETRIES_TOTAL

logger = logging.getLogger(__name__)

# Queries slower than this are logged with their SQL
SLOW_QUERY_THRESHOLD = 1.0

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1
DEFAULT_MAX_DELAY = 2.0
DEFAULT_EXPONENTIAL_BASE = 2

_SQLITE_PATTERNS = (
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
)

_POSTGRES_PATTERNS = (
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
    "connection refused",
    "connection reset",
    "server closed the connection unexpectedly",
    "canceling statement due to lock timeout",
    "lock timeout",
)


class DatabaseRetryableError(Exception):
    """Raised when a database operation fails after all retries are exhausted."""


def is_retryable_database_error(exc: BaseException) -> bool:
    """True when exc (or an exception it wraps) is a transient SQLite/PostgreSQL error."""
    error_str = str(exc).lower()

    if any(pattern in error_str for pattern in _SQLITE_PATTERNS + _POSTGRES_PATTERNS):
        return True

    # asyncpg and psycopg expose the SQLSTATE code
    if getattr(exc, "sqlstate", None) in ("40P01", "40001"):
        return True

    # The databases library wraps driver exceptions
    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


def _backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt), max_delay)
    # +/-25% jitter so concurrent retries spread out
    jitter = delay * 0.25 * (2 * random.random() - 1)
    return max(0.01, delay + jitter)


async def execute_with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs,
) -> T:
    """
    Await func(*args, **kwargs), retrying transient database errors.

    Args:
        func: Async function to execute
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)

    Returns:
        Result of the function

    Raises:
        DatabaseRetryableError: If all retries are exhausted
        Other exceptions: Non-retryable errors are re-raised immediately
    """
    last_exception: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise

            last_exception = e

            if attempt < max_retries:
                delay = _backoff_delay(attempt, base_delay, max_delay)
                DB_QUERY_RETRIES_TOTAL.inc()
                logger.warning(
                    f"Database error (attempt {attempt + 1}/{max_retries + 1}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"Database error after {max_retries + 1} attempts, giving up: {e}")

    raise DatabaseRetryableError(f"Database operation failed after {max_retries + 1} attempts: {last_exception}")


async def _timed(operation: str, query: Any, call: Callable[[], Awaitable[T]]) -> T:
    start_time = time.monotonic()
    result = await call()
    elapsed = time.monotonic() - start_time
    DB_QUERY_DURATION_SECONDS.labels(operation=operation).observe(elapsed)
    if elapsed >= SLOW_QUERY_THRESHOLD:
        logger.warning(f"Slow query ({elapsed:.2f}s): {str(query)[:500]}")
    return result


async def fetch_one_with_retry(query, values=None, max_retries: int = DEFAULT_MAX_RETRIES):
    """Run database.fetch_one(query) with retries. Returns a row or None."""
    from api.database import database

    return await execute_with_retry(
        _timed,
        "fetch_one",
        query,
        lambda: database.fetch_one(query, values),
        max_retries=max_retries,
    )


async def fetch_all_with_retry(query, values=None, max_retries: int = DEFAULT_MAX_RETRIES):
    """Run database.fetch_all(query) with retries. Returns a list of rows."""
    from api.database import database

    return await execute_with_retry(
        _timed,
        "fetch_all",
        query,
        lambda: database.fetch_all(query, values),
        max_retries=max_retries,
    )


async def db_execute_with_retry(query, values=None, max_retries: int = DEFAULT_MAX_RETRIES):
    """
    Run a write query with retries.

    Returns:
        Whatever database.execute returns (the row id for inserts on most drivers)
    """
    from api.database import database

    return await execute_with_retry(
        _timed,
        "execute",
        query,
        lambda: database.execute(query, values),
        max_retries=max_retries,
    )
