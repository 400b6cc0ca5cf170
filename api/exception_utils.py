"""
Standardized exception handling for API endpoints.

HTTPExceptions and errors that have their own app-level handlers pass through
untouched; anything else is logged and turned into a sanitized HTTP error.
"""

import functools
import logging
from typing import Any, Callable, Optional, TypeVar

from fastapi import HTTPException

from api.db_retry import DatabaseRetryableError
from api.errors import LibraryError, is_unique_violation

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Raised as-is so the registered exception handlers can answer them
PASSTHROUGH_EXCEPTIONS = (HTTPException, DatabaseRetryableError, LibraryError)


def handle_api_exceptions(
    operation_name: str,
    error_detail: str = "Internal server error",
    status_code: int = 500,
    conflict_detail: Optional[str] = None,
    log_errors: bool = True,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for standardized exception handling in API endpoints.

    Args:
        operation_name: Name of the operation for logging context
        error_detail: Error message for unexpected exceptions
        status_code: Status code for unexpected exceptions
        conflict_detail: When set, unique constraint violations become 409 with this message
        log_errors: Whether to log unexpected exceptions

    Example:
        @handle_api_exceptions("create_category", "Failed to create category", conflict_detail="Category exists")
        async def create_category(...):
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await func(*args, **kwargs)
            except PASSTHROUGH_EXCEPTIONS:
                raise
            except Exception as e:
                if conflict_detail is not None and is_unique_violation(e):
                    raise HTTPException(status_code=409, detail=conflict_detail) from e
                if log_errors:
                    logger.exception(f"Unexpected error in {operation_name}: {e}")
                raise HTTPException(status_code=status_code, detail=error_detail) from e

        return wrapper

    return decorator


def log_and_raise_http_exception(
    exception: Exception,
    status_code: int,
    detail: str,
    operation_name: Optional[str] = None,
    log_level: str = "error",
) -> None:
    """
    Log an exception and raise an HTTPException with a sanitized message.

    Example:
        try:
            students = await fetch_students()
        except Exception as e:
            log_and_raise_http_exception(e, 500, "Failed to load students", "list_students")
    """
    log_msg = f"Error in {operation_name}: {exception}" if operation_name else str(exception)

    log_func = getattr(logger, log_level, logger.error)
    log_func(log_msg)

    raise HTTPException(status_code=status_code, detail=detail) from exception
