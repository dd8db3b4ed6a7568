"""
Standardized exception handling utilities.

Route handlers raise domain errors (api.errors) freely; this module is the one
place they are turned into HTTP responses, so status codes stay consistent
across endpoints and internal details never reach clients.
"""

import functools
import logging
from typing import Any, Callable, Optional, TypeVar

from fastapi import HTTPException

from api.db_retry import DatabaseRetryableError
from api.errors import (
    DuplicateExternalIdError,
    InvalidInputError,
    OriginAPIError,
    VideoNotFoundError,
    sanitize_error_message,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def http_exception_for(exc: Exception) -> Optional[HTTPException]:
    """Map a known domain error to an HTTPException, or None if unknown."""
    if isinstance(exc, VideoNotFoundError):
        return HTTPException(status_code=404, detail="Video not found")
    if isinstance(exc, DuplicateExternalIdError):
        return HTTPException(status_code=409, detail="Video already exists")
    if isinstance(exc, InvalidInputError):
        return HTTPException(status_code=400, detail=sanitize_error_message(str(exc), log_original=False))
    if isinstance(exc, OriginAPIError):
        return HTTPException(status_code=502, detail="Media origin request failed")
    if isinstance(exc, DatabaseRetryableError):
        return HTTPException(
            status_code=503,
            detail="Database temporarily unavailable. Please try again.",
            headers={"Retry-After": "5"},
        )
    return None


def handle_api_exceptions(
    operation_name: str,
    error_detail: str = "Internal server error",
    status_code: int = 500,
    log_errors: bool = True,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for standardized exception handling in API endpoints.

    This ensures:
    1. HTTPExceptions are always re-raised (never masked)
    2. Domain errors are converted to their HTTP equivalents
    3. Generic exceptions are logged and converted to 500 errors with sanitized messages

    Example:
        @app.post("/api/uploads")
        @handle_api_exceptions("begin_upload", "Failed to start upload")
        async def begin_upload(...):
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await func(*args, **kwargs)
            except HTTPException:
                raise
            except Exception as e:
                mapped = http_exception_for(e)
                if mapped is not None:
                    if mapped.status_code >= 500 and log_errors:
                        logger.warning(f"{operation_name} failed: {e}")
                    raise mapped from e
                if log_errors:
                    logger.exception(f"Unexpected error in {operation_name}: {e}")
                raise HTTPException(status_code=status_code, detail=error_detail) from e

        return wrapper

    return decorator
