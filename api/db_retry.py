"""
Database retry utilities for handling transient database errors.

Retries with exponential backoff and jitter, supporting both backends:

SQLite errors:
- "database is locked" - concurrent write contention
- "SQLITE_BUSY" / "SQLITE_LOCKED" - database busy states

PostgreSQL errors:
- Deadlocks (40P01)
- Serialization failures (40001)
- Lock timeouts and dropped connections
"""

import asyncio
import logging
import random
import time
from typing import Any, Callable, Optional, TypeVar

from databases import Database

from api.metrics import DB_QUERY_RETRIES_TOTAL

logger = logging.getLogger(__name__)

SLOW_QUERY_THRESHOLD = 1.0

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1  # 100ms
DEFAULT_MAX_DELAY = 2.0  # 2 seconds
DEFAULT_EXPONENTIAL_BASE = 2

_SQLITE_PATTERNS = (
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
)

_POSTGRES_PATTERNS = (
    "deadlock detected",  # 40P01
    "could not serialize access",  # 40001
    "could not obtain lock",
    "canceling statement due to lock timeout",
    "server closed the connection unexpectedly",
    "connection reset",
)


class DatabaseRetryableError(Exception):
    """Raised when a database operation fails after all retries exhausted."""

    pass


def is_retryable_database_error(exc: BaseException) -> bool:
    """
    Check if an exception is a transient database error worth retrying.

    Wrapped exceptions are followed through __cause__ because the databases
    library re-raises driver errors.
    """
    error_str = str(exc).lower()

    if any(pattern in error_str for pattern in _SQLITE_PATTERNS):
        return True
    if any(pattern in error_str for pattern in _POSTGRES_PATTERNS):
        return True

    # asyncpg exposes the SQLSTATE code
    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate in ("40P01", "40001"):
        return True

    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


def _backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt), max_delay)
    # ±25% jitter to prevent thundering herd
    jitter = delay * 0.25 * (2 * random.random() - 1)
    return max(0.01, delay + jitter)


async def execute_with_retry(
    func: Callable,
    *args: Any,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs: Any,
) -> T:
    """
    Execute an async function with retry logic for transient database errors.

    The whole callable is re-run on each attempt, so it must be safe to repeat
    (e.g. a complete transaction, never half of one).

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


def _log_if_slow(query, started: float) -> None:
    elapsed = time.monotonic() - started
    if elapsed >= SLOW_QUERY_THRESHOLD:
        logger.warning(f"Slow query ({elapsed:.2f}s): {str(query)[:500]}")


async def fetch_one_with_retry(query, db: Optional[Database] = None, **retry_kwargs):
    """Execute a fetch_one query with retry logic. Returns a row or None."""
    if db is None:
        from api.database import database as db

    async def _fetch():
        started = time.monotonic()
        result = await db.fetch_one(query)
        _log_if_slow(query, started)
        return result

    return await execute_with_retry(_fetch, **retry_kwargs)

