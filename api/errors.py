"""
Domain exceptions and error message helpers.

Exceptions are raised by the store, the upload authorization issuer and the
origin client, and translated to HTTP responses at the route boundary.
Messages shown to API clients are sanitized so internal details (driver
errors, file paths, SQL) never leak while the originals are still logged.
"""
import logging
import re
from typing import Optional

from config import ERROR_SUMMARY_MAX_LENGTH

logger = logging.getLogger(__name__)


class ClipstreamError(Exception):
    """Base class for errors raised by the ingest pipeline."""


class ConfigurationError(ClipstreamError):
    """Required configuration is missing or invalid. Not retryable."""


class InvalidInputError(ClipstreamError, ValueError):
    """A caller supplied input that can never succeed (e.g. empty video id)."""


class VideoNotFoundError(ClipstreamError):
    """No video record matches the given external id."""

    def __init__(self, external_id: str):
        self.external_id = external_id
        super().__init__(f"Video not found: {external_id}")


class DuplicateExternalIdError(ClipstreamError):
    """A video record with this external id already exists."""

    def __init__(self, external_id: str):
        self.external_id = external_id
        super().__init__(f"Video already exists: {external_id}")


class OriginAPIError(ClipstreamError):
    """The media origin's REST API returned an error or was unreachable."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Origin API error {status_code}: {message}")


# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r"/home/\w+/",
    r"/var/\w+/",
    r"/tmp/\w+",
    r'File "[^"]+\.py"',
    r"line \d+",
    r"UNIQUE constraint failed",
    r"duplicate key value",
    r"sqlite3?\.",
    r"asyncpg\.",
    r"AccessKey",
]

GENERIC_ERROR_MESSAGE = "An error occurred while processing your request. Please try again."


def truncate_string(value: Optional[str], max_length: int) -> Optional[str]:
    """Truncate a string to max_length characters, marking the cut with '...'."""
    if value is None or len(value) <= max_length:
        return value
    if max_length <= 3:
        return value[:max_length]
    return value[: max_length - 3] + "..."


def sanitize_error_message(
    error: Optional[str],
    log_original: bool = True,
    context: str = "",
) -> Optional[str]:
    """
    Sanitize an error message for safe display to API clients.

    Args:
        error: The original error message (may contain internal details)
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "external_id=abc")

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

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return GENERIC_ERROR_MESSAGE

    # Short messages without path-like segments are safe to pass through
    if len(error) < ERROR_SUMMARY_MAX_LENGTH and "/" not in error and "\\" not in error:
        return error

    return GENERIC_ERROR_MESSAGE
