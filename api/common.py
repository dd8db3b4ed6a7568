"""
Common utilities shared by the ingest API routes.
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from api.errors import ConfigurationError
from config import TRUSTED_PROXIES, OriginSettings

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Accept upstream request ids that are short and printable; anything else is replaced
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware UTC.

    SQLite doesn't store timezone info, so datetimes retrieved from the database
    may be timezone-naive even though they were stored as UTC.

    Examples:
        >>> ensure_utc(None)
        None
        >>> ensure_utc(datetime(2024, 1, 1, 12, 0, 0))  # naive
        datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        # Assume naive datetimes from SQLite are UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def get_real_ip(request: Request) -> str:
    """
    Get the real client IP address, respecting X-Forwarded-For header only from trusted proxies.

    Security: X-Forwarded-For is only trusted when the direct client IP is in TRUSTED_PROXIES.
    This prevents attackers from spoofing the header to bypass rate limiting.
    """
    client_ip = get_remote_address(request)

    if TRUSTED_PROXIES and client_ip in TRUSTED_PROXIES:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            # The first entry is the original client
            return forwarded.split(",")[0].strip()

    return client_ip


def get_request_context(request: Optional[Request]) -> dict:
    """
    Extract security-relevant context from a request for logging.

    The direct client IP and any X-Forwarded-For value are reported
    separately; the forwarded value is only used as ip_address when the
    direct client is a trusted proxy.
    """
    if request is None:
        return {
            "ip_address": "unknown",
            "direct_ip": "unknown",
            "forwarded_for": None,
            "user_agent": "unknown",
        }

    direct_ip = request.client.host if request.client else "unknown"

    forwarded_for = None
    forwarded_header = request.headers.get("x-forwarded-for")
    if forwarded_header:
        forwarded_for = forwarded_header.split(",")[0].strip()

    if forwarded_for and direct_ip in TRUSTED_PROXIES:
        effective_ip = forwarded_for
    else:
        effective_ip = direct_ip

    return {
        "ip_address": effective_ip,
        "direct_ip": direct_ip,
        "forwarded_for": forwarded_for,
        "user_agent": request.headers.get("user-agent", "unknown"),
    }


def get_request_id(request: Request) -> Optional[str]:
    """Request id assigned by RequestIDMiddleware, if any."""
    return getattr(request.state, "request_id", None)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Attach a request id to every request and response.

    A well-formed X-Request-ID from upstream is propagated; otherwise a new
    uuid4 hex id is generated.
    """

    async def dispatch(self, request: Request, call_next):
        incoming = request.headers.get(REQUEST_ID_HEADER)
        if incoming and _VALID_REQUEST_ID.match(incoming):
            request_id = incoming
        else:
            request_id = uuid.uuid4().hex
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON-only API: nothing should ever be loaded from a response
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Cache-Control"] = "no-store"
        return response


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Handle rate limit exceeded errors with a proper JSON response."""
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded",
            "error": str(exc.detail),
        },
    )


def validate_origin_settings(settings: OriginSettings) -> None:
    """
    Refuse to run without the origin credentials.

    Raises:
        ConfigurationError: listing every missing environment variable
    """
    missing = settings.missing_fields()
    if missing:
        raise ConfigurationError(f"Missing required origin configuration: {', '.join(missing)}")
    if settings.upload_auth_ttl <= 0:
        raise ConfigurationError("CLIPSTREAM_UPLOAD_AUTH_TTL must be positive")


async def check_health(db) -> dict:
    """
    Perform health checks for the database and Redis.

    Redis is optional: an unconfigured Redis counts as healthy, a configured
    but unreachable one is reported without failing the check.

    Returns a dict with:
        - checks: dict of individual check results
        - healthy: bool indicating overall health
        - status_code: HTTP status code (200 if healthy, 503 if not)
    """
    from api.redis_client import RedisClient

    checks = {"database": False, "redis": None}

    try:
        await db.fetch_one("SELECT 1")
        checks["database"] = True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    client = await RedisClient.get_instance()
    if client.is_configured:
        checks["redis"] = await client.health_check()

    healthy = checks["database"]
    return {
        "checks": checks,
        "healthy": healthy,
        "status_code": 200 if healthy else 503,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
