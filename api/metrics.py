"""
Prometheus metrics for the ingest API.

Metrics are exposed at /metrics in Prometheus text format.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Info, generate_latest

APP_INFO = Info("clipstream", "Clipstream ingest application information")

# =============================================================================
# Webhook Metrics
# =============================================================================

WEBHOOK_DELIVERIES_TOTAL = Counter(
    "clipstream_webhook_deliveries_total",
    "Origin webhook deliveries",
    ["result"],  # unauthorized, bad_request, ignored_status, unknown_video, processed, error
)

# =============================================================================
# Lifecycle Metrics
# =============================================================================

VIDEO_TRANSITIONS_TOTAL = Counter(
    "clipstream_video_transitions_total",
    "Status transition requests by outcome",
    ["source", "outcome"],  # source: webhook, owner, admin. outcome: applied, unchanged, ignored
)

VIDEOS_CREATED_TOTAL = Counter(
    "clipstream_videos_created_total",
    "Video records created",
    ["result"],  # success, error, origin_error
)

# =============================================================================
# Upload Authorization Metrics
# =============================================================================

UPLOAD_AUTHORIZATIONS_TOTAL = Counter(
    "clipstream_upload_authorizations_total",
    "Upload authorizations issued",
    ["expiry"],  # requested, corrected
)

# =============================================================================
# Infrastructure Metrics
# =============================================================================

DB_QUERY_RETRIES_TOTAL = Counter(
    "clipstream_db_query_retries_total",
    "Total database query retries due to transient errors",
)

REDIS_OPERATIONS_TOTAL = Counter(
    "clipstream_redis_operations_total",
    "Total Redis operations",
    ["operation", "result"],
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST


def init_app_info(version: str = "0.1.0"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "clipstream"})
