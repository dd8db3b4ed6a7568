"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum, IntEnum


class VideoStatus(str, Enum):
    """Lifecycle status of a video record."""

    UPLOADING = "UPLOADING"  # Upload session started, bytes not yet at the origin
    PROCESSING = "PROCESSING"  # Upload finished, origin is encoding
    PUBLIC = "PUBLIC"  # Encoding complete, servable once is_ready is set
    FAILED = "FAILED"  # Upload or encoding failed


class TransitionOutcome(str, Enum):
    """Result of asking the transition guard to apply a status change."""

    APPLIED = "applied"  # A write was performed
    UNCHANGED = "unchanged"  # Already at the target, nothing written
    IGNORED = "ignored"  # Would regress a public video, dropped on purpose


class TransitionSource(str, Enum):
    """Who requested a status change (used for logging and metrics)."""

    WEBHOOK = "webhook"
    OWNER = "owner"
    ADMIN = "admin"


class OriginVideoStatus(IntEnum):
    """
    Status codes the media origin reports in its webhook.

    Only FINISHED drives a transition; the rest are acknowledged and ignored.
    """

    QUEUED = 0
    PROCESSING = 1
    ENCODING = 2
    FINISHED = 3
    RESOLUTION_FINISHED = 4
    FAILED = 5
    PRESIGNED_UPLOAD_STARTED = 6
    PRESIGNED_UPLOAD_FINISHED = 7
    PRESIGNED_UPLOAD_FAILED = 8
    CAPTIONS_GENERATED = 9
    TITLE_OR_DESCRIPTION_GENERATED = 10


# Origin status that means "encoding finished, asset is servable"
ENCODING_COMPLETE_STATUS = OriginVideoStatus.FINISHED
