"""
Audit logging for lifecycle changes.

One JSON line per video creation, upload authorization, owner edit, admin
status override and origin publish, written to a rotating file kept apart
from the application log.
"""

import json
import logging
import os
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Optional

from api.errors import truncate_string
from config import (
    AUDIT_LOG_BACKUP_COUNT,
    AUDIT_LOG_ENABLED,
    AUDIT_LOG_LEVEL,
    AUDIT_LOG_MAX_BYTES,
    AUDIT_LOG_PATH,
    ERROR_DETAIL_MAX_LENGTH,
)


class AuditAction(str, Enum):
    VIDEO_CREATE = "video_create"
    VIDEO_UPDATE = "video_update"
    VIDEO_AUTHORIZE_UPLOAD = "video_authorize_upload"
    VIDEO_STATUS_OVERRIDE = "video_status_override"
    VIDEO_PUBLISHED = "video_published"


def _build_audit_logger() -> logging.Logger:
    audit = logging.getLogger("clipstream.audit")
    audit.setLevel(getattr(logging, AUDIT_LOG_LEVEL, logging.INFO))
    audit.propagate = False
    if audit.handlers:
        return audit

    if not AUDIT_LOG_ENABLED or os.environ.get("CLIPSTREAM_TEST_MODE"):
        audit.addHandler(logging.NullHandler())
        return audit

    try:
        AUDIT_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            AUDIT_LOG_PATH,
            maxBytes=AUDIT_LOG_MAX_BYTES,
            backupCount=AUDIT_LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError:
        # Unwritable log directory: keep the trail on stderr
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit.addHandler(handler)
    return audit


audit_logger = _build_audit_logger()


def log_audit(
    action: AuditAction,
    actor: Optional[str] = None,
    client_ip: Optional[str] = None,
    resource_id: Optional[str] = None,
    details: Optional[dict] = None,
    request_id: Optional[str] = None,
    user_agent: Optional[str] = None,
):
    """
    Write one audit entry. Unset fields are left out of the JSON.

    Args:
        action: What happened to the video
        actor: Who did it (owner id, "admin" or "origin")
        client_ip: Caller address, where there is a caller
        resource_id: External id of the video
        details: Action-specific fields such as the status outcome
        request_id: Request id for tracing
        user_agent: User-Agent header, truncated
    """
    if not AUDIT_LOG_ENABLED:
        return

    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action.value,
        "resource_type": "video",
    }
    if request_id:
        entry["request_id"] = request_id
    if actor:
        entry["actor"] = actor
    if client_ip:
        entry["client_ip"] = client_ip
    if user_agent:
        entry["user_agent"] = truncate_string(user_agent, ERROR_DETAIL_MAX_LENGTH)
    if resource_id is not None:
        entry["resource_id"] = resource_id
    if details:
        entry["details"] = details

    audit_logger.info(json.dumps(entry, default=str))
