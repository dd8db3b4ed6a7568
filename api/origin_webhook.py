"""
Origin webhook receiver.

The media origin calls POST /api/webhooks/origin?key=<access key> whenever an
asset's encoding status changes, with a JSON body like:

    {"VideoLibraryId": 12345, "VideoGuid": "3f1c...", "Status": 3}

Deliveries may be duplicated, reordered, or race with owner edits. The
receiver keeps no memory of what it has processed; it authenticates, parses,
checks the tenant and hands status 3 (encoding finished) to the transition
guard, which makes repeated deliveries harmless.

Check order matters and is fixed:
    1. access key (401)         - nothing else is looked at without it
    2. body parse (400)
    3. tenant / library id (401, same body as 1)
    4. status dispatch (200)

WebhookReceiver is independent of FastAPI; the route in api.ingest_api only
maps a WebhookResult onto an HTTP response.
"""

import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError

from api.audit import AuditAction, log_audit
from api.enums import ENCODING_COMPLETE_STATUS, TransitionSource, VideoStatus
from api.errors import ConfigurationError, VideoNotFoundError
from api.metrics import WEBHOOK_DELIVERIES_TOTAL
from api.video_state import VideoTransitionGuard, video_transition_guard
from config import OriginSettings

# Security event logger - separate from regular application logging
security_logger = logging.getLogger("security.webhook")

logger = logging.getLogger(__name__)

# Identical for a bad key and a foreign tenant, so callers can't tell them apart
UNAUTHORIZED_BODY = {"detail": "Unauthorized"}
ACK_MESSAGE = "Data received successfully"


class WebhookPayload(BaseModel):
    """Body of an origin status notification."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    library_id: StrictInt = Field(alias="VideoLibraryId")
    video_guid: str = Field(alias="VideoGuid", min_length=1, max_length=128)
    status: StrictInt = Field(alias="Status")


@dataclass(frozen=True)
class WebhookResult:
    """What the receiver decided: the HTTP status and body to return."""

    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)
    result: str = "processed"
    external_id: Optional[str] = None

    @classmethod
    def unauthorized(cls) -> "WebhookResult":
        return cls(status_code=401, body=dict(UNAUTHORIZED_BODY), result="unauthorized")

    @classmethod
    def bad_request(cls, detail: str) -> "WebhookResult":
        return cls(status_code=400, body={"detail": detail}, result="bad_request")

    @classmethod
    def acknowledged(cls, result: str, outcome: str, external_id: Optional[str] = None) -> "WebhookResult":
        return cls(
            status_code=200,
            body={"message": ACK_MESSAGE, "outcome": outcome},
            result=result,
            external_id=external_id,
        )


class WebhookReceiver:
    """Authenticates origin notifications and forwards them to the transition guard."""

    def __init__(
        self,
        settings: OriginSettings,
        guard: VideoTransitionGuard = video_transition_guard,
    ) -> None:
        if not settings.webhook_key or not settings.library_id:
            raise ConfigurationError("Webhook receiver requires a webhook key and library id")
        self._webhook_key = settings.webhook_key.encode("utf-8")
        self.library_id = str(settings.library_id)
        self.guard = guard

    def _key_matches(self, key: Optional[str]) -> bool:
        if not key:
            return False
        return hmac.compare_digest(key.encode("utf-8"), self._webhook_key)

    @staticmethod
    def parse(body: bytes) -> WebhookPayload:
        """
        Parse a raw webhook body.

        Raises:
            ValueError: not JSON, not an object, or fields missing/mistyped
        """
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValueError("Body is not valid JSON") from e
        if not isinstance(data, dict):
            raise ValueError("Body must be a JSON object")
        try:
            return WebhookPayload.model_validate(data)
        except ValidationError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err.get("loc"))
            raise ValueError(f"Invalid webhook fields: {fields}") from e

    async def handle(
        self,
        key: Optional[str],
        body: bytes,
        context: Optional[Dict[str, Any]] = None,
    ) -> WebhookResult:
        """
        Process one delivery.

        Store errors other than "not found" propagate so the origin gets a 5xx
        and redelivers.
        """
        result = await self._handle(key, body, context or {})
        WEBHOOK_DELIVERIES_TOTAL.labels(result=result.result).inc()
        return result

    async def _handle(self, key: Optional[str], body: bytes, context: Dict[str, Any]) -> WebhookResult:
        if not self._key_matches(key):
            security_logger.warning(
                "Webhook rejected: invalid access key",
                extra={
                    "event": "webhook_auth_failure",
                    "reason": "missing_key" if not key else "invalid_key",
                    **context,
                },
            )
            return WebhookResult.unauthorized()

        try:
            payload = self.parse(body)
        except ValueError as e:
            logger.warning(f"Webhook rejected: {e}")
            return WebhookResult.bad_request(str(e))

        if str(payload.library_id) != self.library_id:
            security_logger.warning(
                "Webhook rejected: foreign video library",
                extra={
                    "event": "webhook_auth_failure",
                    "reason": "library_mismatch",
                    "library_id": payload.library_id,
                    **context,
                },
            )
            return WebhookResult.unauthorized()

        external_id = payload.video_guid

        if payload.status != ENCODING_COMPLETE_STATUS:
            logger.info(f"Webhook for {external_id}: origin status {payload.status}, no action")
            return WebhookResult.acknowledged("ignored_status", "ignored", external_id)

        try:
            transition = await self.guard.apply(external_id, VideoStatus.PUBLIC, TransitionSource.WEBHOOK)
        except VideoNotFoundError:
            logger.warning(f"Webhook for unknown video {external_id} (library {payload.library_id}), acknowledged")
            return WebhookResult.acknowledged("unknown_video", "unknown_video", external_id)
        except Exception:
            WEBHOOK_DELIVERIES_TOTAL.labels(result="error").inc()
            raise

        if transition.published:
            log_audit(
                AuditAction.VIDEO_PUBLISHED,
                actor="origin",
                client_ip=context.get("ip_address"),
                resource_id=external_id,
                details={"previous_status": transition.previous_status.value},
            )

        return WebhookResult.acknowledged("processed", transition.outcome.value, external_id)
