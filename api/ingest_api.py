"""
Ingest API - upload authorization, origin webhook and video lifecycle reads.

Provides endpoints for:
- Starting an upload (origin asset + UPLOADING record + TUS authorization)
- Re-issuing an upload authorization
- Server time for clients computing expiries
- Origin webhook (encoding finished -> PUBLIC, ready)
- Owner edits, custom thumbnails and status reads
- Admin status override

Run with: uvicorn api.ingest_api:app --host 0.0.0.0 --port 9000

Authentication of end users happens upstream; the gateway forwards the
authenticated account id in X-User-Id. The webhook authenticates with its own
access key and the admin override with X-Admin-Secret.

LIFECYCLE OVERVIEW
==================

    POST /api/uploads ──> UPLOADING ──(owner PATCH)──> PROCESSING / FAILED
                              │
                              └──(webhook Status=3)──> PUBLIC, is_ready=True

Every status change goes through api.video_state.VideoTransitionGuard; a
PUBLIC video is never demoted, and repeated webhook deliveries write nothing.
"""

import hmac
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from api.audit import AuditAction, log_audit
from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    get_real_ip,
    get_request_context,
    get_request_id,
    rate_limit_exceeded_handler,
    validate_origin_settings,
)
from api.database import database
from api.enums import TransitionSource
from api.errors import ConfigurationError
from api.exception_utils import handle_api_exceptions
from api.metrics import METRICS_CONTENT_TYPE, VIDEOS_CREATED_TOTAL, get_metrics, init_app_info
from api.origin_client import OriginClient
from api.origin_webhook import WebhookReceiver
from api.redis_client import RedisClient
from api.schemas import (
    AdminStatusUpdate,
    AuthorizationRequest,
    ServerTimeResponse,
    StatusChangeResponse,
    ThumbnailResponse,
    UploadAuthorizationResponse,
    UploadCreate,
    UploadResponse,
    VideoResponse,
    VideoStatusResponse,
    VideoUpdate,
    VideoUpdateResponse,
)
from api.upload_auth import UploadAuthorization, UploadAuthorizationIssuer
from api.video_state import video_transition_guard
from api.video_store import VideoRecord, video_store
from code_version import get_version
from config import (
    ADMIN_API_SECRET,
    CORS_ALLOWED_ORIGINS,
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
    RATE_LIMIT_UPLOAD,
    RATE_LIMIT_WEBHOOK,
    THUMBNAIL_MAX_BYTES,
    load_origin_settings,
)

logger = logging.getLogger(__name__)

# Accepted thumbnail image types and the file extension they are stored under
THUMBNAIL_CONTENT_TYPES = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp"}

limiter = Limiter(
    key_func=get_real_ip,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate configuration, then manage database, Redis and origin client lifecycles."""
    settings = load_origin_settings()
    try:
        validate_origin_settings(settings)
    except ConfigurationError as e:
        logger.critical(f"Refusing to start: {e}")
        raise

    app.state.origin_settings = settings
    app.state.upload_issuer = UploadAuthorizationIssuer.from_settings(settings)
    app.state.webhook_receiver = WebhookReceiver(settings, video_transition_guard)
    app.state.origin_client = OriginClient(settings)
    init_app_info(get_version())

    await database.connect()
    logger.info(f"Ingest API started for origin library {settings.library_id}")

    yield

    await app.state.origin_client.close()
    await RedisClient.reset_instance()
    await database.disconnect()
    logger.info("Ingest API stopped")


app = FastAPI(
    title="Clipstream Ingest API",
    description="Upload authorization and webhook-driven publication for the media origin",
    version=get_version(),
    lifespan=lifespan,
)

# Request ID middleware for tracing
app.add_middleware(RequestIDMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# Same-origin only unless CLIPSTREAM_CORS_ORIGINS is set
if CORS_ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "PUT"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

# Rate limiting setup
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


# =============================================================================
# Dependencies
# =============================================================================


def get_upload_issuer(request: Request) -> UploadAuthorizationIssuer:
    return request.app.state.upload_issuer


def get_webhook_receiver(request: Request) -> WebhookReceiver:
    return request.app.state.webhook_receiver


def get_origin_client(request: Request) -> OriginClient:
    return request.app.state.origin_client


async def get_current_user(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> Optional[str]:
    """Account id forwarded by the authenticating gateway, if any."""
    if x_user_id is None:
        return None
    x_user_id = x_user_id.strip()
    return x_user_id or None


async def require_user(user_id: Optional[str] = Depends(get_current_user)) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_id


async def verify_admin_secret(x_admin_secret: Optional[str] = Header(None, alias="X-Admin-Secret")):
    """
    Verify admin secret for the status override endpoint.

    Set CLIPSTREAM_ADMIN_API_SECRET to enable it.

    Raises:
        HTTPException 503: If ADMIN_API_SECRET is not configured
        HTTPException 401: If X-Admin-Secret header is missing
        HTTPException 403: If X-Admin-Secret header is invalid
    """
    if not ADMIN_API_SECRET:
        logger.warning("Admin endpoint called but CLIPSTREAM_ADMIN_API_SECRET is not configured")
        raise HTTPException(
            status_code=503,
            detail="Admin endpoints require CLIPSTREAM_ADMIN_API_SECRET to be configured",
        )

    if not x_admin_secret:
        raise HTTPException(status_code=401, detail="X-Admin-Secret header required")

    # Use constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(x_admin_secret.encode("utf-8"), ADMIN_API_SECRET.encode("utf-8")):
        logger.warning("Invalid admin secret provided for admin endpoint")
        raise HTTPException(status_code=403, detail="Invalid admin secret")


def _video_response(record: VideoRecord) -> VideoResponse:
    return VideoResponse(**record.to_dict())


def _authorization_response(request: Request, auth: UploadAuthorization) -> UploadAuthorizationResponse:
    return UploadAuthorizationResponse(
        video_id=auth.external_id,
        library_id=auth.library_id,
        signature=auth.signature,
        expires=auth.expires_at,
        corrected=auth.corrected,
        tus_endpoint=request.app.state.origin_settings.tus_endpoint,
        headers=auth.tus_headers(),
    )


async def _get_owned_record(external_id: str, user_id: str) -> VideoRecord:
    record = await video_store.get_by_external_id(external_id)
    if record.owner_id != user_id:
        raise HTTPException(status_code=403, detail="Not the owner of this video")
    return record


# =============================================================================
# Health and Metrics
# =============================================================================


@app.get("/health")
@limiter.exempt
async def health_check():
    """Health check endpoint for monitoring and load balancers."""
    result = await check_health(database)
    return JSONResponse(
        status_code=result["status_code"],
        content={
            "status": "healthy" if result["healthy"] else "unhealthy",
            "checks": result["checks"],
            "timestamp": result["timestamp"],
        },
    )


@app.get("/metrics")
@limiter.exempt
async def metrics():
    """Prometheus metrics in text exposition format."""
    return Response(content=get_metrics(), media_type=METRICS_CONTENT_TYPE)


# =============================================================================
# Uploads
# =============================================================================


@app.get("/api/server-time", response_model=ServerTimeResponse)
async def server_time():
    """Server clock, so clients compute authorization expiries from server time."""
    now = datetime.now(timezone.utc)
    return ServerTimeResponse(timestamp=int(now.timestamp() * 1000), formatted=now.isoformat())


@app.post("/api/uploads", response_model=UploadResponse, status_code=201)
@limiter.limit(RATE_LIMIT_UPLOAD)
@handle_api_exceptions("begin_upload", "Failed to start upload")
async def begin_upload(
    request: Request,
    data: UploadCreate,
    user_id: str = Depends(require_user),
    origin: OriginClient = Depends(get_origin_client),
    issuer: UploadAuthorizationIssuer = Depends(get_upload_issuer),
):
    """
    Start an upload: create the origin asset, record it as UPLOADING and
    return the TUS endpoint plus the signed headers for it.
    """
    try:
        external_id = await origin.create_video(data.title)
    except Exception:
        VIDEOS_CREATED_TOTAL.labels(result="origin_error").inc()
        raise

    try:
        record = await video_store.create(
            external_id=external_id,
            owner_id=user_id,
            title=data.title,
            description=data.description,
            thumbnail=data.thumbnail,
            tags=data.tags,
            category_id=data.category_id,
        )
    except Exception as e:
        VIDEOS_CREATED_TOTAL.labels(result="error").inc()
        logger.warning(
            f"Origin asset {external_id} is orphaned: record creation failed ({type(e).__name__})",
            extra={"event": "orphaned_origin_asset", "external_id": external_id, "owner_id": user_id},
        )
        raise
    VIDEOS_CREATED_TOTAL.labels(result="success").inc()

    authorization = issuer.issue(external_id, data.expires)

    log_audit(
        AuditAction.VIDEO_CREATE,
        actor=user_id,
        client_ip=get_real_ip(request),
        user_agent=request.headers.get("user-agent"),
        resource_id=external_id,
        details={"title": data.title, "expires": authorization.expires_at},
        request_id=get_request_id(request),
    )

    return UploadResponse(
        video=_video_response(record),
        authorization=_authorization_response(request, authorization),
    )


@app.post("/api/uploads/{external_id}/authorization", response_model=UploadAuthorizationResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
@handle_api_exceptions("authorize_upload", "Failed to authorize upload")
async def authorize_upload(
    request: Request,
    external_id: str,
    data: Optional[AuthorizationRequest] = None,
    user_id: str = Depends(require_user),
    issuer: UploadAuthorizationIssuer = Depends(get_upload_issuer),
):
    """Re-issue an upload authorization (e.g. to resume an interrupted upload)."""
    await _get_owned_record(external_id, user_id)
    authorization = issuer.issue(external_id, data.expires if data else None)

    log_audit(
        AuditAction.VIDEO_AUTHORIZE_UPLOAD,
        actor=user_id,
        client_ip=get_real_ip(request),
        resource_id=external_id,
        details={"expires": authorization.expires_at, "corrected": authorization.corrected},
        request_id=get_request_id(request),
    )
    return _authorization_response(request, authorization)


# =============================================================================
# Origin Webhook
# =============================================================================


@app.post("/api/webhooks/origin")
@limiter.limit(RATE_LIMIT_WEBHOOK)
@handle_api_exceptions("origin_webhook", "Error handling request")
async def origin_webhook(
    request: Request,
    key: Optional[str] = Query(None),
    receiver: WebhookReceiver = Depends(get_webhook_receiver),
):
    """Status notification from the media origin."""
    body = await request.body()
    result = await receiver.handle(key, body, get_request_context(request))
    return JSONResponse(status_code=result.status_code, content=result.body)


# =============================================================================
# Videos
# =============================================================================


@app.get("/api/videos/{external_id}", response_model=VideoResponse)
@handle_api_exceptions("get_video")
async def get_video(request: Request, external_id: str, user_id: Optional[str] = Depends(get_current_user)):
    """Owners see their video in any state; everyone else only once it is servable."""
    record = await video_store.find_visible(external_id, user_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Video not found")
    return _video_response(record)


@app.get("/api/videos/{external_id}/status", response_model=VideoStatusResponse)
@handle_api_exceptions("get_video_status")
async def get_video_status(request: Request, external_id: str, user_id: Optional[str] = Depends(get_current_user)):
    record = await video_store.find_visible(external_id, user_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Video not found")
    return VideoStatusResponse(
        external_id=record.external_id,
        status=record.status,
        is_ready=record.is_ready,
        servable=record.is_servable,
        updated_at=record.updated_at,
    )


@app.patch("/api/videos/{external_id}", response_model=VideoUpdateResponse)
@handle_api_exceptions("update_video", "Failed to update video")
async def update_video(
    request: Request,
    external_id: str,
    data: VideoUpdate,
    user_id: str = Depends(require_user),
):
    """
    Owner edit of metadata and/or an owner-reportable status.

    Metadata and status are written in one conditional update. A status
    request on a PUBLIC video is ignored while the metadata still applies.
    """
    await _get_owned_record(external_id, user_id)

    metadata = data.metadata_changes()
    result = await video_transition_guard.apply(
        external_id,
        data.status,
        TransitionSource.OWNER,
        metadata=metadata,
    )

    if result.written:
        log_audit(
            AuditAction.VIDEO_UPDATE,
            actor=user_id,
            client_ip=get_real_ip(request),
            resource_id=external_id,
            details={
                "fields": sorted(metadata),
                "status": data.status.value if data.status else None,
                "status_outcome": result.outcome.value if result.outcome else None,
            },
            request_id=get_request_id(request),
        )

    return VideoUpdateResponse(
        video=_video_response(result.record),
        status_outcome=result.outcome.value if result.outcome else None,
        updated=result.written,
    )


@app.put("/api/videos/{external_id}/thumbnail", response_model=ThumbnailResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
@handle_api_exceptions("upload_thumbnail", "Failed to upload thumbnail")
async def upload_thumbnail(
    request: Request,
    external_id: str,
    user_id: str = Depends(require_user),
    origin: OriginClient = Depends(get_origin_client),
):
    """
    Replace the video's custom thumbnail. The request body is the raw image.

    The image is stored in the origin's storage zone and set on the asset; if
    the origin refuses it, the stored file is removed again and nothing is
    recorded. The previous stored thumbnail is deleted once the new one is
    accepted.
    """
    if not request.app.state.origin_settings.storage_enabled:
        raise HTTPException(status_code=503, detail="Thumbnail uploads are not configured")

    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    extension = THUMBNAIL_CONTENT_TYPES.get(content_type)
    if extension is None:
        raise HTTPException(status_code=415, detail="Thumbnail must be a JPEG, PNG or WebP image")

    data = await request.body()
    if not data:
        raise HTTPException(status_code=400, detail="Thumbnail image is empty")
    if len(data) > THUMBNAIL_MAX_BYTES:
        raise HTTPException(status_code=413, detail=f"Thumbnail exceeds {THUMBNAIL_MAX_BYTES} bytes")

    record = await _get_owned_record(external_id, user_id)

    filename = f"thumbnail_{secrets.token_hex(5)}.{extension}"
    upload = await origin.replace_thumbnail(external_id, filename, data, previous_url=record.thumbnail)

    result = await video_transition_guard.apply(
        external_id,
        None,
        TransitionSource.OWNER,
        metadata={"thumbnail": upload.url},
    )

    log_audit(
        AuditAction.VIDEO_UPDATE,
        actor=user_id,
        client_ip=get_real_ip(request),
        resource_id=external_id,
        details={"fields": ["thumbnail"], "thumbnail": upload.path, "previous_deleted": upload.previous_deleted},
        request_id=get_request_id(request),
    )

    return ThumbnailResponse(
        video=_video_response(result.record),
        thumbnail_url=upload.url,
        previous_deleted=upload.previous_deleted,
    )


# =============================================================================
# Admin
# =============================================================================


@app.put(
    "/api/admin/videos/{external_id}/status",
    response_model=StatusChangeResponse,
    dependencies=[Depends(verify_admin_secret)],
)
@handle_api_exceptions("admin_set_status", "Failed to change video status")
async def admin_set_status(request: Request, external_id: str, data: AdminStatusUpdate):
    """Manual status override, subject to the same transition rules as the webhook."""
    result = await video_transition_guard.apply(external_id, data.status, TransitionSource.ADMIN)

    log_audit(
        AuditAction.VIDEO_STATUS_OVERRIDE,
        actor="admin",
        client_ip=get_real_ip(request),
        resource_id=external_id,
        details={
            "requested": data.status.value,
            "previous_status": result.previous_status.value,
            "outcome": result.outcome.value,
        },
        request_id=get_request_id(request),
    )

    return StatusChangeResponse(
        external_id=external_id,
        outcome=result.outcome.value,
        status=result.record.status,
        is_ready=result.record.is_ready,
    )


if __name__ == "__main__":
    import uvicorn

    from config import API_PORT

    uvicorn.run(app, host="0.0.0.0", port=API_PORT)
