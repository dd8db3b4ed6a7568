from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from api.enums import VideoStatus

MAX_TAGS = 30
MAX_TAG_LENGTH = 50

# Statuses an owner may report for their own upload. PUBLIC only comes from
# the origin (or an admin override).
OWNER_SETTABLE_STATUSES = {VideoStatus.UPLOADING, VideoStatus.PROCESSING, VideoStatus.FAILED}


def _clean_tags(v: Optional[List[str]]) -> Optional[List[str]]:
    if v is None:
        return v
    cleaned = []
    for tag in v:
        tag = tag.strip()
        if not tag:
            continue
        if len(tag) > MAX_TAG_LENGTH:
            raise ValueError(f"Tags must be at most {MAX_TAG_LENGTH} characters")
        if tag not in cleaned:
            cleaned.append(tag)
    return cleaned


def _clean_title(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not v.strip():
        raise ValueError("Title must not be blank")
    return v.strip()


class UploadCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    thumbnail: Optional[str] = Field(default=None, max_length=2048)
    tags: List[str] = Field(default_factory=list, max_length=MAX_TAGS)
    category_id: Optional[str] = Field(default=None, max_length=36)
    # Requested authorization expiry (Unix seconds). Omit to use the server default.
    expires: Optional[int] = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v):
        return _clean_title(v)

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, v):
        return _clean_tags(v)


class AuthorizationRequest(BaseModel):
    expires: Optional[int] = None


class UploadAuthorizationResponse(BaseModel):
    video_id: str
    library_id: str
    signature: str
    expires: int
    corrected: bool
    tus_endpoint: str
    headers: Dict[str, str]


class VideoResponse(BaseModel):
    id: str
    external_id: str
    owner_id: str
    title: str
    description: Optional[str] = None
    thumbnail: Optional[str] = None
    tags: List[str] = []
    category_id: Optional[str] = None
    status: VideoStatus
    is_ready: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("tags", mode="before")
    @classmethod
    def default_tags(cls, v):
        return v if v is not None else []


class UploadResponse(BaseModel):
    video: VideoResponse
    authorization: UploadAuthorizationResponse


class VideoStatusResponse(BaseModel):
    external_id: str
    status: VideoStatus
    is_ready: bool
    servable: bool
    updated_at: Optional[datetime] = None


class VideoUpdate(BaseModel):
    """Owner edit. Omitted fields are left unchanged."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    thumbnail: Optional[str] = Field(default=None, max_length=2048)
    tags: Optional[List[str]] = Field(default=None, max_length=MAX_TAGS)
    category_id: Optional[str] = Field(default=None, max_length=36)
    status: Optional[VideoStatus] = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v):
        return _clean_title(v)

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, v):
        return _clean_tags(v)

    @field_validator("status")
    @classmethod
    def owner_settable_status(cls, v):
        if v is not None and v not in OWNER_SETTABLE_STATUSES:
            raise ValueError("Owners may only set UPLOADING, PROCESSING or FAILED")
        return v

    def metadata_changes(self) -> dict:
        """
        Explicitly provided metadata fields (status excluded).

        A null title means no change. Null tags clear the list, stored as []
        so the value reads back the way it was written.
        """
        changes = self.model_dump(exclude_unset=True, exclude={"status"})
        if changes.get("title", "") is None:
            del changes["title"]
        if "tags" in changes and changes["tags"] is None:
            changes["tags"] = []
        return changes


class VideoUpdateResponse(BaseModel):
    video: VideoResponse
    status_outcome: Optional[str] = None
    updated: bool


class AdminStatusUpdate(BaseModel):
    status: VideoStatus


class StatusChangeResponse(BaseModel):
    external_id: str
    outcome: str
    status: VideoStatus
    is_ready: bool


class ServerTimeResponse(BaseModel):
    timestamp: int  # milliseconds since the epoch
    formatted: str  # ISO 8601, UTC


class ThumbnailResponse(BaseModel):
    video: VideoResponse
    thumbnail_url: str
    previous_deleted: bool
