"""HTTP client for the media origin's REST API (Bunny Stream compatible)."""

import asyncio
import logging
import random
import secrets
import time
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from api.errors import ConfigurationError, OriginAPIError, truncate_string
from config import ERROR_SUMMARY_MAX_LENGTH, ORIGIN_API_TIMEOUT, OriginSettings

logger = logging.getLogger(__name__)

# Retry configuration
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_BASE_DELAY = 0.5  # seconds
DEFAULT_RETRY_MAX_DELAY = 5.0  # seconds


def unique_title(title: str, now: Optional[float] = None) -> str:
    """Origin titles must be unique per library: append a ms timestamp and a random suffix."""
    millis = int((now if now is not None else time.time()) * 1000)
    return f"{title}_{millis}_{secrets.token_hex(3)}"


@dataclass(frozen=True)
class ThumbnailUpload:
    """A custom thumbnail accepted by the origin."""

    path: str  # storage path, "<external id>/<filename>"
    url: str  # public CDN URL
    previous_deleted: bool = False


class OriginClient:
    """
    Creates assets in the origin library and manages their custom thumbnails.

    Only requests that provably never reached the origin (connection refused)
    and 429 responses are retried: creating an asset is not idempotent, so a
    timeout or 5xx after the request was sent is reported, not repeated.
    """

    def __init__(
        self,
        settings: OriginSettings,
        timeout: float = ORIGIN_API_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not settings.api_key or not settings.library_id:
            raise ConfigurationError("Origin client requires an API key and library id")
        self.base_url = settings.api_url.rstrip("/")
        self.library_id = settings.library_id
        self.storage = settings
        self.storage_base_url = settings.storage_url.rstrip("/")
        self.headers = {
            "accept": "application/json",
            "AccessKey": settings.api_key,
        }
        self.timeout = timeout
        self.max_retries = max_retries
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.reason_phrase or f"HTTP {response.status_code}"
        if isinstance(data, dict):
            message = data.get("Message") or data.get("message") or data.get("detail") or response.reason_phrase
            return truncate_string(str(message), ERROR_SUMMARY_MAX_LENGTH)
        return response.reason_phrase

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: Dict[str, str],
        json: Optional[dict] = None,
        content: Optional[bytes] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Send one request, retrying connection failures and 429s.

        Raises:
            OriginAPIError: non-2xx response, any other transport error, or retries exhausted
        """
        client = await self._get_client()
        path = httpx.URL(url).path

        for attempt in range(self.max_retries + 1):
            retry_reason = None
            try:
                resp = await client.request(method, url, json=json, content=content, params=params, headers=headers)
            except httpx.ConnectError as e:
                retry_reason = f"connection error: {e}"
            except httpx.RequestError as e:
                raise OriginAPIError(0, f"Request to origin failed: {e}") from e
            else:
                if resp.status_code == 429:
                    retry_reason = "rate limited"
                elif resp.is_error:
                    raise OriginAPIError(resp.status_code, self._error_detail(resp))
                else:
                    return resp

            if attempt < self.max_retries:
                delay = min(DEFAULT_RETRY_BASE_DELAY * (2**attempt), DEFAULT_RETRY_MAX_DELAY)
                delay = delay * (0.75 + random.random() * 0.5)
                logger.warning(f"Origin {method} {path} {retry_reason}, retrying in {delay:.2f}s")
                await asyncio.sleep(delay)

        raise OriginAPIError(429 if retry_reason == "rate limited" else 0, f"Origin unavailable: {retry_reason}")

    async def _post(self, path: str, payload: dict, params: Optional[Dict[str, str]] = None) -> dict:
        resp = await self._request("POST", f"{self.base_url}{path}", headers=self.headers, json=payload, params=params)
        try:
            return resp.json()
        except ValueError as e:
            raise OriginAPIError(resp.status_code, "Origin returned a non-JSON response") from e

    async def create_video(self, title: str) -> str:
        """
        Create an empty asset in the library and return its guid.

        Raises:
            OriginAPIError: the origin rejected the request or was unreachable
        """
        result = await self._post(
            f"/library/{self.library_id}/videos",
            {"title": unique_title(title)},
        )
        guid = result.get("guid") if isinstance(result, dict) else None
        if not guid:
            raise OriginAPIError(502, "Origin response did not include a video guid")
        logger.info(f"Created origin asset {guid} in library {self.library_id}")
        return guid

    # -------------------------------------------------------------------------
    # Thumbnails
    # -------------------------------------------------------------------------

    def _require_storage(self) -> None:
        if not self.storage.storage_enabled:
            raise ConfigurationError("Thumbnail storage is not configured")

    def _storage_url(self, path: str) -> str:
        return f"https://{self.storage.storage_hostname}/{self.storage.storage_zone}/{path}"

    @property
    def _storage_headers(self) -> Dict[str, str]:
        return {"content-type": "application/octet-stream", "AccessKey": self.storage.storage_api_key}

    def public_url(self, path: str) -> str:
        """CDN URL a stored file is served from."""
        return f"{self.storage_base_url}/{path}"

    def storage_path_for(self, url: Optional[str], external_id: str) -> Optional[str]:
        """
        Storage path of a thumbnail URL previously stored for this video.

        Returns None for URLs this storage zone does not serve (or that belong
        to another video), which are never deleted.
        """
        if not url or not self.storage_base_url:
            return None
        prefix = f"{self.storage_base_url}/{external_id}/"
        if not url.startswith(prefix):
            return None
        filename = url[len(prefix) :]
        if not filename or "/" in filename:
            return None
        return f"{external_id}/{filename}"

    async def upload_thumbnail(self, external_id: str, filename: str, data: bytes) -> str:
        """PUT the image into the storage zone under the video's folder; return its storage path."""
        self._require_storage()
        path = f"{external_id}/{filename}"
        await self._request("PUT", self._storage_url(path), headers=self._storage_headers, content=data)
        logger.info(f"Stored thumbnail {path} ({len(data)} bytes)")
        return path

    async def set_thumbnail(self, external_id: str, thumbnail_url: str) -> None:
        """Point the stream asset's thumbnail at a stored image."""
        await self._post(
            f"/library/{self.library_id}/videos/{external_id}/thumbnail",
            {},
            params={"thumbnailUrl": thumbnail_url},
        )

    async def delete_file(self, path: str) -> None:
        """Remove a file from the storage zone."""
        self._require_storage()
        await self._request("DELETE", self._storage_url(path), headers=self._storage_headers)
        logger.info(f"Deleted stored file {path}")

    async def _delete_quietly(self, path: str, why: str) -> bool:
        try:
            await self.delete_file(path)
        except OriginAPIError as e:
            logger.warning(f"Could not delete {why} {path}: {e}")
            return False
        return True

    async def replace_thumbnail(
        self,
        external_id: str,
        filename: str,
        data: bytes,
        previous_url: Optional[str] = None,
    ) -> ThumbnailUpload:
        """
        Upload a custom thumbnail and make it the asset's thumbnail.

        If the origin refuses the new thumbnail the uploaded file is deleted
        again and the error is raised. Once it is accepted, the previous
        thumbnail stored for this video (if any) is deleted. Failing to delete
        a file is logged and never fails the call.

        Raises:
            ConfigurationError: storage is not configured
            OriginAPIError: the upload or the thumbnail update failed
        """
        path = await self.upload_thumbnail(external_id, filename, data)
        url = self.public_url(path)

        try:
            await self.set_thumbnail(external_id, url)
        except OriginAPIError:
            await self._delete_quietly(path, "rejected thumbnail")
            raise

        previous_deleted = False
        previous_path = self.storage_path_for(previous_url, external_id)
        if previous_path and previous_path != path:
            previous_deleted = await self._delete_quietly(previous_path, "previous thumbnail")

        return ThumbnailUpload(path=path, url=url, previous_deleted=previous_deleted)
