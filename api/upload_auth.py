"""
Upload authorization for direct-to-origin TUS uploads.

The client uploads raw media straight to the origin's TUS endpoint. The origin
accepts the upload only if the request carries a signature it can recompute:

    sha256_hex(library_id + api_key + str(expires) + external_id)

Field order is part of the contract with the origin (SIGNATURE_SCHEME_VERSION);
changing it breaks every client in flight.

Expiry handling: callers pass the expiry they would like (usually computed
from GET /api/server-time). If it is missing or already in the past, the
issuer signs now + ttl instead and reports the value it actually signed. A
client with a skewed clock therefore still gets a usable authorization.
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from api.errors import ConfigurationError, InvalidInputError
from api.metrics import UPLOAD_AUTHORIZATIONS_TOTAL
from config import OriginSettings

logger = logging.getLogger(__name__)

SIGNATURE_SCHEME_VERSION = 1

DEFAULT_TTL_SECONDS = 7200
DEFAULT_SKEW_WARNING_SECONDS = 300


@dataclass(frozen=True)
class UploadAuthorization:
    """A signed upload grant for one asset."""

    external_id: str
    library_id: str
    signature: str
    expires_at: int
    corrected: bool = False

    def tus_headers(self) -> Dict[str, str]:
        """Headers the TUS client must send with the upload."""
        return {
            "AuthorizationSignature": self.signature,
            "AuthorizationExpire": str(self.expires_at),
            "VideoId": self.external_id,
            "LibraryId": self.library_id,
        }


def compute_signature(library_id: str, api_key: str, expires: int, external_id: str) -> str:
    """Lowercase hex SHA-256 over the fields in origin order."""
    material = f"{library_id}{api_key}{int(expires)}{external_id}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class UploadAuthorizationIssuer:
    """
    Issues upload authorizations for one origin library.

    Deterministic apart from the injected clock, so tests pass a fixed one.
    """

    def __init__(
        self,
        library_id: str,
        api_key: str,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        skew_warning: int = DEFAULT_SKEW_WARNING_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not library_id or not api_key:
            raise ConfigurationError("Upload authorization requires an origin library id and API key")
        if default_ttl <= 0:
            raise ConfigurationError("Upload authorization TTL must be positive")

        self.library_id = str(library_id)
        self._api_key = api_key
        self.default_ttl = default_ttl
        self.skew_warning = skew_warning
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: OriginSettings, clock: Callable[[], float] = time.time
    ) -> "UploadAuthorizationIssuer":
        return cls(
            library_id=settings.library_id,
            api_key=settings.api_key,
            default_ttl=settings.upload_auth_ttl,
            skew_warning=settings.upload_auth_skew_warning,
            clock=clock,
        )

    def now(self) -> int:
        return int(self._clock())

    def sign(self, external_id: str, expires: int) -> str:
        """Signature for an exact expiry. No correction applied."""
        return compute_signature(self.library_id, self._api_key, expires, external_id)

    def issue(self, external_id: str, not_after: Optional[int] = None) -> UploadAuthorization:
        """
        Authorize an upload of external_id until not_after (Unix seconds).

        A missing or past not_after is replaced with now + default_ttl; the
        returned expires_at is always the value that was signed.

        Raises:
            InvalidInputError: external_id is empty
        """
        if not external_id or not external_id.strip():
            raise InvalidInputError("external_id is required")

        now = self.now()
        corrected = not_after is None or not_after <= now
        expires = now + self.default_ttl if corrected else int(not_after)

        if corrected:
            UPLOAD_AUTHORIZATIONS_TOTAL.labels(expiry="corrected").inc()
            if not_after is not None:
                skew = now - not_after
                if skew > self.skew_warning:
                    logger.warning(
                        f"Upload authorization for {external_id} requested an expiry {skew}s in the past; "
                        f"signed {expires} instead (client clock skew?)"
                    )
                else:
                    logger.debug(f"Corrected stale expiry for {external_id} ({skew}s in the past)")
        else:
            UPLOAD_AUTHORIZATIONS_TOTAL.labels(expiry="requested").inc()

        return UploadAuthorization(
            external_id=external_id,
            library_id=self.library_id,
            signature=self.sign(external_id, expires),
            expires_at=expires,
            corrected=corrected,
        )
