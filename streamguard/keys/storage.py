"""Object storage interface for signed read URLs and file quarantine.

LocalObjectStorage issues HMAC-SHA256 signed URLs against the media origin
configured in `object_storage.base_url`:

    https://media.localhost/videos/abc.mp4
        ?X-Expires=1792300000
        &x-key-rotation-id=4f0c...&x-signed-at=2026-10-18T...&x-key-signature=...
        &X-Signature=<hmac over everything before it>

The media origin verifies X-Signature with the shared signing secret. The
rotation fields are extension parameters checked by KeyRotationManager.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime
from typing import Optional, Protocol, runtime_checkable
from urllib.parse import parse_qsl, quote, unquote, urlencode, urlsplit

from streamguard.constants import COLLECTION_QUARANTINE
from streamguard.stores.protocol import DocumentStore
from streamguard.utils.clock import Clock, SystemClock, isoformat
from streamguard.utils.logger import get_logger

logger = get_logger(__name__)

EXPIRES_PARAM = "X-Expires"
SIGNATURE_PARAM = "X-Signature"


def _quarantine_id(resource_ref: str) -> str:
    return hashlib.sha256(resource_ref.encode()).hexdigest()[:32]


@runtime_checkable
class ObjectStorage(Protocol):
    def generate_signed_url(
        self, resource_ref: str, expires_at: datetime, extension_headers: dict[str, str]
    ) -> str:
        ...

    def verify_signed_url(self, url: str, now: datetime) -> bool:
        ...

    def resource_ref(self, url: str) -> Optional[str]:
        ...

    async def quarantine(self, resource_ref: str, reason: str, source: Optional[str] = None) -> None:
        ...


class LocalObjectStorage:
    def __init__(
        self,
        base_url: str,
        signing_secret: bytes,
        store: DocumentStore,
        clock: Optional[Clock] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._secret = signing_secret
        self._store = store
        self._clock = clock or SystemClock()

    def _sign(self, unsigned_url: str) -> str:
        message = unsigned_url.encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def generate_signed_url(
        self, resource_ref: str, expires_at: datetime, extension_headers: dict[str, str]
    ) -> str:
        path = "/" + quote(resource_ref.lstrip("/"))
        params = [(EXPIRES_PARAM, str(int(expires_at.timestamp())))]
        params.extend(extension_headers.items())
        unsigned = f"{self._base_url}{path}?{urlencode(params)}"
        return f"{unsigned}&{SIGNATURE_PARAM}={self._sign(unsigned)}"

    def verify_signed_url(self, url: str, now: datetime) -> bool:
        unsigned, sep, signature = url.rpartition(f"&{SIGNATURE_PARAM}=")
        if not sep or not unsigned.startswith(self._base_url + "/"):
            return False
        if not hmac.compare_digest(signature, self._sign(unsigned)):
            return False
        expires = dict(parse_qsl(urlsplit(unsigned).query)).get(EXPIRES_PARAM)
        if expires is None or not expires.isdigit():
            return False
        return int(now.timestamp()) <= int(expires)

    def resource_ref(self, url: str) -> Optional[str]:
        """The resource a URL issued by this storage points at, else None."""
        if not url.startswith(self._base_url + "/"):
            return None
        base_path = urlsplit(self._base_url).path
        return unquote(urlsplit(url).path[len(base_path) :]).lstrip("/")

    async def quarantine(self, resource_ref: str, reason: str, source: Optional[str] = None) -> None:
        await self._store.put(
            COLLECTION_QUARANTINE,
            _quarantine_id(resource_ref),
            {
                "resource_ref": resource_ref,
                "reason": reason,
                "source": source,
                "quarantined_at": isoformat(self._clock.now()),
            },
        )
        logger.warning("file_quarantined", resource_ref=resource_ref, reason=reason, source=source)

    async def is_quarantined(self, resource_ref: str) -> bool:
        return await self._store.get(COLLECTION_QUARANTINE, _quarantine_id(resource_ref)) is not None
