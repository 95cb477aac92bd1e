"""KeyRotationManager — rotating URL-signing keys with an overlap window.

Key lifecycle:

    created (active) → overlapping (active, newer key exists)
                     → deactivated (is_active = False)
                     → expired (purged by cleanup_expired)

Up to `max_active_keys` keys stay active after a scheduled rotation so URLs
signed just before the rotation remain valid. Emergency rotation drops the
overlap: every other key is deactivated.

Key material is 32 random bytes (hex) from the injected RandomSource,
encrypted at rest with Fernet. The key id is the first 16 hex characters of
sha256(key material + creation time).

Concurrent callers near a rotation boundary may both rotate; the result is
one extra active key, never zero.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import timedelta
from typing import TYPE_CHECKING, Optional
from urllib.parse import parse_qsl, urlsplit

from cryptography.fernet import Fernet, InvalidToken

from streamguard.config import KeyRotationConfig
from streamguard.constants import (
    COLLECTION_SECURITY_KEYS,
    DEFAULT_SIGNED_URL_TTL_MINUTES,
    HEADER_KEY_ROTATION_ID,
    HEADER_KEY_SIGNATURE,
    HEADER_SIGNED_AT,
)
from streamguard.errors import InputValidationError, KeyRotationError, StoreUnavailableError
from streamguard.keys.models import RotationKey, SignedUrl
from streamguard.keys.storage import ObjectStorage
from streamguard.stores.protocol import DocumentStore, Filter
from streamguard.utils.clock import Clock, RandomSource, SystemClock, SystemRandomSource, isoformat
from streamguard.utils.logger import get_logger

if TYPE_CHECKING:
    from streamguard.alerts import AlertDispatcher
    from streamguard.audit.trail import AuditTrail

logger = get_logger(__name__)

KEY_BYTES = 32


def key_signature(key_data: str, resource_ref: str, signed_at: str, expires: str) -> str:
    """HMAC binding a signed URL to the key that issued it."""
    message = f"{resource_ref}|{signed_at}|{expires}".encode()
    return hmac.new(bytes.fromhex(key_data), message, hashlib.sha256).hexdigest()


class KeyRotationManager:
    def __init__(
        self,
        store: DocumentStore,
        object_storage: ObjectStorage,
        cipher: Fernet,
        config: Optional[KeyRotationConfig] = None,
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
        audit: Optional["AuditTrail"] = None,
        alerts: Optional["AlertDispatcher"] = None,
    ) -> None:
        self._store = store
        self._object_storage = object_storage
        self._cipher = cipher
        self._config = config or KeyRotationConfig()
        self._clock = clock or SystemClock()
        self._random = random_source or SystemRandomSource()
        self._audit = audit
        self._alerts = alerts

    # ─── Key access ───────────────────────────────────────────────────────────

    async def list_active_keys(self) -> list[RotationKey]:
        """Active keys, newest first.

        Keys whose material no longer decrypts (the encryption key changed,
        or an ephemeral one was lost on restart) are deactivated and skipped,
        so the next lookup rotates in a fresh key.
        """
        docs = await self._store.query(
            COLLECTION_SECURITY_KEYS,
            [Filter("is_active", "==", True)],
            order_by="created_at",
            descending=True,
        )
        keys = []
        for doc in docs:
            key = self._try_load(doc)
            if key is None:
                await self._store.update(COLLECTION_SECURITY_KEYS, doc["id"], {"is_active": False})
                continue
            keys.append(key)
        return keys

    async def get_key(self, key_id: str) -> Optional[RotationKey]:
        doc = await self._store.get(COLLECTION_SECURITY_KEYS, key_id)
        return self._try_load(doc) if doc else None

    async def get_current_active_key(self) -> RotationKey:
        """Newest active key, rotating first when it is due.

        Creates the first key when none is active.
        """
        try:
            active = await self.list_active_keys()
        except StoreUnavailableError as exc:
            logger.critical("key_lookup_failed", error=str(exc))
            raise KeyRotationError(f"Unable to load signing keys: {exc}") from exc

        if not active:
            return await self.rotate(reason="initial_key")

        current = active[0]
        reason = self._rotation_reason(current)
        if reason is not None:
            return await self.rotate(reason=reason)
        return current

    def _rotation_reason(self, key: RotationKey) -> Optional[str]:
        now = self._clock.now()
        if now - key.created_at > timedelta(hours=self._config.rotation_interval_hours):
            return "interval_elapsed"
        if key.rotation_count > self._config.emergency_rotation_threshold:
            return "usage_threshold_exceeded"
        if key.is_expired(now):
            return "key_expired"
        return None

    # ─── Rotation ─────────────────────────────────────────────────────────────

    async def rotate(self, reason: str = "scheduled") -> RotationKey:
        """Create a new key and deactivate active keys beyond the overlap limit.

        Raises:
            KeyRotationError: the key store failed; no partial state is hidden.
        """
        try:
            new_key = await self._create_key()
            active = await self.list_active_keys()
            older = [key for key in active if key.id != new_key.id]
            superseded = older[self._config.max_active_keys - 1 :]
            for key in superseded:
                await self._store.update(COLLECTION_SECURITY_KEYS, key.id, {"is_active": False})
        except StoreUnavailableError as exc:
            logger.critical("key_rotation_failed", rotation_type="scheduled_rotation", error=str(exc))
            raise KeyRotationError(f"Key rotation failed: {exc}") from exc

        deactivated = [key.id for key in superseded]
        logger.info(
            "key_rotated",
            key_id=new_key.id,
            reason=reason,
            deactivated=deactivated,
            active_keys=min(len(active), self._config.max_active_keys),
        )
        await self._log_rotation(new_key, "scheduled_rotation", reason, deactivated, "medium")
        return new_key

    async def emergency_rotate(self, reason: str) -> RotationKey:
        """Replace every active key with a single new one and raise an alert.

        The new key is written before the old keys are deactivated, so the
        key set is never empty.
        """
        if not reason:
            raise InputValidationError("reason is required", field="reason")
        try:
            previous = await self.list_active_keys()
            new_key = await self._create_key()
            for key in previous:
                await self._store.update(COLLECTION_SECURITY_KEYS, key.id, {"is_active": False})
        except StoreUnavailableError as exc:
            logger.critical("key_rotation_failed", rotation_type="emergency_rotation", error=str(exc))
            raise KeyRotationError(f"Emergency key rotation failed: {exc}") from exc

        deactivated = [key.id for key in previous]
        logger.warning("emergency_key_rotation", key_id=new_key.id, reason=reason, deactivated=deactivated)
        await self._log_rotation(new_key, "emergency_rotation", reason, deactivated, "high")
        if self._alerts is not None:
            await self._alerts.send(
                "emergency_key_rotation",
                "high",
                f"Emergency key rotation: {reason}",
                {"reason": reason, "new_key_id": new_key.id, "deactivated": deactivated},
            )
        return new_key

    async def _create_key(self) -> RotationKey:
        now = self._clock.now()
        key_data = self._random.token_bytes(KEY_BYTES).hex()
        key_id = hashlib.sha256((key_data + isoformat(now)).encode()).hexdigest()[:16]
        key = RotationKey(
            id=key_id,
            key_data=key_data,
            created_at=now,
            expires_at=now + timedelta(hours=self._config.key_expiration_hours),
        )
        encrypted = self._cipher.encrypt(key_data.encode()).decode()
        await self._store.put(COLLECTION_SECURITY_KEYS, key.id, key.to_doc(encrypted))
        return key

    def _try_load(self, doc: dict) -> Optional[RotationKey]:
        try:
            key_data = self._cipher.decrypt(doc["key_data"].encode()).decode()
        except InvalidToken:
            logger.critical("signing_key_undecryptable", key_id=doc["id"])
            return None
        return RotationKey.from_doc(doc, key_data)

    async def _log_rotation(
        self,
        key: RotationKey,
        rotation_type: str,
        reason: str,
        deactivated: list[str],
        severity: str,
    ) -> None:
        if self._audit is None:
            return
        await self._audit.log(
            "system",
            "key_rotation",
            "security_keys",
            resource_id=key.id,
            severity=severity,
            category="security",
            metadata={
                "rotation_type": rotation_type,
                "reason": reason,
                "deactivated_keys": deactivated,
            },
        )

    # ─── Signed URLs ──────────────────────────────────────────────────────────

    async def sign_url(
        self, resource_ref: str, ttl_minutes: float = DEFAULT_SIGNED_URL_TTL_MINUTES
    ) -> SignedUrl:
        """Issue a time-limited read URL signed with the current key."""
        if not resource_ref or not resource_ref.strip("/"):
            raise InputValidationError("resource_ref is required", field="resource_ref")
        if ttl_minutes <= 0:
            raise InputValidationError("ttl_minutes must be positive", field="ttl_minutes")

        key = await self.get_current_active_key()
        signed_at = self._clock.now()
        expires_at = signed_at + timedelta(minutes=ttl_minutes)
        signed_at_iso = isoformat(signed_at)
        expires = str(int(expires_at.timestamp()))

        url = self._object_storage.generate_signed_url(
            resource_ref,
            expires_at,
            {
                HEADER_KEY_ROTATION_ID: key.id,
                HEADER_SIGNED_AT: signed_at_iso,
                HEADER_KEY_SIGNATURE: key_signature(
                    key.key_data, resource_ref.lstrip("/"), signed_at_iso, expires
                ),
            },
        )
        await self._store.increment(
            COLLECTION_SECURITY_KEYS, key.id, "rotation_count", fields={"last_used": signed_at_iso}
        )
        logger.debug("url_signed", key_id=key.id, resource_ref=resource_ref, ttl_minutes=ttl_minutes)
        return SignedUrl(url=url, key_id=key.id, signed_at=signed_at, expires_at=expires_at)

    async def validate(self, url: str, key_id: str) -> bool:
        """True when `url` was signed by `key_id` and both are still valid."""
        try:
            key = await self.get_key(key_id)
        except StoreUnavailableError as exc:
            logger.error("url_validation_error", key_id=key_id, error=str(exc))
            return False

        now = self._clock.now()
        if key is None or not key.is_active or key.is_expired(now):
            return False

        params = dict(parse_qsl(urlsplit(url).query, keep_blank_values=True))
        if params.get(HEADER_KEY_ROTATION_ID) != key_id:
            return False
        signed_at = params.get(HEADER_SIGNED_AT, "")
        expires = params.get("X-Expires", "")
        resource_ref = self._object_storage.resource_ref(url)
        if resource_ref is None:
            return False
        expected = key_signature(key.key_data, resource_ref, signed_at, expires)
        if not hmac.compare_digest(params.get(HEADER_KEY_SIGNATURE, ""), expected):
            return False
        return self._object_storage.verify_signed_url(url, now)

    # ─── Maintenance ──────────────────────────────────────────────────────────

    async def cleanup_expired(self) -> int:
        """Purge keys past their expiry. Returns the number removed."""
        now = isoformat(self._clock.now())
        docs = await self._store.query(COLLECTION_SECURITY_KEYS, [Filter("expires_at", "<", now)])
        for doc in docs:
            await self._store.delete(COLLECTION_SECURITY_KEYS, doc["id"])
        if docs:
            logger.info("expired_keys_purged", count=len(docs))
        return len(docs)
