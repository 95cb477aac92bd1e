"""Blocklists, session revocation and enhanced monitoring.

Populated by incident automated actions (block_ips, block_user,
invalidate_sessions, enhance_monitoring) and by operators; consulted by
RequestGuardMiddleware on every inbound request.

All entries live in the DocumentStore so every StreamGuard process sees the
same blocks. Timed entries carry `expires_at` and are treated as absent
once it has passed.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from streamguard.constants import (
    COLLECTION_BLOCKED_IPS,
    COLLECTION_BLOCKED_USERS,
    COLLECTION_MONITORING,
    COLLECTION_SESSION_REVOCATIONS,
)
from streamguard.stores.protocol import DocumentStore
from streamguard.utils.clock import Clock, SystemClock, isoformat, parse_datetime
from streamguard.utils.logger import get_logger

logger = get_logger(__name__)


class Blocklist:
    def __init__(self, store: DocumentStore, clock: Optional[Clock] = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()

    # ── Entries ───────────────────────────────────────────────────────────────

    def _entry(
        self,
        reason: str,
        duration_minutes: Optional[float],
        source: Optional[str],
        **extra: Any,
    ) -> dict[str, Any]:
        now = self._clock.now()
        return {
            **extra,
            "reason": reason,
            "source": source,
            "created_at": isoformat(now),
            "expires_at": (
                isoformat(now + timedelta(minutes=duration_minutes))
                if duration_minutes is not None
                else None
            ),
        }

    def _active(self, doc: Optional[dict[str, Any]]) -> bool:
        if doc is None:
            return False
        expires_at = doc.get("expires_at")
        return expires_at is None or parse_datetime(expires_at) > self._clock.now()

    # ── IP addresses ──────────────────────────────────────────────────────────

    async def block_ip(
        self,
        ip_address: str,
        reason: str,
        duration_minutes: Optional[float] = None,
        source: Optional[str] = None,
    ) -> None:
        await self._store.put(
            COLLECTION_BLOCKED_IPS,
            ip_address,
            self._entry(reason, duration_minutes, source, ip_address=ip_address),
        )
        logger.warning("ip_blocked", ip_address=ip_address, reason=reason, source=source)

    async def unblock_ip(self, ip_address: str) -> bool:
        return await self._store.delete(COLLECTION_BLOCKED_IPS, ip_address)

    async def is_ip_blocked(self, ip_address: str) -> bool:
        return self._active(await self._store.get(COLLECTION_BLOCKED_IPS, ip_address))

    # ── Users ─────────────────────────────────────────────────────────────────

    async def block_user(
        self,
        user_id: str,
        reason: str,
        duration_minutes: Optional[float] = None,
        source: Optional[str] = None,
    ) -> None:
        await self._store.put(
            COLLECTION_BLOCKED_USERS,
            user_id,
            self._entry(reason, duration_minutes, source, user_id=user_id),
        )
        logger.warning("user_blocked", user_id=user_id, reason=reason, source=source)

    async def unblock_user(self, user_id: str) -> bool:
        return await self._store.delete(COLLECTION_BLOCKED_USERS, user_id)

    async def is_user_blocked(self, user_id: str) -> bool:
        return self._active(await self._store.get(COLLECTION_BLOCKED_USERS, user_id))

    # ── Sessions ──────────────────────────────────────────────────────────────

    async def revoke_sessions(self, user_id: str, reason: str, source: Optional[str] = None) -> None:
        """Invalidate every session of `user_id` issued up to now."""
        entry = self._entry(reason, None, source, user_id=user_id)
        entry["revoked_before"] = entry["created_at"]
        await self._store.put(COLLECTION_SESSION_REVOCATIONS, user_id, entry)
        logger.warning("sessions_revoked", user_id=user_id, reason=reason, source=source)

    async def is_session_revoked(self, user_id: str, issued_at: Optional[datetime]) -> bool:
        """True when the session was issued before the user's last revocation.

        A session with no known issue time is treated as revoked once any
        revocation exists for the user.
        """
        doc = await self._store.get(COLLECTION_SESSION_REVOCATIONS, user_id)
        if doc is None:
            return False
        if issued_at is None:
            return True
        return issued_at <= parse_datetime(doc["revoked_before"])

    # ── Enhanced monitoring ───────────────────────────────────────────────────

    async def enable_monitoring(
        self, subject: str, duration_minutes: float, reason: str, source: Optional[str] = None
    ) -> None:
        """Record every request from `subject` (a user id or IP) in the audit trail."""
        await self._store.put(
            COLLECTION_MONITORING,
            subject,
            self._entry(reason, duration_minutes, source, subject=subject),
        )
        logger.info("enhanced_monitoring_enabled", subject=subject, duration_minutes=duration_minutes)

    async def is_monitored(self, *subjects: Optional[str]) -> bool:
        for subject in subjects:
            if subject and self._active(await self._store.get(COLLECTION_MONITORING, subject)):
                return True
        return False
