"""Signing key records and signed-URL results."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from streamguard.utils.clock import isoformat, parse_datetime


@dataclass
class RotationKey:
    """A URL-signing key.

    key_data is the plaintext hex key material and only ever lives in
    memory; documents carry the encrypted form.
    """

    id: str
    key_data: str
    created_at: datetime
    expires_at: datetime
    is_active: bool = True
    rotation_count: int = 0
    last_used: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_doc(self, encrypted_key_data: str) -> dict[str, Any]:
        return {
            "id": self.id,
            "key_data": encrypted_key_data,
            "created_at": isoformat(self.created_at),
            "expires_at": isoformat(self.expires_at),
            "is_active": self.is_active,
            "rotation_count": self.rotation_count,
            "last_used": isoformat(self.last_used) if self.last_used else None,
        }

    @classmethod
    def from_doc(cls, doc: dict[str, Any], key_data: str) -> "RotationKey":
        last_used = doc.get("last_used")
        return cls(
            id=doc["id"],
            key_data=key_data,
            created_at=parse_datetime(doc["created_at"]),
            expires_at=parse_datetime(doc["expires_at"]),
            is_active=bool(doc.get("is_active")),
            rotation_count=int(doc.get("rotation_count") or 0),
            last_used=parse_datetime(last_used) if last_used else None,
        )

    def to_public(self) -> dict[str, Any]:
        """Operator view without key material."""
        return {
            "id": self.id,
            "createdAt": isoformat(self.created_at),
            "expiresAt": isoformat(self.expires_at),
            "isActive": self.is_active,
            "rotationCount": self.rotation_count,
            "lastUsed": isoformat(self.last_used) if self.last_used else None,
        }


@dataclass(frozen=True)
class SignedUrl:
    url: str
    key_id: str
    signed_at: datetime
    expires_at: datetime

    def to_wire(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "keyId": self.key_id,
            "signedAt": isoformat(self.signed_at),
            "expiresAt": isoformat(self.expires_at),
        }
