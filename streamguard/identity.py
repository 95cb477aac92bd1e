"""Identity provider interface and the header-based default.

StreamGuard does not authenticate users itself. The edge gateway in front of
it authenticates the session and forwards the result as headers:

  X-User-Id            authenticated user id (absent for anonymous traffic)
  X-User-Role          "user" | "creator" | "moderator" | "admin"
  X-Subscription-Tier  "basic" | "premium" | "pro"
  X-Session-Id         opaque session id
  X-Session-Issued-At  ISO-8601 issue time of the session (for revocation)

HeaderIdentityProvider turns those headers into an Identity. Deployments
with a different gateway contract provide their own IdentityProvider.

Trust boundary: the headers are believed as sent. StreamGuard must sit behind
a gateway that strips client-supplied X-User-*, X-Subscription-Tier and
X-Session-* headers before setting its own; the same holds for the
X-Forwarded-For family read by ratelimit.limiter.client_ip. Where the
network path cannot guarantee that, configure server.gateway_secret: the
gateway then also sends X-Gateway-Secret, and requests without a matching
value are treated as anonymous whatever identity headers they carry.
"""

from __future__ import annotations

import hmac
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from streamguard.constants import (
    HEADER_GATEWAY_SECRET,
    HEADER_SESSION_ID,
    HEADER_SESSION_ISSUED_AT,
    HEADER_SUBSCRIPTION_TIER,
    HEADER_USER_ID,
    HEADER_USER_ROLE,
)
from streamguard.utils.clock import parse_datetime
from streamguard.utils.logger import get_logger

logger = get_logger(__name__)

VALID_TIERS: frozenset[str] = frozenset({"basic", "premium", "pro"})


@dataclass(frozen=True)
class Identity:
    user_id: Optional[str] = None
    role: str = "anonymous"
    subscription_tier: str = "basic"
    session_id: Optional[str] = None
    session_issued_at: Optional[datetime] = None

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


ANONYMOUS = Identity()


@runtime_checkable
class IdentityProvider(Protocol):
    def resolve(self, headers: Mapping[str, str]) -> Identity:
        ...


class HeaderIdentityProvider:
    """Reads the identity headers set by the edge gateway."""

    def __init__(self, gateway_secret: Optional[str] = None) -> None:
        self._gateway_secret = gateway_secret

    def _from_gateway(self, headers: Mapping[str, str]) -> bool:
        if self._gateway_secret is None:
            return True
        presented = headers.get(HEADER_GATEWAY_SECRET) or ""
        return hmac.compare_digest(presented.encode(), self._gateway_secret.encode())

    def resolve(self, headers: Mapping[str, str]) -> Identity:
        user_id = (headers.get(HEADER_USER_ID) or "").strip()
        if not user_id:
            return ANONYMOUS
        if not self._from_gateway(headers):
            logger.warning("identity_headers_untrusted", claimed_user_id=user_id)
            return ANONYMOUS

        tier = (headers.get(HEADER_SUBSCRIPTION_TIER) or "basic").strip().lower()
        if tier not in VALID_TIERS:
            logger.debug("unknown_subscription_tier", tier=tier, user_id=user_id)
            tier = "basic"

        issued_at: Optional[datetime] = None
        raw_issued = headers.get(HEADER_SESSION_ISSUED_AT)
        if raw_issued:
            try:
                issued_at = parse_datetime(raw_issued)
            except ValueError:
                logger.warning("invalid_session_issued_at", user_id=user_id, value=raw_issued)

        return Identity(
            user_id=user_id,
            role=(headers.get(HEADER_USER_ROLE) or "user").strip().lower(),
            subscription_tier=tier,
            session_id=headers.get(HEADER_SESSION_ID),
            session_issued_at=issued_at,
        )


assert isinstance(HeaderIdentityProvider(), IdentityProvider)
