"""Fixed-window rate limiter, endpoint classes and flood guard.

Window arithmetic:
  window_index = now_ms // window_ms
  key          = "rate_limit:{identifier}:{window_index}"
  reset_time   = (window_index + 1) * window_ms        (epoch ms)
  allowed      = count <= max_requests
  remaining    = max(0, max_requests - count)

The counter store's increment_with_expiry is the only synchronization point;
nothing here locks. When the counter store is unreachable the limiter fails
open (configurable to fail closed) and records a system-degradation audit
event once per outage.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Optional

import re2

from streamguard.stores.protocol import CounterStore
from streamguard.utils.clock import Clock, SystemClock, epoch_ms
from streamguard.utils.logger import get_logger

if TYPE_CHECKING:
    from streamguard.audit.trail import AuditTrail

logger = get_logger(__name__)


# ─── Data Types ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RateLimitConfig:
    window_ms: int
    max_requests: int


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one check_limit() call.

    degraded is True when the counter store could not be reached and the
    result reflects the fail-open / fail-closed policy instead of a count.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    retry_after_seconds: Optional[int] = None
    degraded: bool = False

    def headers(self) -> dict[str, str]:
        """X-RateLimit-* headers (plus Retry-After when rejected)."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_time),
        }
        if self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


# ─── Endpoint classes and tiers ───────────────────────────────────────────────

_MINUTE_MS = 60 * 1000
_HOUR_MS = 60 * _MINUTE_MS

ENDPOINT_LIMITS: dict[str, RateLimitConfig] = {
    "api": RateLimitConfig(window_ms=15 * _MINUTE_MS, max_requests=1000),
    "auth": RateLimitConfig(window_ms=15 * _MINUTE_MS, max_requests=10),
    "chat": RateLimitConfig(window_ms=_MINUTE_MS, max_requests=60),
    "upload": RateLimitConfig(window_ms=_HOUR_MS, max_requests=10),
    "stream_create": RateLimitConfig(window_ms=_HOUR_MS, max_requests=5),
    "password_reset": RateLimitConfig(window_ms=_HOUR_MS, max_requests=3),
}

TIER_MULTIPLIERS: dict[str, int] = {"basic": 1, "premium": 3, "pro": 5}


def resolve_endpoint_class(path: str, method: str = "GET") -> str:
    """Map a request path onto its endpoint class."""
    if "password-reset" in path:
        return "password_reset"
    if path.startswith("/api/auth"):
        return "auth"
    if path.startswith("/api/chat"):
        return "chat"
    if path.startswith("/api/upload"):
        return "upload"
    if path.startswith("/api/streams") and method.upper() == "POST":
        return "stream_create"
    return "api"


def limit_for(endpoint_class: str, tier: Optional[str] = None) -> RateLimitConfig:
    """Endpoint-class limit scaled by the subscription tier multiplier."""
    base = ENDPOINT_LIMITS.get(endpoint_class, ENDPOINT_LIMITS["api"])
    multiplier = TIER_MULTIPLIERS.get(tier or "basic", 1)
    return replace(base, max_requests=base.max_requests * multiplier)


# ─── RateLimiter ──────────────────────────────────────────────────────────────


class RateLimiter:
    """Counter-store backed fixed-window limiter."""

    def __init__(
        self,
        counter_store: CounterStore,
        clock: Optional[Clock] = None,
        audit: Optional["AuditTrail"] = None,
        fail_closed: bool = False,
    ) -> None:
        self._store = counter_store
        self._clock = clock or SystemClock()
        self._audit = audit
        self._fail_closed = fail_closed
        self._degraded = False

    async def check_limit(self, identifier: str, config: RateLimitConfig) -> RateLimitResult:
        now_ms = epoch_ms(self._clock.now())
        window = now_ms // config.window_ms
        reset_time = (window + 1) * config.window_ms
        key = f"rate_limit:{identifier}:{window}"

        try:
            count = await self._store.increment_with_expiry(
                key, math.ceil(config.window_ms / 1000)
            )
        except Exception as exc:
            return await self._degraded_result(identifier, config, reset_time, now_ms, exc)

        if self._degraded:
            self._degraded = False
            logger.info("rate_limiter_recovered")

        allowed = count <= config.max_requests
        return RateLimitResult(
            allowed=allowed,
            limit=config.max_requests,
            remaining=max(0, config.max_requests - count),
            reset_time=reset_time,
            retry_after_seconds=None if allowed else _retry_after(reset_time, now_ms),
        )

    async def _degraded_result(
        self,
        identifier: str,
        config: RateLimitConfig,
        reset_time: int,
        now_ms: int,
        exc: Exception,
    ) -> RateLimitResult:
        logger.warning(
            "rate_limiter_degraded",
            identifier=identifier,
            error=str(exc),
            error_type=type(exc).__name__,
            fail_closed=self._fail_closed,
        )
        if not self._degraded:
            self._degraded = True
            if self._audit is not None:
                await self._audit.log(
                    "system",
                    "rate_limiter_degraded",
                    "counter_store",
                    outcome="failure",
                    severity="high",
                    category="system",
                    metadata={"error": str(exc), "fail_closed": self._fail_closed},
                )

        if self._fail_closed:
            return RateLimitResult(
                allowed=False,
                limit=config.max_requests,
                remaining=0,
                reset_time=reset_time,
                retry_after_seconds=_retry_after(reset_time, now_ms),
                degraded=True,
            )
        return RateLimitResult(
            allowed=True,
            limit=config.max_requests,
            remaining=config.max_requests,
            reset_time=reset_time,
            degraded=True,
        )


def _retry_after(reset_time: int, now_ms: int) -> int:
    return max(1, math.ceil((reset_time - now_ms) / 1000))


# ─── Flood Guard ──────────────────────────────────────────────────────────────

# Client signatures of known automation. Matched case-insensitively against
# the User-Agent header.
AUTOMATION_SIGNATURES: tuple[str, ...] = (
    r"bot|crawler|spider",
    r"curl|wget|python|java",
    r"scanner|exploit|hack",
)


class FloodGuard:
    """Stricter limiter for clients whose signature matches automation.

    Runs alongside the endpoint-class limiter; a suspicious client has to
    pass both.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        config: RateLimitConfig = RateLimitConfig(window_ms=5 * _MINUTE_MS, max_requests=10),
        signatures: tuple[str, ...] = AUTOMATION_SIGNATURES,
    ) -> None:
        self._limiter = limiter
        self._config = config
        self._patterns = [re2.compile(f"(?i){sig}") for sig in signatures]

    def is_suspicious(self, user_agent: Optional[str]) -> bool:
        if not user_agent:
            return False
        return any(p.search(user_agent) for p in self._patterns)

    async def check(self, fingerprint: str, user_agent: Optional[str]) -> Optional[RateLimitResult]:
        """Return the flood-guard result, or None when the client looks human."""
        if not self.is_suspicious(user_agent):
            return None
        return await self._limiter.check_limit(f"suspicious:{fingerprint}", self._config)


# ─── Client fingerprinting ────────────────────────────────────────────────────


def client_ip(headers: Mapping[str, str], fallback: Optional[str] = None) -> str:
    """Resolve the originating client IP from proxy headers.

    Order: cf-connecting-ip, x-real-ip, first x-forwarded-for entry, then
    the socket peer address.
    """
    for name in ("cf-connecting-ip", "x-real-ip"):
        value = headers.get(name)
        if value:
            return value.strip()
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return fallback or "unknown"
