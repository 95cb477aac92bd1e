"""Rate limiting, flood guard, blocklists, body inspection and the request guard middleware."""

from streamguard.ratelimit.blocklist import Blocklist
from streamguard.ratelimit.inspection import MaliciousContent, find_malicious_content
from streamguard.ratelimit.limiter import (
    FloodGuard,
    RateLimitConfig,
    RateLimiter,
    RateLimitResult,
    limit_for,
    resolve_endpoint_class,
)

__all__ = [
    "Blocklist",
    "FloodGuard",
    "MaliciousContent",
    "RateLimitConfig",
    "RateLimitResult",
    "RateLimiter",
    "find_malicious_content",
    "limit_for",
    "resolve_endpoint_class",
]
