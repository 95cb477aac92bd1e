"""Request guard middleware — blocklists, flood guard, rate limits and body inspection.

Order of checks for every request outside SKIP_PATHS:

  1. Blocked IP                       → 403 forbidden
  2. Blocked user                     → 403 forbidden
  3. Session issued before revocation → 401 session_revoked
  4. Flood guard (automation UAs)     → 429 rate_limit_exceeded
  5. Endpoint-class limit × tier      → 429 rate_limit_exceeded
  6. Script/SQL injection in a JSON   → 400 malicious_content
     POST/PUT/PATCH body (see inspection.py; exempt_paths skip it)

Allowed responses carry the X-RateLimit-* headers of step 5. Requests from
users or IPs under enhanced monitoring are recorded in the audit trail after
the response is produced.

Services come from request.app.state.services; before the lifespan has
built them, requests pass through unchecked.
"""

from __future__ import annotations

import hashlib
import json
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from streamguard.ratelimit.inspection import find_malicious_content, sanitized_excerpt
from streamguard.ratelimit.limiter import (
    RateLimitResult,
    client_ip,
    limit_for,
    resolve_endpoint_class,
)
from streamguard.utils.logger import bind_request_context, clear_request_context, get_logger
from streamguard.utils.ulid import generate_ulid

logger = get_logger(__name__)

SKIP_PATHS: frozenset[str] = frozenset({"/health"})

_FORBIDDEN_BODY: dict = {"error": {"message": "Access denied", "code": "forbidden"}}

_SESSION_REVOKED_BODY: dict = {
    "error": {"message": "Session has been revoked. Please sign in again.", "code": "session_revoked"}
}

_MALICIOUS_CONTENT_BODY: dict = {"error": {"message": "Invalid input", "code": "malicious_content"}}

_BODY_METHODS: frozenset[str] = frozenset({"POST", "PUT", "PATCH"})


def _too_many_requests(result: RateLimitResult) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "error": {
                "message": "Too many requests. Please try again later.",
                "code": "rate_limit_exceeded",
                "retry_after": result.retry_after_seconds,
            }
        },
        headers=result.headers(),
    )


def client_fingerprint(ip_address: str, user_agent: str) -> str:
    digest = hashlib.sha256(user_agent.encode()).hexdigest()[:16]
    return f"{ip_address}:{digest}"


class RequestGuardMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        request.state.request_id = request.headers.get("x-request-id") or generate_ulid()
        bind_request_context(request.state.request_id)
        try:
            return await self._guard(request, call_next)
        finally:
            clear_request_context()

    async def _guard(self, request: Request, call_next) -> Response:
        services = getattr(request.app.state, "services", None)
        path = request.url.path
        if services is None or path in SKIP_PATHS:
            return await call_next(request)

        ip_address = client_ip(request.headers, request.client.host if request.client else None)
        user_agent = request.headers.get("user-agent", "")
        identity = services.identity.resolve(request.headers)
        request.state.identity = identity
        request.state.client_ip = ip_address
        bind_request_context(request.state.request_id, client_ip=ip_address, user_id=identity.user_id)

        if await services.blocklist.is_ip_blocked(ip_address):
            logger.warning("request_blocked", reason="ip_blocked", ip_address=ip_address, path=path)
            return JSONResponse(status_code=403, content=_FORBIDDEN_BODY)

        if identity.authenticated:
            if await services.blocklist.is_user_blocked(identity.user_id):
                logger.warning("request_blocked", reason="user_blocked", user_id=identity.user_id, path=path)
                return JSONResponse(status_code=403, content=_FORBIDDEN_BODY)
            if await services.blocklist.is_session_revoked(identity.user_id, identity.session_issued_at):
                logger.info("session_rejected", user_id=identity.user_id, session_id=identity.session_id)
                return JSONResponse(status_code=401, content=_SESSION_REVOKED_BODY)

        limit_result = None
        if services.config.rate_limit.enabled:
            flood = await services.flood_guard.check(
                client_fingerprint(ip_address, user_agent), user_agent
            )
            if flood is not None and not flood.allowed:
                await self._audit_rejection(services, identity.user_id, ip_address, user_agent, path, "flood_guard", "medium")
                return _too_many_requests(flood)

            endpoint_class = resolve_endpoint_class(path, request.method)
            identifier = identity.user_id if identity.authenticated else ip_address
            limit_result = await services.limiter.check_limit(
                f"{endpoint_class}:{identifier}",
                limit_for(endpoint_class, identity.subscription_tier),
            )
            if not limit_result.allowed:
                await self._audit_rejection(services, identity.user_id, ip_address, user_agent, path, endpoint_class, "low")
                return _too_many_requests(limit_result)

        if services.config.input_validation.enabled and request.method in _BODY_METHODS:
            rejection = await self._inspect_body(request, services, identity, ip_address, user_agent, path)
            if rejection is not None:
                return rejection

        response = await call_next(request)
        if limit_result is not None:
            response.headers.update(limit_result.headers())

        if await services.blocklist.is_monitored(identity.user_id, ip_address):
            await services.audit.log(
                identity.user_id or "anonymous",
                "monitored_request",
                path,
                severity="low",
                category="security",
                outcome="success" if response.status_code < 400 else "failure",
                ip_address=ip_address,
                user_agent=user_agent,
                session_id=identity.session_id,
                metadata={"method": request.method, "status_code": response.status_code},
            )
        return response

    @staticmethod
    async def _audit_rejection(
        services, user_id, ip_address: str, user_agent: str, path: str, limiter: str, severity: str
    ) -> None:
        logger.warning("rate_limit_exceeded", limiter=limiter, ip_address=ip_address, user_id=user_id, path=path)
        await services.audit.track_security_event(
            user_id or "anonymous",
            "rate_limit_exceeded",
            severity,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"path": path, "limiter": limiter},
        )

    @staticmethod
    async def _inspect_body(
        request: Request, services, identity, ip_address: str, user_agent: str, path: str
    ) -> Optional[Response]:
        if path in services.config.input_validation.exempt_paths:
            return None
        if "application/json" not in request.headers.get("content-type", ""):
            return None
        raw = await request.body()
        if not raw:
            return None
        try:
            body = json.loads(raw)
        except ValueError:
            # Left to the endpoint's own validation (422).
            return None

        finding = find_malicious_content(body)
        if finding is None:
            return None

        logger.warning(
            "malicious_content",
            kind=finding.kind,
            pattern=finding.label,
            field_path=finding.path,
            ip_address=ip_address,
            user_id=identity.user_id,
            path=path,
        )
        await services.audit.track_security_event(
            identity.user_id or "anonymous",
            "malicious_content",
            "high",
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={
                "path": path,
                "method": request.method,
                "reason": finding.reason,
                "pattern": finding.label,
                "field_path": finding.path,
                "content": sanitized_excerpt(body),
            },
        )
        return JSONResponse(status_code=400, content=_MALICIOUS_CONTENT_BODY)
