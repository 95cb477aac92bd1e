"""Security response headers applied to every response.

  Content-Security-Policy    joined from security_headers.content_security_policy
  X-Content-Type-Options     nosniff
  X-Frame-Options            DENY
  Referrer-Policy            strict-origin-when-cross-origin
  Permissions-Policy         camera/microphone/geolocation disabled
  Strict-Transport-Security  only when the request arrived over HTTPS
                             (directly or via X-Forwarded-Proto)
"""

from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from streamguard.config import SecurityHeadersConfig


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, config: SecurityHeadersConfig | None = None) -> None:
        super().__init__(app)
        config = config or SecurityHeadersConfig()
        self._static_headers = {
            "Content-Security-Policy": "; ".join(config.content_security_policy),
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
        }
        self._hsts = f"max-age={config.hsts_max_age}; includeSubDomains; preload"

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        response = await call_next(request)
        response.headers.update(self._static_headers)
        forwarded_proto = request.headers.get("x-forwarded-proto", "").split(",")[0].strip()
        if request.url.scheme == "https" or forwarded_proto == "https":
            response.headers["Strict-Transport-Security"] = self._hsts
        return response
