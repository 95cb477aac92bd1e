"""StreamGuard FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan — @asynccontextmanager startup/shutdown sequence
  - /health router — delegated to streamguard/health.py
  - /        route  — service discovery root
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. app.state.config        (loaded in create_app, CORS needs it)
  2. build_services()        → app.state.services
  3. app.state.ready = True

Shutdown (reverse):
  app.state.ready = False → services.close()

Middleware order (outermost first):
  CORSMiddleware → SlowAPIMiddleware → SecurityHeadersMiddleware → RequestGuardMiddleware

Domain exceptions map to HTTP as follows:
  InputValidationError   422
  IncidentNotFoundError  404
  InvalidTransitionError 409
  other StreamGuardError 500
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from streamguard.api.limiter import limiter
from streamguard.api.router import router as security_router
from streamguard.config import Config, load_config
from streamguard.errors import (
    IncidentNotFoundError,
    InputValidationError,
    InvalidTransitionError,
    StreamGuardError,
)
from streamguard.headers import SecurityHeadersMiddleware
from streamguard.health import router as health_router
from streamguard.ratelimit.middleware import RequestGuardMiddleware
from streamguard.services import build_services
from streamguard.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
# Configure logging at module import time (before any other imports that may log).
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


# ─── Routers ──────────────────────────────────────────────────────────────────

root_router = APIRouter(tags=["root"])


@root_router.get("/")
async def root() -> dict[str, str]:
    """Root endpoint — service identity / discovery."""
    return {
        "service": "StreamGuard",
        "tagline": "Security and trust layer for live and on-demand streaming",
        "health": "/health",
        "api": "/api/security",
    }


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the service container, serve, then close stores and clients."""
    logger.info("StreamGuard starting up...")

    config: Config = app.state.config
    services = await build_services(config)
    app.state.services = services

    app.state.ready = True
    logger.info(
        "StreamGuard ready",
        document_backend=config.storage.document_backend,
        counter_backend=config.storage.counter_backend,
        rate_limiting=config.rate_limit.enabled,
    )

    yield

    logger.info("StreamGuard shutting down...")
    app.state.ready = False
    try:
        await services.close()
    except Exception as exc:
        logger.warning("Service shutdown error (non-fatal)", error=str(exc))
    logger.info("StreamGuard shutdown complete")


# ─── Exception Handlers ───────────────────────────────────────────────────────


def _error(status_code: int, exc: StreamGuardError, **extra: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": exc.message, "code": exc.code, **extra}},
    )


async def input_validation_handler(request: Request, exc: InputValidationError) -> JSONResponse:
    logger.info("invalid_input", field=exc.field, error=exc.message, path=str(request.url.path))
    if exc.field:
        return _error(422, exc, field=exc.field)
    return _error(422, exc)


async def incident_not_found_handler(request: Request, exc: IncidentNotFoundError) -> JSONResponse:
    return _error(404, exc)


async def invalid_transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
    logger.info("invalid_incident_transition", current=exc.current, requested=exc.requested)
    return _error(409, exc)


async def streamguard_error_handler(request: Request, exc: StreamGuardError) -> JSONResponse:
    logger.error(
        "StreamGuard error",
        code=exc.code,
        error=exc.message,
        path=str(request.url.path),
    )
    return _error(500, exc)


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Create and configure the StreamGuard FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app(Config.defaults())

    The module-level `app` is created at import time for uvicorn:
        uvicorn streamguard.main:app --host 127.0.0.1 --port 8080
    """
    config = config or load_config()
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="StreamGuard",
        description="Rate limiting, moderation, fraud scoring, key rotation, audit and incident response",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )

    # /health returns 503 on any request that arrives before startup completes.
    application.state.ready = False
    application.state.config = config

    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Last added runs first in Starlette: security headers wrap the guard so
    # its 403/429 responses carry them too, and CORS wraps everything so
    # preflights are answered before any limit is counted.
    application.add_middleware(RequestGuardMiddleware)
    application.add_middleware(SecurityHeadersMiddleware, config=config.security_headers)
    application.add_middleware(SlowAPIMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    application.include_router(root_router)
    application.include_router(health_router)
    application.include_router(security_router, prefix="/api/security")

    application.add_exception_handler(InputValidationError, input_validation_handler)  # type: ignore[arg-type]
    application.add_exception_handler(IncidentNotFoundError, incident_not_found_handler)  # type: ignore[arg-type]
    application.add_exception_handler(InvalidTransitionError, invalid_transition_handler)  # type: ignore[arg-type]
    application.add_exception_handler(StreamGuardError, streamguard_error_handler)  # type: ignore[arg-type]

    @application.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers
        )

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500, content={"error": "Internal server error"}
        )

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()
