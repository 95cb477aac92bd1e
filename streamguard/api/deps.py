"""FastAPI dependencies: service container and caller identity."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from streamguard.identity import Identity
from streamguard.services import SecurityServices


def get_services(request: Request) -> SecurityServices:
    """The lifespan-built service container; 503 until startup completes."""
    services = getattr(request.app.state, "services", None)
    if services is None or not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={"message": "StreamGuard is starting up", "code": "not_ready"},
        )
    return services


def current_identity(
    request: Request, services: SecurityServices = Depends(get_services)
) -> Identity:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        identity = services.identity.resolve(request.headers)
    return identity


def require_user(identity: Identity = Depends(current_identity)) -> Identity:
    if not identity.authenticated:
        raise HTTPException(
            status_code=401,
            detail={"message": "Authentication required", "code": "unauthorized"},
        )
    return identity


def require_admin(identity: Identity = Depends(require_user)) -> Identity:
    if not identity.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"message": "Administrator role required", "code": "forbidden"},
        )
    return identity
