"""Health endpoint for StreamGuard.

  GET /health — 503 before the lifespan has built the services, 200 after.

Response body (200):
    {
      "status": "ok" | "degraded",
      "document_store": "healthy" | "unreachable",
      "counter_store": "healthy" | "unreachable",
      "document_backend": "memory" | "sqlite",
      "counter_backend": "memory" | "redis",
      "rate_limit_fail_closed": false
    }

"degraded" means a store is unreachable: rate limiting is running on its
fail-open / fail-closed policy and audit writes are being retried.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from streamguard.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    services = getattr(request.app.state, "services", None)
    if services is None or not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={"status": "starting", "message": "StreamGuard is starting up"},
        )

    document_ok = await services.document_store.health_check()
    counter_ok = await services.counter_store.health_check()
    if not (document_ok and counter_ok):
        logger.warning("health_degraded", document_store=document_ok, counter_store=counter_ok)

    return {
        "status": "ok" if document_ok and counter_ok else "degraded",
        "document_store": "healthy" if document_ok else "unreachable",
        "counter_store": "healthy" if counter_ok else "unreachable",
        "document_backend": services.config.storage.document_backend,
        "counter_backend": services.config.storage.counter_backend,
        "rate_limit_fail_closed": services.config.rate_limit.fail_closed,
    }
