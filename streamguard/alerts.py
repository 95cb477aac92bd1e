"""Security alert dispatch.

Every alert is persisted to `security_alerts` so the operator console can
list it. When `alerts.webhook_url` is configured the alert is also POSTed
there (Slack / PagerDuty bridge) with httpx. A failed webhook delivery is
logged and recorded on the alert document; it never raises.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from streamguard.config import AlertConfig
from streamguard.constants import COLLECTION_SECURITY_ALERTS, SEVERITIES
from streamguard.errors import InputValidationError
from streamguard.stores.protocol import DocumentStore
from streamguard.utils.clock import Clock, SystemClock, isoformat
from streamguard.utils.logger import get_logger
from streamguard.utils.ulid import generate_id

logger = get_logger(__name__)


class AlertDispatcher:
    def __init__(
        self,
        store: DocumentStore,
        config: Optional[AlertConfig] = None,
        clock: Optional[Clock] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._store = store
        self._config = config or AlertConfig()
        self._clock = clock or SystemClock()
        self._client = client
        if self._client is None and self._config.webhook_url:
            self._client = httpx.AsyncClient(timeout=self._config.webhook_timeout_s)

    async def send(
        self,
        alert_type: str,
        severity: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
        channels: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        """Persist and deliver an alert. Returns the stored alert document."""
        if severity not in SEVERITIES:
            raise InputValidationError(f"Unknown severity: {severity}", field="severity")

        alert = {
            "id": generate_id("alert"),
            "type": alert_type,
            "severity": severity,
            "message": message,
            "data": dict(metadata or {}),
            "channels": list(channels or self._config.default_channels),
            "status": "active",
            "delivery": "stored",
            "timestamp": isoformat(self._clock.now()),
        }

        if self._client is not None and self._config.webhook_url:
            try:
                response = await self._client.post(self._config.webhook_url, json=alert)
                response.raise_for_status()
                alert["delivery"] = "delivered"
            except httpx.HTTPError as exc:
                alert["delivery"] = "failed"
                logger.warning(
                    "alert_webhook_failed",
                    alert_id=alert["id"],
                    alert_type=alert_type,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

        await self._store.put(COLLECTION_SECURITY_ALERTS, alert["id"], alert)
        logger.warning(
            "security_alert",
            alert_id=alert["id"],
            alert_type=alert_type,
            severity=severity,
            channels=alert["channels"],
            delivery=alert["delivery"],
        )
        return alert

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
