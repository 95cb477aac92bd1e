"""Unit tests for streamguard/alerts.py."""

from __future__ import annotations

import json

import httpx
import pytest

from streamguard.alerts import AlertDispatcher
from streamguard.config import AlertConfig
from streamguard.constants import COLLECTION_SECURITY_ALERTS
from streamguard.errors import InputValidationError
from streamguard.stores.memory import MemoryDocumentStore
from streamguard.utils.clock import ManualClock

WEBHOOK = "http://hooks.test/security"


def _dispatcher(store: MemoryDocumentStore, clock: ManualClock, handler) -> AlertDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AlertDispatcher(store, AlertConfig(webhook_url=WEBHOOK), clock=clock, client=client)


class TestAlertDispatcher:
    async def test_without_webhook_alert_is_stored(self, document_store: MemoryDocumentStore, clock: ManualClock) -> None:
        dispatcher = AlertDispatcher(document_store, clock=clock)
        alert = await dispatcher.send("incident_detected", "high", "Data breach detected", {"incident_id": "i1"})

        assert alert["delivery"] == "stored"
        assert alert["channels"] == ["email", "slack"]
        stored = await document_store.get(COLLECTION_SECURITY_ALERTS, alert["id"])
        assert stored == alert

    async def test_webhook_delivery(self, document_store: MemoryDocumentStore, clock: ManualClock) -> None:
        received: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(204)

        dispatcher = _dispatcher(document_store, clock, handler)
        alert = await dispatcher.send("incident_detected", "critical", "System compromise", channels=["pagerduty"])

        assert alert["delivery"] == "delivered"
        assert received[0]["type"] == "incident_detected"
        assert received[0]["channels"] == ["pagerduty"]
        await dispatcher.aclose()

    async def test_webhook_failure_is_recorded_not_raised(
        self, document_store: MemoryDocumentStore, clock: ManualClock
    ) -> None:
        dispatcher = _dispatcher(document_store, clock, lambda request: httpx.Response(502))
        alert = await dispatcher.send("incident_detected", "high", "Data breach detected")

        assert alert["delivery"] == "failed"
        stored = await document_store.get(COLLECTION_SECURITY_ALERTS, alert["id"])
        assert stored["delivery"] == "failed"
        await dispatcher.aclose()

    async def test_unknown_severity_rejected(self, document_store: MemoryDocumentStore) -> None:
        with pytest.raises(InputValidationError):
            await AlertDispatcher(document_store).send("x", "urgent", "msg")
