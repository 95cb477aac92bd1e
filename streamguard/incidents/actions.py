"""Automated response actions.

ActionRegistry maps an action name (as stored on IncidentResponseRule) to
an async handler:

    async def handler(incident, parameters) -> dict

The returned dict is recorded as the action's details. A handler signals
failure by raising; the orchestrator records it and moves on.

build_default_registry() wires the built-in actions to the services they
drive:

    block_user           Blocklist.block_user for each affected user
    rotate_keys          KeyRotationManager.emergency_rotate
    block_ips            Blocklist.block_ip for parameters["ip_addresses"]
                         (default: the incident's ip_address indicators)
    invalidate_sessions  Blocklist.revoke_sessions for each affected user
    enhance_monitoring   Blocklist.enable_monitoring for users and IPs
    send_alerts          AlertDispatcher.send to parameters["channels"]
    quarantine_files     ObjectStorage.quarantine for parameters["files"]
                         (default: the incident's file indicators)
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Optional

from streamguard.errors import ActionFailedError
from streamguard.incidents.models import SecurityIncident

if TYPE_CHECKING:
    from streamguard.alerts import AlertDispatcher
    from streamguard.audit.trail import AuditTrail
    from streamguard.keys.rotation import KeyRotationManager
    from streamguard.keys.storage import ObjectStorage
    from streamguard.ratelimit.blocklist import Blocklist

ActionHandler = Callable[[SecurityIncident, dict[str, Any]], Awaitable[dict[str, Any]]]

DEFAULT_MONITORING_MINUTES = 24 * 60


class ActionRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, ActionHandler] = {}

    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name] = handler

    def get(self, name: str) -> Optional[ActionHandler]:
        return self._handlers.get(name)

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers


def _indicator_values(incident: SecurityIncident, indicator_type: str) -> list[str]:
    return [i.value for i in incident.indicators if i.type == indicator_type]


def build_default_registry(
    blocklist: "Blocklist",
    keys: "KeyRotationManager",
    alerts: "AlertDispatcher",
    object_storage: "ObjectStorage",
    audit: "AuditTrail",
) -> ActionRegistry:
    registry = ActionRegistry()

    async def block_user(incident: SecurityIncident, params: dict[str, Any]) -> dict[str, Any]:
        for user_id in incident.affected_users:
            await blocklist.block_user(
                user_id,
                reason="security_incident",
                duration_minutes=params.get("duration_minutes"),
                source=incident.id,
            )
            await audit.log(
                "system",
                "automated_user_block",
                "user",
                resource_id=user_id,
                severity="high",
                category="security",
                user_agent="incident-response-system",
                metadata={"incident_id": incident.id, "reason": "security_incident"},
            )
        return {"blocked_users": list(incident.affected_users)}

    async def rotate_keys(incident: SecurityIncident, params: dict[str, Any]) -> dict[str, Any]:
        reason = params.get("reason") or f"incident {incident.id} ({incident.type})"
        key = await keys.emergency_rotate(reason)
        return {"new_key_id": key.id}

    async def block_ips(incident: SecurityIncident, params: dict[str, Any]) -> dict[str, Any]:
        addresses = params.get("ip_addresses") or _indicator_values(incident, "ip_address")
        for ip_address in addresses:
            await blocklist.block_ip(
                ip_address,
                reason="security_incident",
                duration_minutes=params.get("duration_minutes"),
                source=incident.id,
            )
            await audit.track_security_event(
                "system",
                "ip_blocked",
                "medium",
                outcome="success",
                user_agent="incident-response-system",
                metadata={"blocked_ip": ip_address, "incident_id": incident.id},
            )
        return {"blocked_ips": list(addresses)}

    async def invalidate_sessions(incident: SecurityIncident, params: dict[str, Any]) -> dict[str, Any]:
        for user_id in incident.affected_users:
            await blocklist.revoke_sessions(user_id, reason="security_incident", source=incident.id)
            await audit.log(
                "system",
                "automated_session_invalidation",
                "user_session",
                resource_id=user_id,
                severity="medium",
                category="security",
                user_agent="incident-response-system",
                metadata={"incident_id": incident.id},
            )
        return {"invalidated_users": list(incident.affected_users)}

    async def enhance_monitoring(incident: SecurityIncident, params: dict[str, Any]) -> dict[str, Any]:
        minutes = float(params.get("duration_minutes", DEFAULT_MONITORING_MINUTES))
        subjects = list(incident.affected_users) + _indicator_values(incident, "ip_address")
        for subject in subjects:
            await blocklist.enable_monitoring(
                subject, minutes, reason="security_incident", source=incident.id
            )
        await audit.track_security_event(
            "system",
            "enhanced_monitoring_enabled",
            "low",
            outcome="success",
            user_agent="incident-response-system",
            metadata={"incident_id": incident.id, "duration_minutes": minutes, "subjects": subjects},
        )
        return {"monitored": subjects, "duration_minutes": minutes}

    async def send_alerts(incident: SecurityIncident, params: dict[str, Any]) -> dict[str, Any]:
        alert = await alerts.send(
            "security_incident",
            incident.severity,
            f"Security incident {incident.id}: {incident.type} ({incident.severity})",
            {
                "incident_id": incident.id,
                "incident_type": incident.type,
                "affected_users": len(incident.affected_users),
                "affected_systems": incident.affected_systems,
            },
            channels=params.get("channels"),
        )
        if alert["delivery"] == "failed":
            raise ActionFailedError(f"Alert {alert['id']} was stored but webhook delivery failed")
        return {"alert_id": alert["id"], "channels": alert["channels"]}

    async def quarantine_files(incident: SecurityIncident, params: dict[str, Any]) -> dict[str, Any]:
        files = params.get("files") or _indicator_values(incident, "file")
        for resource_ref in files:
            await object_storage.quarantine(resource_ref, reason="security_incident", source=incident.id)
        return {"quarantined": list(files)}

    registry.register("block_user", block_user)
    registry.register("rotate_keys", rotate_keys)
    registry.register("block_ips", block_ips)
    registry.register("invalidate_sessions", invalidate_sessions)
    registry.register("enhance_monitoring", enhance_monitoring)
    registry.register("send_alerts", send_alerts)
    registry.register("quarantine_files", quarantine_files)
    return registry
