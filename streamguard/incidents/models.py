"""Incident and response-rule records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from streamguard.utils.clock import isoformat, parse_datetime


def _ts(value: Optional[datetime]) -> Optional[str]:
    return isoformat(value) if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return parse_datetime(value) if value else None


@dataclass(frozen=True)
class Indicator:
    """One piece of evidence, e.g. ("ip_address", "203.0.113.9", 0.9)."""

    type: str
    value: str
    confidence: float = 1.0

    def to_doc(self) -> dict[str, Any]:
        return {"type": self.type, "value": self.value, "confidence": self.confidence}


@dataclass(frozen=True)
class ActionRecord:
    """Outcome of one automated action run against an incident."""

    action: str
    timestamp: datetime
    success: bool
    rule_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_doc(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "timestamp": isoformat(self.timestamp),
            "success": self.success,
            "rule_id": self.rule_id,
            "details": dict(self.details),
        }

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "ActionRecord":
        return cls(
            action=doc["action"],
            timestamp=parse_datetime(doc["timestamp"]),
            success=bool(doc["success"]),
            rule_id=doc.get("rule_id"),
            details=dict(doc.get("details") or {}),
        )


@dataclass(frozen=True)
class ManualAction:
    action: str
    performed_by: str
    timestamp: datetime
    notes: Optional[str] = None

    def to_doc(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "performed_by": self.performed_by,
            "timestamp": isoformat(self.timestamp),
            "notes": self.notes,
        }

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "ManualAction":
        return cls(
            action=doc["action"],
            performed_by=doc["performed_by"],
            timestamp=parse_datetime(doc["timestamp"]),
            notes=doc.get("notes"),
        )


@dataclass
class SecurityIncident:
    id: str
    type: str
    severity: str
    status: str
    detected_at: datetime
    affected_users: list[str] = field(default_factory=list)
    affected_systems: list[str] = field(default_factory=list)
    indicators: list[Indicator] = field(default_factory=list)
    automated_actions: list[ActionRecord] = field(default_factory=list)
    manual_actions: list[ManualAction] = field(default_factory=list)
    containment_measures: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    resolved_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    def to_doc(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "status": self.status,
            "detected_at": isoformat(self.detected_at),
            "resolved_at": _ts(self.resolved_at),
            "last_updated": _ts(self.last_updated),
            "affected_users": list(self.affected_users),
            "affected_systems": list(self.affected_systems),
            "indicators": [i.to_doc() for i in self.indicators],
            "automated_actions": [a.to_doc() for a in self.automated_actions],
            "manual_actions": [m.to_doc() for m in self.manual_actions],
            "containment_measures": list(self.containment_measures),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "SecurityIncident":
        return cls(
            id=doc["id"],
            type=doc["type"],
            severity=doc["severity"],
            status=doc["status"],
            detected_at=parse_datetime(doc["detected_at"]),
            resolved_at=_parse(doc.get("resolved_at")),
            last_updated=_parse(doc.get("last_updated")),
            affected_users=list(doc.get("affected_users") or []),
            affected_systems=list(doc.get("affected_systems") or []),
            indicators=[Indicator(**i) for i in doc.get("indicators") or []],
            automated_actions=[ActionRecord.from_doc(a) for a in doc.get("automated_actions") or []],
            manual_actions=[ManualAction.from_doc(m) for m in doc.get("manual_actions") or []],
            containment_measures=list(doc.get("containment_measures") or []),
            metadata=dict(doc.get("metadata") or {}),
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "status": self.status,
            "detectedAt": isoformat(self.detected_at),
            "resolvedAt": _ts(self.resolved_at),
            "affectedUsers": self.affected_users,
            "affectedSystems": self.affected_systems,
            "indicators": [i.to_doc() for i in self.indicators],
            "automatedActions": [
                {
                    "action": a.action,
                    "timestamp": isoformat(a.timestamp),
                    "success": a.success,
                    "ruleId": a.rule_id,
                    "details": a.details,
                }
                for a in self.automated_actions
            ],
            "manualActions": [
                {
                    "action": m.action,
                    "performedBy": m.performed_by,
                    "timestamp": isoformat(m.timestamp),
                    "notes": m.notes,
                }
                for m in self.manual_actions
            ],
            "containmentMeasures": self.containment_measures,
            "metadata": self.metadata,
        }


# ─── Response rules ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RuleAction:
    action: str
    parameters: dict[str, Any] = field(default_factory=dict)
    delay_ms: Optional[int] = None

    def to_doc(self) -> dict[str, Any]:
        return {"action": self.action, "parameters": dict(self.parameters), "delay_ms": self.delay_ms}


@dataclass(frozen=True)
class TriggerConditions:
    """Which incidents a rule applies to.

    threshold and time_window_minutes are stored with the rule for operators
    but matching uses only event_type and severity.
    """

    event_type: str
    severity: str
    threshold: int = 1
    time_window_minutes: int = 60


@dataclass
class IncidentResponseRule:
    id: str
    name: str
    trigger_conditions: TriggerConditions
    automated_actions: list[RuleAction]
    description: str = ""
    enabled: bool = True
    priority: int = 0

    def to_doc(self) -> dict[str, Any]:
        tc = self.trigger_conditions
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "trigger_conditions": {
                "event_type": tc.event_type,
                "severity": tc.severity,
                "threshold": tc.threshold,
                "time_window_minutes": tc.time_window_minutes,
            },
            "automated_actions": [a.to_doc() for a in self.automated_actions],
            "enabled": self.enabled,
            "priority": self.priority,
        }

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "IncidentResponseRule":
        return cls(
            id=doc["id"],
            name=doc["name"],
            description=doc.get("description", ""),
            trigger_conditions=TriggerConditions(**doc["trigger_conditions"]),
            automated_actions=[RuleAction(**a) for a in doc.get("automated_actions") or []],
            enabled=bool(doc.get("enabled", True)),
            priority=int(doc.get("priority", 0)),
        )

    def to_wire(self) -> dict[str, Any]:
        tc = self.trigger_conditions
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "triggerConditions": {
                "eventType": tc.event_type,
                "severity": tc.severity,
                "threshold": tc.threshold,
                "timeWindowMinutes": tc.time_window_minutes,
            },
            "automatedActions": [
                {"action": a.action, "parameters": a.parameters, "delayMs": a.delay_ms}
                for a in self.automated_actions
            ],
            "enabled": self.enabled,
            "priority": self.priority,
        }
