"""Fraud engine data types.

FraudSignal and FraudAnalysisResult are computed per analyze() call.
FraudEvent is persisted once per analysis (append-only) and is what later
velocity queries count. UserBehaviorProfile is read during analysis and
rewritten by update_behavior_profile() after sessions end.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional

from streamguard.utils.clock import isoformat, parse_datetime

SignalType = Literal["velocity", "geolocation", "device", "behavioral", "payment", "account"]
Severity = Literal["low", "medium", "high", "critical"]
RecommendedAction = Literal["allow", "review", "challenge", "block"]
EventAction = Literal["allowed", "challenged", "blocked", "reviewed"]

# recommended action → action recorded on the FraudEvent
EVENT_ACTIONS: dict[str, str] = {
    "allow": "allowed",
    "challenge": "challenged",
    "block": "blocked",
    "review": "reviewed",
}


@dataclass(frozen=True)
class FraudSignal:
    type: SignalType
    severity: Severity
    confidence: float
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_doc(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity,
            "confidence": self.confidence,
            "description": self.description,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "FraudSignal":
        return cls(
            type=doc["type"],
            severity=doc["severity"],
            confidence=doc["confidence"],
            description=doc["description"],
            metadata=dict(doc.get("metadata") or {}),
        )


@dataclass(frozen=True)
class Location:
    country: str
    region: Optional[str] = None
    city: Optional[str] = None

    def to_doc(self) -> dict[str, Any]:
        return {"country": self.country, "region": self.region, "city": self.city}


@dataclass(frozen=True)
class EventData:
    """Input to FraudEngine.analyze()."""

    ip_address: str
    user_agent: str
    device_fingerprint: str
    amount: Optional[float] = None
    payment_method_ref: Optional[str] = None
    location: Optional[Location] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class FraudAnalysisResult:
    risk_score: float
    risk_level: Severity
    signals: list[FraudSignal]
    recommended_action: RecommendedAction
    reasoning: list[str]
    event_id: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "riskScore": self.risk_score,
            "riskLevel": self.risk_level,
            "signals": [s.to_doc() for s in self.signals],
            "recommendedAction": self.recommended_action,
            "reasoning": self.reasoning,
            "eventId": self.event_id,
        }


@dataclass
class FraudEvent:
    id: str
    user_id: str
    event_type: str
    timestamp: datetime
    ip_address: str
    user_agent: str
    device_fingerprint: str
    risk_score: float
    signals: list[FraudSignal]
    action: EventAction
    location: Optional[Location] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_doc(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "event_type": self.event_type,
            "timestamp": isoformat(self.timestamp),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "device_fingerprint": self.device_fingerprint,
            "location": self.location.to_doc() if self.location else None,
            "risk_score": self.risk_score,
            "signals": [s.to_doc() for s in self.signals],
            "action": self.action,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "FraudEvent":
        location = doc.get("location")
        return cls(
            id=doc["id"],
            user_id=doc["user_id"],
            event_type=doc["event_type"],
            timestamp=parse_datetime(doc["timestamp"]),
            ip_address=doc["ip_address"],
            user_agent=doc["user_agent"],
            device_fingerprint=doc["device_fingerprint"],
            location=Location(**location) if location else None,
            risk_score=doc["risk_score"],
            signals=[FraudSignal.from_doc(s) for s in doc.get("signals", [])],
            action=doc["action"],
            metadata=dict(doc.get("metadata") or {}),
        )


@dataclass
class PaymentPatterns:
    average_amount: float = 0.0
    frequency: int = 0
    preferred_methods: list[str] = field(default_factory=list)


@dataclass
class UserBehaviorProfile:
    user_id: str
    typical_login_times: list[int] = field(default_factory=list)
    common_locations: list[str] = field(default_factory=list)
    typical_devices: list[str] = field(default_factory=list)
    average_session_duration: float = 0.0
    session_count: int = 0
    payment_patterns: PaymentPatterns = field(default_factory=PaymentPatterns)
    last_updated: Optional[datetime] = None

    def to_doc(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "typical_login_times": list(self.typical_login_times),
            "common_locations": list(self.common_locations),
            "typical_devices": list(self.typical_devices),
            "average_session_duration": self.average_session_duration,
            "session_count": self.session_count,
            "payment_patterns": {
                "average_amount": self.payment_patterns.average_amount,
                "frequency": self.payment_patterns.frequency,
                "preferred_methods": list(self.payment_patterns.preferred_methods),
            },
            "last_updated": isoformat(self.last_updated) if self.last_updated else None,
        }

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "UserBehaviorProfile":
        patterns = doc.get("payment_patterns") or {}
        last_updated = doc.get("last_updated")
        return cls(
            user_id=doc["user_id"],
            typical_login_times=list(doc.get("typical_login_times") or []),
            common_locations=list(doc.get("common_locations") or []),
            typical_devices=list(doc.get("typical_devices") or []),
            average_session_duration=doc.get("average_session_duration", 0.0),
            session_count=doc.get("session_count", 0),
            payment_patterns=PaymentPatterns(
                average_amount=patterns.get("average_amount", 0.0),
                frequency=patterns.get("frequency", 0),
                preferred_methods=list(patterns.get("preferred_methods") or []),
            ),
            last_updated=parse_datetime(last_updated) if last_updated else None,
        )


@dataclass(frozen=True)
class SessionSummary:
    """A finished session, folded into the user's behavior profile."""

    started_at: datetime
    device_fingerprint: str
    duration_seconds: float
    location: Optional[Location] = None
    payment_amount: Optional[float] = None
    payment_method: Optional[str] = None
