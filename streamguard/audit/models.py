"""AuditEvent, AuditFilters and ComplianceReport for the StreamGuard audit trail.

Audit events are append-only. The only in-place mutation ever applied is
anonymization on an erasure request: identity fields are replaced with the
"anonymized" sentinel and the record is kept so aggregate counts stay intact.

Storage form (to_doc) uses snake_case keys and fixed-width ISO timestamps.
Wire form (to_wire) uses the camelCase shape served to operator tooling.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from streamguard.utils.clock import isoformat, parse_datetime

# ─── Type Aliases ─────────────────────────────────────────────────────────────

Severity = Literal["low", "medium", "high", "critical"]
Category = Literal["auth", "data", "system", "security", "payment", "content"]
Outcome = Literal["success", "failure", "partial"]


def partition_key(ts: datetime) -> str:
    """Calendar-month partition key in UTC, e.g. ``2026-10``.

    Naive datetimes are taken as UTC.
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m")


# ─── AuditEvent ───────────────────────────────────────────────────────────────


@dataclass
class AuditEvent:
    """One audited security-relevant action.

    Field reference:
        Required: id, user_id, action, resource, timestamp, severity,
                  category, outcome
        Optional identity: user_email, ip_address, user_agent, session_id
        Erasure bookkeeping: subject_ref, anonymized_at (set only by
                  AuditTrail.delete_user_data)
    """

    id: str
    user_id: str
    action: str
    resource: str
    timestamp: datetime
    severity: Severity
    category: Category
    outcome: Outcome = "success"
    compliance_flags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    resource_id: Optional[str] = None
    user_email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    subject_ref: Optional[str] = None
    """Salted hash of the erased user id. Lets an erased subject's records be
    found again without storing the identifier itself."""
    anonymized_at: Optional[datetime] = None

    @property
    def partition(self) -> str:
        return partition_key(self.timestamp)

    def to_doc(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "resource": self.resource,
            "timestamp": isoformat(self.timestamp),
            "severity": self.severity,
            "category": self.category,
            "outcome": self.outcome,
            "compliance_flags": list(self.compliance_flags),
            "metadata": dict(self.metadata),
            "resource_id": self.resource_id,
            "user_email": self.user_email,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "session_id": self.session_id,
            "subject_ref": self.subject_ref,
            "anonymized_at": isoformat(self.anonymized_at) if self.anonymized_at else None,
        }

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "AuditEvent":
        anonymized_at = doc.get("anonymized_at")
        return cls(
            id=doc["id"],
            user_id=doc["user_id"],
            action=doc["action"],
            resource=doc["resource"],
            timestamp=parse_datetime(doc["timestamp"]),
            severity=doc["severity"],
            category=doc["category"],
            outcome=doc.get("outcome", "success"),
            compliance_flags=list(doc.get("compliance_flags") or []),
            metadata=dict(doc.get("metadata") or {}),
            resource_id=doc.get("resource_id"),
            user_email=doc.get("user_email"),
            ip_address=doc.get("ip_address"),
            user_agent=doc.get("user_agent"),
            session_id=doc.get("session_id"),
            subject_ref=doc.get("subject_ref"),
            anonymized_at=parse_datetime(anonymized_at) if anonymized_at else None,
        )

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "id": self.id,
            "userId": self.user_id,
            "action": self.action,
            "resource": self.resource,
            "timestamp": isoformat(self.timestamp),
            "metadata": self.metadata,
            "severity": self.severity,
            "category": self.category,
            "outcome": self.outcome,
            "complianceFlags": self.compliance_flags,
        }
        optional = {
            "userEmail": self.user_email,
            "resourceId": self.resource_id,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "sessionId": self.session_id,
        }
        wire.update({k: v for k, v in optional.items() if v is not None})
        return wire


# ─── AuditFilters ─────────────────────────────────────────────────────────────


@dataclass
class AuditFilters:
    """Query filters for AuditTrail.query().

    All fields optional. start/end bound the partitions scanned; without
    them every known partition is scanned.
    """

    user_id: Optional[str] = None
    action: Optional[str] = None
    resource: Optional[str] = None
    category: Optional[str] = None
    severity: Optional[str] = None
    outcome: Optional[str] = None
    compliance_flag: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: Optional[int] = None


# ─── Data subject requests ────────────────────────────────────────────────────


@dataclass
class UserDataExport:
    """Full audit history of one user plus a derived activity summary."""

    user_id: str
    exported_at: datetime
    events: list[AuditEvent]
    summary: dict[str, Any]

    def to_wire(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "exportedAt": isoformat(self.exported_at),
            "events": [e.to_wire() for e in self.events],
            "summary": {_camel(k): v for k, v in self.summary.items()},
        }


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class DeletionResult:
    subject_ref: str
    anonymized: int
    retained: int


# ─── Compliance reports ───────────────────────────────────────────────────────


@dataclass
class ComplianceSummary:
    total_events: int
    critical_events: int
    failed_events: int
    user_count: int
    resources_accessed: list[str]

    def to_wire(self) -> dict[str, Any]:
        return {
            "totalEvents": self.total_events,
            "criticalEvents": self.critical_events,
            "failedEvents": self.failed_events,
            "userCount": self.user_count,
            "resourcesAccessed": self.resources_accessed,
        }


@dataclass
class ComplianceReport:
    report_id: str
    type: str
    start_date: datetime
    end_date: datetime
    events: list[AuditEvent]
    summary: ComplianceSummary
    generated_at: datetime
    generated_by: str

    def to_doc(self) -> dict[str, Any]:
        return {
            "report_id": self.report_id,
            "type": self.type,
            "start_date": isoformat(self.start_date),
            "end_date": isoformat(self.end_date),
            "events": [e.to_doc() for e in self.events],
            "summary": {
                "total_events": self.summary.total_events,
                "critical_events": self.summary.critical_events,
                "failed_events": self.summary.failed_events,
                "user_count": self.summary.user_count,
                "resources_accessed": self.summary.resources_accessed,
            },
            "generated_at": isoformat(self.generated_at),
            "generated_by": self.generated_by,
        }

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "ComplianceReport":
        summary = doc["summary"]
        return cls(
            report_id=doc["report_id"],
            type=doc["type"],
            start_date=parse_datetime(doc["start_date"]),
            end_date=parse_datetime(doc["end_date"]),
            events=[AuditEvent.from_doc(e) for e in doc["events"]],
            summary=ComplianceSummary(**summary),
            generated_at=parse_datetime(doc["generated_at"]),
            generated_by=doc["generated_by"],
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            "reportId": self.report_id,
            "type": self.type,
            "startDate": isoformat(self.start_date),
            "endDate": isoformat(self.end_date),
            "events": [e.to_wire() for e in self.events],
            "summary": self.summary.to_wire(),
            "generatedAt": isoformat(self.generated_at),
            "generatedBy": self.generated_by,
        }
