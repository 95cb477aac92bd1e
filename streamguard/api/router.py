"""Operator and service endpoints — /api/security/*.

  POST   /moderate                          moderate a chat message, comment or upload
  POST   /fraud/analyze                     score a login / payment / signup
  GET    /fraud/events                      fraud event history            (admin)
  POST   /fraud/profiles/{user_id}/sessions fold a session into a profile  (admin)
  GET    /audit                             query the audit trail          (admin)
  POST   /audit/reports                     generate a compliance report   (admin)
  GET    /audit/reports/{report_id}         fetch a stored report          (admin)
  GET    /audit/export/{user_id}            data-subject export            (admin or self)
  DELETE /audit/users/{user_id}             data-subject erasure           (admin)
  GET    /audit/violations                  open compliance violations     (admin)
  POST   /incidents                         report an incident             (admin)
  GET    /incidents                         list incidents                 (admin)
  GET    /incidents/{incident_id}           fetch an incident              (admin)
  PATCH  /incidents/{incident_id}/status    move an incident along         (admin)
  POST   /incident-rules                    create a response rule         (admin)
  GET    /incident-rules                    list response rules            (admin)
  GET    /keys                              active signing keys            (admin)
  POST   /keys/rotate                       scheduled or emergency rotation (admin)
  POST   /urls/sign                         issue a signed media URL
  POST   /urls/validate                     check a signed media URL

Domain errors (InputValidationError, IncidentNotFoundError, ...) propagate to
the exception handlers registered in main.py.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from streamguard.api.deps import current_identity, get_services, require_admin, require_user
from streamguard.api.limiter import ANALYSIS_RATE_LIMIT, MANAGEMENT_RATE_LIMIT, limiter
from streamguard.audit.models import AuditFilters
from streamguard.fraud.models import EventData, Location, SessionSummary
from streamguard.identity import Identity
from streamguard.incidents.models import Indicator, RuleAction, TriggerConditions
from streamguard.moderation.moderator import ModerationContext
from streamguard.services import SecurityServices
from streamguard.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["security"])


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _client(request: Request) -> tuple[Optional[str], Optional[str]]:
    ip_address = getattr(request.state, "client_ip", None)
    if ip_address is None and request.client:
        ip_address = request.client.host
    return ip_address, request.headers.get("user-agent")


# ─── Request Models ───────────────────────────────────────────────────────────


class ModerateRequest(BaseModel):
    content: str = Field(max_length=100_000)
    content_type: Literal["text", "image", "video", "audio"] = "text"
    stream_id: Optional[str] = None


class LocationModel(BaseModel):
    country: str = Field(min_length=1)
    region: Optional[str] = None
    city: Optional[str] = None

    def to_location(self) -> Location:
        return Location(country=self.country, region=self.region, city=self.city)


class FraudAnalyzeRequest(BaseModel):
    user_id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    device_fingerprint: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    amount: Optional[float] = Field(default=None, ge=0)
    payment_method_ref: Optional[str] = None
    location: Optional[LocationModel] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SessionSummaryRequest(BaseModel):
    started_at: datetime
    device_fingerprint: str
    duration_seconds: float = Field(ge=0)
    location: Optional[LocationModel] = None
    payment_amount: Optional[float] = Field(default=None, ge=0)
    payment_method: Optional[str] = None


class ComplianceReportRequest(BaseModel):
    type: Literal["gdpr", "ccpa", "pci", "sox"]
    start: datetime
    end: datetime


class IndicatorModel(BaseModel):
    type: str
    value: str
    confidence: float = Field(default=1.0, ge=0, le=1)


class IncidentCreateRequest(BaseModel):
    type: str
    severity: Literal["low", "medium", "high", "critical"]
    indicators: list[IndicatorModel] = Field(default_factory=list)
    affected_users: list[str] = Field(default_factory=list)
    affected_systems: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class StatusUpdateRequest(BaseModel):
    status: Literal["investigating", "contained", "resolved", "false_positive"]
    notes: Optional[str] = None


class TriggerConditionsModel(BaseModel):
    event_type: str
    severity: Literal["low", "medium", "high", "critical"]
    threshold: int = Field(default=1, ge=1)
    time_window_minutes: int = Field(default=60, ge=1)


class RuleActionModel(BaseModel):
    action: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    delay_ms: Optional[int] = Field(default=None, ge=0)


class RuleCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    trigger_conditions: TriggerConditionsModel
    automated_actions: list[RuleActionModel] = Field(min_length=1)
    enabled: bool = True
    priority: int = 0


class RotateKeysRequest(BaseModel):
    emergency: bool = False
    reason: Optional[str] = None


class SignUrlRequest(BaseModel):
    resource_ref: str = Field(min_length=1)
    ttl_minutes: float = Field(default=15, gt=0, le=24 * 60)


class ValidateUrlRequest(BaseModel):
    url: str
    key_id: str


# ─── Moderation & Fraud ───────────────────────────────────────────────────────


@router.post("/moderate")
@limiter.limit(ANALYSIS_RATE_LIMIT)
async def moderate(
    body: ModerateRequest,
    request: Request,
    identity: Identity = Depends(require_user),
    services: SecurityServices = Depends(get_services),
) -> dict:
    ip_address, user_agent = _client(request)
    context = ModerationContext(ip_address=ip_address, user_agent=user_agent, stream_id=body.stream_id)
    result = await services.moderator.moderate(
        body.content, body.content_type, identity.user_id, context
    )
    incident = await services.incidents.escalate_moderation(identity.user_id, result, context)
    response = result.to_wire()
    response["incidentId"] = incident.id if incident else None
    return response


@router.post("/fraud/analyze")
@limiter.limit(ANALYSIS_RATE_LIMIT)
async def analyze_fraud(
    body: FraudAnalyzeRequest,
    request: Request,
    identity: Identity = Depends(require_admin),
    services: SecurityServices = Depends(get_services),
) -> dict:
    ip_address, user_agent = _client(request)
    event_data = EventData(
        ip_address=body.ip_address or ip_address or "unknown",
        user_agent=body.user_agent or user_agent or "",
        device_fingerprint=body.device_fingerprint,
        amount=body.amount,
        payment_method_ref=body.payment_method_ref,
        location=body.location.to_location() if body.location else None,
        metadata=body.metadata,
    )
    result = await services.fraud.analyze(body.user_id, body.event_type, event_data)
    incident = await services.incidents.escalate_fraud(body.user_id, result, event_data)
    response = result.to_wire()
    response["incidentId"] = incident.id if incident else None
    return response


@router.get("/fraud/events")
async def fraud_events(
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    identity: Identity = Depends(require_admin),
    services: SecurityServices = Depends(get_services),
) -> dict:
    events = await services.fraud.get_fraud_events(
        user_id=user_id, action=action, since=_utc(since), until=_utc(until), limit=limit
    )
    return {"events": [e.to_doc() for e in events]}


@router.post("/fraud/profiles/{user_id}/sessions")
async def record_session(
    user_id: str,
    body: SessionSummaryRequest,
    identity: Identity = Depends(require_admin),
    services: SecurityServices = Depends(get_services),
) -> dict:
    profile = await services.fraud.update_behavior_profile(
        user_id,
        SessionSummary(
            started_at=_utc(body.started_at),  # type: ignore[arg-type]
            device_fingerprint=body.device_fingerprint,
            duration_seconds=body.duration_seconds,
            location=body.location.to_location() if body.location else None,
            payment_amount=body.payment_amount,
            payment_method=body.payment_method,
        ),
    )
    return {"profile": profile.to_doc()}


# ─── Audit & Compliance ───────────────────────────────────────────────────────


@router.get("/audit")
async def query_audit(
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    resource: Optional[str] = None,
    category: Optional[str] = None,
    severity: Optional[str] = None,
    outcome: Optional[str] = None,
    compliance_flag: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    identity: Identity = Depends(require_admin),
    services: SecurityServices = Depends(get_services),
) -> dict:
    events = await services.audit.query(
        AuditFilters(
            user_id=user_id,
            action=action,
            resource=resource,
            category=category,
            severity=severity,
            outcome=outcome,
            compliance_flag=compliance_flag,
            start=_utc(start),
            end=_utc(end),
            limit=limit,
        )
    )
    return {"events": [e.to_wire() for e in events], "count": len(events)}


@router.post("/audit/reports")
@limiter.limit(MANAGEMENT_RATE_LIMIT)
async def create_report(
    body: ComplianceReportRequest,
    request: Request,
    identity: Identity = Depends(require_admin),
    services: SecurityServices = Depends(get_services),
) -> dict:
    report = await services.audit.generate_compliance_report(
        body.type, _utc(body.start), _utc(body.end), identity.user_id  # type: ignore[arg-type]
    )
    return report.to_wire()


@router.get("/audit/reports/{report_id}")
async def get_report(
    report_id: str,
    identity: Identity = Depends(require_admin),
    services: SecurityServices = Depends(get_services),
) -> dict:
    report = await services.audit.get_report(report_id)
    if report is None:
        raise HTTPException(
            status_code=404, detail={"message": f"Report not found: {report_id}", "code": "not_found"}
        )
    return report.to_wire()


@router.get("/audit/export/{user_id}")
@limiter.limit(MANAGEMENT_RATE_LIMIT)
async def export_user_data(
    user_id: str,
    request: Request,
    identity: Identity = Depends(require_user),
    services: SecurityServices = Depends(get_services),
) -> dict:
    if not identity.is_admin and identity.user_id != user_id:
        raise HTTPException(
            status_code=403,
            detail={"message": "Users may only export their own data", "code": "forbidden"},
        )
    export = await services.audit.export_user_data(user_id)
    return export.to_wire()


@router.delete("/audit/users/{user_id}")
@limiter.limit(MANAGEMENT_RATE_LIMIT)
async def delete_user_data(
    user_id: str,
    request: Request,
    retention_exceptions: list[str] = Query(default_factory=list),
    identity: Identity = Depends(require_admin),
    services: SecurityServices = Depends(get_services),
) -> dict:
    result = await services.audit.delete_user_data(user_id, retention_exceptions)
    logger.info("erasure_request_completed", requested_by=identity.user_id, subject_ref=result.subject_ref)
    return {
        "subjectRef": result.subject_ref,
        "anonymized": result.anonymized,
        "retained": result.retained,
    }


@router.get("/audit/violations")
async def open_violations(
    identity: Identity = Depends(require_admin),
    services: SecurityServices = Depends(get_services),
) -> dict:
    return {"violations": await services.audit.list_open_violations()}


# ─── Incidents ────────────────────────────────────────────────────────────────


@router.post("/incidents", status_code=201)
@limiter.limit(MANAGEMENT_RATE_LIMIT)
async def create_incident(
    body: IncidentCreateRequest,
    request: Request,
    identity: Identity = Depends(require_admin),
    services: SecurityServices = Depends(get_services),
) -> dict:
    incident = await services.incidents.detect(
        body.type,
        body.severity,
        [Indicator(type=i.type, value=i.value, confidence=i.confidence) for i in body.indicators],
        affected_users=body.affected_users,
        affected_systems=body.affected_systems,
        metadata={**body.metadata, "reported_by": identity.user_id},
    )
    return incident.to_wire()


@router.get("/incidents")
async def list_incidents(
    type: Optional[str] = None,
    severity: Optional[str] = None,
    status: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    identity: Identity = Depends(require_admin),
    services: SecurityServices = Depends(get_services),
) -> dict:
    incidents = await services.incidents.list_incidents(
        type=type, severity=severity, status=status, since=_utc(since), until=_utc(until), limit=limit
    )
    return {"incidents": [i.to_wire() for i in incidents]}


@router.get("/incidents/{incident_id}")
async def get_incident(
    incident_id: str,
    identity: Identity = Depends(require_admin),
    services: SecurityServices = Depends(get_services),
) -> dict:
    incident = await services.incidents.get_incident(incident_id)
    return incident.to_wire()


@router.patch("/incidents/{incident_id}/status")
async def update_incident_status(
    incident_id: str,
    body: StatusUpdateRequest,
    identity: Identity = Depends(require_admin),
    services: SecurityServices = Depends(get_services),
) -> dict:
    incident = await services.incidents.update_status(
        incident_id, body.status, notes=body.notes, performed_by=identity.user_id
    )
    return incident.to_wire()


@router.post("/incident-rules", status_code=201)
@limiter.limit(MANAGEMENT_RATE_LIMIT)
async def create_rule(
    body: RuleCreateRequest,
    request: Request,
    identity: Identity = Depends(require_admin),
    services: SecurityServices = Depends(get_services),
) -> dict:
    tc = body.trigger_conditions
    rule = await services.incidents.create_rule(
        body.name,
        TriggerConditions(
            event_type=tc.event_type,
            severity=tc.severity,
            threshold=tc.threshold,
            time_window_minutes=tc.time_window_minutes,
        ),
        [RuleAction(action=a.action, parameters=a.parameters, delay_ms=a.delay_ms) for a in body.automated_actions],
        description=body.description,
        enabled=body.enabled,
        priority=body.priority,
        created_by=identity.user_id,  # type: ignore[arg-type]
    )
    return rule.to_wire()


@router.get("/incident-rules")
async def list_rules(
    identity: Identity = Depends(require_admin),
    services: SecurityServices = Depends(get_services),
) -> dict:
    return {"rules": [r.to_wire() for r in await services.incidents.list_rules()]}


# ─── Keys & Signed URLs ───────────────────────────────────────────────────────


@router.get("/keys")
async def list_keys(
    identity: Identity = Depends(require_admin),
    services: SecurityServices = Depends(get_services),
) -> dict:
    return {"keys": [k.to_public() for k in await services.keys.list_active_keys()]}


@router.post("/keys/rotate")
@limiter.limit(MANAGEMENT_RATE_LIMIT)
async def rotate_keys(
    body: RotateKeysRequest,
    request: Request,
    identity: Identity = Depends(require_admin),
    services: SecurityServices = Depends(get_services),
) -> dict:
    if body.emergency:
        key = await services.keys.emergency_rotate(body.reason or f"manual emergency rotation by {identity.user_id}")
    else:
        key = await services.keys.rotate(reason=body.reason or "manual")
    logger.info("keys_rotated_by_operator", user_id=identity.user_id, emergency=body.emergency, key_id=key.id)
    return {"key": key.to_public(), "emergency": body.emergency}


@router.post("/urls/sign")
@limiter.limit(ANALYSIS_RATE_LIMIT)
async def sign_url(
    body: SignUrlRequest,
    request: Request,
    identity: Identity = Depends(require_user),
    services: SecurityServices = Depends(get_services),
) -> dict:
    signed = await services.keys.sign_url(body.resource_ref, body.ttl_minutes)
    return signed.to_wire()


@router.post("/urls/validate")
@limiter.limit(ANALYSIS_RATE_LIMIT)
async def validate_url(
    body: ValidateUrlRequest,
    request: Request,
    identity: Identity = Depends(current_identity),
    services: SecurityServices = Depends(get_services),
) -> dict:
    return {"valid": await services.keys.validate(body.url, body.key_id)}
