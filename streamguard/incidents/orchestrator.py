"""IncidentOrchestrator — incident lifecycle and automated response.

Lifecycle:

    detected ──► investigating ──► contained ──► resolved
        │              │               │    └──► false_positive
        │              └───────────────┴──► resolved | false_positive
        └──► contained | resolved | false_positive

Terminal states (resolved, false_positive) accept no further transitions.

detect() persists the incident, audits it, then runs every matching rule's
actions before returning. Rules are taken by descending priority; a rule
matches when its event_type equals the incident type and its severity is at
or below the incident's. Actions within a rule run in order, honoring
delay_ms. A failing action is recorded (success=False) and the remaining
actions and rules still run.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from streamguard.constants import (
    COLLECTION_INCIDENT_RULES,
    COLLECTION_INCIDENTS,
    CRITICAL_MODERATION_CATEGORIES,
    INCIDENT_STATUSES,
    INCIDENT_TYPES,
    SEVERITIES,
    SEVERITY_ORDER,
    TERMINAL_INCIDENT_STATUSES,
)
from streamguard.errors import (
    IncidentNotFoundError,
    InputValidationError,
    InvalidTransitionError,
    StoreUnavailableError,
)
from streamguard.incidents.actions import ActionRegistry
from streamguard.incidents.models import (
    ActionRecord,
    Indicator,
    IncidentResponseRule,
    ManualAction,
    RuleAction,
    SecurityIncident,
    TriggerConditions,
)
from streamguard.stores.protocol import DocumentStore, Filter
from streamguard.utils.clock import Clock, SystemClock, isoformat
from streamguard.utils.logger import get_logger
from streamguard.utils.ulid import generate_id

if TYPE_CHECKING:
    from streamguard.audit.trail import AuditTrail
    from streamguard.fraud.models import EventData, FraudAnalysisResult
    from streamguard.moderation.moderator import ModerationContext, ModerationResult

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "detected": frozenset({"investigating", "contained"}) | TERMINAL_INCIDENT_STATUSES,
    "investigating": frozenset({"contained"}) | TERMINAL_INCIDENT_STATUSES,
    "contained": TERMINAL_INCIDENT_STATUSES,
    "resolved": frozenset(),
    "false_positive": frozenset(),
}


def severity_matches(rule_severity: str, incident_severity: str) -> bool:
    return SEVERITY_ORDER.get(incident_severity, 0) >= SEVERITY_ORDER.get(rule_severity, 0)


class IncidentOrchestrator:
    def __init__(
        self,
        store: DocumentStore,
        registry: ActionRegistry,
        audit: "AuditTrail",
        clock: Optional[Clock] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._registry = registry
        self._audit = audit
        self._clock = clock or SystemClock()
        self._sleep = sleep

    # ─── Detection ────────────────────────────────────────────────────────────

    async def detect(
        self,
        type: str,
        severity: str,
        indicators: Iterable[Indicator],
        affected_users: Iterable[str] = (),
        affected_systems: Iterable[str] = (),
        metadata: Optional[dict[str, Any]] = None,
    ) -> SecurityIncident:
        """Open an incident and run automated response before returning it."""
        if type not in INCIDENT_TYPES:
            raise InputValidationError(f"Unknown incident type: {type}", field="type")
        if severity not in SEVERITIES:
            raise InputValidationError(f"Unknown severity: {severity}", field="severity")
        indicators = list(indicators)
        for indicator in indicators:
            if not 0.0 <= indicator.confidence <= 1.0:
                raise InputValidationError(
                    "indicator confidence must be within [0, 1]", field="indicators"
                )

        now = self._clock.now()
        incident = SecurityIncident(
            id=generate_id("inc"),
            type=type,
            severity=severity,
            status="detected",
            detected_at=now,
            last_updated=now,
            affected_users=list(affected_users),
            affected_systems=list(affected_systems),
            indicators=indicators,
            metadata=dict(metadata or {}),
        )
        await self._store.put(COLLECTION_INCIDENTS, incident.id, incident.to_doc())
        logger.warning(
            "incident_detected",
            incident_id=incident.id,
            incident_type=type,
            severity=severity,
            affected_users=len(incident.affected_users),
        )
        await self._audit.track_security_event(
            "system",
            "incident_detected",
            severity,
            user_agent="incident-detection-system",
            metadata={
                "incident_id": incident.id,
                "incident_type": type,
                "indicator_count": len(indicators),
                "affected_user_count": len(incident.affected_users),
                "affected_system_count": len(incident.affected_systems),
            },
        )

        await self._respond(incident)
        return incident

    async def _respond(self, incident: SecurityIncident) -> None:
        try:
            rules = await self.applicable_rules(incident)
        except StoreUnavailableError as exc:
            logger.error("incident_rules_unavailable", incident_id=incident.id, error=str(exc))
            return

        for rule in rules:
            logger.info("incident_rule_executing", incident_id=incident.id, rule_id=rule.id, rule=rule.name)
            for action in rule.automated_actions:
                if action.delay_ms:
                    await self._sleep(action.delay_ms / 1000)
                record = await self._run_action(incident, rule, action)
                incident.automated_actions.append(record)
                if record.success and action.action not in incident.containment_measures:
                    incident.containment_measures.append(action.action)
                await self._save_actions(incident)

    async def _run_action(
        self, incident: SecurityIncident, rule: IncidentResponseRule, action: RuleAction
    ) -> ActionRecord:
        handler = self._registry.get(action.action)
        if handler is None:
            logger.error("incident_action_unknown", incident_id=incident.id, action=action.action)
            return ActionRecord(
                action=action.action,
                timestamp=self._clock.now(),
                success=False,
                rule_id=rule.id,
                details={"error": f"Unknown action: {action.action}"},
            )
        try:
            result = await handler(incident, dict(action.parameters))
        except Exception as exc:
            logger.critical(
                "incident_action_failed",
                incident_id=incident.id,
                action=action.action,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return ActionRecord(
                action=action.action,
                timestamp=self._clock.now(),
                success=False,
                rule_id=rule.id,
                details={"parameters": dict(action.parameters), "error": str(exc)},
            )
        logger.info("incident_action_succeeded", incident_id=incident.id, action=action.action)
        return ActionRecord(
            action=action.action,
            timestamp=self._clock.now(),
            success=True,
            rule_id=rule.id,
            details={"parameters": dict(action.parameters), **(result or {})},
        )

    async def _save_actions(self, incident: SecurityIncident) -> None:
        try:
            await self._store.update(
                COLLECTION_INCIDENTS,
                incident.id,
                {
                    "automated_actions": [a.to_doc() for a in incident.automated_actions],
                    "containment_measures": list(incident.containment_measures),
                },
            )
        except StoreUnavailableError as exc:
            logger.error("incident_action_log_failed", incident_id=incident.id, error=str(exc))

    # ─── Rules ────────────────────────────────────────────────────────────────

    async def applicable_rules(self, incident: SecurityIncident) -> list[IncidentResponseRule]:
        rules = await self.list_rules(enabled_only=True)
        return [
            rule
            for rule in rules
            if rule.trigger_conditions.event_type == incident.type
            and severity_matches(rule.trigger_conditions.severity, incident.severity)
        ]

    async def list_rules(self, enabled_only: bool = False) -> list[IncidentResponseRule]:
        filters = [Filter("enabled", "==", True)] if enabled_only else []
        docs = await self._store.query(
            COLLECTION_INCIDENT_RULES, filters, order_by="priority", descending=True
        )
        return [IncidentResponseRule.from_doc(doc) for doc in docs]

    async def create_rule(
        self,
        name: str,
        trigger_conditions: TriggerConditions,
        automated_actions: Iterable[RuleAction],
        description: str = "",
        enabled: bool = True,
        priority: int = 0,
        created_by: str = "system",
    ) -> IncidentResponseRule:
        if not name:
            raise InputValidationError("name is required", field="name")
        if trigger_conditions.event_type not in INCIDENT_TYPES:
            raise InputValidationError(
                f"Unknown incident type: {trigger_conditions.event_type}", field="event_type"
            )
        if trigger_conditions.severity not in SEVERITIES:
            raise InputValidationError(
                f"Unknown severity: {trigger_conditions.severity}", field="severity"
            )
        actions = list(automated_actions)
        for action in actions:
            if action.action not in self._registry:
                raise InputValidationError(f"Unknown action: {action.action}", field="automated_actions")
            if action.delay_ms is not None and action.delay_ms < 0:
                raise InputValidationError("delay_ms must not be negative", field="automated_actions")

        rule = IncidentResponseRule(
            id=generate_id("rule"),
            name=name,
            description=description,
            trigger_conditions=trigger_conditions,
            automated_actions=actions,
            enabled=enabled,
            priority=priority,
        )
        await self._store.put(COLLECTION_INCIDENT_RULES, rule.id, rule.to_doc())
        await self._audit.log(
            created_by,
            "create_incident_response_rule",
            "incident_response_rule",
            resource_id=rule.id,
            severity="medium",
            category="system",
            metadata={"rule_name": name, "actions": [a.action for a in actions]},
        )
        return rule

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    async def get_incident(self, incident_id: str) -> SecurityIncident:
        doc = await self._store.get(COLLECTION_INCIDENTS, incident_id)
        if doc is None:
            raise IncidentNotFoundError(incident_id)
        return SecurityIncident.from_doc(doc)

    async def list_incidents(
        self,
        type: Optional[str] = None,
        severity: Optional[str] = None,
        status: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[SecurityIncident]:
        filters: list[Filter] = []
        if type:
            filters.append(Filter("type", "==", type))
        if severity:
            filters.append(Filter("severity", "==", severity))
        if status:
            filters.append(Filter("status", "==", status))
        if since:
            filters.append(Filter("detected_at", ">=", isoformat(since)))
        if until:
            filters.append(Filter("detected_at", "<=", isoformat(until)))
        docs = await self._store.query(
            COLLECTION_INCIDENTS, filters, order_by="detected_at", descending=True, limit=limit
        )
        return [SecurityIncident.from_doc(doc) for doc in docs]

    async def update_status(
        self,
        incident_id: str,
        status: str,
        notes: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> SecurityIncident:
        """Move an incident along its lifecycle.

        Raises:
            InputValidationError: unknown status.
            IncidentNotFoundError: no such incident.
            InvalidTransitionError: the move is not allowed from the current status.
        """
        if status not in INCIDENT_STATUSES:
            raise InputValidationError(f"Unknown status: {status}", field="status")
        incident = await self.get_incident(incident_id)
        previous = incident.status
        if status not in ALLOWED_TRANSITIONS[previous]:
            raise InvalidTransitionError(previous, status)

        now = self._clock.now()
        incident.status = status
        incident.last_updated = now
        if status in TERMINAL_INCIDENT_STATUSES:
            incident.resolved_at = now
        if performed_by:
            incident.manual_actions.append(
                ManualAction(
                    action=f"status_change_to_{status}",
                    performed_by=performed_by,
                    timestamp=now,
                    notes=notes,
                )
            )

        await self._store.update(
            COLLECTION_INCIDENTS,
            incident_id,
            {
                "status": status,
                "last_updated": isoformat(now),
                "resolved_at": isoformat(incident.resolved_at) if incident.resolved_at else None,
                "manual_actions": [m.to_doc() for m in incident.manual_actions],
            },
        )
        logger.info(
            "incident_status_updated",
            incident_id=incident_id,
            previous_status=previous,
            status=status,
            performed_by=performed_by,
        )
        await self._audit.log(
            performed_by or "system",
            "update_incident_status",
            "security_incident",
            resource_id=incident_id,
            severity="medium",
            category="security",
            metadata={"previous_status": previous, "new_status": status, "notes": notes},
        )
        return incident

    # ─── Escalation ───────────────────────────────────────────────────────────

    async def escalate_fraud(
        self, user_id: str, result: "FraudAnalysisResult", event_data: "EventData"
    ) -> Optional[SecurityIncident]:
        """Open a fraud_detection incident for analyses that recommend blocking."""
        if result.recommended_action != "block":
            return None
        indicators = [
            Indicator(type=signal.type, value=signal.description, confidence=signal.confidence)
            for signal in result.signals
        ]
        indicators.append(
            Indicator(type="ip_address", value=event_data.ip_address, confidence=result.risk_score)
        )
        return await self.detect(
            "fraud_detection",
            result.risk_level,
            indicators,
            affected_users=[user_id],
            affected_systems=["fraud_engine"],
            metadata={"fraud_event_id": result.event_id, "risk_score": result.risk_score},
        )

    async def escalate_moderation(
        self,
        user_id: str,
        result: "ModerationResult",
        context: Optional["ModerationContext"] = None,
    ) -> Optional[SecurityIncident]:
        """Open a content_violation incident for rejections in a critical category."""
        critical = CRITICAL_MODERATION_CATEGORIES.intersection(result.detected_categories)
        if result.suggested_action != "reject" or not critical:
            return None
        indicators = [
            Indicator(type="moderation_category", value=category, confidence=1 - result.confidence)
            for category in sorted(critical)
        ]
        if context is not None and context.ip_address:
            indicators.append(Indicator(type="ip_address", value=context.ip_address))
        return await self.detect(
            "content_violation",
            "high",
            indicators,
            affected_users=[user_id],
            affected_systems=["content_moderation"],
            metadata={
                "reasons": list(result.reasons),
                "stream_id": context.stream_id if context else None,
            },
        )
