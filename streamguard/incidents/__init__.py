"""Security incident detection, lifecycle and automated response.

Layout:
    models.py        — SecurityIncident, IncidentResponseRule and their parts
    actions.py       — ActionRegistry and the built-in automated actions
    orchestrator.py  — IncidentOrchestrator (detect, rules, status updates, escalation)
"""

from streamguard.incidents.actions import ActionRegistry, build_default_registry
from streamguard.incidents.models import (
    ActionRecord,
    IncidentResponseRule,
    Indicator,
    ManualAction,
    RuleAction,
    SecurityIncident,
    TriggerConditions,
)
from streamguard.incidents.orchestrator import IncidentOrchestrator

__all__ = [
    "ActionRecord",
    "ActionRegistry",
    "IncidentOrchestrator",
    "IncidentResponseRule",
    "Indicator",
    "ManualAction",
    "RuleAction",
    "SecurityIncident",
    "TriggerConditions",
    "build_default_registry",
]
