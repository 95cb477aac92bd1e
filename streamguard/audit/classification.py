"""Ordered rule tables for audit severity, category and compliance flags.

When a caller does not supply severity or category, they are inferred from
the action and resource strings. Each table is an ordered list of
(substrings, classification) pairs; the first row with any substring
contained in the subject wins, and the fallback applies when nothing matches.

Keeping the rules as data makes the inference auditable and lets
tests/unit/test_audit_classification.py exercise each row in isolation.
"""

from __future__ import annotations

from dataclasses import dataclass

# ─── Rule type ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SubstringRule:
    """A classification chosen when any of `needles` occurs in the subject."""

    needles: tuple[str, ...]
    result: str

    def matches(self, subject: str) -> bool:
        return any(needle in subject for needle in self.needles)


def first_match(rules: tuple[SubstringRule, ...], subject: str, fallback: str) -> str:
    subject = subject.lower()
    for rule in rules:
        if rule.matches(subject):
            return rule.result
    return fallback


# ─── Severity (matched against the action) ────────────────────────────────────

SEVERITY_RULES: tuple[SubstringRule, ...] = (
    SubstringRule(("delete", "admin_access", "security_breach", "payment_failure"), "critical"),
    SubstringRule(("create", "update", "login_failure", "permission_change"), "high"),
    SubstringRule(("read", "login_success", "logout"), "medium"),
)
DEFAULT_SEVERITY = "low"

# ─── Category (matched against "action resource") ─────────────────────────────

CATEGORY_RULES: tuple[SubstringRule, ...] = (
    SubstringRule(("auth", "login"), "auth"),
    SubstringRule(("payment", "billing"), "payment"),
    SubstringRule(("security", "fraud"), "security"),
    SubstringRule(("video", "stream"), "content"),
    SubstringRule(("system", "admin"), "system"),
)
DEFAULT_CATEGORY = "data"


def infer_severity(action: str) -> str:
    return first_match(SEVERITY_RULES, action, DEFAULT_SEVERITY)


def infer_category(action: str, resource: str) -> str:
    return first_match(CATEGORY_RULES, f"{action} {resource}", DEFAULT_CATEGORY)


# ─── Compliance flags ─────────────────────────────────────────────────────────
# Unlike severity/category every matching row contributes a flag.


@dataclass(frozen=True)
class ComplianceRule:
    flag: str
    action_needles: tuple[str, ...] = ()
    resource_needles: tuple[str, ...] = ()

    def matches(self, action: str, resource: str) -> bool:
        return any(n in action for n in self.action_needles) or any(
            n in resource for n in self.resource_needles
        )


COMPLIANCE_RULES: tuple[ComplianceRule, ...] = (
    ComplianceRule("gdpr", action_needles=("data_",), resource_needles=("user",)),
    ComplianceRule("ccpa", action_needles=("data_access", "data_delete")),
    ComplianceRule(
        "pci", action_needles=("payment", "card"), resource_needles=("payment", "card")
    ),
    ComplianceRule(
        "sox", action_needles=("financial", "admin"), resource_needles=("financial", "admin")
    ),
)


def compliance_flags(action: str, resource: str) -> list[str]:
    action, resource = action.lower(), resource.lower()
    return [rule.flag for rule in COMPLIANCE_RULES if rule.matches(action, resource)]
