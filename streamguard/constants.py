"""Shared constants for StreamGuard.

Collection names, severity scales and fixed policy tables used across
modules are defined here. Tunable thresholds live in config.py instead.
"""

# ─── Document store collections ──────────────────────────────────────────────

COLLECTION_FRAUD_EVENTS = "fraud_events"
COLLECTION_BEHAVIOR_PROFILES = "user_behavior_profiles"
COLLECTION_SECURITY_KEYS = "security_keys"
COLLECTION_SECURITY_ALERTS = "security_alerts"
COLLECTION_AUDIT_INDEX = "audit_index"
COLLECTION_AUDIT_PARTITIONS = "audit_partitions"
COLLECTION_COMPLIANCE_REPORTS = "compliance_reports"
COLLECTION_COMPLIANCE_VIOLATIONS = "compliance_violations"
COLLECTION_INCIDENTS = "security_incidents"
COLLECTION_INCIDENT_RULES = "incident_response_rules"
COLLECTION_BLOCKED_IPS = "blocked_ips"
COLLECTION_BLOCKED_USERS = "blocked_users"
COLLECTION_SESSION_REVOCATIONS = "session_revocations"
COLLECTION_MONITORING = "enhanced_monitoring"
COLLECTION_QUARANTINE = "quarantined_files"

# Audit events are written to one collection per calendar month:
#   audit_events_2026_10
AUDIT_PARTITION_PREFIX = "audit_events_"

# ─── Severity scale ──────────────────────────────────────────────────────────

SEVERITIES: tuple[str, ...] = ("low", "medium", "high", "critical")

# Ordinal used for incident rule matching (rule severity <= incident severity).
SEVERITY_ORDER: dict[str, int] = {"low": 1, "medium": 2, "high": 3, "critical": 4}

# ─── Audit ───────────────────────────────────────────────────────────────────

AUDIT_CATEGORIES: frozenset[str] = frozenset(
    {"auth", "data", "system", "security", "payment", "content"}
)
AUDIT_OUTCOMES: frozenset[str] = frozenset({"success", "failure", "partial"})
COMPLIANCE_REPORT_TYPES: frozenset[str] = frozenset({"gdpr", "ccpa", "pci", "sox"})

# Replaces identity fields on erasure requests.
ANONYMIZED = "anonymized"

# ─── Incidents ───────────────────────────────────────────────────────────────

INCIDENT_TYPES: frozenset[str] = frozenset(
    {
        "data_breach",
        "account_takeover",
        "ddos_attack",
        "malware_detection",
        "unauthorized_access",
        "privilege_escalation",
        "fraud_detection",
        "system_compromise",
        "content_violation",
    }
)
INCIDENT_STATUSES: frozenset[str] = frozenset(
    {"detected", "investigating", "contained", "resolved", "false_positive"}
)
TERMINAL_INCIDENT_STATUSES: frozenset[str] = frozenset({"resolved", "false_positive"})

# ─── Moderation ──────────────────────────────────────────────────────────────

CONTENT_TYPES: frozenset[str] = frozenset({"text", "image", "video", "audio"})

# Any of these categories forces a reject regardless of confidence.
CRITICAL_MODERATION_CATEGORIES: frozenset[str] = frozenset(
    {"personal_info", "adult_content", "violence"}
)

# ─── Signed URLs ─────────────────────────────────────────────────────────────

HEADER_KEY_ROTATION_ID = "x-key-rotation-id"
HEADER_SIGNED_AT = "x-signed-at"
HEADER_KEY_SIGNATURE = "x-key-signature"
DEFAULT_SIGNED_URL_TTL_MINUTES = 15

# ─── Identity headers (set by the upstream identity gateway) ─────────────────

HEADER_USER_ID = "x-user-id"
HEADER_USER_ROLE = "x-user-role"
HEADER_SUBSCRIPTION_TIER = "x-subscription-tier"
HEADER_SESSION_ID = "x-session-id"
HEADER_SESSION_ISSUED_AT = "x-session-issued-at"
HEADER_GATEWAY_SECRET = "x-gateway-secret"
