"""Audit trail & compliance.

Layout:
    models.py         — AuditEvent, AuditFilters, ComplianceReport, export/deletion results
    classification.py — ordered severity / category / compliance-flag rule tables
    trail.py          — AuditTrail service (partitioned writes, queries, reports, erasure)
"""

from streamguard.audit.models import AuditEvent, AuditFilters, ComplianceReport
from streamguard.audit.trail import AuditTrail

__all__ = ["AuditEvent", "AuditFilters", "AuditTrail", "ComplianceReport"]
