"""AuditTrail — partitioned, cross-indexed audit log with compliance features.

Storage layout in the DocumentStore:
  audit_events_YYYY_MM   one collection per calendar month (the partition)
  audit_partitions       registry of partitions that have ever been written
  audit_index            one document per (event, kind) for kinds
                         user / action / resource / category / severity
                         (erased users are re-indexed under kind "subject")
  compliance_violations  critical events whose outcome was "failure", keyed
                         by event id and carrying no user fields
  compliance_reports     generated reports, retrievable by report_id

Write policy:
  log() awaits the write before returning so every security decision has its
  audit record by the time the caller's response is observed. The write is
  shielded from cancellation: an abandoned request never rolls back an audit
  record. A failing store is retried a few times, then the full event is
  written to the structured error log instead. log() never raises on storage
  failure, only on invalid input.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any, Optional

from streamguard.audit.classification import compliance_flags, infer_category, infer_severity
from streamguard.audit.models import (
    AuditEvent,
    AuditFilters,
    ComplianceReport,
    ComplianceSummary,
    DeletionResult,
    UserDataExport,
    partition_key,
)
from streamguard.config import AuditSettings
from streamguard.constants import (
    ANONYMIZED,
    AUDIT_CATEGORIES,
    AUDIT_OUTCOMES,
    AUDIT_PARTITION_PREFIX,
    COLLECTION_AUDIT_INDEX,
    COLLECTION_AUDIT_PARTITIONS,
    COLLECTION_COMPLIANCE_REPORTS,
    COLLECTION_COMPLIANCE_VIOLATIONS,
    COMPLIANCE_REPORT_TYPES,
    SEVERITIES,
)
from streamguard.errors import ComplianceReportError, InputValidationError, StoreUnavailableError
from streamguard.stores.protocol import DocumentStore, Filter
from streamguard.utils.clock import Clock, SystemClock, isoformat
from streamguard.utils.logger import get_logger
from streamguard.utils.ulid import generate_id, generate_ulid

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]

_INDEXED_KINDS = ("user", "action", "resource", "category", "severity")
_ANONYMIZED_FIELDS = ("user_id", "user_email", "ip_address", "user_agent", "session_id")


def partition_collection(partition: str) -> str:
    """``2026-10`` → ``audit_events_2026_10``"""
    return AUDIT_PARTITION_PREFIX + partition.replace("-", "_")


class AuditTrail:
    """Audit trail service. One instance per process (see services.py)."""

    def __init__(
        self,
        store: DocumentStore,
        clock: Optional[Clock] = None,
        settings: Optional[AuditSettings] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._settings = settings or AuditSettings()
        self._sleep = sleep
        self._known_partitions: set[str] = set()

    # ─── Writing ──────────────────────────────────────────────────────────────

    async def log(
        self,
        user_id: str,
        action: str,
        resource: str,
        *,
        resource_id: Optional[str] = None,
        outcome: str = "success",
        metadata: Optional[dict[str, Any]] = None,
        severity: Optional[str] = None,
        category: Optional[str] = None,
        user_email: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        """Record an audit event and return its id.

        Severity and category are inferred from the action/resource strings
        when not supplied.

        Raises:
            InputValidationError: empty user_id/action/resource or an unknown
                severity, category or outcome. Nothing is written.
        """
        for name, value in (("user_id", user_id), ("action", action), ("resource", resource)):
            if not isinstance(value, str) or not value.strip():
                raise InputValidationError(f"{name} must be a non-empty string", field=name)
        if severity is not None and severity not in SEVERITIES:
            raise InputValidationError(f"Unknown severity: {severity}", field="severity")
        if category is not None and category not in AUDIT_CATEGORIES:
            raise InputValidationError(f"Unknown category: {category}", field="category")
        if outcome not in AUDIT_OUTCOMES:
            raise InputValidationError(f"Unknown outcome: {outcome}", field="outcome")

        event = AuditEvent(
            id=generate_ulid(),
            user_id=user_id,
            action=action,
            resource=resource,
            timestamp=self._clock.now(),
            severity=severity or infer_severity(action),  # type: ignore[arg-type]
            category=category or infer_category(action, resource),  # type: ignore[arg-type]
            outcome=outcome,  # type: ignore[arg-type]
            compliance_flags=compliance_flags(action, resource),
            metadata=dict(metadata or {}),
            resource_id=resource_id,
            user_email=user_email,
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=session_id,
        )
        await asyncio.shield(self._emit(event))
        return event.id

    async def _emit(self, event: AuditEvent) -> None:
        attempts = max(1, self._settings.write_retries)
        for attempt in range(1, attempts + 1):
            try:
                await self._write(event)
                return
            except Exception as exc:
                if attempt < attempts:
                    logger.warning(
                        "audit_write_retry",
                        event_id=event.id,
                        attempt=attempt,
                        error=str(exc),
                    )
                    await self._sleep(self._settings.retry_backoff_ms * attempt / 1000)
                    continue
                logger.error(
                    "audit_write_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    audit_event=event.to_doc(),
                )

    async def _write(self, event: AuditEvent) -> None:
        # Every put below is keyed, so a retried write is idempotent.
        partition = event.partition
        await self._store.put(partition_collection(partition), event.id, event.to_doc())
        if partition not in self._known_partitions:
            await self._store.put(
                COLLECTION_AUDIT_PARTITIONS,
                partition,
                {"partition": partition, "collection": partition_collection(partition)},
            )
            self._known_partitions.add(partition)

        values = (event.user_id, event.action, event.resource, event.category, event.severity)
        for kind, value in zip(_INDEXED_KINDS, values):
            await self._put_index(kind, value, event)

        if event.severity == "critical" and event.outcome == "failure":
            await self._store.put(
                COLLECTION_COMPLIANCE_VIOLATIONS,
                event.id,
                {
                    "id": event.id,
                    "event_id": event.id,
                    "type": "critical_failure",
                    "status": "open",
                    "description": f"Critical action '{event.action}' on '{event.resource}' failed",
                    "detected_at": isoformat(event.timestamp),
                },
            )
            logger.warning("compliance_violation_opened", event_id=event.id, action=event.action)

    async def _put_index(self, kind: str, value: str, event: AuditEvent) -> None:
        await self._store.put(
            COLLECTION_AUDIT_INDEX,
            f"{kind}_{value}_{event.id}",
            {
                "kind": kind,
                "value": value,
                "event_id": event.id,
                "partition": event.partition,
                "timestamp": isoformat(event.timestamp),
            },
        )

    # ─── Convenience trackers ─────────────────────────────────────────────────

    async def track_data_access(
        self,
        user_id: str,
        resource: str,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        return await self.log(
            user_id,
            "data_access",
            resource,
            resource_id=resource_id,
            ip_address=ip_address,
            metadata=metadata,
        )

    async def track_data_modification(
        self,
        user_id: str,
        change: str,
        resource: str,
        resource_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """change is one of create / update / delete."""
        return await self.log(
            user_id, f"data_{change}", resource, resource_id=resource_id, metadata=metadata
        )

    async def track_security_event(
        self,
        user_id: str,
        event_type: str,
        severity: str,
        *,
        outcome: str = "failure",
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        return await self.log(
            user_id,
            f"security_{event_type}",
            "security",
            severity=severity,
            category="security",
            outcome=outcome,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=metadata,
        )

    # ─── Querying ─────────────────────────────────────────────────────────────

    async def query(self, filters: Optional[AuditFilters] = None) -> list[AuditEvent]:
        """Return matching events, newest first.

        Only partitions overlapping [start, end] are scanned. A user_id
        filter also matches records of that user that were anonymized.

        Raises:
            InputValidationError: start is after end.
            StoreUnavailableError: the document store failed.
        """
        filters = filters or AuditFilters()
        if filters.start and filters.end and filters.start > filters.end:
            raise InputValidationError("start must not be after end", field="start")

        partitions = await self._partitions_for(filters)
        subject = self.subject_ref(filters.user_id) if filters.user_id else None

        found: dict[str, AuditEvent] = {}
        for partition in partitions:
            base = self._store_filters(filters)
            variants: list[list[Filter]] = [base]
            if filters.user_id:
                variants = [
                    base + [Filter("user_id", "==", filters.user_id)],
                    base + [Filter("subject_ref", "==", subject)],
                ]
            for flts in variants:
                for doc in await self._store.query(partition_collection(partition), flts):
                    found[doc["id"]] = AuditEvent.from_doc(doc)

        events = sorted(found.values(), key=lambda e: (e.timestamp, e.id), reverse=True)
        if filters.limit is not None:
            events = events[: filters.limit]
        return events

    def _store_filters(self, filters: AuditFilters) -> list[Filter]:
        flts: list[Filter] = []
        for name in ("action", "resource", "category", "severity", "outcome"):
            value = getattr(filters, name)
            if value is not None:
                flts.append(Filter(name, "==", value))
        if filters.compliance_flag:
            flts.append(Filter("compliance_flags", "contains", filters.compliance_flag))
        if filters.start:
            flts.append(Filter("timestamp", ">=", isoformat(filters.start)))
        if filters.end:
            flts.append(Filter("timestamp", "<=", isoformat(filters.end)))
        return flts

    async def _partitions_for(self, filters: AuditFilters) -> list[str]:
        docs = await self._store.query(COLLECTION_AUDIT_PARTITIONS)
        partitions = {doc["partition"] for doc in docs} | self._known_partitions

        if filters.start:
            low = partition_key(filters.start)
            partitions = {p for p in partitions if p >= low}
        if filters.end:
            high = partition_key(filters.end)
            partitions = {p for p in partitions if p <= high}

        if filters.user_id:
            user_partitions = await self._indexed_partitions("user", filters.user_id)
            user_partitions |= await self._indexed_partitions(
                "subject", self.subject_ref(filters.user_id)
            )
            partitions &= user_partitions

        return sorted(partitions, reverse=True)

    async def _indexed_partitions(self, kind: str, value: str) -> set[str]:
        docs = await self._store.query(
            COLLECTION_AUDIT_INDEX,
            [Filter("kind", "==", kind), Filter("value", "==", value)],
        )
        return {doc["partition"] for doc in docs}

    # ─── Compliance ───────────────────────────────────────────────────────────

    async def generate_compliance_report(
        self,
        report_type: str,
        start: datetime,
        end: datetime,
        requested_by: str,
    ) -> ComplianceReport:
        """Build, persist and return a compliance report for one flag.

        Raises:
            InputValidationError: unknown report type or start after end.
            ComplianceReportError: events could not be read, did not satisfy
                the report's own filter, or the report could not be stored.
        """
        if report_type not in COMPLIANCE_REPORT_TYPES:
            raise InputValidationError(
                f"Unknown report type: {report_type}. "
                f"Supported: {sorted(COMPLIANCE_REPORT_TYPES)}",
                field="type",
            )
        if start > end:
            raise InputValidationError("start must not be after end", field="start")

        try:
            events = await self.query(
                AuditFilters(compliance_flag=report_type, start=start, end=end)
            )
        except StoreUnavailableError as exc:
            raise ComplianceReportError(
                f"Could not read audit events for {report_type} report: {exc.message}"
            ) from exc

        for event in events:
            if report_type not in event.compliance_flags or not (start <= event.timestamp <= end):
                raise ComplianceReportError(
                    f"Audit event {event.id} does not belong in a {report_type} report "
                    f"for {isoformat(start)}..{isoformat(end)}"
                )

        report = ComplianceReport(
            report_id=generate_id("report"),
            type=report_type,
            start_date=start,
            end_date=end,
            events=events,
            summary=ComplianceSummary(
                total_events=len(events),
                critical_events=sum(1 for e in events if e.severity == "critical"),
                failed_events=sum(1 for e in events if e.outcome == "failure"),
                user_count=len({e.user_id for e in events}),
                resources_accessed=sorted({e.resource for e in events}),
            ),
            generated_at=self._clock.now(),
            generated_by=requested_by,
        )

        try:
            await self._store.put(COLLECTION_COMPLIANCE_REPORTS, report.report_id, report.to_doc())
        except StoreUnavailableError as exc:
            raise ComplianceReportError(f"Could not persist report: {exc.message}") from exc

        await self.log(
            requested_by,
            "compliance_report_generated",
            "compliance_report",
            resource_id=report.report_id,
            metadata={"type": report_type, "total_events": len(events)},
        )
        logger.info(
            "compliance_report_generated",
            report_id=report.report_id,
            type=report_type,
            total_events=len(events),
        )
        return report

    async def get_report(self, report_id: str) -> Optional[ComplianceReport]:
        doc = await self._store.get(COLLECTION_COMPLIANCE_REPORTS, report_id)
        return ComplianceReport.from_doc(doc) if doc else None

    async def list_open_violations(self) -> list[dict[str, Any]]:
        return await self._store.query(
            COLLECTION_COMPLIANCE_VIOLATIONS,
            [Filter("status", "==", "open")],
            order_by="detected_at",
            descending=True,
        )

    # ─── Data subject requests ────────────────────────────────────────────────

    async def export_user_data(self, user_id: str) -> UserDataExport:
        """Return the user's full history plus an activity summary.

        The export is itself audited as a ``data_export`` event.
        """
        if not user_id:
            raise InputValidationError("user_id is required", field="user_id")

        events = await self.query(AuditFilters(user_id=user_id))
        ordered = sorted(events, key=lambda e: e.timestamp)
        summary = {
            "total_events": len(events),
            "first_activity": isoformat(ordered[0].timestamp) if ordered else None,
            "last_activity": isoformat(ordered[-1].timestamp) if ordered else None,
            "actions_performed": sorted({e.action for e in events}),
            "resources_accessed": sorted({e.resource for e in events}),
            "data_access_events": sum(
                1 for e in events if "read" in e.action or "data_access" in e.action
            ),
            "security_events": sum(1 for e in events if e.category == "security"),
        }
        export = UserDataExport(
            user_id=user_id,
            exported_at=self._clock.now(),
            events=events,
            summary=summary,
        )
        await self.log(
            user_id,
            "data_export",
            "user_data",
            metadata={"event_count": len(events)},
        )
        return export

    async def delete_user_data(
        self, user_id: str, retention_exceptions: Iterable[str] = ()
    ) -> DeletionResult:
        """Anonymize the user's events in place.

        An event is retained unchanged when any retention exception matches
        one of its compliance flags or its category (``["pci"]`` keeps
        payment records for the card-network retention period).

        Raises:
            InputValidationError: empty user_id.
            StoreUnavailableError: the store failed mid-erasure. Already
                anonymized records stay anonymized; re-running completes it.
        """
        if not user_id or user_id == ANONYMIZED:
            raise InputValidationError("user_id is required", field="user_id")

        exceptions = set(retention_exceptions)
        ref = self.subject_ref(user_id)
        now = self._clock.now()
        anonymized = retained = 0

        for event in await self.query(AuditFilters(user_id=user_id)):
            if exceptions & (set(event.compliance_flags) | {event.category}):
                retained += 1
                continue
            if event.user_id == ANONYMIZED:
                continue
            fields: dict[str, Any] = {
                name: ANONYMIZED for name in _ANONYMIZED_FIELDS if getattr(event, name) is not None
            }
            fields.update({"subject_ref": ref, "anonymized_at": isoformat(now)})
            await self._store.update(partition_collection(event.partition), event.id, fields)
            await self._store.delete(COLLECTION_AUDIT_INDEX, f"user_{user_id}_{event.id}")
            await self._put_index("subject", ref, event)
            anonymized += 1

        await self.log(
            "system",
            "data_deletion",
            "user_data",
            metadata={
                "subject_ref": ref,
                "anonymized": anonymized,
                "retained": retained,
                "retention_exceptions": sorted(exceptions),
            },
        )
        logger.info("user_data_anonymized", subject_ref=ref, anonymized=anonymized, retained=retained)
        return DeletionResult(subject_ref=ref, anonymized=anonymized, retained=retained)

    def subject_ref(self, user_id: str) -> str:
        salted = f"{self._settings.anonymization_salt}:{user_id}".encode()
        return hashlib.sha256(salted).hexdigest()
