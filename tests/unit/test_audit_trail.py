"""Unit tests for streamguard/audit/trail.py — logging, querying, compliance
reports and data-subject requests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from streamguard.audit.models import AuditEvent, AuditFilters
from streamguard.audit.trail import AuditTrail, partition_collection
from streamguard.constants import (
    ANONYMIZED,
    COLLECTION_AUDIT_INDEX,
    COLLECTION_AUDIT_PARTITIONS,
    COLLECTION_COMPLIANCE_REPORTS,
    COLLECTION_COMPLIANCE_VIOLATIONS,
)
from streamguard.errors import ComplianceReportError, InputValidationError, StoreUnavailableError
from streamguard.stores.memory import MemoryDocumentStore
from streamguard.utils.clock import ManualClock

# ─── Helpers ──────────────────────────────────────────────────────────────────


class FlakyStore(MemoryDocumentStore):
    """Fails the first `failures` puts, then behaves normally."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def put(self, collection: str, doc_id: str, doc: dict[str, Any]) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise StoreUnavailableError("disk full", store="memory")
        await super().put(collection, doc_id, doc)


class DownStore(MemoryDocumentStore):
    async def put(self, collection: str, doc_id: str, doc: dict[str, Any]) -> None:
        raise StoreUnavailableError("unreachable", store="memory")

    async def query(self, *args: Any, **kwargs: Any) -> list[dict[str, Any]]:
        raise StoreUnavailableError("unreachable", store="memory")


class GatedStore(MemoryDocumentStore):
    """Holds the first put until `gate` is set; signals once every index row is written."""

    def __init__(self, index_rows: int) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()
        self.indexed = asyncio.Event()
        self._index_rows = index_rows

    async def put(self, collection: str, doc_id: str, doc: dict[str, Any]) -> None:
        if not self.entered.is_set():
            self.entered.set()
            await self.gate.wait()
        await super().put(collection, doc_id, doc)
        if collection == COLLECTION_AUDIT_INDEX:
            self._index_rows -= 1
            if self._index_rows == 0:
                self.indexed.set()


# ─── log() ────────────────────────────────────────────────────────────────────


class TestLog:
    async def test_log_then_query_returns_event(self, audit: AuditTrail, clock: ManualClock) -> None:
        event_id = await audit.log(
            "u1",
            "data_access",
            "user_profile",
            resource_id="profile_9",
            metadata={"fields": ["email"], "via": "support_console"},
            user_email="u1@example.com",
            ip_address="203.0.113.5",
            user_agent="Mozilla/5.0",
            session_id="sess_1",
        )
        (event,) = await audit.query(AuditFilters(user_id="u1"))
        assert event == AuditEvent(
            id=event_id,
            user_id="u1",
            action="data_access",
            resource="user_profile",
            timestamp=clock.now(),
            severity="low",
            category="data",
            outcome="success",
            compliance_flags=["gdpr", "ccpa"],
            metadata={"fields": ["email"], "via": "support_console"},
            resource_id="profile_9",
            user_email="u1@example.com",
            ip_address="203.0.113.5",
            user_agent="Mozilla/5.0",
            session_id="sess_1",
            subject_ref=None,
            anonymized_at=None,
        )

    async def test_login_defaults(self, audit: AuditTrail) -> None:
        await audit.log("u1", "login_success", "session")
        (event,) = await audit.query(AuditFilters(user_id="u1"))
        assert (event.severity, event.category, event.outcome) == ("medium", "auth", "success")
        assert event.compliance_flags == []

    async def test_explicit_severity_and_category_win(self, audit: AuditTrail) -> None:
        await audit.log("u1", "delete_comment", "comment", severity="low", category="content")
        (event,) = await audit.query(AuditFilters(user_id="u1"))
        assert (event.severity, event.category) == ("low", "content")

    async def test_compliance_flags_are_attached(self, audit: AuditTrail) -> None:
        await audit.log("u1", "data_access", "user_profile")
        (event,) = await audit.query(AuditFilters(user_id="u1"))
        assert event.compliance_flags == ["gdpr", "ccpa"]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"user_id": "", "action": "a", "resource": "r"},
            {"user_id": "u", "action": "  ", "resource": "r"},
            {"user_id": "u", "action": "a", "resource": "r", "severity": "urgent"},
            {"user_id": "u", "action": "a", "resource": "r", "category": "misc"},
            {"user_id": "u", "action": "a", "resource": "r", "outcome": "maybe"},
        ],
    )
    async def test_invalid_input_raises_and_writes_nothing(
        self, audit: AuditTrail, document_store: MemoryDocumentStore, kwargs: dict
    ) -> None:
        user_id, action, resource = kwargs.pop("user_id"), kwargs.pop("action"), kwargs.pop("resource")
        with pytest.raises(InputValidationError):
            await audit.log(user_id, action, resource, **kwargs)
        assert await document_store.query(COLLECTION_AUDIT_PARTITIONS) == []

    async def test_events_are_partitioned_by_month(
        self, audit: AuditTrail, document_store: MemoryDocumentStore, clock: ManualClock
    ) -> None:
        await audit.log("u1", "login_success", "session")
        clock.advance(days=30)
        await audit.log("u1", "login_success", "session")

        partitions = sorted(d["partition"] for d in await document_store.query(COLLECTION_AUDIT_PARTITIONS))
        assert partitions == ["2026-10", "2026-11"]
        assert len(await document_store.query(partition_collection("2026-11"))) == 1

    async def test_retries_transient_store_failure(self, clock: ManualClock, sleep: Any) -> None:
        store = FlakyStore(failures=1)
        trail = AuditTrail(store, clock=clock, sleep=sleep)
        event_id = await trail.log("u1", "login_success", "session")
        assert [e.id for e in await trail.query(AuditFilters(user_id="u1"))] == [event_id]
        assert sleep.calls == [0.05]

    async def test_persistent_store_failure_does_not_raise(self, clock: ManualClock, sleep: Any) -> None:
        trail = AuditTrail(DownStore(), clock=clock, sleep=sleep)
        event_id = await trail.log("u1", "login_success", "session")
        assert event_id
        assert len(sleep.calls) == 2

    async def test_critical_failure_opens_violation(self, audit: AuditTrail) -> None:
        event_id = await audit.log("u1", "delete_account", "user", outcome="failure")
        violations = await audit.list_open_violations()
        assert [v["event_id"] for v in violations] == [event_id]
        assert violations[0]["status"] == "open"

    async def test_write_survives_caller_cancellation(self, clock: ManualClock, sleep: Any) -> None:
        store = GatedStore(index_rows=5)
        trail = AuditTrail(store, clock=clock, sleep=sleep)

        task = asyncio.create_task(trail.log("u1", "login_success", "session"))
        await store.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        store.gate.set()
        await asyncio.wait_for(store.indexed.wait(), timeout=1)

        (event,) = await trail.query(AuditFilters(user_id="u1"))
        assert event.action == "login_success"

    async def test_violation_record_carries_no_user_identity(
        self, audit: AuditTrail, document_store: MemoryDocumentStore
    ) -> None:
        await audit.log(
            "victim_42", "delete_account", "user", outcome="failure", ip_address="203.0.113.9"
        )
        await audit.delete_user_data("victim_42")

        violations = await document_store.query(COLLECTION_COMPLIANCE_VIOLATIONS)
        assert len(violations) == 1
        assert "user_id" not in violations[0]
        assert "victim_42" not in str(violations[0])
        assert "203.0.113.9" not in str(violations[0])

    async def test_critical_success_opens_no_violation(self, audit: AuditTrail) -> None:
        await audit.log("u1", "delete_account", "user")
        assert await audit.list_open_violations() == []


class TestTrackers:
    async def test_track_security_event(self, audit: AuditTrail) -> None:
        await audit.track_security_event("u1", "rate_limit_exceeded", "low", ip_address="198.51.100.1")
        (event,) = await audit.query(AuditFilters(user_id="u1"))
        assert event.action == "security_rate_limit_exceeded"
        assert event.category == "security"
        assert event.outcome == "failure"

    async def test_track_data_modification(self, audit: AuditTrail) -> None:
        await audit.track_data_modification("u1", "update", "user_profile", resource_id="p1")
        (event,) = await audit.query(AuditFilters(user_id="u1"))
        assert event.action == "data_update"
        assert event.severity == "high"

    async def test_track_data_access(self, audit: AuditTrail) -> None:
        await audit.track_data_access("u1", "watch_history")
        (event,) = await audit.query(AuditFilters(action="data_access"))
        assert event.user_id == "u1"


# ─── query() ──────────────────────────────────────────────────────────────────


class TestQuery:
    async def test_newest_first_and_limit(self, audit: AuditTrail, clock: ManualClock) -> None:
        ids = []
        for _ in range(3):
            ids.append(await audit.log("u1", "login_success", "session"))
            clock.advance(minutes=1)
        events = await audit.query(AuditFilters(user_id="u1", limit=2))
        assert [e.id for e in events] == [ids[2], ids[1]]

    async def test_time_range_spans_partitions(self, audit: AuditTrail, clock: ManualClock) -> None:
        start = clock.now()
        await audit.log("u1", "login_success", "session")
        clock.advance(days=20)
        second = await audit.log("u1", "login_success", "session")
        clock.advance(days=20)
        await audit.log("u1", "login_success", "session")

        events = await audit.query(
            AuditFilters(start=start + timedelta(days=10), end=start + timedelta(days=30))
        )
        assert [e.id for e in events] == [second]

    async def test_non_utc_range_reaches_the_utc_partition(
        self, audit: AuditTrail, clock: ManualClock
    ) -> None:
        # 22:00 UTC on Oct 31 is already Nov 1 in UTC+5.
        clock.set(datetime(2026, 10, 31, 22, 0, tzinfo=timezone.utc))
        event_id = await audit.log("u1", "login_success", "session")
        plus_five = timezone(timedelta(hours=5))

        events = await audit.query(
            AuditFilters(
                start=datetime(2026, 11, 1, 2, tzinfo=plus_five),
                end=datetime(2026, 11, 1, 4, tzinfo=plus_five),
            )
        )

        assert [e.id for e in events] == [event_id]

    async def test_non_utc_range_excludes_events_outside_it(
        self, audit: AuditTrail, clock: ManualClock
    ) -> None:
        clock.set(datetime(2026, 10, 31, 20, 0, tzinfo=timezone.utc))
        await audit.log("u1", "login_success", "session")
        plus_five = timezone(timedelta(hours=5))

        events = await audit.query(
            AuditFilters(
                start=datetime(2026, 11, 1, 2, tzinfo=plus_five),
                end=datetime(2026, 11, 1, 4, tzinfo=plus_five),
            )
        )

        assert events == []

    async def test_start_after_end_rejected(self, audit: AuditTrail, clock: ManualClock) -> None:
        with pytest.raises(InputValidationError):
            await audit.query(AuditFilters(start=clock.now(), end=clock.now() - timedelta(days=1)))

    async def test_filters_by_category_and_flag(self, audit: AuditTrail) -> None:
        await audit.log("u1", "charge", "payment_method")
        await audit.log("u1", "login_success", "session")
        events = await audit.query(AuditFilters(compliance_flag="pci"))
        assert [e.action for e in events] == ["charge"]
        events = await audit.query(AuditFilters(category="auth"))
        assert [e.action for e in events] == ["login_success"]

    async def test_user_filter_excludes_other_users(self, audit: AuditTrail) -> None:
        await audit.log("u1", "login_success", "session")
        await audit.log("u2", "login_success", "session")
        assert {e.user_id for e in await audit.query(AuditFilters(user_id="u2"))} == {"u2"}


# ─── Compliance reports ───────────────────────────────────────────────────────


class TestComplianceReports:
    async def test_report_contains_only_flagged_events_in_range(
        self, audit: AuditTrail, clock: ManualClock, document_store: MemoryDocumentStore
    ) -> None:
        start = clock.now()
        await audit.log("u1", "charge", "payment_method", outcome="failure")
        await audit.log("u2", "payment_failure", "payment_method")
        await audit.log("u1", "login_success", "session")
        clock.advance(hours=1)

        report = await audit.generate_compliance_report("pci", start, clock.now(), "admin1")

        assert report.summary.total_events == 2
        assert report.summary.critical_events == 1
        assert report.summary.failed_events == 1
        assert report.summary.user_count == 2
        assert report.summary.resources_accessed == ["payment_method"]
        assert all("pci" in e.compliance_flags for e in report.events)
        assert await document_store.get(COLLECTION_COMPLIANCE_REPORTS, report.report_id) is not None

    async def test_report_over_non_utc_range(self, audit: AuditTrail, clock: ManualClock) -> None:
        clock.set(datetime(2026, 10, 31, 22, 0, tzinfo=timezone.utc))
        await audit.log("u1", "data_access", "user_profile")
        plus_five = timezone(timedelta(hours=5))

        report = await audit.generate_compliance_report(
            "gdpr",
            datetime(2026, 11, 1, 2, tzinfo=plus_five),
            datetime(2026, 11, 1, 4, tzinfo=plus_five),
            "admin1",
        )

        assert report.summary.total_events == 1

    async def test_report_is_retrievable(self, audit: AuditTrail, clock: ManualClock) -> None:
        start = clock.now()
        await audit.log("u1", "data_access", "user_profile")
        report = await audit.generate_compliance_report("gdpr", start, clock.now(), "admin1")
        stored = await audit.get_report(report.report_id)
        assert stored is not None
        assert stored.to_wire() == report.to_wire()
        assert await audit.get_report("report_missing") is None

    async def test_report_generation_is_audited(self, audit: AuditTrail, clock: ManualClock) -> None:
        start = clock.now()
        report = await audit.generate_compliance_report("sox", start, clock.now(), "admin1")
        (event,) = await audit.query(AuditFilters(action="compliance_report_generated"))
        assert event.resource_id == report.report_id
        assert event.user_id == "admin1"

    async def test_unknown_type_rejected(self, audit: AuditTrail, clock: ManualClock) -> None:
        with pytest.raises(InputValidationError):
            await audit.generate_compliance_report("hipaa", clock.now(), clock.now(), "admin1")

    async def test_unreadable_store_raises_report_error(self, clock: ManualClock, sleep: Any) -> None:
        trail = AuditTrail(DownStore(), clock=clock, sleep=sleep)
        with pytest.raises(ComplianceReportError):
            await trail.generate_compliance_report("gdpr", clock.now(), clock.now(), "admin1")


# ─── Data subject requests ────────────────────────────────────────────────────


class TestDataSubjectRequests:
    async def test_export_summary(self, audit: AuditTrail, clock: ManualClock) -> None:
        await audit.log("u1", "data_access", "user_profile")
        clock.advance(minutes=5)
        await audit.track_security_event("u1", "content_violation", "medium")

        export = await audit.export_user_data("u1")

        assert export.summary["total_events"] == 2
        assert export.summary["security_events"] == 1
        assert export.summary["data_access_events"] == 1
        wire = export.to_wire()
        assert wire["summary"]["totalEvents"] == 2
        assert "firstActivity" in wire["summary"]

    async def test_export_is_audited(self, audit: AuditTrail) -> None:
        await audit.export_user_data("u1")
        (event,) = await audit.query(AuditFilters(action="data_export"))
        assert event.user_id == "u1"

    async def test_export_then_delete_anonymizes_without_losing_events(
        self, audit: AuditTrail, clock: ManualClock
    ) -> None:
        await audit.log("u1", "login_success", "session", user_email="u1@example.com", ip_address="203.0.113.5")
        clock.advance(minutes=1)
        await audit.log("u1", "data_access", "user_profile")
        await audit.log("u2", "login_success", "session")

        await audit.export_user_data("u1")
        before = await audit.query(AuditFilters(user_id="u1"))
        result = await audit.delete_user_data("u1", [])
        after = await audit.query(AuditFilters(user_id="u1"))

        assert len(after) == len(before) == 3
        assert result.anonymized == 3
        assert all(e.user_id == ANONYMIZED for e in after)
        assert all(e.user_email in (None, ANONYMIZED) for e in after)
        assert all(e.ip_address in (None, ANONYMIZED) for e in after)
        assert all(e.subject_ref == result.subject_ref for e in after)
        # Other users untouched
        assert [e.user_id for e in await audit.query(AuditFilters(user_id="u2"))] == ["u2"]

    async def test_retention_exception_keeps_records(self, audit: AuditTrail) -> None:
        await audit.log("u1", "charge", "payment_method")
        await audit.log("u1", "login_success", "session")

        result = await audit.delete_user_data("u1", ["pci"])

        assert (result.anonymized, result.retained) == (1, 1)
        by_action = {e.action: e for e in await audit.query(AuditFilters(user_id="u1"))}
        assert by_action["charge"].user_id == "u1"
        assert by_action["login_success"].user_id == ANONYMIZED

    async def test_delete_is_idempotent(self, audit: AuditTrail) -> None:
        await audit.log("u1", "login_success", "session")
        await audit.delete_user_data("u1")
        second = await audit.delete_user_data("u1")
        assert second.anonymized == 0

    async def test_deletion_is_audited_without_identifier(self, audit: AuditTrail) -> None:
        await audit.log("u1", "login_success", "session")
        result = await audit.delete_user_data("u1")
        (event,) = await audit.query(AuditFilters(action="data_deletion"))
        assert event.user_id == "system"
        assert event.metadata["subject_ref"] == result.subject_ref
        assert "u1" not in str(event.metadata)

    async def test_delete_requires_user_id(self, audit: AuditTrail) -> None:
        with pytest.raises(InputValidationError):
            await audit.delete_user_data("")
