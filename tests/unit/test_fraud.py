"""Unit tests for streamguard/fraud — scoring, signals, profiles and payments."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import httpx
import pytest

from streamguard.audit.models import AuditFilters
from streamguard.audit.trail import AuditTrail
from streamguard.constants import COLLECTION_FRAUD_EVENTS
from streamguard.errors import InputValidationError, StoreUnavailableError
from streamguard.fraud.engine import (
    FraudEngine,
    build_reasoning,
    calculate_risk_score,
    recommended_action,
    risk_level,
)
from streamguard.fraud.models import EventData, FraudSignal, Location, SessionSummary
from streamguard.fraud.payments import (
    HttpPaymentProcessor,
    PaymentLookupError,
    PaymentMethodInfo,
)
from streamguard.stores.memory import MemoryDocumentStore
from streamguard.utils.clock import ManualClock

BERLIN = Location(country="DE", region="Berlin", city="Berlin")


def _event(**overrides: Any) -> EventData:
    fields: dict[str, Any] = {
        "ip_address": "203.0.113.5",
        "user_agent": "Mozilla/5.0",
        "device_fingerprint": "device-1",
        "location": Location(country="DE"),
    }
    fields.update(overrides)
    return EventData(**fields)


class FakePaymentProcessor:
    def __init__(self, info: PaymentMethodInfo) -> None:
        self.info = info
        self.refs: list[str] = []

    async def lookup(self, payment_method_ref: str) -> PaymentMethodInfo:
        self.refs.append(payment_method_ref)
        return self.info


class UnqueryableStore(MemoryDocumentStore):
    async def query(self, *args: Any, **kwargs: Any) -> list[dict[str, Any]]:
        raise StoreUnavailableError("timeout", store="memory")


@pytest.fixture
def engine(document_store: MemoryDocumentStore, clock: ManualClock, audit: AuditTrail, sleep: Any) -> FraudEngine:
    return FraudEngine(document_store, clock=clock, audit=audit, sleep=sleep)


async def _seed_profile(engine: FraudEngine, clock: ManualClock, **session: Any) -> None:
    fields: dict[str, Any] = {
        "started_at": clock.now(),
        "device_fingerprint": "device-1",
        "duration_seconds": 1800,
        "location": BERLIN,
    }
    fields.update(session)
    await engine.update_behavior_profile("u1", SessionSummary(**fields))


# ─── Pure scoring ─────────────────────────────────────────────────────────────


class TestScoring:
    def test_no_signals_scores_zero(self) -> None:
        assert calculate_risk_score([]) == 0.0

    def test_weighted_average(self) -> None:
        signals = [
            FraudSignal("geolocation", "medium", 0.7, "x"),
            FraudSignal("device", "medium", 0.6, "y"),
        ]
        assert calculate_risk_score(signals) == pytest.approx(0.65)

    def test_score_is_bounded(self) -> None:
        signals = [FraudSignal("velocity", "critical", 1.0, "x")] * 3
        assert 0.0 <= calculate_risk_score(signals) <= 1.0

    @pytest.mark.parametrize(
        "score,level",
        [(0.0, "low"), (0.29, "low"), (0.3, "medium"), (0.59, "medium"), (0.6, "high"), (0.79, "high"), (0.8, "critical"), (1.0, "critical")],
    )
    def test_risk_levels(self, score: float, level: str) -> None:
        assert risk_level(score) == level

    @pytest.mark.parametrize(
        "level,action", [("low", "allow"), ("medium", "review"), ("high", "challenge"), ("critical", "block")]
    )
    def test_recommended_action(self, level: str, action: str) -> None:
        assert recommended_action(level, []) == action

    def test_any_critical_signal_blocks(self) -> None:
        assert recommended_action("low", [FraudSignal("velocity", "critical", 0.1, "x")]) == "block"

    def test_reasoning(self) -> None:
        assert build_reasoning([], 0.0) == ["Overall risk score: 0.0%", "No fraud signals detected"]
        lines = build_reasoning([FraudSignal("device", "medium", 0.6, "Activity from unrecognized device")], 0.6)
        assert lines[1] == "1 fraud signal(s) detected:"
        assert lines[2] == "- Activity from unrecognized device (medium risk, 60.0% confidence)"


# ─── analyze() ────────────────────────────────────────────────────────────────


class TestVelocity:
    async def test_sixth_login_in_a_minute_is_high_velocity(self, engine: FraudEngine, clock: ManualClock) -> None:
        results = []
        for _ in range(6):
            results.append(await engine.analyze("u1", "login", _event()))
            clock.advance(seconds=5)

        assert all(not r.signals for r in results[:5])
        velocity = [s for s in results[5].signals if s.type == "velocity"]
        assert len(velocity) == 1
        assert velocity[0].severity == "high"
        assert velocity[0].metadata["window"] == "1_minute"
        assert velocity[0].metadata["event_count"] == 6

    async def test_double_threshold_is_critical_and_blocks(self, engine: FraudEngine, clock: ManualClock) -> None:
        for _ in range(10):
            await engine.analyze("u1", "login", _event())
            clock.advance(seconds=2)
        result = await engine.analyze("u1", "login", _event())
        assert result.signals[0].severity == "critical"
        assert result.recommended_action == "block"

    async def test_other_event_types_do_not_count(self, engine: FraudEngine, clock: ManualClock) -> None:
        for _ in range(6):
            await engine.analyze("u1", "signup", _event())
        result = await engine.analyze("u1", "login", _event())
        assert result.signals == []

    async def test_events_outside_window_do_not_count(self, engine: FraudEngine, clock: ManualClock) -> None:
        for _ in range(5):
            await engine.analyze("u1", "login", _event())
        clock.advance(minutes=2)
        result = await engine.analyze("u1", "login", _event())
        assert result.signals == []


class TestProfileSignals:
    async def test_without_profile_comparative_signals_are_skipped(self, engine: FraudEngine) -> None:
        result = await engine.analyze("u1", "login", _event(device_fingerprint="never-seen"))
        assert result.risk_score == 0.0
        assert result.risk_level == "low"
        assert result.recommended_action == "allow"

    async def test_known_context_is_clean(self, engine: FraudEngine, clock: ManualClock) -> None:
        await _seed_profile(engine, clock)
        result = await engine.analyze("u1", "login", _event())
        assert result.signals == []

    async def test_new_country_and_device_are_challenged(
        self, engine: FraudEngine, clock: ManualClock, audit: AuditTrail
    ) -> None:
        await _seed_profile(engine, clock)
        result = await engine.analyze(
            "u1", "login", _event(device_fingerprint="device-9", location=Location(country="US", city="Austin"))
        )
        assert sorted(s.type for s in result.signals) == ["device", "geolocation"]
        assert result.risk_score == pytest.approx(0.65)
        assert result.recommended_action == "challenge"

        (event,) = await audit.query(AuditFilters(action="fraud_detected"))
        assert event.severity == "high"
        assert event.resource_id == result.event_id
        assert event.outcome == "partial"

    @pytest.mark.parametrize(
        "current",
        [Location(country="US"), Location(country="AU", region="Vic"), Location(country="Melb")],
    )
    async def test_partial_location_names_are_not_known(
        self, engine: FraudEngine, clock: ManualClock, current: Location
    ) -> None:
        melbourne = Location(country="AUS", region="Victoria", city="Melbourne")
        await _seed_profile(engine, clock, location=melbourne)
        result = await engine.analyze("u1", "login", _event(location=current))
        assert [s.type for s in result.signals] == ["geolocation"]

    async def test_known_region_in_another_country_is_known(self, engine: FraudEngine, clock: ManualClock) -> None:
        await _seed_profile(engine, clock)
        result = await engine.analyze("u1", "login", _event(location=Location(country="AT", region="Berlin")))
        assert result.signals == []

    async def test_unusual_hour_is_a_low_signal(self, engine: FraudEngine, clock: ManualClock) -> None:
        await _seed_profile(engine, clock)
        clock.advance(hours=8)
        result = await engine.analyze("u1", "login", _event())
        assert [(s.type, s.severity) for s in result.signals] == [("behavioral", "low")]

    async def test_hour_tolerance_wraps_midnight(self, engine: FraudEngine, clock: ManualClock) -> None:
        late = clock.now().replace(hour=23)
        await _seed_profile(engine, clock, started_at=late)
        clock.set(late.replace(hour=1) + timedelta(days=1))
        result = await engine.analyze("u1", "login", _event())
        assert [s.type for s in result.signals] == []


class TestPaymentSignals:
    async def test_prepaid_and_failed_verification(self, document_store: MemoryDocumentStore, clock: ManualClock) -> None:
        processor = FakePaymentProcessor(PaymentMethodInfo("prepaid", "fail"))
        engine = FraudEngine(document_store, clock=clock, payment_processor=processor)
        result = await engine.analyze("u1", "payment", _event(amount=9.99, payment_method_ref="pm_123"))

        assert processor.refs == ["pm_123"]
        assert sorted((s.severity, s.confidence) for s in result.signals) == [("high", 0.9), ("medium", 0.6)]
        assert result.risk_score == pytest.approx(0.78)
        assert result.recommended_action == "challenge"

    async def test_lookup_failure_is_a_medium_signal(self, engine: FraudEngine) -> None:
        result = await engine.analyze("u1", "payment", _event(amount=9.99, payment_method_ref="pm_123"))
        (signal,) = result.signals
        assert (signal.type, signal.severity, signal.confidence) == ("payment", "medium", 0.5)
        assert result.recommended_action == "review"

    async def test_amount_spike_against_profile_average(self, engine: FraudEngine, clock: ManualClock) -> None:
        await _seed_profile(engine, clock, payment_amount=20.0, payment_method="card")
        result = await engine.analyze("u1", "payment", _event(amount=150.0))
        (signal,) = result.signals
        assert signal.description == "Unusually large payment amount: $150.00"
        assert result.risk_level == "critical"
        assert result.recommended_action == "block"

    async def test_payment_checks_only_for_payment_events(self, document_store: MemoryDocumentStore, clock: ManualClock) -> None:
        processor = FakePaymentProcessor(PaymentMethodInfo("prepaid", "fail"))
        engine = FraudEngine(document_store, clock=clock, payment_processor=processor)
        await engine.analyze("u1", "login", _event(payment_method_ref="pm_123"))
        assert processor.refs == []


class TestAnalyzeFailures:
    async def test_store_failure_returns_review_default(self, clock: ManualClock, sleep: Any) -> None:
        engine = FraudEngine(UnqueryableStore(), clock=clock, sleep=sleep)
        result = await engine.analyze("u1", "login", _event())
        assert result.risk_score == 0.8
        assert result.risk_level == "critical"
        assert result.recommended_action == "review"
        assert result.signals[0].type == "account"

    @pytest.mark.parametrize(
        "user_id,event_type,data",
        [
            ("", "login", _event()),
            ("u1", "", _event()),
            ("u1", "payment", _event(amount=-1.0)),
            ("u1", "login", _event(user_agent=None)),
        ],
    )
    async def test_invalid_input_raises(self, engine: FraudEngine, user_id: str, event_type: str, data: EventData) -> None:
        with pytest.raises(InputValidationError):
            await engine.analyze(user_id, event_type, data)


# ─── History and profiles ─────────────────────────────────────────────────────


class TestHistory:
    async def test_every_analysis_is_persisted(self, engine: FraudEngine, document_store: MemoryDocumentStore) -> None:
        result = await engine.analyze("u1", "login", _event())
        doc = await document_store.get(COLLECTION_FRAUD_EVENTS, result.event_id)
        assert doc["action"] == "allowed"
        assert doc["user_id"] == "u1"

    async def test_get_fraud_events_filters(self, engine: FraudEngine, clock: ManualClock) -> None:
        await _seed_profile(engine, clock)
        await engine.analyze("u1", "login", _event())
        clock.advance(minutes=1)
        await engine.analyze("u1", "login", _event(device_fingerprint="device-9", location=Location(country="US")))
        await engine.analyze("u2", "login", _event())

        events = await engine.get_fraud_events(user_id="u1")
        assert [e.action for e in events] == ["challenged", "allowed"]
        challenged = await engine.get_fraud_events(action="challenged")
        assert [e.user_id for e in challenged] == ["u1"]
        assert await engine.get_fraud_events(since=clock.now().replace(year=2030)) == []


class TestBehaviorProfile:
    async def test_running_averages(self, engine: FraudEngine, clock: ManualClock) -> None:
        await _seed_profile(engine, clock, duration_seconds=600, payment_amount=10.0, payment_method="card")
        clock.advance(hours=1)
        await _seed_profile(engine, clock, duration_seconds=1200, payment_amount=30.0, payment_method="paypal")

        profile = await engine.get_behavior_profile("u1")
        assert profile is not None
        assert profile.session_count == 2
        assert profile.average_session_duration == pytest.approx(900)
        assert profile.payment_patterns.average_amount == pytest.approx(20.0)
        assert profile.payment_patterns.frequency == 2
        assert profile.payment_patterns.preferred_methods == ["card", "paypal"]
        assert profile.typical_login_times == [14, 15]
        assert profile.common_locations == ["Berlin, Berlin, DE"]

    async def test_device_history_is_capped(self, engine: FraudEngine, clock: ManualClock) -> None:
        for n in range(12):
            await _seed_profile(engine, clock, device_fingerprint=f"device-{n}")
        profile = await engine.get_behavior_profile("u1")
        assert profile is not None
        assert len(profile.typical_devices) == 10
        assert profile.typical_devices[-1] == "device-11"
        assert "device-0" not in profile.typical_devices

    async def test_negative_duration_rejected(self, engine: FraudEngine, clock: ManualClock) -> None:
        with pytest.raises(InputValidationError):
            await _seed_profile(engine, clock, duration_seconds=-5)


# ─── HttpPaymentProcessor ─────────────────────────────────────────────────────


class TestHttpPaymentProcessor:
    async def test_lookup(self) -> None:
        seen: list[bytes] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.raw_path)
            return httpx.Response(200, json={"funding_type": "prepaid", "verification_status": "pass"})

        processor = HttpPaymentProcessor(
            "http://billing.test/", client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )
        info = await processor.lookup("pm 1/2")
        assert info == PaymentMethodInfo("prepaid", "pass")
        assert info.verification_failed is False
        assert seen == [b"/payment-methods/pm%201%2F2"]
        await processor.aclose()

    async def test_server_error_raises_lookup_error(self) -> None:
        processor = HttpPaymentProcessor(
            "http://billing.test",
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503))),
        )
        with pytest.raises(PaymentLookupError):
            await processor.lookup("pm_1")
        await processor.aclose()
