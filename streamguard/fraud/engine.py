"""FraudEngine — transaction risk analysis for logins, payments and signups.

analyze() steps:
  1. Load the user's behavior profile. No profile means comparative signals
     (geolocation, device, behavioral, payment-amount) are skipped.
  2. Velocity: count same-type events of the user, including this one, in
     four nested windows. Exceeding a window threshold emits a signal.
  3. Geolocation / device / behavioral signals against the profile.
  4. Payment signals for payment events (processor lookup + amount spike).
  5. risk_score = Σ(confidence × weight) / Σ weight, clamped to [0, 1].
  6. Persist a FraudEvent; audit high and critical outcomes.

Velocity reads race with concurrent writers and may undercount slightly;
analysis is advisory and never locks.

Any internal failure returns SAFE_DEFAULT-shaped results (score 0.8,
action "review") instead of failing open.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from streamguard.constants import COLLECTION_BEHAVIOR_PROFILES, COLLECTION_FRAUD_EVENTS
from streamguard.errors import InputValidationError
from streamguard.fraud.models import (
    EVENT_ACTIONS,
    EventData,
    FraudAnalysisResult,
    FraudEvent,
    FraudSignal,
    SessionSummary,
    UserBehaviorProfile,
)
from streamguard.fraud.payments import PaymentLookupError, PaymentProcessor, UnavailablePaymentProcessor
from streamguard.stores.protocol import DocumentStore, Filter
from streamguard.utils.clock import Clock, SystemClock, isoformat
from streamguard.utils.logger import PerformanceLogger, get_logger
from streamguard.utils.ulid import generate_ulid

if TYPE_CHECKING:
    from streamguard.audit.trail import AuditTrail

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]

# (name, duration, threshold)
VELOCITY_WINDOWS: tuple[tuple[str, timedelta, int], ...] = (
    ("1_minute", timedelta(minutes=1), 5),
    ("5_minutes", timedelta(minutes=5), 15),
    ("1_hour", timedelta(hours=1), 50),
    ("24_hours", timedelta(hours=24), 200),
)

SEVERITY_WEIGHTS: dict[str, float] = {"low": 0.25, "medium": 0.5, "high": 0.75, "critical": 1.0}

TYPICAL_HOUR_TOLERANCE = 2
AMOUNT_SPIKE_MULTIPLIER = 5

_MAX_LOCATIONS = 10
_MAX_DEVICES = 10
_MAX_PAYMENT_METHODS = 5
_PERSIST_ATTEMPTS = 3


# ─── Scoring helpers (pure) ───────────────────────────────────────────────────


def calculate_risk_score(signals: list[FraudSignal]) -> float:
    if not signals:
        return 0.0
    total_weight = sum(SEVERITY_WEIGHTS[s.severity] for s in signals)
    total = sum(s.confidence * SEVERITY_WEIGHTS[s.severity] for s in signals)
    return max(0.0, min(total / total_weight, 1.0))


def risk_level(score: float) -> str:
    if score >= 0.8:
        return "critical"
    if score >= 0.6:
        return "high"
    if score >= 0.3:
        return "medium"
    return "low"


def recommended_action(level: str, signals: list[FraudSignal]) -> str:
    if level == "critical" or any(s.severity == "critical" for s in signals):
        return "block"
    if level == "high":
        return "challenge"
    if level == "medium":
        return "review"
    return "allow"


def build_reasoning(signals: list[FraudSignal], score: float) -> list[str]:
    reasoning = [f"Overall risk score: {score * 100:.1f}%"]
    if not signals:
        reasoning.append("No fraud signals detected")
        return reasoning
    reasoning.append(f"{len(signals)} fraud signal(s) detected:")
    reasoning.extend(
        f"- {s.description} ({s.severity} risk, {s.confidence * 100:.1f}% confidence)"
        for s in signals
    )
    return reasoning


def _hour_distance(a: int, b: int) -> int:
    diff = abs(a - b) % 24
    return min(diff, 24 - diff)


def _most_recent(items: list[str], item: str, cap: int) -> list[str]:
    updated = [existing for existing in items if existing != item] + [item]
    return updated[-cap:]


# ─── FraudEngine ──────────────────────────────────────────────────────────────


class FraudEngine:
    def __init__(
        self,
        store: DocumentStore,
        clock: Optional[Clock] = None,
        payment_processor: Optional[PaymentProcessor] = None,
        audit: Optional["AuditTrail"] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._payments = payment_processor or UnavailablePaymentProcessor()
        self._audit = audit
        self._sleep = sleep

    async def analyze(self, user_id: str, event_type: str, event_data: EventData) -> FraudAnalysisResult:
        """Score one transaction and persist it as a FraudEvent.

        Raises:
            InputValidationError: missing user/event type, missing client
                fingerprint fields or a negative amount.
        """
        self._validate(user_id, event_type, event_data)
        now = self._clock.now()

        try:
            with PerformanceLogger("fraud_analysis", logger):
                profile = await self.get_behavior_profile(user_id)
                signals = await self._velocity_signals(user_id, event_type, now)
                if profile is not None:
                    signals.extend(self._geolocation_signals(event_data, profile))
                    signals.extend(self._device_signals(event_data, profile))
                    signals.extend(self._behavioral_signals(now, profile))
                if event_type == "payment":
                    signals.extend(await self._payment_signals(event_data, profile))
        except Exception as exc:
            logger.error(
                "fraud_analysis_failed",
                user_id=user_id,
                event_type=event_type,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return FraudAnalysisResult(
                risk_score=0.8,
                risk_level="critical",
                signals=[
                    FraudSignal(
                        type="account",
                        severity="high",
                        confidence=0.9,
                        description="Fraud analysis system error",
                        metadata={"error": str(exc)},
                    )
                ],
                recommended_action="review",
                reasoning=["Fraud detection system encountered an error - manual review required"],
            )

        score = calculate_risk_score(signals)
        level = risk_level(score)
        action = recommended_action(level, signals)
        result = FraudAnalysisResult(
            risk_score=score,
            risk_level=level,  # type: ignore[arg-type]
            signals=signals,
            recommended_action=action,  # type: ignore[arg-type]
            reasoning=build_reasoning(signals, score),
        )

        event = FraudEvent(
            id=generate_ulid(),
            user_id=user_id,
            event_type=event_type,
            timestamp=now,
            ip_address=event_data.ip_address,
            user_agent=event_data.user_agent,
            device_fingerprint=event_data.device_fingerprint,
            location=event_data.location,
            risk_score=score,
            signals=signals,
            action=EVENT_ACTIONS[action],  # type: ignore[arg-type]
            metadata={**event_data.metadata, "amount": event_data.amount},
        )
        result.event_id = event.id
        await asyncio.shield(self._persist_event(event))

        if level in ("high", "critical") and self._audit is not None:
            await self._audit.log(
                user_id,
                "fraud_detected",
                "fraud_analysis",
                resource_id=event.id,
                severity=level,
                category="security",
                outcome="failure" if action == "block" else "partial",
                ip_address=event_data.ip_address,
                user_agent=event_data.user_agent,
                metadata={
                    "event_type": event_type,
                    "risk_score": score,
                    "recommended_action": action,
                    "signals": [s.type for s in signals],
                },
            )
        return result

    @staticmethod
    def _validate(user_id: str, event_type: str, event_data: EventData) -> None:
        if not user_id:
            raise InputValidationError("user_id is required", field="user_id")
        if not event_type:
            raise InputValidationError("event_type is required", field="event_type")
        for name in ("ip_address", "user_agent", "device_fingerprint"):
            if not isinstance(getattr(event_data, name), str):
                raise InputValidationError(f"{name} must be a string", field=name)
        if event_data.amount is not None and event_data.amount < 0:
            raise InputValidationError("amount must not be negative", field="amount")

    async def _persist_event(self, event: FraudEvent) -> None:
        for attempt in range(1, _PERSIST_ATTEMPTS + 1):
            try:
                await self._store.put(COLLECTION_FRAUD_EVENTS, event.id, event.to_doc())
                return
            except Exception as exc:
                if attempt < _PERSIST_ATTEMPTS:
                    await self._sleep(0.05 * attempt)
                    continue
                logger.error(
                    "fraud_event_write_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    fraud_event=event.to_doc(),
                )

    # ── Signals ───────────────────────────────────────────────────────────────

    async def _velocity_signals(
        self, user_id: str, event_type: str, now: datetime
    ) -> list[FraudSignal]:
        longest = max(duration for _, duration, _ in VELOCITY_WINDOWS)
        docs = await self._store.query(
            COLLECTION_FRAUD_EVENTS,
            [
                Filter("user_id", "==", user_id),
                Filter("event_type", "==", event_type),
                Filter("timestamp", ">=", isoformat(now - longest)),
            ],
        )
        timestamps = [doc["timestamp"] for doc in docs]

        signals: list[FraudSignal] = []
        for name, duration, threshold in VELOCITY_WINDOWS:
            since = isoformat(now - duration)
            count = sum(1 for ts in timestamps if ts >= since) + 1
            if count > threshold:
                signals.append(
                    FraudSignal(
                        type="velocity",
                        severity="critical" if count > threshold * 2 else "high",
                        confidence=min(count / threshold, 1.0),
                        description=f"Unusual velocity: {count} {event_type} events in {name}",
                        metadata={
                            "window": name,
                            "event_count": count,
                            "threshold": threshold,
                            "event_type": event_type,
                        },
                    )
                )
        return signals

    @staticmethod
    def _geolocation_signals(
        event_data: EventData, profile: UserBehaviorProfile
    ) -> list[FraudSignal]:
        location = event_data.location
        if location is None or not profile.common_locations:
            return []
        # Profile labels are "city, region, country"; compare whole parts only.
        known_parts = {
            part.strip() for label in profile.common_locations for part in label.split(",")
        }
        if location.country in known_parts or (location.region and location.region in known_parts):
            return []
        place = ", ".join(p for p in (location.city, location.country) if p)
        return [
            FraudSignal(
                type="geolocation",
                severity="medium",
                confidence=0.7,
                description=f"Activity from unusual location: {place}",
                metadata={
                    "current_location": location.to_doc(),
                    "common_locations": list(profile.common_locations),
                },
            )
        ]

    @staticmethod
    def _device_signals(event_data: EventData, profile: UserBehaviorProfile) -> list[FraudSignal]:
        if event_data.device_fingerprint in profile.typical_devices:
            return []
        return [
            FraudSignal(
                type="device",
                severity="medium",
                confidence=0.6,
                description="Activity from unrecognized device",
                metadata={
                    "device_fingerprint": event_data.device_fingerprint,
                    "known_devices": len(profile.typical_devices),
                },
            )
        ]

    @staticmethod
    def _behavioral_signals(now: datetime, profile: UserBehaviorProfile) -> list[FraudSignal]:
        if not profile.typical_login_times:
            return []
        hour = now.hour
        if any(_hour_distance(hour, h) <= TYPICAL_HOUR_TOLERANCE for h in profile.typical_login_times):
            return []
        return [
            FraudSignal(
                type="behavioral",
                severity="low",
                confidence=0.4,
                description=f"Activity at unusual time: {hour:02d}:00 UTC",
                metadata={"current_hour": hour, "typical_hours": list(profile.typical_login_times)},
            )
        ]

    async def _payment_signals(
        self, event_data: EventData, profile: Optional[UserBehaviorProfile]
    ) -> list[FraudSignal]:
        signals: list[FraudSignal] = []

        if event_data.payment_method_ref:
            try:
                info = await self._payments.lookup(event_data.payment_method_ref)
            except PaymentLookupError as exc:
                signals.append(
                    FraudSignal(
                        type="payment",
                        severity="medium",
                        confidence=0.5,
                        description="Unable to verify payment method",
                        metadata={"error": "payment_verification_failed", "detail": str(exc)},
                    )
                )
            else:
                if info.funding_type == "prepaid":
                    signals.append(
                        FraudSignal(
                            type="payment",
                            severity="medium",
                            confidence=0.6,
                            description="Payment method is a prepaid card",
                            metadata={"funding_type": info.funding_type},
                        )
                    )
                if info.verification_failed:
                    signals.append(
                        FraudSignal(
                            type="payment",
                            severity="high",
                            confidence=0.9,
                            description="Payment method verification failed",
                            metadata={"verification_status": info.verification_status},
                        )
                    )

        average = profile.payment_patterns.average_amount if profile else 0.0
        amount = event_data.amount
        if amount is not None and average > 0 and amount > average * AMOUNT_SPIKE_MULTIPLIER:
            signals.append(
                FraudSignal(
                    type="payment",
                    severity="high",
                    confidence=0.8,
                    description=f"Unusually large payment amount: ${amount:.2f}",
                    metadata={
                        "amount": amount,
                        "average_amount": average,
                        "multiplier": amount / average,
                    },
                )
            )
        return signals

    # ── Profiles and history ──────────────────────────────────────────────────

    async def get_behavior_profile(self, user_id: str) -> Optional[UserBehaviorProfile]:
        doc = await self._store.get(COLLECTION_BEHAVIOR_PROFILES, user_id)
        return UserBehaviorProfile.from_doc(doc) if doc else None

    async def update_behavior_profile(
        self, user_id: str, session: SessionSummary
    ) -> UserBehaviorProfile:
        """Fold a finished session into the user's behavior profile."""
        if not user_id:
            raise InputValidationError("user_id is required", field="user_id")
        if session.duration_seconds < 0:
            raise InputValidationError("duration_seconds must not be negative", field="duration_seconds")

        profile = await self.get_behavior_profile(user_id) or UserBehaviorProfile(user_id=user_id)

        hour = session.started_at.hour
        if hour not in profile.typical_login_times:
            profile.typical_login_times = sorted(profile.typical_login_times + [hour])

        if session.location is not None:
            label = ", ".join(
                p for p in (session.location.city, session.location.region, session.location.country) if p
            )
            profile.common_locations = _most_recent(profile.common_locations, label, _MAX_LOCATIONS)

        profile.typical_devices = _most_recent(
            profile.typical_devices, session.device_fingerprint, _MAX_DEVICES
        )

        total = profile.average_session_duration * profile.session_count + session.duration_seconds
        profile.session_count += 1
        profile.average_session_duration = total / profile.session_count

        if session.payment_amount is not None:
            patterns = profile.payment_patterns
            paid = patterns.average_amount * patterns.frequency + session.payment_amount
            patterns.frequency += 1
            patterns.average_amount = paid / patterns.frequency
            if session.payment_method:
                patterns.preferred_methods = _most_recent(
                    patterns.preferred_methods, session.payment_method, _MAX_PAYMENT_METHODS
                )

        profile.last_updated = self._clock.now()
        await self._store.put(COLLECTION_BEHAVIOR_PROFILES, user_id, profile.to_doc())
        logger.debug("behavior_profile_updated", user_id=user_id, session_count=profile.session_count)
        return profile

    async def get_fraud_events(
        self,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[FraudEvent]:
        filters: list[Filter] = []
        if user_id:
            filters.append(Filter("user_id", "==", user_id))
        if action:
            filters.append(Filter("action", "==", action))
        if since:
            filters.append(Filter("timestamp", ">=", isoformat(since)))
        if until:
            filters.append(Filter("timestamp", "<=", isoformat(until)))
        docs = await self._store.query(
            COLLECTION_FRAUD_EVENTS, filters, order_by="timestamp", descending=True, limit=limit
        )
        return [FraudEvent.from_doc(doc) for doc in docs]
