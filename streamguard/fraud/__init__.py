"""Fraud risk engine for logins, signups and payments."""

from streamguard.fraud.engine import FraudEngine
from streamguard.fraud.models import (
    EventData,
    FraudAnalysisResult,
    FraudEvent,
    FraudSignal,
    Location,
    SessionSummary,
    UserBehaviorProfile,
)

__all__ = [
    "EventData",
    "FraudAnalysisResult",
    "FraudEngine",
    "FraudEvent",
    "FraudSignal",
    "Location",
    "SessionSummary",
    "UserBehaviorProfile",
]
