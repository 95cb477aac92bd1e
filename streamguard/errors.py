"""Exception taxonomy for StreamGuard.

Policy outcomes (a rejected chat message, a blocked payment) are returned as
values and never raised. Exceptions are reserved for:

  InputValidationError   — malformed input, rejected before any persistence.
  StoreUnavailableError  — a counter or document store could not be reached.
                           Rate limiting and audit logging absorb it; it never
                           reaches their callers.
  KeyRotationError       — key material could not be created or persisted.
                           Surfaced to the incident orchestrator as a failed
                           automated action.
  ComplianceReportError  — a report could not be produced from consistent data.
                           Always raised to the caller; reports never silently
                           omit events.
  IncidentNotFoundError / InvalidTransitionError — incident lifecycle misuse.
  ActionFailedError      — an automated response action could not complete.

HTTP mapping lives in main.py (exception handlers).
"""

from __future__ import annotations


class StreamGuardError(Exception):
    """Base class for all StreamGuard errors."""

    code: str = "streamguard_error"

    def __init__(self, message: str = "StreamGuard error") -> None:
        super().__init__(message)
        self.message = message


class InputValidationError(StreamGuardError):
    """Raised when a caller passes malformed input.

    HTTP mapping: 422 Unprocessable Entity with code='invalid_input'
    """

    code = "invalid_input"

    def __init__(self, message: str = "Invalid input", field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class StoreUnavailableError(StreamGuardError):
    """Raised by store adapters when the backing service cannot be reached."""

    code = "store_unavailable"

    def __init__(self, message: str = "Store unavailable", store: str = "unknown") -> None:
        super().__init__(message)
        self.store = store


class KeyRotationError(StreamGuardError):
    """Raised when a signing key cannot be generated, persisted or deactivated."""

    code = "key_rotation_failed"


class ComplianceReportError(StreamGuardError):
    """Raised when a compliance report cannot be built from consistent data.

    HTTP mapping: 500 with code='compliance_report_failed'
    """

    code = "compliance_report_failed"


class IncidentNotFoundError(StreamGuardError):
    """HTTP mapping: 404 Not Found"""

    code = "incident_not_found"

    def __init__(self, incident_id: str) -> None:
        super().__init__(f"Incident not found: {incident_id}")
        self.incident_id = incident_id


class InvalidTransitionError(StreamGuardError):
    """Raised when an incident status change is not allowed from its current state.

    HTTP mapping: 409 Conflict
    """

    code = "invalid_transition"

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot transition incident from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class ActionFailedError(StreamGuardError):
    """Raised by an automated response action that could not complete.

    Recorded on the incident as a failed action; never propagated further.
    """

    code = "action_failed"
