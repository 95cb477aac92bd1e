"""Structured logging for StreamGuard, built on structlog.

Every line is a JSON object (console rendering in development) carrying:
  service     always "streamguard"
  component   package the logger belongs to ("ratelimit", "audit", ...)
  request_id  plus client_ip / user_id while the request guard is serving
              a request (bound through structlog.contextvars)

Key material, signing secrets and credentials never reach the output: the
redact_secrets processor masks them by field name wherever they appear,
nested mappings included.
"""

import logging
import sys
import time
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor

SERVICE_NAME = "streamguard"
REDACTED = "[REDACTED]"

SECRET_FIELDS: frozenset[str] = frozenset(
    {
        "key_data",
        "encryption_key",
        "signing_secret",
        "gateway_secret",
        "x_gateway_secret",
        "x_signature",
        "authorization",
        "cookie",
        "password",
        "token",
        "card_number",
    }
)

# ─── Processors ───────────────────────────────────────────────────────────────


def add_service(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _mask(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: REDACTED if str(k).lower().replace("-", "_") in SECRET_FIELDS else _mask(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_mask(item) for item in value]
    return value


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask secret-named fields at any depth (headers dicts, audit payloads)."""
    return _mask(event_dict)


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog for the process.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_output: JSON lines when True, colored console output otherwise.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_service,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        redact_secrets,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer(default=str))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, log_level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def component_of(name: str) -> str:
    """``streamguard.ratelimit.middleware`` → ``ratelimit``"""
    parts = name.split(".")
    if parts[0] == SERVICE_NAME and len(parts) > 1:
        return parts[1]
    return parts[0]


def get_logger(name: str = SERVICE_NAME) -> structlog.stdlib.BoundLogger:
    # Initial values keep the proxy lazy, so main.py can reconfigure after
    # modules have created their loggers.
    return structlog.get_logger(name, component=component_of(name))


# ─── Request context ──────────────────────────────────────────────────────────


def bind_request_context(
    request_id: str, client_ip: Optional[str] = None, user_id: Optional[str] = None
) -> None:
    """Attach request fields to every log line emitted while serving it."""
    fields = {"request_id": request_id, "client_ip": client_ip, "user_id": user_id}
    structlog.contextvars.bind_contextvars(**{k: v for k, v in fields.items() if v is not None})


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


# ─── Timing ───────────────────────────────────────────────────────────────────


class PerformanceLogger:
    """Times a block on the request path (moderation, fraud analysis).

    Emits ``operation_completed`` at debug, ``operation_slow`` at warning
    once the block takes longer than `warn_after_ms`, and
    ``operation_failed`` at error when it raises. The exception propagates.
    """

    def __init__(
        self,
        operation: str,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
        warn_after_ms: float = 50.0,
    ):
        self.operation = operation
        self.logger = logger or get_logger()
        self.warn_after_ms = warn_after_ms
        self.start_time: float = 0
        self.end_time: float = 0

    def __enter__(self) -> "PerformanceLogger":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.end_time = time.perf_counter()
        elapsed = round(self.duration_ms, 3)

        if exc_type is not None:
            self.logger.error(
                "operation_failed",
                operation=self.operation,
                duration_ms=elapsed,
                error_type=exc_type.__name__,
                error=str(exc_val),
            )
        elif elapsed > self.warn_after_ms:
            self.logger.warning(
                "operation_slow",
                operation=self.operation,
                duration_ms=elapsed,
                threshold_ms=self.warn_after_ms,
            )
        else:
            self.logger.debug("operation_completed", operation=self.operation, duration_ms=elapsed)

    @property
    def duration_ms(self) -> float:
        end = self.end_time or time.perf_counter()
        return (end - self.start_time) * 1000


# main.py reconfigures from LOG_LEVEL / JSON_LOGS.
configure_logging()
