"""Injectable time and randomness sources.

Key rotation, rate-limit windows, fraud velocity windows and audit partitions
all depend on "now". Services receive a Clock (and key generation receives a
RandomSource) at construction time instead of calling datetime.now() or
secrets directly, so tests can pin time and key material.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable


def isoformat(dt: datetime) -> str:
    """Render a datetime as a fixed-width UTC ISO-8601 string.

    Fixed width (always microseconds, always ``+00:00``) keeps stored
    timestamps lexicographically ordered, which the document store relies on
    for range queries and sorting.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_datetime(value: str) -> datetime:
    """Parse an ISO-8601 string produced by :func:`isoformat` (or a naive one, treated as UTC)."""
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ─── Clock ────────────────────────────────────────────────────────────────────


@runtime_checkable
class Clock(Protocol):
    """Source of the current time (timezone-aware UTC)."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to. Used by tests and replay tooling."""

    def __init__(self, start: datetime) -> None:
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> datetime:
        """Move the clock forward by ``timedelta(**kwargs)`` and return the new time."""
        self._now = self._now + timedelta(**kwargs)
        return self._now

    def set(self, value: datetime) -> None:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        self._now = value


def epoch_ms(dt: datetime) -> int:
    """Milliseconds since the Unix epoch."""
    return int(dt.timestamp() * 1000)


# ─── RandomSource ─────────────────────────────────────────────────────────────


@runtime_checkable
class RandomSource(Protocol):
    """Source of cryptographic key material."""

    def token_bytes(self, nbytes: int) -> bytes:
        ...


class SystemRandomSource:
    """Cryptographically secure randomness backed by the ``secrets`` module."""

    def token_bytes(self, nbytes: int) -> bytes:
        return secrets.token_bytes(nbytes)


assert isinstance(SystemClock(), Clock)
assert isinstance(SystemRandomSource(), RandomSource)
