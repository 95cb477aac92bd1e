"""ULID generation for StreamGuard document identifiers.

Audit events, fraud events, incidents, alerts and compliance reports are all
keyed by ULIDs: 26-character, Crockford Base32, lexicographically sortable by
creation time. The sortable property keeps "newest first" listings cheap in
every document store backend.

Uses the `python-ulid` library (see pyproject.toml).
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string."""
    return str(ULID())


def generate_id(prefix: str) -> str:
    """Generate a prefixed identifier such as ``report_01HX...``.

    Args:
        prefix: Short lowercase type tag (``"report"``, ``"alert"``, ...).
    """
    return f"{prefix}_{generate_ulid()}"
