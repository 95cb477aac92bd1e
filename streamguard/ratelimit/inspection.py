"""JSON request-body inspection for script and SQL injection.

Every string in a decoded JSON body (object keys included, at any depth) is
matched against the pattern tables below. The first hit rejects the request;
the guard middleware answers 400 malicious_content and records a security
event carrying a sanitized excerpt of the body.

Patterns are pre-compiled with google-re2 like the moderation tables, so a
hostile body cannot trigger catastrophic backtracking. They target injection
shapes rather than bare keywords: "please update my plan" passes,
"x'; DROP TABLE users" does not.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterator, Optional

import re2

from streamguard.moderation.definitions import PatternEntry

EXCERPT_LENGTH = 200

# ─── Pattern tables ───────────────────────────────────────────────────────────

SCRIPT_PATTERNS: list[PatternEntry] = [
    PatternEntry(pattern=re2.compile(r"(?i)<\s*script\b"), label="script-tag"),
    PatternEntry(pattern=re2.compile(r"(?i)javascript\s*:"), label="javascript-url"),
    PatternEntry(pattern=re2.compile(r"(?i)<[^>]*\bon[a-z]+\s*="), label="event-handler"),
]

SQL_PATTERNS: list[PatternEntry] = [
    PatternEntry(pattern=re2.compile(r"(?i)\bunion\s+(?:all\s+)?select\b"), label="union-select"),
    PatternEntry(
        pattern=re2.compile(r"(?i);\s*(?:drop|delete|insert|update|alter|create|truncate|exec)\b"),
        label="stacked-statement",
    ),
    PatternEntry(pattern=re2.compile(r"(?i)'\s*(?:or|and)\b[^=<>]*[=<>]"), label="tautology"),
    PatternEntry(pattern=re2.compile(r"(?i)\b(?:drop|truncate|alter)\s+table\b"), label="ddl"),
    PatternEntry(pattern=re2.compile(r"'\s*(?:--|#|/\*)"), label="comment-terminator"),
]

# Stripped from excerpts before they are stored; mirrors the script table.
_SANITIZERS: list[Any] = [
    re2.compile(r"(?is)<\s*script\b.*?</\s*script\s*>"),
    re2.compile(r"(?i)<\s*/?\s*script\b[^>]*>?"),
    re2.compile(r"(?i)javascript\s*:"),
    re2.compile(r"(?i)\bon[a-z]+\s*="),
]


@dataclass(frozen=True)
class MaliciousContent:
    """First injection pattern found in a body."""

    kind: str  # "script_injection" | "sql_injection"
    label: str
    path: str  # "$.comment.text", "$.tags[2]"

    @property
    def reason(self) -> str:
        kind = "Script" if self.kind == "script_injection" else "SQL"
        return f"{kind} injection attempt detected"


# ─── Scanning ─────────────────────────────────────────────────────────────────


def _strings(value: Any, path: str = "$") -> Iterator[tuple[str, str]]:
    if isinstance(value, str):
        yield path, value
    elif isinstance(value, dict):
        for key, item in value.items():
            child = f"{path}.{key}"
            yield child, str(key)
            yield from _strings(item, child)
    elif isinstance(value, list):
        for index, item in enumerate(value):
            yield from _strings(item, f"{path}[{index}]")


def find_malicious_content(body: Any) -> Optional[MaliciousContent]:
    """Return the first script or SQL injection found anywhere in `body`."""
    for path, text in _strings(body):
        for kind, table in (("script_injection", SCRIPT_PATTERNS), ("sql_injection", SQL_PATTERNS)):
            for entry in table:
                if entry.pattern.search(text):
                    return MaliciousContent(kind=kind, label=entry.label, path=path)
    return None


# ─── Sanitizing ───────────────────────────────────────────────────────────────


def sanitize_value(value: Any) -> Any:
    """Copy of `value` with script fragments removed from every string."""
    if isinstance(value, str):
        for pattern in _SANITIZERS:
            value = pattern.sub("", value)
        return value.strip()
    if isinstance(value, dict):
        return {sanitize_value(str(k)): sanitize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [sanitize_value(item) for item in value]
    return value


def sanitized_excerpt(body: Any) -> str:
    return json.dumps(sanitize_value(body), ensure_ascii=False)[:EXCERPT_LENGTH]
