"""Pattern definitions for the text moderation pipeline.

All patterns are pre-compiled at module load time using google-re2, which
guarantees linear-time matching on hostile chat input. No pattern is
compiled per-request.

RE2 has no backreferences, so repeated-character runs are detected with
itertools.groupby in moderator.py instead of a ``(.)\\1+`` pattern.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import re2

# ---------------------------------------------------------------------------
# PatternEntry dataclass
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PatternEntry:
    """A compiled moderation pattern.

    Fields:
        pattern:     Pre-compiled re2 pattern object.
        label:       Short identifier used in logs and metadata (``"us-ssn"``).
        replacement: Text substituted for each match in filtered content.
    """

    pattern: Any  # re2._Regexp
    label: str
    replacement: str = "[REDACTED]"


# ===========================================================================
# PERSONAL INFORMATION
# ===========================================================================

PII_PATTERNS: list[PatternEntry] = [
    PatternEntry(pattern=re2.compile(r"\b\d{3}-\d{2}-\d{4}\b"), label="us-ssn"),
    PatternEntry(pattern=re2.compile(r"\b\d{3}-\d{3}-\d{4}\b"), label="phone-number"),
    PatternEntry(
        pattern=re2.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        label="email-address",
    ),
    PatternEntry(
        pattern=re2.compile(r"\b\d{4}\s?\d{4}\s?\d{4}\s?\d{4}\b"),
        label="card-number",
    ),
]

# ===========================================================================
# LINKS
# ===========================================================================

LINK_PATTERN = PatternEntry(
    pattern=re2.compile(r"(?i)https?://[^\s]+"),
    label="link",
    replacement="[LINK REMOVED]",
)

# A domain typed without a scheme ("www.cheap-views.xyz", "promo.ru/x").
# The leading (^|\s) keeps it from matching the host part of a full URL.
BARE_URL_PATTERN = re2.compile(
    r"(?i)(?:^|\s)(?:www\.[^\s]+|[a-z0-9-]+\.(?:com|net|org|io|xyz|biz|info|ru|tk|top|gg)(?:/[^\s]*)?)(?:\s|$)"
)

# ===========================================================================
# SPAM
# ===========================================================================

PROMO_PATTERN = re2.compile(
    r"(?i)\b(click here|buy now|free money|limited time|act now|subscribe now|"
    r"follow me|follow back|check out my|visit my|earn \$?\d+|cheap views|free followers)\b"
)

# Ten or more consecutive capitals ("FREEEEVIEWS").
CAPS_RUN_PATTERN = re2.compile(r"[A-Z]{10,}")

# Weighted spam heuristics; the sum is capped at 1.0.
SPAM_WEIGHTS: dict[str, float] = {
    "repeated_characters": 0.35,
    "excessive_caps": 0.25,
    "promotional_phrase": 0.4,
    "bare_url": 0.2,
}

# Uppercase share of letters above which text counts as shouting. Only
# applied when the text has at least CAPS_MIN_LETTERS letters.
CAPS_RATIO_THRESHOLD = 0.6
CAPS_MIN_LETTERS = 10

# ===========================================================================
# TOXICITY
# ===========================================================================

TOXIC_KEYWORDS: frozenset[str] = frozenset(
    {"hate", "kill", "die", "stupid", "idiot", "loser", "trash", "garbage"}
)

WORD_PATTERN = re2.compile(r"[A-Za-z0-9']+")


def compile_denylist(terms: list[str]) -> Any:
    """Compile the configured denylist into one case-insensitive word-boundary pattern."""
    escaped = "|".join(re2.escape(term) for term in terms if term)
    if not escaped:
        return None
    return re2.compile(rf"(?i)\b(?:{escaped})\b")
