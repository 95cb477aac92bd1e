"""ContentModerator — chat/comment text pipeline and media delegation.

Text pipeline (in order; each firing detector appends a reason and a
category and multiplies confidence, which starts at 1.0):

  1. length        > max_message_length           × 0.8   length_violation
  2. denylist      configured terms, masked "****" × 0.6   profanity
  3. spam          weighted heuristics > threshold × (1 - score)   spam
  4. PII           SSN / phone / email / card      × 0.5   personal_info
  5. links         URL outside allowed domains     × 0.7   unauthorized_links
  6. toxicity      keyword density > threshold     × (1 - score)   toxicity

Detectors analyse the original text; redactions accumulate in
filtered_content.

Action bands on the final confidence:
  < 0.3 reject, < 0.6 review, < 0.8 flag (still approved), else approve.
Any category in CRITICAL_MODERATION_CATEGORIES forces reject.

Fail closed: an unexpected error anywhere in the pipeline yields
approved=False, suggested_action="review".
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import urlsplit

from streamguard.config import ModerationConfig
from streamguard.constants import CONTENT_TYPES, CRITICAL_MODERATION_CATEGORIES
from streamguard.errors import InputValidationError
from streamguard.moderation.classifier import MediaClassifier, UnavailableMediaClassifier
from streamguard.moderation.definitions import (
    BARE_URL_PATTERN,
    CAPS_MIN_LETTERS,
    CAPS_RATIO_THRESHOLD,
    CAPS_RUN_PATTERN,
    LINK_PATTERN,
    PII_PATTERNS,
    PROMO_PATTERN,
    SPAM_WEIGHTS,
    TOXIC_KEYWORDS,
    WORD_PATTERN,
    compile_denylist,
)
from streamguard.utils.logger import PerformanceLogger, get_logger

if TYPE_CHECKING:
    from streamguard.audit.trail import AuditTrail

logger = get_logger(__name__)

# Media score thresholds (strictly greater than).
INAPPROPRIATE_THRESHOLD = 0.8
VIOLENCE_THRESHOLD = 0.7
ADULT_THRESHOLD = 0.9
MEDIA_SPAM_THRESHOLD = 0.8

_ACTION_SEVERITY = {"reject": "high", "review": "medium", "flag": "low"}


# ─── Result types ─────────────────────────────────────────────────────────────


@dataclass
class ModerationResult:
    approved: bool = True
    confidence: float = 1.0
    reasons: list[str] = field(default_factory=list)
    detected_categories: list[str] = field(default_factory=list)
    suggested_action: str = "approve"
    filtered_content: Optional[str] = None

    def add(self, reason: str, category: str, factor: float) -> None:
        self.reasons.append(reason)
        if category not in self.detected_categories:
            self.detected_categories.append(category)
        self.confidence = max(0.0, min(1.0, self.confidence * factor))

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "approved": self.approved,
            "confidence": round(self.confidence, 4),
            "reasons": self.reasons,
            "detectedCategories": self.detected_categories,
            "suggestedAction": self.suggested_action,
        }
        if self.filtered_content is not None:
            wire["filteredContent"] = self.filtered_content
        return wire


@dataclass(frozen=True)
class ModerationContext:
    """Request metadata attached to audit records of flagged content."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    stream_id: Optional[str] = None


def _replace_matches(text: str, pattern: Any, replacement: Any) -> str:
    """Rebuild `text` with each match replaced.

    `replacement` is a string or a callable taking the matched text.
    """
    pieces: list[str] = []
    last = 0
    for match in pattern.finditer(text):
        pieces.append(text[last:match.start()])
        matched = match.group(0)
        pieces.append(replacement(matched) if callable(replacement) else replacement)
        last = match.end()
    pieces.append(text[last:])
    return "".join(pieces)


# ─── ContentModerator ─────────────────────────────────────────────────────────


class ContentModerator:
    def __init__(
        self,
        config: Optional[ModerationConfig] = None,
        classifier: Optional[MediaClassifier] = None,
        audit: Optional["AuditTrail"] = None,
    ) -> None:
        self._config = config or ModerationConfig()
        self._classifier = classifier or UnavailableMediaClassifier()
        self._audit = audit
        self._denylist = compile_denylist(self._config.denylist)
        self._allowed_domains = [d.lower() for d in self._config.allowed_domains]

    async def moderate(
        self,
        content: str,
        content_type: str,
        user_id: str,
        context: Optional[ModerationContext] = None,
    ) -> ModerationResult:
        """Moderate one submission.

        Raises:
            InputValidationError: non-string content, unknown content_type or
                empty user_id. Policy rejections are returned, never raised.
        """
        if not isinstance(content, str):
            raise InputValidationError("content must be a string", field="content")
        if content_type not in CONTENT_TYPES:
            raise InputValidationError(
                f"Unsupported content_type: {content_type}", field="content_type"
            )
        if not user_id:
            raise InputValidationError("user_id is required", field="user_id")

        try:
            with PerformanceLogger("content_moderation", logger):
                if content_type == "text":
                    result = self._moderate_text(content)
                else:
                    result = await self._moderate_media(content, content_type)
                self._finalize(result)
        except Exception as exc:
            logger.error(
                "moderation_failed",
                user_id=user_id,
                content_type=content_type,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            result = ModerationResult(
                approved=False,
                confidence=0.0,
                reasons=["Moderation system error"],
                detected_categories=["system_error"],
                suggested_action="review",
            )

        if not result.approved or result.suggested_action != "approve":
            await self._record_violation(user_id, content, content_type, result, context)
        return result

    # ── Text ──────────────────────────────────────────────────────────────────

    def _moderate_text(self, content: str) -> ModerationResult:
        cfg = self._config
        result = ModerationResult()
        filtered = content

        if len(content) > cfg.max_message_length:
            result.add(
                f"Content exceeds maximum length of {cfg.max_message_length} characters",
                "length_violation",
                0.8,
            )
            filtered = filtered[: cfg.max_message_length]

        if cfg.enable_profanity_filter and self._denylist is not None:
            if self._denylist.search(content):
                result.add("Profanity detected", "profanity", 0.6)
                filtered = _replace_matches(filtered, self._denylist, lambda m: "*" * len(m))

        if cfg.enable_spam_detection:
            spam_score = self.spam_score(content)
            if spam_score > cfg.spam_threshold:
                result.add("Spam-like content detected", "spam", 1 - spam_score)

        if cfg.enable_pii_detection:
            hits = [entry for entry in PII_PATTERNS if entry.pattern.search(content)]
            if hits:
                result.add("Personal information detected", "personal_info", 0.5)
                for entry in hits:
                    filtered = _replace_matches(filtered, entry.pattern, entry.replacement)

        if cfg.enable_link_filtering:
            links = [m.group(0) for m in LINK_PATTERN.pattern.finditer(content)]
            if any(not self._domain_allowed(link) for link in links):
                result.add("Unauthorized links detected", "unauthorized_links", 0.7)
                filtered = _replace_matches(
                    filtered,
                    LINK_PATTERN.pattern,
                    lambda m: m if self._domain_allowed(m) else LINK_PATTERN.replacement,
                )

        if cfg.enable_toxicity_detection:
            toxicity = self.toxicity_score(content)
            if toxicity > cfg.toxicity_threshold:
                result.add("Toxic content detected", "toxicity", 1 - toxicity)

        if filtered != content:
            result.filtered_content = filtered
        return result

    def spam_score(self, content: str) -> float:
        """Weighted sum of spam heuristics, capped at 1.0."""
        score = 0.0
        longest_run = max(
            (len(list(group)) for char, group in itertools.groupby(content) if not char.isspace()),
            default=0,
        )
        if longest_run > self._config.max_repeated_characters:
            score += SPAM_WEIGHTS["repeated_characters"]

        letters = [c for c in content if c.isalpha()]
        upper = sum(1 for c in letters if c.isupper())
        shouting = len(letters) >= CAPS_MIN_LETTERS and upper / len(letters) > CAPS_RATIO_THRESHOLD
        if shouting or CAPS_RUN_PATTERN.search(content):
            score += SPAM_WEIGHTS["excessive_caps"]

        if PROMO_PATTERN.search(content):
            score += SPAM_WEIGHTS["promotional_phrase"]
        if BARE_URL_PATTERN.search(content):
            score += SPAM_WEIGHTS["bare_url"]
        return min(score, 1.0)

    @staticmethod
    def toxicity_score(content: str) -> float:
        words = [w.lower() for w in WORD_PATTERN.findall(content)]
        if not words:
            return 0.0
        toxic = sum(1 for w in words if w in TOXIC_KEYWORDS)
        return min(toxic / len(words) * 2, 1.0)

    def _domain_allowed(self, url: str) -> bool:
        host = (urlsplit(url).hostname or "").lower()
        return any(host == d or host.endswith("." + d) for d in self._allowed_domains)

    # ── Media ─────────────────────────────────────────────────────────────────

    async def _moderate_media(self, content: str, content_type: str) -> ModerationResult:
        result = ModerationResult()
        try:
            scores = await self._classifier.classify(content, content_type)
        except Exception as exc:
            logger.warning("media_classification_unavailable", error=str(exc))
            result.add("Unable to verify media content", "moderation_error", 0.5)
            return result

        if scores.inappropriate > INAPPROPRIATE_THRESHOLD:
            result.add(
                f"Inappropriate {content_type} content detected",
                "inappropriate_media",
                1 - scores.inappropriate,
            )
        if scores.violence > VIOLENCE_THRESHOLD:
            result.add("Violent content detected", "violence", 1 - scores.violence)
        if scores.adult > ADULT_THRESHOLD:
            result.add("Adult content detected", "adult_content", 1 - scores.adult)
        if scores.spam > MEDIA_SPAM_THRESHOLD:
            result.add("Spam media detected", "spam", 1 - scores.spam)
        return result

    # ── Decision ──────────────────────────────────────────────────────────────

    @staticmethod
    def _finalize(result: ModerationResult) -> None:
        if result.confidence < 0.3:
            result.suggested_action, result.approved = "reject", False
        elif result.confidence < 0.6:
            result.suggested_action, result.approved = "review", False
        elif result.confidence < 0.8:
            result.suggested_action, result.approved = "flag", True
        else:
            result.suggested_action, result.approved = "approve", True

        if CRITICAL_MODERATION_CATEGORIES.intersection(result.detected_categories):
            result.suggested_action, result.approved = "reject", False

    async def _record_violation(
        self,
        user_id: str,
        content: str,
        content_type: str,
        result: ModerationResult,
        context: Optional[ModerationContext],
    ) -> None:
        if self._audit is None:
            return
        context = context or ModerationContext()
        excerpt = None
        if content_type == "text" and "system_error" not in result.detected_categories:
            shown = result.filtered_content if result.filtered_content is not None else content
            excerpt = shown[:100]
        await self._audit.track_security_event(
            user_id,
            "content_violation",
            _ACTION_SEVERITY.get(result.suggested_action, "medium"),
            outcome="failure" if not result.approved else "partial",
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            metadata={
                "content_type": content_type,
                "reasons": result.reasons,
                "detected_categories": result.detected_categories,
                "confidence": result.confidence,
                "suggested_action": result.suggested_action,
                "stream_id": context.stream_id,
                "filtered_excerpt": excerpt,
            },
        )
