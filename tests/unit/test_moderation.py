"""Unit tests for streamguard/moderation — text pipeline, media delegation
and violation auditing."""

from __future__ import annotations

import httpx
import pytest

from streamguard.audit.models import AuditFilters
from streamguard.audit.trail import AuditTrail
from streamguard.config import ModerationConfig
from streamguard.errors import InputValidationError
from streamguard.moderation.classifier import (
    ClassifierUnavailableError,
    HttpMediaClassifier,
    MediaScores,
)
from streamguard.moderation.moderator import ContentModerator, ModerationContext


class FakeClassifier:
    def __init__(self, scores: MediaScores) -> None:
        self.scores = scores
        self.calls: list[tuple[str, str]] = []

    async def classify(self, content: str, content_type: str) -> MediaScores:
        self.calls.append((content, content_type))
        return self.scores


@pytest.fixture
def moderator(audit: AuditTrail) -> ContentModerator:
    return ContentModerator(ModerationConfig(), audit=audit)


# ─── Text pipeline ────────────────────────────────────────────────────────────


class TestTextModeration:
    async def test_clean_message_is_approved(self, moderator: ContentModerator) -> None:
        result = await moderator.moderate("great stream, thanks!", "text", "u1")
        assert result.approved is True
        assert result.suggested_action == "approve"
        assert result.confidence == 1.0
        assert result.reasons == []
        assert result.filtered_content is None

    async def test_spam_burst_is_rejected(self, moderator: ContentModerator) -> None:
        result = await moderator.moderate("aaaaaaaaaa SPAM CLICK HERE NOW", "text", "u1")
        assert result.approved is False
        assert result.suggested_action == "reject"
        assert result.confidence < 0.3
        assert "spam" in result.detected_categories
        assert "profanity" in result.detected_categories
        assert result.filtered_content == "aaaaaaaaaa **** CLICK HERE NOW"

    async def test_overlong_message_is_truncated(self, moderator: ContentModerator) -> None:
        result = await moderator.moderate("hello " * 100, "text", "u1")
        assert result.detected_categories == ["length_violation"]
        assert result.confidence == pytest.approx(0.8)
        assert result.suggested_action == "approve"
        assert len(result.filtered_content) == 500

    async def test_denylisted_term_is_masked_and_flagged(self, moderator: ContentModerator) -> None:
        result = await moderator.moderate("that looks fake to me", "text", "u1")
        assert result.suggested_action == "flag"
        assert result.approved is True
        assert result.filtered_content == "that looks **** to me"

    async def test_personal_information_forces_reject(self, moderator: ContentModerator) -> None:
        result = await moderator.moderate("call me at 555-123-4567", "text", "u1")
        assert result.suggested_action == "reject"
        assert result.approved is False
        assert "personal_info" in result.detected_categories
        assert result.filtered_content == "call me at [REDACTED]"

    async def test_email_is_redacted(self, moderator: ContentModerator) -> None:
        result = await moderator.moderate("mail viewer@example.org", "text", "u1")
        assert result.filtered_content == "mail [REDACTED]"

    async def test_unapproved_link_is_removed(self, moderator: ContentModerator) -> None:
        result = await moderator.moderate("watch https://evil.example.com/x now", "text", "u1")
        assert result.detected_categories == ["unauthorized_links"]
        assert result.suggested_action == "flag"
        assert result.filtered_content == "watch [LINK REMOVED] now"

    async def test_allowed_domain_link_passes(self, moderator: ContentModerator) -> None:
        result = await moderator.moderate("clip at https://www.twitch.tv/videos/1", "text", "u1")
        assert result.suggested_action == "approve"
        assert result.filtered_content is None

    async def test_toxic_message_is_rejected(self, moderator: ContentModerator) -> None:
        result = await moderator.moderate("you stupid idiot loser", "text", "u1")
        assert result.detected_categories == ["toxicity"]
        assert result.suggested_action == "reject"

    async def test_disabled_detectors_do_not_fire(self, audit: AuditTrail) -> None:
        config = ModerationConfig(enable_pii_detection=False, enable_profanity_filter=False)
        moderator = ContentModerator(config, audit=audit)
        result = await moderator.moderate("fake number 555-123-4567", "text", "u1")
        assert result.suggested_action == "approve"


class TestSpamScore:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("hello there", 0.0),
            ("soooooo good", 0.35),
            ("check out my channel", 0.4),
            ("visit promo.xyz today", 0.2),
            ("THIS IS AMAZING STREAM", 0.25),
        ],
    )
    def test_weights(self, moderator: ContentModerator, text: str, expected: float) -> None:
        assert moderator.spam_score(text) == pytest.approx(expected)

    def test_capped_at_one(self, moderator: ContentModerator) -> None:
        assert moderator.spam_score("FREEEEEEEEEEE FOLLOWERS CLICK HERE www.promo.xyz") == 1.0

    def test_toxicity_density(self) -> None:
        assert ContentModerator.toxicity_score("") == 0.0
        assert ContentModerator.toxicity_score("you are trash at this game mate") == pytest.approx(2 / 7)


# ─── Media ────────────────────────────────────────────────────────────────────


class TestMediaModeration:
    async def test_low_scores_are_approved(self, audit: AuditTrail) -> None:
        classifier = FakeClassifier(MediaScores(inappropriate=0.1, violence=0.2, adult=0.05, spam=0.3))
        moderator = ContentModerator(classifier=classifier, audit=audit)
        result = await moderator.moderate("s3://uploads/thumb.png", "image", "u1")
        assert result.suggested_action == "approve"
        assert classifier.calls == [("s3://uploads/thumb.png", "image")]

    async def test_adult_content_is_rejected(self, audit: AuditTrail) -> None:
        moderator = ContentModerator(classifier=FakeClassifier(MediaScores(adult=0.95)), audit=audit)
        result = await moderator.moderate("s3://uploads/clip.mp4", "video", "u1")
        assert result.suggested_action == "reject"
        assert result.detected_categories == ["adult_content"]

    async def test_threshold_is_strict(self, audit: AuditTrail) -> None:
        moderator = ContentModerator(classifier=FakeClassifier(MediaScores(violence=0.7)), audit=audit)
        result = await moderator.moderate("s3://uploads/clip.mp4", "video", "u1")
        assert result.detected_categories == []

    async def test_unavailable_classifier_sends_to_review(self, moderator: ContentModerator) -> None:
        result = await moderator.moderate("s3://uploads/voice.ogg", "audio", "u1")
        assert result.approved is False
        assert result.suggested_action == "review"
        assert result.detected_categories == ["moderation_error"]

    async def test_http_classifier_parses_scores(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"inappropriate": 0.9, "violence": 0.1, "adult": 0.0, "spam": 0.0})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        classifier = HttpMediaClassifier("http://classifier.test/v1/classify", client=client)
        scores = await classifier.classify("s3://x.png", "image")
        assert scores.inappropriate == 0.9
        await classifier.aclose()

    async def test_http_classifier_rejects_out_of_range_scores(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"adult": 1.7})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        classifier = HttpMediaClassifier("http://classifier.test/v1/classify", client=client)
        with pytest.raises(ClassifierUnavailableError):
            await classifier.classify("s3://x.png", "image")
        await classifier.aclose()


# ─── Failure handling and auditing ────────────────────────────────────────────


class TestFailClosed:
    async def test_pipeline_error_fails_closed(self, moderator: ContentModerator, monkeypatch: pytest.MonkeyPatch) -> None:
        def explode(content: str) -> float:
            raise RuntimeError("boom")

        monkeypatch.setattr(moderator, "spam_score", explode)
        result = await moderator.moderate("hello", "text", "u1")
        assert result.approved is False
        assert result.suggested_action == "review"
        assert result.detected_categories == ["system_error"]

    @pytest.mark.parametrize(
        "content,content_type,user_id",
        [(None, "text", "u1"), ("hi", "hologram", "u1"), ("hi", "text", "")],
    )
    async def test_invalid_input_raises(
        self, moderator: ContentModerator, content: object, content_type: str, user_id: str
    ) -> None:
        with pytest.raises(InputValidationError):
            await moderator.moderate(content, content_type, user_id)  # type: ignore[arg-type]


class TestViolationAudit:
    async def test_rejection_is_audited_with_redacted_excerpt(
        self, moderator: ContentModerator, audit: AuditTrail
    ) -> None:
        context = ModerationContext(ip_address="203.0.113.5", stream_id="stream_9")
        await moderator.moderate("call me at 555-123-4567", "text", "u1", context)

        (event,) = await audit.query(AuditFilters(action="security_content_violation"))
        assert event.user_id == "u1"
        assert event.severity == "high"
        assert event.outcome == "failure"
        assert event.ip_address == "203.0.113.5"
        assert event.metadata["stream_id"] == "stream_9"
        assert event.metadata["filtered_excerpt"] == "call me at [REDACTED]"

    async def test_flag_is_audited_as_partial(self, moderator: ContentModerator, audit: AuditTrail) -> None:
        await moderator.moderate("that looks fake to me", "text", "u1")
        (event,) = await audit.query(AuditFilters(action="security_content_violation"))
        assert event.outcome == "partial"
        assert event.severity == "low"

    async def test_approved_content_is_not_audited(self, moderator: ContentModerator, audit: AuditTrail) -> None:
        await moderator.moderate("great stream", "text", "u1")
        assert await audit.query(AuditFilters(action="security_content_violation")) == []
