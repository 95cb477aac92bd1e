"""Media classifier interface for image/video/audio moderation.

StreamGuard does not run vision or audio models. Media submissions are sent
to an external classification service that returns four scores in [0, 1]:

    {"inappropriate": 0.1, "violence": 0.0, "adult": 0.02, "spam": 0.3}

HttpMediaClassifier POSTs ``{"content": <ref or data URL>, "content_type": ...}``
to `moderation.classifier_url` with httpx. Without a configured URL the
UnavailableMediaClassifier is used; it raises on every call, which the
moderator records as a moderation_error (the submission goes to review).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

import httpx

from streamguard.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class MediaScores:
    inappropriate: float = 0.0
    violence: float = 0.0
    adult: float = 0.0
    spam: float = 0.0

    @classmethod
    def from_payload(cls, payload: dict) -> "MediaScores":
        def score(name: str) -> float:
            value = float(payload.get(name, 0.0))
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"classifier score {name}={value} outside [0, 1]")
            return value

        return cls(
            inappropriate=score("inappropriate"),
            violence=score("violence"),
            adult=score("adult"),
            spam=score("spam"),
        )


class ClassifierUnavailableError(Exception):
    """Raised when no classifier is configured or the service failed."""


@runtime_checkable
class MediaClassifier(Protocol):
    async def classify(self, content: str, content_type: str) -> MediaScores:
        ...


class UnavailableMediaClassifier:
    async def classify(self, content: str, content_type: str) -> MediaScores:
        raise ClassifierUnavailableError("No media classifier configured")


class HttpMediaClassifier:
    """httpx client for the external classification service."""

    def __init__(
        self,
        url: str,
        timeout_s: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def classify(self, content: str, content_type: str) -> MediaScores:
        try:
            response = await self._client.post(
                self._url, json={"content": content, "content_type": content_type}
            )
            response.raise_for_status()
            return MediaScores.from_payload(response.json())
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "media_classifier_failed",
                url=self._url,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise ClassifierUnavailableError(str(exc)) from exc

    async def aclose(self) -> None:
        await self._client.aclose()


assert isinstance(UnavailableMediaClassifier(), MediaClassifier)
