from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
import logging
import requests

logger = logging.getLogger(__name__)


class ClassifierUnavailable(Exception):
    """The classifier could not produce a verdict. Never to be read as "safe"."""


@dataclass
class ClassifierResult:
    is_flagged: bool
    severity: str = "low"
    confidence: float = 0.0
    triggers: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClassifierResult":
        return cls(
            is_flagged=bool(data.get("isFlagged", data.get("is_flagged", False))),
            severity=str(data.get("severity", "low")),
            confidence=float(data.get("confidence", 0.0)),
            triggers=list(data.get("triggers") or []),
        )


class ContentClassifier(ABC):
    name: str = "classifier"

    @abstractmethod
    def classify(self, session_id: str, participant_id: str, content_sample: str) -> ClassifierResult:
        """Score one content sample. Raises ``ClassifierUnavailable`` on any failure."""
        ...


class HttpClassifier(ContentClassifier):
    name = "http_classifier"

    def __init__(self, url: str, timeout: float = 2.0, session: requests.Session | None = None):
        self.url = url
        self.timeout = timeout
        self._http = session or requests.Session()

    def classify(self, session_id: str, participant_id: str, content_sample: str) -> ClassifierResult:
        payload = {"sessionId": session_id, "participantId": participant_id, "contentSample": content_sample}
        try:
            resp = self._http.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            return ClassifierResult.from_dict(resp.json())
        except (requests.RequestException, ValueError) as e:
            raise ClassifierUnavailable(f"classifier call failed: {e}") from e


class UnconfiguredClassifier(ContentClassifier):
    """Stand-in when no classifier endpoint is configured: every call is unavailable."""

    name = "unconfigured_classifier"

    def classify(self, session_id: str, participant_id: str, content_sample: str) -> ClassifierResult:
        raise ClassifierUnavailable("no classifier endpoint configured")
