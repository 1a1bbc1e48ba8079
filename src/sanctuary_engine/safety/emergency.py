from __future__ import annotations
from abc import ABC, abstractmethod
import json
import logging
import requests

logger = logging.getLogger(__name__)


class EmergencyNotifier(ABC):
    name: str = "emergency"

    @abstractmethod
    def notify(self, session_id: str, participant_id: str, severity: str, alert_id: str) -> None:
        ...


class WebhookEmergencyNotifier(EmergencyNotifier):
    name = "emergency_webhook"

    def __init__(self, url: str, timeout: float = 5.0, session: requests.Session | None = None):
        self.url = url
        self.timeout = timeout
        self._http = session or requests.Session()

    def notify(self, session_id: str, participant_id: str, severity: str, alert_id: str) -> None:
        resp = self._http.post(self.url, json={
            "sessionId": session_id,
            "participantId": participant_id,
            "severity": severity,
            "alertId": alert_id,
        }, timeout=self.timeout)
        resp.raise_for_status()


class LoggingEmergencyNotifier(EmergencyNotifier):
    """Used when no webhook is configured; the escalation is still visible in logs."""

    name = "emergency_log"

    def notify(self, session_id: str, participant_id: str, severity: str, alert_id: str) -> None:
        logging.getLogger("app").warning(json.dumps({
            "event": "emergency_escalation",
            "session_id": session_id,
            "participant_id": participant_id,
            "severity": severity,
            "alert_id": alert_id,
        }))
