"""State vocabularies and transition tables for sessions, rooms and alerts."""
from __future__ import annotations
from enum import Enum


class SessionStatus(str, Enum):
    SCHEDULED = "scheduled"
    WAITING = "waiting"    # lobby open, countdown running
    LIVE = "live"
    ACTIVE = "active"      # live with at least one admitted member
    ENDED = "ended"


OPEN_STATUSES = {SessionStatus.LIVE.value, SessionStatus.ACTIVE.value}
PRE_START_STATUSES = {SessionStatus.SCHEDULED.value, SessionStatus.WAITING.value}


class AccessType(str, Enum):
    PUBLIC = "public"
    INVITE_ONLY = "invite_only"
    PRIVATE = "private"


class Role(str, Enum):
    HOST = "host"
    MODERATOR = "moderator"
    MEMBER = "member"


PRIVILEGED_ROLES = {Role.HOST.value, Role.MODERATOR.value}


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class RoomStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    ENDED = "ended"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


ALERT_TRANSITIONS: dict[str, set[str]] = {
    AlertStatus.ACTIVE.value: {AlertStatus.ACKNOWLEDGED.value, AlertStatus.ESCALATED.value, AlertStatus.RESOLVED.value},
    AlertStatus.ACKNOWLEDGED.value: {AlertStatus.ESCALATED.value, AlertStatus.RESOLVED.value},
    AlertStatus.ESCALATED.value: {AlertStatus.RESOLVED.value},
    AlertStatus.RESOLVED.value: set(),
}


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_ORDER.index(self)

    def raised(self) -> "Severity":
        return SEVERITY_ORDER[min(self.rank + 1, len(SEVERITY_ORDER) - 1)]


SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]

# Labels emitted by the crisis detector of the web client.
SEVERITY_ALIASES = {
    "mild": Severity.LOW,
    "moderate": Severity.MEDIUM,
}


def parse_severity(raw: str) -> Severity:
    key = (raw or "").strip().lower()
    if key in SEVERITY_ALIASES:
        return SEVERITY_ALIASES[key]
    return Severity(key)


class ConnectionQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    POOR = "poor"
    DISCONNECTED = "disconnected"
