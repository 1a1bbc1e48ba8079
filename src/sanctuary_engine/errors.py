"""Error taxonomy shared by every engine component.

Each error carries a stable ``code`` that clients can switch on, a human readable
message naming the specific reason, and the HTTP status the API layer maps it to.
"""
from __future__ import annotations


class SanctuaryError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> dict:
        body = {"error": self.code, "detail": self.message}
        if self.context:
            body["context"] = self.context
        return body


class NotFound(SanctuaryError):
    code = "not_found"
    status_code = 404


class Forbidden(SanctuaryError):
    code = "forbidden"
    status_code = 403


class ValidationError(SanctuaryError):
    code = "validation_error"
    status_code = 422


class Conflict(SanctuaryError):
    code = "conflict"
    status_code = 409


class NotAcknowledged(Conflict):
    code = "not_acknowledged"


class NotYetOpen(Conflict):
    code = "not_yet_open"


class RoomFull(Conflict):
    code = "room_full"


class Unavailable(SanctuaryError):
    code = "unavailable"
    status_code = 503


class PolicyViolation(SanctuaryError):
    code = "policy_violation"
    status_code = 409


__all__ = [
    "SanctuaryError",
    "NotFound",
    "Forbidden",
    "ValidationError",
    "Conflict",
    "NotAcknowledged",
    "NotYetOpen",
    "RoomFull",
    "Unavailable",
    "PolicyViolation",
]
