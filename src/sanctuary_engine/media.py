from __future__ import annotations
import hmac
import hashlib
import threading
import time
from dataclasses import dataclass
from sanctuary_engine.errors import Forbidden


@dataclass(frozen=True)
class MediaGrant:
    channel_name: str
    join_token: str
    expires_at: int


def session_channel(prefix: str, session_id: str) -> str:
    return f"{prefix}-{session_id}"


def room_channel(prefix: str, session_id: str, room_id: str) -> str:
    return f"{prefix}-{session_id}-room-{room_id}"


class MediaTokenIssuer:
    """Allocates and revokes join tokens for the opaque media transport.

    Token format: ``<channel>:<participant>:<expires>:<hex hmac-sha256>``; the MAC covers
    ``<expires>.<channel>:<participant>``. The media payload is never inspected.
    """

    def __init__(self, secret: str, ttl_seconds: int = 4 * 3600, clock=time.time):
        self._secret = secret.encode()
        self._ttl = ttl_seconds
        self._clock = clock
        self._revoked: set[str] = set()
        self._lock = threading.Lock()

    def _sign(self, channel: str, participant_id: str, expires: int) -> str:
        msg = f"{expires}.{channel}:{participant_id}".encode()
        return hmac.new(self._secret, msg=msg, digestmod=hashlib.sha256).hexdigest()

    def allocate(self, channel: str, participant_id: str) -> MediaGrant:
        expires = int(self._clock()) + self._ttl
        sig = self._sign(channel, participant_id, expires)
        return MediaGrant(channel, f"{channel}:{participant_id}:{expires}:{sig}", expires)

    def revoke(self, token: str | None) -> None:
        if token:
            with self._lock:
                self._revoked.add(token)

    def verify(self, token: str) -> tuple[str, str]:
        """Return ``(channel, participant_id)`` for a valid token."""
        try:
            channel, participant_id, expires_str, sig = token.rsplit(":", 3)
            expires = int(expires_str)
        except ValueError:
            raise Forbidden("invalid media token")
        if token in self._revoked:
            raise Forbidden("media token revoked")
        if self._clock() > expires:
            raise Forbidden("media token expired")
        expected = self._sign(channel, participant_id, expires)
        if not hmac.compare_digest(expected, sig):
            raise Forbidden("invalid media token signature")
        return channel, participant_id
