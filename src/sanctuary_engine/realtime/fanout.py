"""Per-session publish/subscribe fan-out.

Every event published for a session gets the next per-session sequence number and is
delivered to each subscriber of that session in sequence order. Mutating components
publish while holding the session lock, so the sequence reflects the causal order of
state changes (an alert is always created before it is resolved).

Subscriber buffers are bounded. On overflow ephemeral events (telemetry, reactions) are
dropped first, then ordinary state deltas; safety events are never dropped. A
subscriber that lost a state delta is flagged ``needs_resync`` and should fetch a fresh
snapshot.
"""
from __future__ import annotations
import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional
from prometheus_client import Counter, Gauge
from sanctuary_engine.clock import utcnow

logger = logging.getLogger(__name__)

FANOUT_PUBLISHED = Counter('fanout_events_published_total', 'Events published', ['type', 'priority'])
FANOUT_DROPPED = Counter('fanout_events_dropped_total', 'Events dropped from full subscriber buffers', ['priority'])
FANOUT_SUBSCRIBERS = Gauge('fanout_subscribers', 'Active fan-out subscriptions')

SAFETY = "safety"
NORMAL = "normal"
EPHEMERAL = "ephemeral"
_DROP_ORDER = (EPHEMERAL, NORMAL)


@dataclass
class Event:
    session_id: str
    type: str
    payload: dict[str, Any]
    priority: str = NORMAL
    seq: int = 0
    ts: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "seq": self.seq,
            "type": self.type,
            "priority": self.priority,
            "ts": self.ts.isoformat(),
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            session_id=data["session_id"],
            type=data["type"],
            payload=data.get("payload") or {},
            priority=data.get("priority", NORMAL),
            seq=int(data.get("seq", 0)),
            ts=datetime.fromisoformat(data["ts"]) if data.get("ts") else utcnow(),
        )


class Subscription:
    def __init__(self, session_id: str, buffer_size: int = 256,
                 on_ready: Optional[Callable[[], None]] = None):
        self.session_id = session_id
        self.buffer_size = max(1, buffer_size)
        self.on_ready = on_ready
        self.needs_resync = False
        self.dropped = 0
        self.closed = False
        self._buffer: deque[Event] = deque()
        self._last_seq = 0
        self._cond = threading.Condition()

    def deliver(self, event: Event) -> None:
        with self._cond:
            if self.closed or event.seq <= self._last_seq:
                return
            self._last_seq = event.seq
            if len(self._buffer) >= self.buffer_size and not self._make_room(event):
                return
            self._buffer.append(event)
            self._cond.notify_all()
        if self.on_ready is not None:
            self.on_ready()

    def _make_room(self, incoming: Event) -> bool:
        for priority in _DROP_ORDER:
            if incoming.priority == priority and not any(e.priority == priority for e in self._buffer):
                # Nothing cheaper than the incoming event is buffered; drop it instead.
                self._record_drop(incoming)
                return False
            for victim in self._buffer:
                if victim.priority == priority:
                    self._buffer.remove(victim)
                    self._record_drop(victim)
                    return True
        # Only safety events buffered: safety is never dropped, let the buffer grow.
        return True

    def _record_drop(self, event: Event) -> None:
        self.dropped += 1
        if event.priority != EPHEMERAL:
            self.needs_resync = True
        FANOUT_DROPPED.labels(priority=event.priority).inc()

    def get(self, timeout: float | None = None) -> Optional[Event]:
        with self._cond:
            if not self._buffer and not self.closed:
                self._cond.wait(timeout)
            if self._buffer:
                return self._buffer.popleft()
            return None

    def drain(self) -> list[Event]:
        with self._cond:
            events = list(self._buffer)
            self._buffer.clear()
            return events

    def close(self) -> None:
        with self._cond:
            self.closed = True
            self._cond.notify_all()
        if self.on_ready is not None:
            self.on_ready()


PendingEvent = tuple[str, dict, str]  # (type, payload, priority)


def publish_all(broker, session_id: str, events: list[PendingEvent]) -> list[Event]:
    """Publish events collected during a committed transaction, in order."""
    return [broker.publish(session_id, type_, payload, priority) for type_, payload, priority in events]


class _Channel:
    def __init__(self):
        self.lock = threading.Lock()
        self.seq = 0
        self.subscribers: list[Subscription] = []


class LocalBroker:
    """In-process broker; one channel per session."""

    def __init__(self, buffer_size: int = 256):
        self.buffer_size = buffer_size
        self._channels: dict[str, _Channel] = {}
        self._registry_lock = threading.Lock()

    def _channel(self, session_id: str) -> _Channel:
        with self._registry_lock:
            channel = self._channels.get(session_id)
            if channel is None:
                channel = _Channel()
                self._channels[session_id] = channel
            return channel

    def publish(self, session_id: str, type: str, payload: dict[str, Any], priority: str = NORMAL) -> Event:
        channel = self._channel(session_id)
        with channel.lock:
            channel.seq += 1
            event = Event(session_id=session_id, type=type, payload=payload, priority=priority, seq=channel.seq)
            subscribers = list(channel.subscribers)
            for sub in subscribers:
                sub.deliver(event)
        FANOUT_PUBLISHED.labels(type=type, priority=priority).inc()
        return event

    def subscribe(self, session_id: str, on_ready: Optional[Callable[[], None]] = None) -> Subscription:
        sub = Subscription(session_id, self.buffer_size, on_ready)
        channel = self._channel(session_id)
        with channel.lock:
            sub._last_seq = channel.seq
            channel.subscribers.append(sub)
        FANOUT_SUBSCRIBERS.inc()
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._registry_lock:
            channel = self._channels.get(sub.session_id)
        if channel is not None:
            with channel.lock:
                if sub in channel.subscribers:
                    channel.subscribers.remove(sub)
                    FANOUT_SUBSCRIBERS.dec()
        sub.close()

    def last_seq(self, session_id: str) -> int:
        with self._registry_lock:
            channel = self._channels.get(session_id)
        return channel.seq if channel is not None else 0

    def retire(self, session_id: str) -> None:
        """Drop an ended session's channel and close its subscriptions.

        Events already delivered stay readable from the closed subscriptions. Anything
        published for the session afterwards starts a new channel at sequence 1.
        """
        with self._registry_lock:
            channel = self._channels.pop(session_id, None)
        if channel is None:
            return
        with channel.lock:
            subscribers, channel.subscribers = channel.subscribers, []
        for sub in subscribers:
            FANOUT_SUBSCRIBERS.dec()
            sub.close()

    def close(self) -> None:
        return None


# INCR and PUBLISH in one script so publish order always matches sequence order.
_PUBLISH_SCRIPT = """
local seq = redis.call('INCR', KEYS[1])
redis.call('PUBLISH', ARGV[1], seq .. '|' .. ARGV[2])
return seq
"""


class RedisBroker:
    """Cross-process broker over Redis pub/sub.

    Publishers in any process (API workers, Celery workers) push to
    ``sanctuary:events:<session>``; each process runs one listener thread that feeds
    local subscriptions.
    """

    CHANNEL_PREFIX = "sanctuary:events:"
    SEQ_PREFIX = "sanctuary:seq:"
    RETIRED_SEQ_TTL_SECONDS = 86400

    def __init__(self, client, buffer_size: int = 256):
        self._client = client
        self.buffer_size = buffer_size
        self._publish = client.register_script(_PUBLISH_SCRIPT)
        self._subs: dict[str, list[Subscription]] = {}
        self._lock = threading.Lock()
        self._pubsub = None
        self._thread: Optional[threading.Thread] = None

    def publish(self, session_id: str, type: str, payload: dict[str, Any], priority: str = NORMAL) -> Event:
        event = Event(session_id=session_id, type=type, payload=payload, priority=priority)
        body = json.dumps({k: v for k, v in event.to_dict().items() if k != "seq"}, default=str)
        event.seq = int(self._publish(keys=[self.SEQ_PREFIX + session_id],
                                      args=[self.CHANNEL_PREFIX + session_id, body]))
        FANOUT_PUBLISHED.labels(type=type, priority=priority).inc()
        return event

    def subscribe(self, session_id: str, on_ready: Optional[Callable[[], None]] = None) -> Subscription:
        sub = Subscription(session_id, self.buffer_size, on_ready)
        sub._last_seq = self.last_seq(session_id)
        with self._lock:
            self._subs.setdefault(session_id, []).append(sub)
            self._ensure_listener()
        FANOUT_SUBSCRIBERS.inc()
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.session_id, [])
            if sub in subs:
                subs.remove(sub)
                FANOUT_SUBSCRIBERS.dec()
            if not subs:
                self._subs.pop(sub.session_id, None)
        sub.close()

    def retire(self, session_id: str) -> None:
        """Let the sequence counter of an ended session expire.

        Local subscriptions are left to finish on ``session.ended``, which may still be
        in flight through pub/sub.
        """
        self._client.expire(self.SEQ_PREFIX + session_id, self.RETIRED_SEQ_TTL_SECONDS)

    def last_seq(self, session_id: str) -> int:
        raw = self._client.get(self.SEQ_PREFIX + session_id)
        return int(raw) if raw else 0

    def _ensure_listener(self) -> None:
        if self._thread is not None:
            return
        self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.psubscribe(self.CHANNEL_PREFIX + "*")
        self._thread = threading.Thread(target=self._listen, name="sanctuary-fanout", daemon=True)
        self._thread.start()

    def _listen(self) -> None:
        for message in self._pubsub.listen():
            if message.get("type") != "pmessage":
                continue
            try:
                self.dispatch_raw(message["data"])
            except (ValueError, KeyError) as e:
                logger.warning(f"Discarding malformed fan-out message: {e}")

    def dispatch_raw(self, data) -> None:
        if isinstance(data, bytes):
            data = data.decode()
        seq_str, body = data.split("|", 1)
        payload = json.loads(body)
        payload["seq"] = int(seq_str)
        event = Event.from_dict(payload)
        with self._lock:
            subs = list(self._subs.get(event.session_id, []))
        for sub in subs:
            sub.deliver(event)

    def close(self) -> None:
        if self._pubsub is not None:
            self._pubsub.close()
