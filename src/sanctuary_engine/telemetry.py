"""Last-write-wins audio/connection telemetry.

Telemetry arrives many times per second per participant and must never contend with
session mutations, so it lives outside the relational store and outside the session
locks. Readers merge the latest sample into participant views.
"""
from __future__ import annotations
import json
import threading
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Optional


@dataclass
class TransportSample:
    packet_loss: float  # percent
    rtt_ms: float
    jitter_ms: float = 0.0
    at: float = 0.0     # epoch seconds


@dataclass
class TelemetryState:
    audio_level: int = 0
    connection_status: str = "connecting"
    quality: str = "disconnected"
    updated_at: float = 0.0
    samples: list[TransportSample] = field(default_factory=list)


class InMemoryTelemetryStore:
    def __init__(self, window: int = 5):
        self.window = window
        self._states: dict[tuple[str, str], TelemetryState] = {}
        self._samples: dict[tuple[str, str], deque] = {}
        # Guards dict structure only; held for a few assignments.
        self._lock = threading.Lock()

    def write(self, session_id: str, participant_id: str, *, audio_level: int | None = None,
              connection_status: str | None = None, sample: TransportSample | None = None,
              quality: str | None = None, at: float = 0.0) -> TelemetryState:
        key = (session_id, participant_id)
        with self._lock:
            prev = self._states.get(key) or TelemetryState()
            samples = self._samples.setdefault(key, deque(maxlen=self.window))
            if sample is not None:
                samples.append(sample)
            state = TelemetryState(
                audio_level=prev.audio_level if audio_level is None else audio_level,
                connection_status=prev.connection_status if connection_status is None else connection_status,
                quality=prev.quality if quality is None else quality,
                updated_at=at or prev.updated_at,
                samples=list(samples),
            )
            self._states[key] = state
            return state

    def read(self, session_id: str, participant_id: str) -> Optional[TelemetryState]:
        return self._states.get((session_id, participant_id))

    def read_session(self, session_id: str) -> dict[str, TelemetryState]:
        with self._lock:
            return {pid: st for (sid, pid), st in self._states.items() if sid == session_id}

    def discard(self, session_id: str, participant_id: str | None = None) -> None:
        with self._lock:
            for key in list(self._states):
                if key[0] == session_id and (participant_id is None or key[1] == participant_id):
                    self._states.pop(key, None)
                    self._samples.pop(key, None)

    def sessions(self) -> set[str]:
        with self._lock:
            return {sid for sid, _ in self._states}


class RedisTelemetryStore:
    """Telemetry shared across processes; one hash per session keyed by participant."""

    PREFIX = "sanctuary:telemetry:"

    def __init__(self, client, window: int = 5):
        self._client = client
        self.window = window

    def _key(self, session_id: str) -> str:
        return self.PREFIX + session_id

    def write(self, session_id: str, participant_id: str, *, audio_level: int | None = None,
              connection_status: str | None = None, sample: TransportSample | None = None,
              quality: str | None = None, at: float = 0.0) -> TelemetryState:
        prev = self.read(session_id, participant_id) or TelemetryState()
        samples = list(prev.samples)
        if sample is not None:
            samples = (samples + [sample])[-self.window:]
        state = TelemetryState(
            audio_level=prev.audio_level if audio_level is None else audio_level,
            connection_status=prev.connection_status if connection_status is None else connection_status,
            quality=prev.quality if quality is None else quality,
            updated_at=at or prev.updated_at,
            samples=samples,
        )
        self._client.hset(self._key(session_id), participant_id, json.dumps(asdict(state)))
        self._client.sadd(self.PREFIX + "sessions", session_id)
        return state

    @staticmethod
    def _decode(raw) -> TelemetryState:
        data = json.loads(raw)
        data["samples"] = [TransportSample(**s) for s in data.get("samples", [])]
        return TelemetryState(**data)

    def read(self, session_id: str, participant_id: str) -> Optional[TelemetryState]:
        raw = self._client.hget(self._key(session_id), participant_id)
        return self._decode(raw) if raw else None

    def read_session(self, session_id: str) -> dict[str, TelemetryState]:
        out = {}
        for pid, raw in (self._client.hgetall(self._key(session_id)) or {}).items():
            pid = pid.decode() if isinstance(pid, bytes) else pid
            out[pid] = self._decode(raw)
        return out

    def discard(self, session_id: str, participant_id: str | None = None) -> None:
        if participant_id is None:
            self._client.delete(self._key(session_id))
            self._client.srem(self.PREFIX + "sessions", session_id)
        else:
            self._client.hdel(self._key(session_id), participant_id)

    def sessions(self) -> set[str]:
        members = self._client.smembers(self.PREFIX + "sessions") or set()
        return {m.decode() if isinstance(m, bytes) else m for m in members}
