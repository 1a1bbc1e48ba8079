"""Per-session mutual exclusion.

Every mutating operation on a session (admission, room changes, alert actions) runs
inside ``locks.hold(session_id)``. Operations on distinct sessions never share a lock.
Telemetry updates do not take these locks.
"""
from __future__ import annotations
import threading
import time
from contextlib import contextmanager
from typing import Iterator
from prometheus_client import Histogram
from sanctuary_engine.errors import Unavailable

LOCK_WAIT = Histogram('session_lock_wait_seconds', 'Time spent waiting for a session lock', ['backend'],
                      buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 5))


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class SessionLockRegistry:
    """In-process registry: one re-entrant lock per session id.

    An entry lives only while some thread holds or waits for it, so ended sessions leave
    nothing behind and every contender for a session shares the same lock.
    """

    backend = "local"

    def __init__(self):
        self._locks: dict[str, _Entry] = {}
        self._registry_lock = threading.Lock()

    def _checkout(self, session_id: str) -> _Entry:
        with self._registry_lock:
            entry = self._locks.get(session_id)
            if entry is None:
                entry = _Entry()
                self._locks[session_id] = entry
            entry.users += 1
            return entry

    def _checkin(self, session_id: str, entry: _Entry) -> None:
        with self._registry_lock:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(session_id, None)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        entry = self._checkout(session_id)
        try:
            start = time.time()
            entry.lock.acquire()
            LOCK_WAIT.labels(backend=self.backend).observe(time.time() - start)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(session_id, entry)


class RedisSessionLockRegistry:
    """Cross-process locks for deployments where API workers and Celery share sessions."""

    backend = "redis"

    def __init__(self, client, timeout: float = 10.0, blocking_timeout: float | None = None):
        self._client = client
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout
        # Redis locks are not re-entrant; track holders per thread.
        self._local = threading.local()

    def _held(self) -> dict[str, int]:
        held = getattr(self._local, "held", None)
        if held is None:
            held = {}
            self._local.held = held
        return held

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        held = self._held()
        if held.get(session_id):
            held[session_id] += 1
            try:
                yield
            finally:
                held[session_id] -= 1
            return
        lock = self._client.lock(f"sanctuary:lock:{session_id}", timeout=self._timeout,
                                 blocking_timeout=self._blocking_timeout)
        start = time.time()
        if not lock.acquire(blocking=True):
            raise Unavailable(f"could not acquire lock for session {session_id}")
        LOCK_WAIT.labels(backend=self.backend).observe(time.time() - start)
        held[session_id] = 1
        try:
            yield
        finally:
            held.pop(session_id, None)
            lock.release()
