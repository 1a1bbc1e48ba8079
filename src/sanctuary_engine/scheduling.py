"""Timers that fire the lifecycle conversion check at a session's lobby and start times.

Each timer carries the ``schedule_version`` it was armed with; the conversion check
ignores a timer whose version no longer matches, which is what makes cancellation race
free. ``cancel`` here only frees resources.
"""
from __future__ import annotations
import logging
import threading
from datetime import datetime
from typing import Callable, Optional
from sanctuary_engine.clock import Clock, utcnow
from sanctuary_engine.errors import SanctuaryError

logger = logging.getLogger(__name__)

ConversionCallback = Callable[[str, int], object]


class ThreadingConversionScheduler:
    """In-process timers for single-process deployments and development."""

    def __init__(self, callback: Optional[ConversionCallback] = None, clock: Clock = utcnow):
        self.callback = callback
        self.clock = clock
        self._timers: dict[str, list[threading.Timer]] = {}
        self._lock = threading.Lock()

    def arm(self, session_id: str, at: datetime, version: int) -> None:
        delay = max(0.0, (at - self.clock()).total_seconds())
        timer = threading.Timer(delay, self._fire, args=(session_id, version))
        timer.daemon = True
        with self._lock:
            self._timers.setdefault(session_id, []).append(timer)
        timer.start()
        logger.debug(f"Armed conversion timer for {session_id} v{version} in {delay:.1f}s")

    def _fire(self, session_id: str, version: int) -> None:
        with self._lock:
            timers = self._timers.get(session_id, [])
            self._timers[session_id] = [t for t in timers if t.is_alive() and t is not threading.current_thread()]
            if not self._timers[session_id]:
                self._timers.pop(session_id, None)
        if self.callback is None:
            return
        try:
            self.callback(session_id, version)
        except SanctuaryError as e:
            logger.warning(f"Conversion timer for {session_id} had no effect: {e.message}")
        except Exception:
            logger.exception(f"Conversion timer for {session_id} failed")

    def cancel(self, session_id: str) -> None:
        with self._lock:
            timers = self._timers.pop(session_id, [])
        for t in timers:
            t.cancel()

    def pending(self, session_id: str) -> int:
        with self._lock:
            return len(self._timers.get(session_id, []))

    def shutdown(self) -> None:
        with self._lock:
            timers = [t for ts in self._timers.values() for t in ts]
            self._timers.clear()
        for t in timers:
            t.cancel()


class CeleryConversionScheduler:
    """Celery ``eta`` tasks, for deployments where workers own background work."""

    def __init__(self):
        self._task_ids: dict[str, list[str]] = {}
        self._lock = threading.Lock()

    def arm(self, session_id: str, at: datetime, version: int) -> None:
        from sanctuary_engine.tasks.lifecycle import convert_scheduled_session
        result = convert_scheduled_session.apply_async(args=[session_id, version], eta=at)
        with self._lock:
            self._task_ids.setdefault(session_id, []).append(result.id)

    def cancel(self, session_id: str) -> None:
        from sanctuary_engine.infrastructure.celery_app import celery_app
        with self._lock:
            task_ids = self._task_ids.pop(session_id, [])
        for task_id in task_ids:
            celery_app.control.revoke(task_id)

    def shutdown(self) -> None:
        return None
