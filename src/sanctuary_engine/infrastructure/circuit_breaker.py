"""Circuit breaker for the external collaborators (classifier, emergency notifier).

Fails fast while a collaborator is unhealthy and tries it again after a recovery
timeout. Time budgets of individual calls are enforced by the collaborator clients
themselves (HTTP timeouts), so the breaker only counts outcomes.
"""
from __future__ import annotations
import time
import threading
from enum import Enum
from typing import Callable, TypeVar, Optional
from dataclasses import dataclass
from prometheus_client import Counter, Gauge

T = TypeVar('T')


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitConfig:
    failure_threshold: int = 5
    recovery_timeout: float = 30.0  # seconds
    half_open_trials: int = 3  # successes needed to close again


class CircuitBreakerOpenError(Exception):
    pass


BREAKER_STATE = Gauge('collaborator_breaker_open', '1 while the breaker for a collaborator is not closed',
                      ['service'])
BREAKER_OUTCOMES = Counter('collaborator_breaker_calls_total', 'Calls through a collaborator breaker',
                           ['service', 'outcome'])


class CircuitBreaker:
    def __init__(self, service_name: str, config: Optional[CircuitConfig] = None,
                 clock: Callable[[], float] = time.time):
        self.service_name = service_name
        self.config = config or CircuitConfig()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.trial_successes = 0
        self._clock = clock
        self._lock = threading.RLock()

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        if not self._admit():
            BREAKER_OUTCOMES.labels(service=self.service_name, outcome='rejected').inc()
            raise CircuitBreakerOpenError(f"{self.service_name} is unavailable (circuit open)")
        try:
            result = func(*args, **kwargs)
        except Exception:
            self._record(ok=False)
            BREAKER_OUTCOMES.labels(service=self.service_name, outcome='failure').inc()
            raise
        self._record(ok=True)
        BREAKER_OUTCOMES.labels(service=self.service_name, outcome='success').inc()
        return result

    def _admit(self) -> bool:
        with self._lock:
            if self.state == CircuitState.OPEN:
                if self.opened_at is None or self._clock() - self.opened_at < self.config.recovery_timeout:
                    return False
                self._move(CircuitState.HALF_OPEN)
            return True

    def _record(self, ok: bool) -> None:
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                if not ok:
                    self._open()
                    return
                self.trial_successes += 1
                if self.trial_successes >= self.config.half_open_trials:
                    self.failure_count = 0
                    self._move(CircuitState.CLOSED)
            elif ok:
                # Successes slowly pay down earlier failures.
                self.failure_count = max(0, self.failure_count - 1)
            else:
                self.failure_count += 1
                if self.failure_count >= self.config.failure_threshold:
                    self._open()

    def _open(self) -> None:
        self.opened_at = self._clock()
        self._move(CircuitState.OPEN)

    def _move(self, state: CircuitState) -> None:
        self.state = state
        self.trial_successes = 0
        BREAKER_STATE.labels(service=self.service_name).set(0 if state == CircuitState.CLOSED else 1)
