"""Bounded retries with exponential backoff and jitter for collaborator calls."""
from __future__ import annotations
import time
import random
import logging
from typing import Optional, Callable, TypeVar
from dataclasses import dataclass
from prometheus_client import Counter, Histogram
from sanctuary_engine.infrastructure.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)

T = TypeVar('T')

@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True

# Metrics
COLLABORATOR_CALLS = Counter('collaborator_calls_total', 'Total collaborator calls', ['collaborator', 'result'])
COLLABORATOR_RETRIES = Counter('collaborator_retries_total', 'Collaborator retry attempts', ['collaborator', 'attempt'])
COLLABORATOR_LATENCY = Histogram('collaborator_latency_seconds', 'Collaborator call latency', ['collaborator'],
                                 buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10))


class RetryExhaustedError(Exception):
    """All attempts failed; ``last_error`` holds the final cause."""

    def __init__(self, name: str, attempts: int, last_error: Exception | None):
        super().__init__(f"{name} failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def backoff_delay(cfg: RetryConfig, attempt: int, rng: Callable[[], float] = random.random) -> float:
    delay = min(cfg.base_delay * (cfg.exponential_base ** attempt), cfg.max_delay)
    if cfg.jitter:
        delay *= (0.5 + rng() * 0.5)  # 50-100% of calculated delay
    return delay


def call_with_retry(func: Callable[[], T], *, name: str, config: Optional[RetryConfig] = None,
                    breaker: Optional[CircuitBreaker] = None,
                    non_retryable: tuple[type[BaseException], ...] = (),
                    sleep: Callable[[float], None] = time.sleep) -> T:
    """Run ``func`` until it succeeds or ``config.max_attempts`` is reached.

    An open circuit counts as a failed attempt without calling ``func``. Exceptions in
    ``non_retryable`` propagate immediately.
    """
    cfg = config or RetryConfig()
    last_exception: Exception | None = None
    for attempt in range(cfg.max_attempts):
        start_time = time.time()
        try:
            result = breaker.call(func) if breaker is not None else func()
            COLLABORATOR_CALLS.labels(collaborator=name, result='success').inc()
            COLLABORATOR_LATENCY.labels(collaborator=name).observe(time.time() - start_time)
            if attempt > 0:
                logger.info(f"{name} succeeded on attempt {attempt + 1}")
            return result
        except non_retryable:
            COLLABORATOR_CALLS.labels(collaborator=name, result='non_retryable').inc()
            raise
        except CircuitBreakerOpenError as e:
            last_exception = e
            COLLABORATOR_CALLS.labels(collaborator=name, result='circuit_open').inc()
        except Exception as e:
            last_exception = e
            COLLABORATOR_CALLS.labels(collaborator=name, result='failure').inc()
        COLLABORATOR_RETRIES.labels(collaborator=name, attempt=str(attempt + 1)).inc()
        if attempt == cfg.max_attempts - 1:
            break
        delay = backoff_delay(cfg, attempt)
        logger.warning(f"{name} attempt {attempt + 1} failed: {last_exception}. Retrying in {delay:.2f}s")
        sleep(delay)
    logger.error(f"{name} failed after {cfg.max_attempts} attempts: {last_exception}")
    raise RetryExhaustedError(name, cfg.max_attempts, last_exception)
