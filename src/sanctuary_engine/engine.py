"""Wiring of the engine components and backend selection.

``COORDINATION_BACKEND=local`` keeps locks, fan-out, telemetry and timers in process.
``redis`` moves them to Redis (and timers to Celery) so API workers and Celery workers
can serve the same sessions.
"""
from __future__ import annotations
import logging
import threading
import time
from typing import Optional
from sanctuary_engine.breakout import BreakoutCoordinator
from sanctuary_engine.clock import Clock, utcnow
from sanctuary_engine.config import Settings, get_settings, parse_csv
from sanctuary_engine.infrastructure.circuit_breaker import CircuitBreaker, CircuitConfig
from sanctuary_engine.infrastructure.locks import SessionLockRegistry, RedisSessionLockRegistry
from sanctuary_engine.infrastructure.retry import RetryConfig
from sanctuary_engine.lifecycle import LifecycleController
from sanctuary_engine.media import MediaTokenIssuer
from sanctuary_engine.membership import MembershipManager
from sanctuary_engine.quality import QualityThresholds
from sanctuary_engine.realtime.fanout import LocalBroker, RedisBroker
from sanctuary_engine.safety.alerts import AlertPipeline
from sanctuary_engine.safety.classifier import ContentClassifier, HttpClassifier, UnconfiguredClassifier
from sanctuary_engine.safety.emergency import (
    EmergencyNotifier, WebhookEmergencyNotifier, LoggingEmergencyNotifier,
)
from sanctuary_engine.scheduling import ThreadingConversionScheduler, CeleryConversionScheduler
from sanctuary_engine.store import SessionStore
from sanctuary_engine.telemetry import InMemoryTelemetryStore, RedisTelemetryStore

logger = logging.getLogger(__name__)


class SanctuaryEngine:
    def __init__(self, settings: Optional[Settings] = None, *, session_factory=None, locks=None,
                 broker=None, telemetry=None, media: Optional[MediaTokenIssuer] = None,
                 classifier: Optional[ContentClassifier] = None,
                 notifier: Optional[EmergencyNotifier] = None, scheduler=None,
                 clock: Clock = utcnow, epoch_clock=time.time, sleep=time.sleep):
        self.settings = settings or get_settings()
        cfg = self.settings
        self.store = SessionStore(session_factory)
        self.locks = locks or SessionLockRegistry()
        self.broker = broker or LocalBroker(cfg.fanout_buffer_size)
        self.telemetry = telemetry or InMemoryTelemetryStore(cfg.telemetry_window)
        self.media = media or MediaTokenIssuer(cfg.media_token_secret, cfg.media_token_ttl_seconds)
        self.classifier = classifier or (HttpClassifier(cfg.classifier_url, cfg.classifier_timeout_seconds)
                                         if cfg.classifier_url else UnconfiguredClassifier())
        self.notifier = notifier or (WebhookEmergencyNotifier(cfg.emergency_webhook_url, cfg.emergency_timeout_seconds)
                                     if cfg.emergency_webhook_url else LoggingEmergencyNotifier())
        self.clock = clock

        self.lifecycle = LifecycleController(
            self.store, self.locks, self.broker, self.media, telemetry=self.telemetry, clock=clock,
            lobby_open_minutes=cfg.lobby_open_minutes, expiry_grace_minutes=cfg.session_expiry_grace_minutes,
            max_session_participants=cfg.max_session_participants, channel_prefix=cfg.media_channel_prefix,
        )
        if scheduler is None:
            scheduler = ThreadingConversionScheduler(clock=clock)
        if getattr(scheduler, "callback", False) is None:
            scheduler.callback = self.lifecycle.check_conversion
        self.scheduler = scheduler
        self.lifecycle.scheduler = scheduler

        thresholds = QualityThresholds(stale_after_seconds=cfg.telemetry_stale_seconds, window=cfg.telemetry_window)
        self.membership = MembershipManager(
            self.store, self.locks, self.broker, self.lifecycle, self.telemetry, self.media,
            clock=clock, epoch_clock=epoch_clock, thresholds=thresholds,
            reaction_ttl_seconds=cfg.reaction_ttl_seconds, hand_raise_ttl_seconds=cfg.hand_raise_ttl_seconds,
        )
        self.breakout = BreakoutCoordinator(
            self.store, self.locks, self.broker, clock=clock,
            min_participants=cfg.breakout_min_participants, max_participants=cfg.breakout_max_participants,
            channel_prefix=cfg.media_channel_prefix, idempotency_ttl_hours=cfg.idempotency_ttl_hours,
        )
        self.alerts = AlertPipeline(
            self.store, self.locks, self.broker, self.classifier, self.notifier, clock=clock,
            auto_escalation=cfg.auto_escalation_enabled, min_confidence=cfg.min_alert_confidence,
            required_steps=parse_csv(cfg.required_crisis_steps),
            retry_config=RetryConfig(max_attempts=cfg.classifier_max_attempts,
                                     base_delay=cfg.classifier_backoff_seconds),
            notifier_retry_config=RetryConfig(max_attempts=cfg.emergency_max_attempts,
                                              base_delay=cfg.emergency_backoff_seconds),
            classifier_breaker=CircuitBreaker(self.classifier.name, CircuitConfig(failure_threshold=5),
                                              clock=epoch_clock),
            notifier_breaker=CircuitBreaker(self.notifier.name, CircuitConfig(failure_threshold=3),
                                            clock=epoch_clock),
            idempotency_ttl_hours=cfg.idempotency_ttl_hours, sleep=sleep,
        )

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        self.broker.close()


def build_engine(settings: Optional[Settings] = None) -> SanctuaryEngine:
    settings = settings or get_settings()
    backend = settings.coordination_backend.lower()
    if backend == "redis":
        import redis
        client = redis.Redis.from_url(settings.redis_url)
        logger.info(f"Using redis coordination backend at {settings.redis_url}")
        return SanctuaryEngine(
            settings,
            locks=RedisSessionLockRegistry(client, timeout=settings.redis_lock_timeout_seconds),
            broker=RedisBroker(client, settings.fanout_buffer_size),
            telemetry=RedisTelemetryStore(client, settings.telemetry_window),
            scheduler=CeleryConversionScheduler(),
        )
    if backend != "local":
        raise ValueError(f"unknown coordination backend {settings.coordination_backend!r}")
    return SanctuaryEngine(settings)


_engine: Optional[SanctuaryEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> SanctuaryEngine:
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = build_engine()
        return _engine


def set_engine(engine: Optional[SanctuaryEngine]) -> None:  # test helper
    global _engine
    with _engine_lock:
        if _engine is not None and _engine is not engine:
            _engine.shutdown()
        _engine = engine
