from __future__ import annotations
from datetime import datetime, timedelta
import pytest
from sqlalchemy import create_engine
from sanctuary_engine.config import Settings
from sanctuary_engine.engine import SanctuaryEngine, set_engine
from sanctuary_engine.infrastructure import db
from sanctuary_engine.lifecycle import SessionConfig
from sanctuary_engine.safety.classifier import ClassifierResult, ClassifierUnavailable, ContentClassifier
from sanctuary_engine.safety.emergency import EmergencyNotifier


class FakeClock:
    """Naive-UTC clock the tests move by hand."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def epoch(self) -> float:
        return (self.now - datetime(1970, 1, 1)).total_seconds()


class FakeClassifier(ContentClassifier):
    name = "fake_classifier"

    def __init__(self):
        self.result = ClassifierResult(is_flagged=False)
        self.failures_left = 0
        self.always_fail = False
        self.calls = 0

    def classify(self, session_id, participant_id, content_sample):
        self.calls += 1
        if self.always_fail or self.failures_left > 0:
            self.failures_left = max(0, self.failures_left - 1)
            raise ClassifierUnavailable("classifier down")
        return self.result


class FakeNotifier(EmergencyNotifier):
    name = "fake_notifier"

    def __init__(self):
        self.calls: list[tuple] = []
        self.fail = False
        self.failures_left = 0
        self.attempts = 0

    def notify(self, session_id, participant_id, severity, alert_id):
        self.attempts += 1
        if self.fail or self.failures_left > 0:
            self.failures_left = max(0, self.failures_left - 1)
            raise RuntimeError("pager unreachable")
        self.calls.append((session_id, participant_id, severity, alert_id))


class FakeScheduler:
    """Records armed timers; tests fire them explicitly."""

    def __init__(self):
        self.callback = None
        self.armed: list[tuple[str, datetime, int]] = []
        self.cancelled: list[str] = []

    def arm(self, session_id, at, version):
        self.armed.append((session_id, at, version))

    def cancel(self, session_id):
        self.cancelled.append(session_id)

    def fire_all(self, session_id):
        for sid, _, version in list(self.armed):
            if sid == session_id and self.callback is not None:
                self.callback(sid, version)

    def shutdown(self):
        return None


@pytest.fixture
def db_engine(tmp_path):
    e = create_engine(f"sqlite:///{tmp_path}/sanctuary_test.db", connect_args={"check_same_thread": False})
    db.override_engine(e)
    db.create_all()
    yield e
    e.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def settings():
    return Settings(MEDIA_TOKEN_SECRET="test-secret", APP_ENV="test", COORDINATION_BACKEND="local")


@pytest.fixture
def engine(db_engine, settings, clock, classifier, notifier, scheduler):
    eng = SanctuaryEngine(settings, classifier=classifier, notifier=notifier, scheduler=scheduler,
                          clock=clock, epoch_clock=clock.epoch, sleep=lambda _s: None)
    yield eng
    eng.shutdown()


@pytest.fixture
def api_engine(engine):
    set_engine(engine)
    yield engine
    set_engine(None)


@pytest.fixture
def make_session(engine):
    """Factory: create an instant session with ``host`` and admit ``members``; returns its id."""

    def _make(host="host-1", members=(), topic="Evening check-in", **overrides):
        created = engine.lifecycle.create_instant(SessionConfig(topic=topic, **overrides), host, "Host")
        session_id = created["session"]["id"]
        for pid in members:
            engine.membership.join(session_id, pid, alias=f"alias-{pid}", acknowledgment=True)
        return session_id

    return _make
