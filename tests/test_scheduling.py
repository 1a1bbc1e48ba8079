import threading
from datetime import timedelta
from sanctuary_engine.clock import utcnow
from sanctuary_engine.errors import Conflict
from sanctuary_engine.lifecycle import SessionConfig
from sanctuary_engine.scheduling import ThreadingConversionScheduler


def test_threading_scheduler_fires_callback():
    fired = []
    done = threading.Event()

    def callback(session_id, version):
        fired.append((session_id, version))
        done.set()

    scheduler = ThreadingConversionScheduler(callback)
    scheduler.arm("s-1", utcnow() - timedelta(seconds=1), 3)
    assert done.wait(5)
    assert fired == [("s-1", 3)]
    scheduler.shutdown()


def test_cancelled_timer_never_fires():
    fired = []
    scheduler = ThreadingConversionScheduler(lambda sid, v: fired.append(sid))
    scheduler.arm("s-1", utcnow() + timedelta(hours=1), 1)
    assert scheduler.pending("s-1") == 1
    scheduler.cancel("s-1")
    assert scheduler.pending("s-1") == 0
    scheduler.shutdown()
    assert fired == []


def test_callback_errors_do_not_escape_timer_thread():
    done = threading.Event()

    def callback(session_id, version):
        done.set()
        raise Conflict("session has ended")

    scheduler = ThreadingConversionScheduler(callback)
    scheduler.arm("s-1", utcnow(), 1)
    assert done.wait(5)
    scheduler.shutdown()


def test_conversion_is_pushed_to_subscribers(engine, clock, scheduler):
    at = clock() + timedelta(minutes=30)
    sess = engine.lifecycle.create_scheduled(SessionConfig(topic="Dawn"), "host-1", "Host", at)["session"]
    sub = engine.broker.subscribe(sess["id"])
    clock.advance(minutes=30)
    scheduler.fire_all(sess["id"])
    statuses = [e.payload["session"]["status"] for e in sub.drain() if e.type == "session.status"]
    assert statuses[-1] == "live"
    # A late joiner gets the converted state from the snapshot.
    assert engine.membership.snapshot(sess["id"])["session"]["status"] == "live"


def test_stale_timer_after_reschedule_is_ignored(engine, clock, scheduler):
    sess = engine.lifecycle.create_scheduled(SessionConfig(topic="Dusk"), "host-1", "Host",
                                             clock() + timedelta(minutes=30))["session"]
    engine.lifecycle.schedule(sess["id"], clock() + timedelta(hours=3), "host-1")
    clock.advance(minutes=31)
    scheduler.fire_all(sess["id"])
    assert engine.lifecycle.get(sess["id"])["status"] == "scheduled"
