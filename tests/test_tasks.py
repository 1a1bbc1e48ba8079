from datetime import timedelta
from sanctuary_engine.breakout import BreakoutConfig
from sanctuary_engine.lifecycle import SessionConfig
from sanctuary_engine.tasks import lifecycle as lifecycle_tasks
from sanctuary_engine.tasks import maintenance


def test_convert_task_applies_armed_version(api_engine, clock):
    sess = api_engine.lifecycle.create_scheduled(SessionConfig(topic="Tea"), "host-1", "Host",
                                                 clock() + timedelta(minutes=20))["session"]
    clock.advance(minutes=20)
    result = lifecycle_tasks.convert_scheduled_session(sess["id"], 1)
    assert result == {"status": "ok", "session_id": sess["id"], "session_status": "live"}


def test_tick_and_expire_tasks(api_engine, clock, make_session):
    live_id = make_session(duration_minutes=30)
    sess = api_engine.lifecycle.create_scheduled(SessionConfig(topic="Tea"), "host-1", "Host",
                                                 clock() + timedelta(minutes=10))["session"]
    clock.advance(minutes=10)
    assert lifecycle_tasks.tick_due_sessions() == {"status": "ok", "converted": [sess["id"]]}
    clock.advance(minutes=50)
    assert lifecycle_tasks.expire_overdue_sessions() == {"status": "ok", "ended": [live_id]}


def test_maintenance_tasks(api_engine, clock, make_session):
    session_id = make_session(members=["p-1"])
    api_engine.membership.send_reaction(session_id, "p-1", "wave")
    api_engine.breakout.create_room(session_id, BreakoutConfig(name="Timed", auto_close=True,
                                                               auto_close_after_minutes=1), "host-1")
    clock.advance(minutes=2)
    assert maintenance.sweep_ephemeral() == {"status": "ok", "reactions": 1, "hands": 0}
    assert len(maintenance.close_expired_rooms()["closed"]) == 1
    assert maintenance.evaluate_stale_telemetry() == {"status": "ok", "changed": 0}
    assert maintenance.cleanup_idempotency()["deleted"] == 0


def test_resend_task_reaches_emergency_contact(api_engine, notifier, clock, make_session):
    session_id = make_session(members=["p-1"])
    notifier.fail = True
    alert = api_engine.alerts.raise_emergency(session_id, "p-1", "panic", severity="critical")
    assert alert["status"] == "escalated"
    assert maintenance.resend_emergency_notifications() == {"status": "ok", "notified": []}
    notifier.fail = False
    clock.advance(minutes=1)
    assert maintenance.resend_emergency_notifications() == {"status": "ok", "notified": [alert["id"]]}
