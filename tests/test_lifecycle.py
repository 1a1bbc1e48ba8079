from datetime import timedelta
import pytest
from sanctuary_engine.errors import Conflict, Forbidden, NotAcknowledged, NotYetOpen, ValidationError
from sanctuary_engine.breakout import BreakoutConfig
from sanctuary_engine.lifecycle import SessionConfig


def _schedule(engine, clock, minutes_ahead=60, host="host-1"):
    at = clock() + timedelta(minutes=minutes_ahead)
    return engine.lifecycle.create_scheduled(SessionConfig(topic="Grief circle"), host, "Host", at)["session"]


def test_instant_session_is_live_with_host_and_media(engine):
    created = engine.lifecycle.create_instant(SessionConfig(topic="Open mic"), "host-1", "Host")
    sess = created["session"]
    assert sess["status"] == "live"
    assert sess["actual_start_time"] is not None
    assert created["media"]["channel_name"] == sess["media_channel"]
    channel, pid = engine.media.verify(created["media"]["join_token"])
    assert (channel, pid) == (sess["media_channel"], "host-1")
    participants = engine.membership.participants(sess["id"])
    assert [(p["participant_id"], p["role"]) for p in participants] == [("host-1", "host")]


def test_create_rejects_invalid_config(engine):
    with pytest.raises(ValidationError):
        engine.lifecycle.create_instant(SessionConfig(topic="  "), "host-1", "Host")
    with pytest.raises(ValidationError):
        engine.lifecycle.create_instant(SessionConfig(topic="x", max_participants=1), "host-1", "Host")
    with pytest.raises(ValidationError):
        engine.lifecycle.create_instant(SessionConfig(topic="x", access_type="secret"), "host-1", "Host")


def test_rejected_create_is_audited(engine, clock):
    with pytest.raises(ValidationError) as info:
        engine.lifecycle.create_instant(SessionConfig(topic="x", max_participants=1), "host-1", "Host")
    trail = engine.store.audit_trail(info.value.context["session_id"])
    assert [(r["operation"], r["actor"], r["outcome"]) for r in trail] == [
        ("create_instant", "host-1", "validation_error")]
    assert "max_participants" in trail[0]["detail"]
    with pytest.raises(ValidationError) as info:
        engine.lifecycle.create_scheduled(SessionConfig(topic=""), "host-1", "Host", clock() + timedelta(hours=1))
    trail = engine.store.audit_trail(info.value.context["session_id"])
    assert [(r["operation"], r["outcome"]) for r in trail] == [("schedule", "validation_error")]


def test_scheduled_session_is_not_live_before_start(engine, clock, scheduler):
    sess = _schedule(engine, clock, minutes_ahead=60)
    assert sess["status"] == "scheduled"
    # lobby timer and start timer, both carrying version 1
    assert [(a[1], a[2]) for a in scheduler.armed] == [
        (clock() + timedelta(minutes=45), 1), (clock() + timedelta(minutes=60), 1)]
    clock.advance(minutes=44)
    assert engine.lifecycle.check_conversion(sess["id"], 1)["status"] == "scheduled"
    clock.advance(minutes=1)
    assert engine.lifecycle.check_conversion(sess["id"], 1)["status"] == "waiting"
    clock.advance(minutes=14, seconds=59)
    assert engine.lifecycle.get(sess["id"])["status"] == "waiting"
    clock.advance(seconds=1)
    assert engine.lifecycle.get(sess["id"])["status"] == "live"


def test_scheduling_in_the_past_is_rejected(engine, clock):
    with pytest.raises(ValidationError):
        engine.lifecycle.create_scheduled(SessionConfig(topic="late"), "host-1", "Host", clock() - timedelta(minutes=1))


def test_schedule_inside_lobby_window_starts_waiting(engine, clock):
    sess = _schedule(engine, clock, minutes_ahead=10)
    assert sess["status"] == "waiting"


def test_admission_before_lobby_is_not_yet_open(engine, clock):
    sess = _schedule(engine, clock)
    with pytest.raises(NotYetOpen):
        engine.membership.join(sess["id"], "p-1", acknowledgment=True)


def test_admission_requires_acknowledgment(engine, make_session):
    session_id = make_session()
    with pytest.raises(NotAcknowledged):
        engine.membership.join(session_id, "p-1", acknowledgment=False)


def test_admission_is_idempotent(engine, make_session):
    session_id = make_session()
    first = engine.membership.join(session_id, "p-1", alias="Quiet Owl", acknowledgment=True)
    second = engine.membership.join(session_id, "p-1", alias="Quiet Owl", acknowledgment=True)
    assert first["participant"]["participant_id"] == second["participant"]["participant_id"]
    assert second["media"]["join_token"] == first["media"]["join_token"]
    ids = [p["participant_id"] for p in engine.membership.participants(session_id)]
    assert ids.count("p-1") == 1


def test_first_member_makes_session_active(engine, make_session):
    session_id = make_session()
    result = engine.membership.join(session_id, "p-1", acknowledgment=True)
    assert result["session"]["status"] == "active"


def test_full_session_rejects_admission(engine, make_session):
    session_id = make_session(members=["p-1"], max_participants=2)
    with pytest.raises(Conflict):
        engine.membership.join(session_id, "p-2", acknowledgment=True)


def test_invite_only_requires_code(engine):
    created = engine.lifecycle.create_instant(SessionConfig(topic="Private", access_type="invite_only"), "host-1", "Host")
    code = created["session"]["invitation_code"]
    assert code
    with pytest.raises(Forbidden):
        engine.membership.join(created["session"]["id"], "p-1", acknowledgment=True, invitation_code="WRONG")
    joined = engine.membership.join(created["session"]["id"], "p-1", acknowledgment=True, invitation_code=code)
    assert joined["participant"]["role"] == "member"


def test_invitation_code_only_shown_to_host(engine):
    created = engine.lifecycle.create_instant(SessionConfig(topic="Private", access_type="private"), "host-1", "Host")
    session_id = created["session"]["id"]
    assert engine.lifecycle.get(session_id, viewer="host-1")["invitation_code"] == created["session"]["invitation_code"]
    assert "invitation_code" not in engine.lifecycle.get(session_id, viewer="someone")


def test_force_start_from_scheduled(engine, clock):
    sess = _schedule(engine, clock)
    with pytest.raises(Forbidden):
        engine.lifecycle.start_now(sess["id"], "not-host")
    started = engine.lifecycle.start_now(sess["id"], "host-1")
    assert started["status"] == "live"
    assert started["actual_start_time"] == clock().isoformat()


def test_cancel_makes_pending_timers_inert(engine, clock, scheduler):
    sess = _schedule(engine, clock, minutes_ahead=30)
    cancelled = engine.lifecycle.cancel_scheduled_start(sess["id"], "host-1")
    assert cancelled["status"] == "waiting"
    assert cancelled["scheduled_at"] is None
    assert sess["id"] in scheduler.cancelled
    clock.advance(minutes=31)
    # The timer armed with version 1 fires late: it must not start the session.
    view = engine.lifecycle.check_conversion(sess["id"], 1)
    assert view["status"] == "waiting"
    assert engine.lifecycle.tick() == []
    assert engine.lifecycle.get(sess["id"])["status"] == "waiting"


def test_reopen_after_cancel(engine, clock):
    sess = _schedule(engine, clock, minutes_ahead=30)
    engine.lifecycle.cancel_scheduled_start(sess["id"], "host-1")
    reopened = engine.lifecycle.reopen(sess["id"], "host-1", clock() + timedelta(hours=2))
    assert reopened["status"] == "scheduled"
    with pytest.raises(Conflict):
        engine.lifecycle.reopen(sess["id"], "host-1", clock() + timedelta(hours=3))


def test_reschedule_bumps_version(engine, clock, scheduler):
    sess = _schedule(engine, clock, minutes_ahead=120)
    engine.lifecycle.schedule(sess["id"], clock() + timedelta(minutes=180), "host-1")
    assert scheduler.armed[-1][2] == 2
    clock.advance(minutes=121)
    assert engine.lifecycle.check_conversion(sess["id"], 1)["status"] == "scheduled"


def test_ended_session_never_regresses(engine, clock, make_session):
    session_id = make_session(members=["p-1"])
    ended = engine.lifecycle.end(session_id, "host-1")
    assert ended["status"] == "ended"
    assert engine.lifecycle.end(session_id, "host-1")["status"] == "ended"
    with pytest.raises(Conflict):
        engine.lifecycle.start_now(session_id, "host-1")
    with pytest.raises(Conflict):
        engine.lifecycle.reopen(session_id, "host-1", clock() + timedelta(hours=1))
    with pytest.raises(Conflict):
        engine.membership.join(session_id, "p-2", acknowledgment=True)
    assert engine.lifecycle.check_conversion(session_id)["status"] == "ended"


def test_end_cascades_to_members_and_tokens(engine, make_session):
    session_id = make_session(members=["p-1", "p-2"])
    token = engine.membership.join(session_id, "p-1", acknowledgment=True)["media"]["join_token"]
    engine.breakout.create_room(session_id, BreakoutConfig(name="Pairs"), "host-1")
    engine.lifecycle.end(session_id, "host-1")
    assert engine.membership.participants(session_id) == []
    assert engine.breakout.list_rooms(session_id) == []
    with pytest.raises(Forbidden):
        engine.media.verify(token)


def test_only_privileged_can_end(engine, make_session):
    session_id = make_session(members=["p-1"])
    with pytest.raises(Forbidden):
        engine.lifecycle.end(session_id, "p-1")


def test_expire_overdue_ends_sessions(engine, clock, make_session):
    session_id = make_session(duration_minutes=30)
    clock.advance(minutes=59)
    assert engine.lifecycle.expire_overdue() == []
    clock.advance(minutes=1)
    assert engine.lifecycle.expire_overdue() == [session_id]
    assert engine.lifecycle.get(session_id)["end_reason"] == "expired"


def test_every_transition_attempt_is_audited(engine, make_session):
    session_id = make_session()
    with pytest.raises(NotAcknowledged):
        engine.membership.join(session_id, "p-1")
    engine.membership.join(session_id, "p-1", acknowledgment=True)
    trail = engine.lifecycle.audit_trail(session_id, "host-1")
    assert [(r["operation"], r["outcome"]) for r in trail] == [
        ("create_instant", "ok"), ("admit", "not_acknowledged"), ("admit", "ok")]
    with pytest.raises(Forbidden):
        engine.lifecycle.audit_trail(session_id, "p-1")


def test_tick_converts_due_sessions(engine, clock):
    sess = _schedule(engine, clock, minutes_ahead=20)
    clock.advance(minutes=6)
    assert engine.lifecycle.tick() == [sess["id"]]
    assert engine.lifecycle.get(sess["id"])["status"] == "waiting"


def test_list_sessions_filters_by_status(engine, clock, make_session):
    live_id = make_session()
    _schedule(engine, clock)
    assert [s["id"] for s in engine.lifecycle.list_sessions(status="live")] == [live_id]
    assert len(engine.lifecycle.list_sessions()) == 2


def test_end_releases_per_session_coordination_state(engine, make_session):
    session_id = make_session(members=["p-1"])
    sub = engine.broker.subscribe(session_id)
    engine.lifecycle.end(session_id, "host-1")
    assert sub.closed
    assert _types_of(sub.drain())[-1] == "session.ended"
    assert session_id not in engine.broker._channels
    assert len(engine.locks) == 0


def _types_of(events):
    return [e.type for e in events]
