import pytest
from sanctuary_engine.errors import Conflict, Forbidden, NotFound, ValidationError
from sanctuary_engine.realtime.fanout import EPHEMERAL
from sanctuary_engine.telemetry import TransportSample


def _by_id(engine, session_id):
    return {p["participant_id"]: p for p in engine.membership.participants(session_id)}


def test_leave_and_rejoin(engine, make_session):
    session_id = make_session(members=["p-1"])
    left = engine.membership.leave(session_id, "p-1")
    assert left["removal_reason"] == "left"
    assert "p-1" not in _by_id(engine, session_id)
    with pytest.raises(NotFound):
        engine.membership.leave(session_id, "p-1")
    engine.membership.join(session_id, "p-1", acknowledgment=True)
    assert "p-1" in _by_id(engine, session_id)


def test_kicked_participant_cannot_rejoin(engine, make_session):
    session_id = make_session(members=["p-1"])
    token = engine.membership.join(session_id, "p-1", acknowledgment=True)["media"]["join_token"]
    kicked = engine.membership.kick(session_id, "p-1", "host-1")
    assert kicked["removal_reason"] == "kicked"
    with pytest.raises(Forbidden):
        engine.media.verify(token)
    with pytest.raises(Forbidden):
        engine.membership.join(session_id, "p-1", acknowledgment=True)


def test_kick_rules(engine, make_session):
    session_id = make_session(members=["p-1", "p-2"])
    with pytest.raises(Forbidden):
        engine.membership.kick(session_id, "p-2", "p-1")
    with pytest.raises(Forbidden):
        engine.membership.kick(session_id, "host-1", "host-1")
    engine.membership.set_role(session_id, "p-1", "moderator", "host-1")
    with pytest.raises(ValidationError):
        engine.membership.kick(session_id, "p-1", "p-1")
    with pytest.raises(Forbidden):
        engine.membership.kick(session_id, "host-1", "p-1")
    engine.membership.kick(session_id, "p-2", "p-1")
    assert set(_by_id(engine, session_id)) == {"host-1", "p-1"}


def test_only_host_changes_roles(engine, make_session):
    session_id = make_session(members=["p-1", "p-2"])
    with pytest.raises(ValidationError):
        engine.membership.set_role(session_id, "p-1", "host", "host-1")
    engine.membership.set_role(session_id, "p-1", "moderator", "host-1")
    with pytest.raises(Forbidden):
        engine.membership.set_role(session_id, "p-2", "moderator", "p-1")
    assert _by_id(engine, session_id)["p-1"]["role"] == "moderator"
    engine.membership.set_role(session_id, "p-1", "member", "host-1")
    assert _by_id(engine, session_id)["p-1"]["role"] == "member"


def test_mute_self_or_by_moderator(engine, make_session):
    session_id = make_session(members=["p-1", "p-2"])
    assert engine.membership.set_muted(session_id, "p-1", True, "p-1")["is_muted"] is True
    with pytest.raises(Forbidden):
        engine.membership.set_muted(session_id, "p-1", False, "p-2")
    assert engine.membership.set_muted(session_id, "p-1", False, "host-1")["is_muted"] is False


def test_hand_raise_keeps_first_timestamp(engine, clock, make_session):
    session_id = make_session(members=["p-1", "p-2"])
    first = engine.membership.raise_hand(session_id, "p-1")
    clock.advance(seconds=5)
    again = engine.membership.raise_hand(session_id, "p-1")
    assert again["hand_raised"] is True
    assert again["hand_raised_at"] == first["hand_raised_at"]
    with pytest.raises(Forbidden):
        engine.membership.lower_hand(session_id, "p-1", actor="p-2")
    assert engine.membership.lower_hand(session_id, "p-1", actor="host-1")["hand_raised"] is False


def test_stale_hand_raises_are_swept(engine, clock, make_session):
    session_id = make_session(members=["p-1"])
    engine.membership.raise_hand(session_id, "p-1")
    clock.advance(seconds=599)
    assert engine.membership.sweep() == {"reactions": 0, "hands": 0}
    clock.advance(seconds=1)
    assert engine.membership.sweep() == {"reactions": 0, "hands": 1}
    assert _by_id(engine, session_id)["p-1"]["hand_raised"] is False


def test_telemetry_is_validated(engine, make_session):
    session_id = make_session(members=["p-1"])
    with pytest.raises(ValidationError):
        engine.membership.update_audio_telemetry(session_id, "p-1", 101)
    with pytest.raises(ValidationError):
        engine.membership.update_audio_telemetry(session_id, "p-1", -1)
    with pytest.raises(ValidationError):
        engine.membership.update_audio_telemetry(session_id, "p-1", 10, connection_status="teleporting")


def test_telemetry_is_ephemeral_and_merged_into_views(engine, make_session):
    session_id = make_session(members=["p-1"])
    sub = engine.broker.subscribe(session_id)
    payload = engine.membership.update_audio_telemetry(
        session_id, "p-1", 42, sample=TransportSample(packet_loss=0.5, rtt_ms=30, jitter_ms=5))
    assert payload["connection_quality"] == "excellent"
    assert payload["connection_status"] == "connected"
    [event] = sub.drain()
    assert event.type == "participant.telemetry"
    assert event.priority == EPHEMERAL
    view = _by_id(engine, session_id)["p-1"]
    assert view["audio_level"] == 42
    assert view["connection_quality"] == "excellent"


def test_poor_transport_is_classified(engine, make_session):
    session_id = make_session(members=["p-1"])
    payload = engine.membership.update_audio_telemetry(
        session_id, "p-1", 10, sample=TransportSample(packet_loss=8.0, rtt_ms=90))
    assert payload["connection_quality"] == "poor"


def test_silent_participant_goes_disconnected(engine, clock, make_session):
    session_id = make_session(members=["p-1"])
    engine.membership.update_audio_telemetry(session_id, "p-1", 20,
                                             sample=TransportSample(packet_loss=2.0, rtt_ms=80))
    assert engine.membership.evaluate_stale() == 0
    clock.advance(seconds=11)
    assert engine.membership.evaluate_stale() == 1
    view = _by_id(engine, session_id)["p-1"]
    assert view["connection_quality"] == "disconnected"
    assert view["connection_status"] == "disconnected"
    # Nothing changed since the last pass.
    assert engine.membership.evaluate_stale() == 0


def test_reactions_expire(engine, clock, make_session):
    session_id = make_session(members=["p-1", "p-2"])
    with pytest.raises(ValidationError):
        engine.membership.send_reaction(session_id, "p-1", " ")
    with pytest.raises(NotFound):
        engine.membership.send_reaction(session_id, "p-1", "heart", target_participant_id="ghost")
    reaction = engine.membership.send_reaction(session_id, "p-1", "heart", target_participant_id="p-2")
    snap = engine.membership.snapshot(session_id, viewer="p-2")
    assert [r["reaction_id"] for r in snap["reactions"]] == [reaction["reaction_id"]]
    clock.advance(seconds=3)
    assert engine.membership.sweep() == {"reactions": 1, "hands": 0}
    assert engine.membership.snapshot(session_id, viewer="p-2")["reactions"] == []


def test_reactions_need_live_session(engine, make_session):
    session_id = make_session(members=["p-1"])
    engine.lifecycle.end(session_id, "host-1")
    with pytest.raises(Conflict):
        engine.membership.send_reaction(session_id, "p-1", "wave")


def test_snapshot_reflects_published_events(engine, make_session):
    session_id = make_session(members=["p-1"])
    snap = engine.membership.snapshot(session_id, viewer="host-1")
    assert snap["seq"] == engine.broker.last_seq(session_id)
    assert snap["session"]["status"] == "active"
    assert snap["session"]["invitation_code"] is None
    assert [p["participant_id"] for p in snap["participants"]] == ["host-1", "p-1"]
    assert "invitation_code" not in engine.membership.snapshot(session_id, viewer="p-1")["session"]
