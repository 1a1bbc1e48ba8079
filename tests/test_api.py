from datetime import timedelta
import pytest
from fastapi.testclient import TestClient
from sanctuary_engine.api.main import app
from sanctuary_engine.safety.classifier import ClassifierResult


def _as(pid):
    return {"X-Participant-Id": pid}


@pytest.fixture
def client(api_engine):
    return TestClient(app)


@pytest.fixture
def live_session(client):
    r = client.post("/sessions", json={"topic": "Night owls", "host_alias": "Keeper"}, headers=_as("host-1"))
    assert r.status_code == 201
    session_id = r.json()["session"]["id"]
    for pid in ("p-1", "p-2"):
        joined = client.post(f"/sessions/{session_id}/participants",
                             json={"alias": pid, "acknowledgment": True}, headers=_as(pid))
        assert joined.status_code == 200
    return session_id


def test_health_and_metrics(client, db_engine):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"db": True, "status": "ok"}
    r = client.get("/metrics")
    assert r.status_code == 200
    assert b"api_requests_total" in r.content


def test_correlation_id_is_echoed(client):
    r = client.get("/health", headers={"X-Correlation-ID": "abc-123"})
    assert r.headers["X-Correlation-ID"] == "abc-123"
    assert client.get("/health").headers["X-Correlation-ID"]


def test_missing_identity_is_forbidden(client):
    r = client.post("/sessions", json={"topic": "t", "host_alias": "h"})
    assert r.status_code == 403
    assert r.json()["error"] == "forbidden"


def test_errors_use_stable_codes(client, live_session):
    r = client.get("/sessions/does-not-exist")
    assert r.status_code == 404
    assert r.json()["error"] == "not_found"
    assert "detail" in r.json()
    r = client.post(f"/sessions/{live_session}/participants", json={}, headers=_as("p-9"))
    assert r.status_code == 409
    assert r.json()["error"] == "not_acknowledged"


def test_create_scheduled_session(client, clock):
    at = (clock() + timedelta(hours=2)).isoformat() + "Z"
    r = client.post("/sessions", json={"topic": "Later", "host_alias": "Keeper", "scheduled_at": at},
                    headers=_as("host-1"))
    assert r.status_code == 201
    session_id = r.json()["session"]["id"]
    assert client.get(f"/sessions/{session_id}").json()["status"] == "scheduled"
    r = client.post(f"/sessions/{session_id}/participants", json={"acknowledgment": True}, headers=_as("p-1"))
    assert r.status_code == 409
    assert r.json()["error"] == "not_yet_open"
    r = client.post(f"/sessions/{session_id}/start", headers=_as("host-1"))
    assert r.json()["status"] == "live"


def test_participant_controls(client, live_session):
    r = client.put(f"/sessions/{live_session}/participants/p-1/role", json={"role": "moderator"},
                   headers=_as("host-1"))
    assert r.json()["role"] == "moderator"
    r = client.put(f"/sessions/{live_session}/participants/p-2/mute", json={"muted": True}, headers=_as("p-1"))
    assert r.json()["is_muted"] is True
    assert client.post(f"/sessions/{live_session}/hand", headers=_as("p-2")).json()["hand_raised"] is True
    r = client.delete(f"/sessions/{live_session}/participants/p-2/hand", headers=_as("p-1"))
    assert r.json()["hand_raised"] is False
    r = client.post(f"/sessions/{live_session}/telemetry",
                    json={"audio_level": 55, "packet_loss": 0.2, "rtt_ms": 40}, headers=_as("p-2"))
    assert r.json()["connection_quality"] == "excellent"
    assert client.post(f"/sessions/{live_session}/reactions", json={"emoji": "heart"},
                       headers=_as("p-2")).status_code == 201
    r = client.post(f"/sessions/{live_session}/participants/p-2/kick", headers=_as("p-1"))
    assert r.json()["removal_reason"] == "kicked"
    ids = [p["participant_id"] for p in client.get(f"/sessions/{live_session}/participants").json()]
    assert ids == ["host-1", "p-1"]


def test_rooms_flow_with_idempotency_key(client, live_session):
    headers = {**_as("host-1"), "X-Idempotency-Key": "room-1"}
    first = client.post(f"/sessions/{live_session}/rooms", json={"name": "Pairs", "max_participants": 2},
                        headers=headers)
    assert first.status_code == 201
    retry = client.post(f"/sessions/{live_session}/rooms", json={"name": "Pairs", "max_participants": 2},
                        headers=headers)
    assert retry.json()["id"] == first.json()["id"]
    room_id = first.json()["id"]
    assert client.post(f"/rooms/{room_id}/join", headers=_as("p-1")).json()["members"] == ["p-1"]
    r = client.post(f"/rooms/{room_id}/join", json={"participant_id": "p-2"}, headers=_as("host-1"))
    assert r.json()["members"] == ["p-1", "p-2"]
    r = client.post(f"/rooms/{room_id}/join", headers=_as("host-1"))
    assert r.status_code == 409
    assert r.json()["error"] == "room_full"
    assert client.post(f"/rooms/{room_id}/leave", headers=_as("p-1")).json()["members"] == ["p-2"]
    assert client.delete(f"/rooms/{room_id}", headers=_as("host-1")).json()["status"] == "ended"
    assert client.get(f"/sessions/{live_session}/rooms").json() == []


def test_alert_flow(client, classifier, notifier, live_session):
    classifier.result = ClassifierResult(is_flagged=True, severity="high", confidence=0.9, triggers=["hopeless"])
    r = client.post(f"/sessions/{live_session}/reports",
                    json={"subject_id": "p-1", "content_sample": "what is the point"}, headers=_as("p-2"))
    assert r.status_code == 200
    alert_id = r.json()["alert"]["id"]
    assert client.get(f"/sessions/{live_session}/alerts", headers=_as("p-2")).status_code == 403
    alerts = client.get(f"/sessions/{live_session}/alerts", headers=_as("host-1")).json()
    assert [a["id"] for a in alerts] == [alert_id]
    r = client.post(f"/alerts/{alert_id}/actions", json={"action": "resolve"}, headers=_as("host-1"))
    assert r.status_code == 409
    assert r.json()["error"] == "policy_violation"
    for step in ("ensure_safety", "private_channel", "contact_professional"):
        client.post(f"/alerts/{alert_id}/steps", json={"step": step}, headers=_as("host-1"))
    r = client.post(f"/alerts/{alert_id}/actions", json={"action": "escalate"}, headers=_as("host-1"))
    assert r.json()["status"] == "escalated"
    assert len(notifier.calls) == 1
    r = client.post(f"/alerts/{alert_id}/actions", json={"action": "resolve", "note": "handed over"},
                    headers=_as("host-1"))
    assert r.json()["status"] == "resolved"
    history = client.get(f"/alerts/{alert_id}", headers=_as("host-1")).json()["actions"]
    assert history[-1]["note"] == "handed over"


def test_classifier_outage_returns_503(client, classifier, live_session):
    classifier.always_fail = True
    r = client.post(f"/sessions/{live_session}/reports",
                    json={"subject_id": "p-1", "content_sample": "hm"}, headers=_as("p-2"))
    assert r.status_code == 503
    assert r.json()["error"] == "unavailable"


def test_emergency_request(client, live_session):
    r = client.post(f"/sessions/{live_session}/emergency", json={"emergency_type": "panic"}, headers=_as("p-1"))
    assert r.status_code == 201
    assert r.json()["category"] == "crisis"
    assert r.json()["action_required"] is True


def test_end_and_audit(client, live_session):
    assert client.post(f"/sessions/{live_session}/end", headers=_as("p-1")).status_code == 403
    assert client.post(f"/sessions/{live_session}/end", headers=_as("host-1")).json()["status"] == "ended"
    trail = client.get(f"/sessions/{live_session}/audit", headers=_as("host-1")).json()
    assert [row["operation"] for row in trail][-1] == "end"


def test_stream_sends_snapshot_then_events(client, api_engine, live_session):
    with client.websocket_connect(f"/ws/sessions/{live_session}?participant_id=p-1") as ws:
        first = ws.receive_json()
        assert first["type"] == "snapshot"
        assert first["payload"]["session"]["id"] == live_session
        api_engine.membership.raise_hand(live_session, "p-2")
        event = ws.receive_json()
        assert event["type"] == "participant.updated"
        assert event["seq"] > first["seq"]
        assert event["payload"]["participant"]["participant_id"] == "p-2"
        ws.send_text("ping")
        assert ws.receive_json() == {"type": "pong"}


def test_stream_hides_alerts_from_members(client, api_engine, live_session):
    with client.websocket_connect(f"/ws/sessions/{live_session}?participant_id=p-1") as ws:
        ws.receive_json()
        api_engine.alerts.raise_emergency(live_session, "p-2", "panic")
        api_engine.membership.raise_hand(live_session, "p-2")
        assert ws.receive_json()["type"] == "participant.updated"


def test_stream_for_unknown_session_reports_error(client):
    with client.websocket_connect("/ws/sessions/nope") as ws:
        msg = ws.receive_json()
        assert msg["type"] == "error"
        assert msg["payload"]["error"] == "not_found"
