"""Session Store and Participant Registry persistence.

Thin CRUD helpers over the ORM tables plus the JSON views that flow into API responses
and fan-out payloads. Callers own locking; everything here runs inside the caller's
``transaction()``.
"""
from __future__ import annotations
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, Optional
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sanctuary_engine.clock import utcnow
from sanctuary_engine.errors import Forbidden, NotFound
from sanctuary_engine.infrastructure import db
from sanctuary_engine.models.states import PRIVILEGED_ROLES, RoomStatus, AlertStatus
from sanctuary_engine.models.tables import (
    SanctuarySession, Participant, BreakoutRoom, Alert, AlertAction, TransitionAudit,
)
from sanctuary_engine.telemetry import TelemetryState

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class SessionStore:
    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> Callable[[], Session]:
        return self._session_factory or db.get_session_factory()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        s = self.session_factory()
        try:
            yield s
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    def record_transition(self, session_id: str, actor: str, operation: str, from_status: str | None,
                          to_status: str | None, outcome: str, detail: str | None = None,
                          at: Optional[datetime] = None) -> None:
        """Append one audit row in its own transaction."""
        with self.transaction() as s:
            s.add(TransitionAudit(
                session_id=session_id, actor=actor or SYSTEM_ACTOR, operation=operation,
                from_status=from_status, to_status=to_status, outcome=outcome,
                detail=detail[:512] if detail else None, created_at=at or utcnow(),
            ))

    def audit_trail(self, session_id: str) -> list[dict[str, Any]]:
        with self.transaction() as s:
            rows = s.scalars(select(TransitionAudit).where(TransitionAudit.session_id == session_id)
                             .order_by(TransitionAudit.id)).all()
            return [{
                "actor": r.actor, "operation": r.operation, "from_status": r.from_status,
                "to_status": r.to_status, "outcome": r.outcome, "detail": r.detail,
                "created_at": iso(r.created_at),
            } for r in rows]


# Queries -----------------------------------------------------------------

def get_session(s: Session, session_id: str) -> SanctuarySession:
    sess = s.get(SanctuarySession, session_id)
    if sess is None:
        raise NotFound(f"session {session_id} not found", session_id=session_id)
    return sess


def get_participant(s: Session, session_id: str, participant_id: str) -> Optional[Participant]:
    """Membership row including departed participants."""
    return s.scalars(select(Participant).where(
        Participant.session_id == session_id, Participant.participant_id == participant_id)).first()


def get_active_participant(s: Session, session_id: str, participant_id: str) -> Optional[Participant]:
    p = get_participant(s, session_id, participant_id)
    return p if p is not None and p.left_at is None else None


def require_active_participant(s: Session, session_id: str, participant_id: str) -> Participant:
    p = get_active_participant(s, session_id, participant_id)
    if p is None:
        raise NotFound(f"participant {participant_id} is not in session {session_id}",
                       session_id=session_id, participant_id=participant_id)
    return p


def active_participants(s: Session, session_id: str) -> list[Participant]:
    return list(s.scalars(select(Participant).where(
        Participant.session_id == session_id, Participant.left_at.is_(None))
        .order_by(Participant.joined_at, Participant.id)).all())


def count_active_participants(s: Session, session_id: str) -> int:
    return s.scalar(select(func.count(Participant.id)).where(
        Participant.session_id == session_id, Participant.left_at.is_(None))) or 0


def require_privileged(s: Session, sess: SanctuarySession, actor: str) -> None:
    if actor == SYSTEM_ACTOR or actor == sess.host_id:
        return
    p = get_active_participant(s, sess.id, actor)
    if p is None or p.role not in PRIVILEGED_ROLES:
        raise Forbidden("actor is not host or moderator", actor=actor)


def require_host(sess: SanctuarySession, actor: str) -> None:
    if actor != sess.host_id:
        raise Forbidden("only the host may do this", actor=actor)


def get_room(s: Session, room_id: str) -> BreakoutRoom:
    room = s.get(BreakoutRoom, room_id)
    if room is None:
        raise NotFound(f"room {room_id} not found", room_id=room_id)
    return room


def open_rooms(s: Session, session_id: str) -> list[BreakoutRoom]:
    return list(s.scalars(select(BreakoutRoom).where(
        BreakoutRoom.session_id == session_id, BreakoutRoom.status != RoomStatus.ENDED.value)
        .order_by(BreakoutRoom.created_seq)).all())


def room_members(s: Session, room_id: str) -> list[Participant]:
    return list(s.scalars(select(Participant).where(
        Participant.room_id == room_id, Participant.left_at.is_(None))
        .order_by(Participant.room_joined_at, Participant.id)).all())


def room_occupancy(s: Session, room_id: str) -> int:
    return s.scalar(select(func.count(Participant.id)).where(
        Participant.room_id == room_id, Participant.left_at.is_(None))) or 0


def next_room_seq(s: Session, session_id: str) -> int:
    current = s.scalar(select(func.max(BreakoutRoom.created_seq)).where(BreakoutRoom.session_id == session_id))
    return (current or 0) + 1


def get_alert(s: Session, alert_id: str) -> Alert:
    alert = s.get(Alert, alert_id)
    if alert is None:
        raise NotFound(f"alert {alert_id} not found", alert_id=alert_id)
    return alert


def alert_actions(s: Session, alert_id: str) -> list[AlertAction]:
    return list(s.scalars(select(AlertAction).where(AlertAction.alert_id == alert_id)
                          .order_by(AlertAction.seq)).all())


def open_alerts(s: Session, session_id: str) -> list[Alert]:
    return list(s.scalars(select(Alert).where(
        Alert.session_id == session_id, Alert.status != AlertStatus.RESOLVED.value)
        .order_by(Alert.created_at, Alert.id)).all())


# Views -------------------------------------------------------------------

def session_view(sess: SanctuarySession, include_invitation: bool = False) -> dict[str, Any]:
    view = {
        "id": sess.id,
        "topic": sess.topic,
        "description": sess.description,
        "emoji": sess.emoji,
        "category": sess.category,
        "tags": list(sess.tags or []),
        "language": sess.language,
        "access_type": sess.access_type,
        "status": sess.status,
        "scheduled_at": iso(sess.scheduled_at),
        "duration_minutes": sess.duration_minutes,
        "max_participants": sess.max_participants,
        "host_id": sess.host_id,
        "host_alias": sess.host_alias,
        "voice_modulation_enabled": sess.voice_modulation_enabled,
        "moderation_enabled": sess.moderation_enabled,
        "recording_enabled": sess.recording_enabled,
        "audio_only": sess.audio_only,
        "emergency_contact_enabled": sess.emergency_contact_enabled,
        "media_channel": sess.media_channel,
        "monitoring_status": sess.monitoring_status,
        "actual_start_time": iso(sess.actual_start_time),
        "actual_end_time": iso(sess.actual_end_time),
        "end_reason": sess.end_reason,
        "expires_at": iso(sess.expires_at),
        "created_at": iso(sess.created_at),
    }
    if include_invitation:
        view["invitation_code"] = sess.invitation_code
    return view


def participant_view(p: Participant, telemetry: Optional[TelemetryState] = None) -> dict[str, Any]:
    view = {
        "participant_id": p.participant_id,
        "alias": p.alias,
        "role": p.role,
        "is_muted": p.is_muted,
        "hand_raised": p.hand_raised,
        "hand_raised_at": iso(p.hand_raised_at),
        "connection_status": p.connection_status,
        "audio_level": p.audio_level,
        "connection_quality": None,
        "room_id": p.room_id,
        "joined_at": iso(p.joined_at),
        "left_at": iso(p.left_at),
        "removal_reason": p.removal_reason,
    }
    if telemetry is not None:
        view["audio_level"] = telemetry.audio_level
        view["connection_status"] = telemetry.connection_status
        view["connection_quality"] = telemetry.quality
    return view


def room_view(room: BreakoutRoom, members: list[Participant]) -> dict[str, Any]:
    return {
        "id": room.id,
        "session_id": room.session_id,
        "name": room.name,
        "topic": room.topic,
        "description": room.description,
        "facilitator_id": room.facilitator_id,
        "max_participants": room.max_participants,
        "status": room.status,
        "duration_minutes": room.duration_minutes,
        "auto_close": room.auto_close,
        "auto_close_after_minutes": room.auto_close_after_minutes,
        "media_channel": room.media_channel,
        "members": [m.participant_id for m in members],
        "created_seq": room.created_seq,
        "created_at": iso(room.created_at),
        "ended_at": iso(room.ended_at),
    }


def alert_view(alert: Alert, actions: list[AlertAction] | None = None) -> dict[str, Any]:
    view = {
        "id": alert.id,
        "session_id": alert.session_id,
        "participant_id": alert.participant_id,
        "category": alert.category,
        "severity": alert.severity,
        "confidence": alert.confidence,
        "triggers": list(alert.triggers or []),
        "status": alert.status,
        "action_required": alert.action_required,
        "completed_steps": list(alert.completed_steps or []),
        "source": alert.source,
        "message": alert.message,
        "emergency_notified_at": iso(alert.emergency_notified_at),
        "created_at": iso(alert.created_at),
        "resolved_at": iso(alert.resolved_at),
    }
    if actions is not None:
        view["actions"] = [{
            "seq": a.seq, "actor": a.actor, "action": a.action, "from_status": a.from_status,
            "to_status": a.to_status, "note": a.note, "timestamp": iso(a.created_at),
        } for a in actions]
    return view
