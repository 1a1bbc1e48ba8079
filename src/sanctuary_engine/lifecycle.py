"""Session Lifecycle Controller.

Drives a session through ``scheduled -> waiting -> live -> active -> ended``. Scheduled
conversion is owned by the server: a timer armed at scheduling time (plus a periodic
safety-net tick) calls ``check_conversion`` and every connected client learns about the
change through a ``session.status`` fan-out event.

Every transition attempt, successful or not, lands in the transition audit.
"""
from __future__ import annotations
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from prometheus_client import Counter
from sqlalchemy import select
from sanctuary_engine import store
from sanctuary_engine.clock import Clock, utcnow, to_naive_utc
from sanctuary_engine.errors import (
    SanctuaryError, Conflict, Forbidden, NotAcknowledged, NotYetOpen, ValidationError,
)
from sanctuary_engine.media import MediaTokenIssuer, session_channel
from sanctuary_engine.models.states import (
    AccessType, SessionStatus, Role, RoomStatus, ConnectionStatus, OPEN_STATUSES, PRE_START_STATUSES,
)
from sanctuary_engine.models.tables import SanctuarySession, Participant
from sanctuary_engine.realtime.fanout import NORMAL, PendingEvent, publish_all
from sanctuary_engine.store import SYSTEM_ACTOR, SessionStore

logger = logging.getLogger(__name__)

TRANSITIONS = Counter('session_transitions_total', 'Session lifecycle transition attempts', ['operation', 'outcome'])
ADMISSIONS = Counter('session_admissions_total', 'Participant admissions', ['result'])


@dataclass
class SessionConfig:
    topic: str
    description: str | None = None
    emoji: str | None = None
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    language: str = "en"
    access_type: str = AccessType.PUBLIC.value
    duration_minutes: int = 60
    max_participants: int = 50
    voice_modulation_enabled: bool = False
    moderation_enabled: bool = True
    recording_enabled: bool = False
    audio_only: bool = True
    emergency_contact_enabled: bool = True


@dataclass
class _Attempt:
    from_status: str | None = None
    to_status: str | None = None
    outcome: str = "ok"


class LifecycleController:
    def __init__(self, session_store: SessionStore, locks, broker, media: MediaTokenIssuer, *,
                 scheduler=None, telemetry=None, clock: Clock = utcnow,
                 lobby_open_minutes: int = 15, expiry_grace_minutes: int = 30,
                 max_session_participants: int = 200, channel_prefix: str = "sanctuary"):
        self.store = session_store
        self.locks = locks
        self.broker = broker
        self.media = media
        self.scheduler = scheduler
        self.telemetry = telemetry
        self.clock = clock
        self.lobby_window = timedelta(minutes=lobby_open_minutes)
        self.expiry_grace = timedelta(minutes=expiry_grace_minutes)
        self.max_session_participants = max_session_participants
        self.channel_prefix = channel_prefix

    # -- audit -------------------------------------------------------------

    def _audited(self, operation: str, session_id: str, actor: str,
                 fn: Callable[[_Attempt], Any]) -> Any:
        attempt = _Attempt()
        detail = None
        try:
            return fn(attempt)
        except SanctuaryError as e:
            attempt.outcome = e.code
            detail = e.message
            # Rejected creates leave no session row; the id still finds the audit trail.
            e.context.setdefault("session_id", session_id)
            raise
        finally:
            TRANSITIONS.labels(operation=operation, outcome=attempt.outcome).inc()
            self.store.record_transition(session_id, actor, operation, attempt.from_status,
                                         attempt.to_status, attempt.outcome, detail, at=self.clock())

    # -- creation ----------------------------------------------------------

    def _validate_config(self, config: SessionConfig) -> None:
        if not (config.topic or "").strip():
            raise ValidationError("topic must not be empty")
        if config.duration_minutes <= 0:
            raise ValidationError("duration_minutes must be positive")
        if not 2 <= config.max_participants <= self.max_session_participants:
            raise ValidationError(f"max_participants must be between 2 and {self.max_session_participants}")
        try:
            AccessType(config.access_type)
        except ValueError:
            raise ValidationError(f"unknown access type {config.access_type!r}")

    def _new_session(self, session_id: str, config: SessionConfig, host_id: str, host_alias: str,
                     status: str, now: datetime) -> SanctuarySession:
        invitation = None
        if config.access_type != AccessType.PUBLIC.value:
            invitation = secrets.token_hex(4).upper()
        return SanctuarySession(
            id=session_id, topic=config.topic.strip(), description=config.description, emoji=config.emoji,
            category=config.category, tags=list(config.tags), language=config.language,
            access_type=config.access_type, invitation_code=invitation, status=status,
            duration_minutes=config.duration_minutes, max_participants=config.max_participants,
            host_id=host_id, host_alias=host_alias,
            voice_modulation_enabled=config.voice_modulation_enabled,
            moderation_enabled=config.moderation_enabled, recording_enabled=config.recording_enabled,
            audio_only=config.audio_only, emergency_contact_enabled=config.emergency_contact_enabled,
            media_channel=session_channel(self.channel_prefix, session_id),
            monitoring_status="ok", schedule_version=0, created_at=now, updated_at=now,
        )

    def _host_row(self, sess: SanctuarySession, now: datetime) -> Participant:
        grant = self.media.allocate(sess.media_channel, sess.host_id)
        return Participant(
            session_id=sess.id, participant_id=sess.host_id, alias=sess.host_alias, role=Role.HOST.value,
            connection_status=ConnectionStatus.CONNECTING.value, acknowledged_at=now, joined_at=now,
            join_token=grant.join_token,
        )

    def create_instant(self, config: SessionConfig, host_id: str, host_alias: str) -> dict[str, Any]:
        """Create a session that is live immediately with the host admitted."""
        session_id = str(uuid.uuid4())

        def run(attempt: _Attempt):
            self._validate_config(config)
            now = self.clock()
            sess = self._new_session(session_id, config, host_id, host_alias, SessionStatus.LIVE.value, now)
            sess.actual_start_time = now
            sess.expires_at = now + timedelta(minutes=config.duration_minutes)
            attempt.to_status = sess.status
            with self.locks.hold(sess.id):
                with self.store.transaction() as s:
                    s.add(sess)
                    s.flush()
                    host = self._host_row(sess, now)
                    s.add(host)
                    view = store.session_view(sess, include_invitation=True)
                    token = host.join_token
                publish_all(self.broker, sess.id, [("session.created", {"session": store.session_view(sess)}, NORMAL)])
            return {"session": view, "media": {"channel_name": sess.media_channel, "join_token": token}}

        logger.info(f"Creating instant session host={host_id}")
        return self._audited("create_instant", session_id, host_id, run)

    def create_scheduled(self, config: SessionConfig, host_id: str, host_alias: str,
                         at: datetime) -> dict[str, Any]:
        """``schedule`` before creation: the session starts in ``scheduled`` (or ``waiting``
        when the lobby window is already open)."""
        session_id = str(uuid.uuid4())
        at = to_naive_utc(at)

        def run(attempt: _Attempt):
            self._validate_config(config)
            now = self.clock()
            sess = self._new_session(session_id, config, host_id, host_alias, SessionStatus.SCHEDULED.value, now)
            if at <= now:
                raise ValidationError("scheduled time must be in the future", scheduled_at=at.isoformat())
            sess.scheduled_at = at
            sess.schedule_version = 1
            sess.expires_at = at + timedelta(minutes=config.duration_minutes)
            if now >= at - self.lobby_window:
                sess.status = SessionStatus.WAITING.value
            attempt.to_status = sess.status
            with self.locks.hold(sess.id):
                with self.store.transaction() as s:
                    s.add(sess)
                    s.flush()
                    s.add(self._host_row(sess, now))
                    view = store.session_view(sess, include_invitation=True)
                self._arm(sess.id, at, sess.schedule_version)
                publish_all(self.broker, sess.id, [("session.created", {"session": store.session_view(sess)}, NORMAL)])
            return {"session": view}

        return self._audited("schedule", session_id, host_id, run)

    # -- scheduling --------------------------------------------------------

    def _arm(self, session_id: str, at: datetime, version: int) -> None:
        if self.scheduler is None:
            return
        lobby_at = at - self.lobby_window
        if lobby_at > self.clock():
            self.scheduler.arm(session_id, lobby_at, version)
        self.scheduler.arm(session_id, at, version)

    def _disarm(self, session_id: str) -> None:
        if self.scheduler is not None:
            self.scheduler.cancel(session_id)

    def schedule(self, session_id: str, at: datetime, actor: str) -> dict[str, Any]:
        """Move the start of a still-scheduled session."""
        at = to_naive_utc(at)

        def run(attempt: _Attempt):
            with self.locks.hold(session_id):
                with self.store.transaction() as s:
                    sess = store.get_session(s, session_id)
                    attempt.from_status = attempt.to_status = sess.status
                    store.require_host(sess, actor)
                    if sess.status != SessionStatus.SCHEDULED.value:
                        raise Conflict(f"cannot schedule a session in status {sess.status}")
                    now = self.clock()
                    if at <= now:
                        raise ValidationError("scheduled time must be in the future", scheduled_at=at.isoformat())
                    sess.scheduled_at = at
                    sess.schedule_version += 1
                    sess.expires_at = at + timedelta(minutes=sess.duration_minutes)
                    if now >= at - self.lobby_window:
                        sess.status = SessionStatus.WAITING.value
                    attempt.to_status = sess.status
                    version = sess.schedule_version
                    view = store.session_view(sess)
                self._disarm(session_id)
                self._arm(session_id, at, version)
                publish_all(self.broker, session_id, [("session.status", {"session": view}, NORMAL)])
            return view

        return self._audited("schedule", session_id, actor, run)

    def cancel_scheduled_start(self, session_id: str, actor: str) -> dict[str, Any]:
        """Cancel a pending start. Bumping the schedule version in the same transaction
        makes any timer that already fired or is about to fire a no-op."""

        def run(attempt: _Attempt):
            with self.locks.hold(session_id):
                with self.store.transaction() as s:
                    sess = store.get_session(s, session_id)
                    attempt.from_status = attempt.to_status = sess.status
                    store.require_host(sess, actor)
                    if sess.status not in PRE_START_STATUSES or sess.scheduled_at is None:
                        raise Conflict(f"no pending start to cancel (status {sess.status})")
                    sess.schedule_version += 1
                    sess.scheduled_at = None
                    sess.status = SessionStatus.WAITING.value
                    attempt.to_status = sess.status
                    view = store.session_view(sess)
                self._disarm(session_id)
                publish_all(self.broker, session_id, [("session.schedule_cancelled", {"session": view}, NORMAL)])
            return view

        return self._audited("cancel_start", session_id, actor, run)

    def reopen(self, session_id: str, actor: str, at: datetime) -> dict[str, Any]:
        """Host-initiated re-open of a waiting session with a new start time."""
        at = to_naive_utc(at)

        def run(attempt: _Attempt):
            with self.locks.hold(session_id):
                with self.store.transaction() as s:
                    sess = store.get_session(s, session_id)
                    attempt.from_status = attempt.to_status = sess.status
                    store.require_host(sess, actor)
                    if sess.status == SessionStatus.ENDED.value:
                        raise Conflict("an ended session cannot be reopened")
                    if sess.status != SessionStatus.WAITING.value:
                        raise Conflict(f"only a waiting session can be reopened (status {sess.status})")
                    now = self.clock()
                    if at <= now:
                        raise ValidationError("scheduled time must be in the future", scheduled_at=at.isoformat())
                    sess.scheduled_at = at
                    sess.schedule_version += 1
                    sess.expires_at = at + timedelta(minutes=sess.duration_minutes)
                    if now < at - self.lobby_window:
                        sess.status = SessionStatus.SCHEDULED.value
                    attempt.to_status = sess.status
                    version = sess.schedule_version
                    view = store.session_view(sess)
                self._disarm(session_id)
                self._arm(session_id, at, version)
                publish_all(self.broker, session_id, [("session.status", {"session": view}, NORMAL)])
            return view

        return self._audited("reopen", session_id, actor, run)

    # -- conversion --------------------------------------------------------

    def _convert(self, sess: SanctuarySession, now: datetime, force: bool = False) -> list[PendingEvent]:
        """Apply due pre-start transitions in place. Pure in (status, scheduled_at, now)."""
        if sess.status not in PRE_START_STATUSES:
            return []
        due = sess.scheduled_at is not None and now >= sess.scheduled_at
        if force or due:
            sess.status = SessionStatus.LIVE.value
            sess.actual_start_time = now
            sess.expires_at = now + timedelta(minutes=sess.duration_minutes)
            return [("session.status", {"session": store.session_view(sess)}, NORMAL)]
        if (sess.status == SessionStatus.SCHEDULED.value and sess.scheduled_at is not None
                and now >= sess.scheduled_at - self.lobby_window):
            sess.status = SessionStatus.WAITING.value
            return [("session.status", {"session": store.session_view(sess)}, NORMAL)]
        return []

    def check_conversion(self, session_id: str, version: Optional[int] = None) -> dict[str, Any]:
        """Idempotent conversion check; ``version`` comes from the timer that fired."""

        def run(attempt: _Attempt):
            with self.locks.hold(session_id):
                with self.store.transaction() as s:
                    sess = store.get_session(s, session_id)
                    attempt.from_status = sess.status
                    if version is not None and version != sess.schedule_version:
                        events = []
                    else:
                        events = self._convert(sess, self.clock())
                    attempt.to_status = sess.status
                    if not events:
                        attempt.outcome = "noop"
                    view = store.session_view(sess)
                publish_all(self.broker, session_id, events)
            return view

        return self._audited("convert", session_id, SYSTEM_ACTOR, run)

    def tick(self) -> list[str]:
        """Run the conversion check for every session whose lobby or start time is due."""
        now = self.clock()
        horizon = now + self.lobby_window
        with self.store.transaction() as s:
            rows = s.scalars(select(SanctuarySession).where(
                SanctuarySession.status.in_(PRE_START_STATUSES),
                SanctuarySession.scheduled_at.is_not(None),
                SanctuarySession.scheduled_at <= horizon)).all()
            candidates = [(r.id, r.status) for r in rows if self.is_due(r, now)]
        changed = []
        for session_id, before in candidates:
            view = self.check_conversion(session_id)
            if view["status"] != before:
                changed.append(session_id)
        return changed

    def start_now(self, session_id: str, actor: str) -> dict[str, Any]:
        """Host force-start from scheduled or waiting."""

        def run(attempt: _Attempt):
            with self.locks.hold(session_id):
                with self.store.transaction() as s:
                    sess = store.get_session(s, session_id)
                    attempt.from_status = attempt.to_status = sess.status
                    store.require_host(sess, actor)
                    if sess.status == SessionStatus.ENDED.value:
                        raise Conflict("session has ended")
                    events = []
                    if sess.status in PRE_START_STATUSES:
                        sess.schedule_version += 1
                        events = self._convert(sess, self.clock(), force=True)
                    else:
                        attempt.outcome = "noop"
                    attempt.to_status = sess.status
                    view = store.session_view(sess)
                self._disarm(session_id)
                publish_all(self.broker, session_id, events)
            return view

        return self._audited("start_now", session_id, actor, run)

    # -- admission ---------------------------------------------------------

    def admit(self, session_id: str, participant_id: str, alias: str | None = None,
              acknowledgment: bool = False, invitation_code: str | None = None) -> dict[str, Any]:
        """Admit a participant. Re-admitting someone already present is a no-op."""

        def run(attempt: _Attempt):
            with self.locks.hold(session_id):
                with self.store.transaction() as s:
                    sess = store.get_session(s, session_id)
                    attempt.from_status = sess.status
                    now = self.clock()
                    events = self._convert(sess, now)
                    attempt.to_status = sess.status
                    is_host = participant_id == sess.host_id
                    existing = store.get_participant(s, session_id, participant_id)

                    if sess.status == SessionStatus.ENDED.value:
                        raise Conflict("session has ended")
                    if not acknowledgment and not is_host:
                        raise NotAcknowledged("participant has not acknowledged the session guidelines")
                    if existing is not None and existing.left_at is None:
                        attempt.outcome = "noop"
                        ADMISSIONS.labels(result="duplicate").inc()
                        result = self._admission_result(sess, existing)
                    else:
                        if sess.status not in OPEN_STATUSES and not is_host:
                            raise NotYetOpen("session is not open yet", status=sess.status,
                                             scheduled_at=store.iso(sess.scheduled_at))
                        if existing is not None and existing.kicked:
                            raise Forbidden("participant was removed from this session")
                        if (not is_host and sess.access_type != AccessType.PUBLIC.value
                                and invitation_code != sess.invitation_code):
                            raise Forbidden("a valid invitation code is required")
                        if store.count_active_participants(s, session_id) >= sess.max_participants:
                            raise Conflict("session is full", max_participants=sess.max_participants)
                        p = self._upsert_member(s, sess, existing, participant_id, alias, is_host, now)
                        if sess.status == SessionStatus.LIVE.value and not is_host:
                            sess.status = SessionStatus.ACTIVE.value
                            attempt.to_status = sess.status
                            events.append(("session.status", {"session": store.session_view(sess)}, NORMAL))
                        events.append(("participant.joined", {"participant": store.participant_view(p)}, NORMAL))
                        ADMISSIONS.labels(result="admitted").inc()
                        result = self._admission_result(sess, p)
                publish_all(self.broker, session_id, events)
            return result

        return self._audited("admit", session_id, participant_id, run)

    def _upsert_member(self, s, sess: SanctuarySession, existing: Participant | None, participant_id: str,
                       alias: str | None, is_host: bool, now: datetime) -> Participant:
        grant = self.media.allocate(sess.media_channel, participant_id)
        role = Role.HOST.value if is_host else Role.MEMBER.value
        if existing is None:
            p = Participant(session_id=sess.id, participant_id=participant_id,
                            alias=alias or participant_id, role=role)
            s.add(p)
        else:
            p = existing
            p.alias = alias or p.alias
            p.role = role
        p.left_at = None
        p.removal_reason = None
        p.room_id = None
        p.room_joined_at = None
        p.is_muted = False
        p.hand_raised = False
        p.hand_raised_at = None
        p.connection_status = ConnectionStatus.CONNECTING.value
        p.acknowledged_at = now
        p.joined_at = now
        p.join_token = grant.join_token
        s.flush()
        return p

    @staticmethod
    def _admission_result(sess: SanctuarySession, p: Participant) -> dict[str, Any]:
        return {
            "session": store.session_view(sess),
            "participant": store.participant_view(p),
            "media": {"channel_name": sess.media_channel, "join_token": p.join_token},
        }

    # -- ending ------------------------------------------------------------

    def end(self, session_id: str, actor: str, reason: str = "ended_by_host") -> dict[str, Any]:
        """End a session: closes every room and ends every membership."""

        def run(attempt: _Attempt):
            with self.locks.hold(session_id):
                with self.store.transaction() as s:
                    sess = store.get_session(s, session_id)
                    attempt.from_status = attempt.to_status = sess.status
                    store.require_privileged(s, sess, actor)
                    if sess.status == SessionStatus.ENDED.value:
                        attempt.outcome = "noop"
                        return store.session_view(sess)
                    events = self._end_locked(s, sess, reason)
                    attempt.to_status = sess.status
                    view = store.session_view(sess)
                self._disarm(session_id)
                publish_all(self.broker, session_id, events)
                self.broker.retire(session_id)
            if self.telemetry is not None:
                self.telemetry.discard(session_id)
            logger.info(f"Session {session_id} ended by {actor}: {reason}")
            return view

        return self._audited("end", session_id, actor, run)

    def _end_locked(self, s, sess: SanctuarySession, reason: str) -> list[PendingEvent]:
        now = self.clock()
        events: list[PendingEvent] = []
        for room in store.open_rooms(s, sess.id):
            room.status = RoomStatus.ENDED.value
            room.ended_at = now
            events.append(("room.closed", {"room_id": room.id, "reason": "session_ended"}, NORMAL))
        for p in store.active_participants(s, sess.id):
            self.media.revoke(p.join_token)
            p.join_token = None
            p.room_id = None
            p.hand_raised = False
            p.left_at = now
            p.removal_reason = "session_ended"
        sess.status = SessionStatus.ENDED.value
        sess.actual_end_time = now
        sess.end_reason = reason
        sess.schedule_version += 1
        events.append(("session.ended", {"session": store.session_view(sess)}, NORMAL))
        return events

    def expire_overdue(self) -> list[str]:
        """End open sessions that ran past their duration plus the grace period."""
        cutoff = self.clock() - self.expiry_grace
        with self.store.transaction() as s:
            ids = list(s.scalars(select(SanctuarySession.id).where(
                SanctuarySession.status.in_(OPEN_STATUSES),
                SanctuarySession.expires_at.is_not(None),
                SanctuarySession.expires_at <= cutoff)).all())
        for session_id in ids:
            self.end(session_id, SYSTEM_ACTOR, reason="expired")
        return ids

    def is_due(self, sess: SanctuarySession, now: datetime) -> bool:
        if sess.status not in PRE_START_STATUSES or sess.scheduled_at is None:
            return False
        if sess.status == SessionStatus.WAITING.value:
            return now >= sess.scheduled_at
        return now >= sess.scheduled_at - self.lobby_window

    def get(self, session_id: str, viewer: str | None = None) -> dict[str, Any]:
        """Fresh session state; a conversion that is due but not yet applied is applied first."""
        with self.store.transaction() as s:
            sess = store.get_session(s, session_id)
            due = self.is_due(sess, self.clock())
            view = store.session_view(sess, include_invitation=viewer == sess.host_id)
        if due:
            self.check_conversion(session_id)
            return self.get(session_id, viewer)
        return view

    def list_sessions(self, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        with self.store.transaction() as s:
            q = select(SanctuarySession).order_by(SanctuarySession.created_at.desc()).limit(limit)
            if status:
                q = q.where(SanctuarySession.status == status)
            return [store.session_view(r) for r in s.scalars(q).all()]

    def audit_trail(self, session_id: str, actor: str) -> list[dict[str, Any]]:
        with self.store.transaction() as s:
            sess = store.get_session(s, session_id)
            store.require_privileged(s, sess, actor)
        return self.store.audit_trail(session_id)
