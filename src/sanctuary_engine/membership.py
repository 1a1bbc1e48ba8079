"""Participant & Room Membership Manager.

Owns the canonical participant set of a session. Removing a participant clears their
breakout room in the same transaction, so there is never a state where someone sits in
a room without being in the session. Telemetry and reactions are the high-frequency,
ephemeral side of membership.
"""
from __future__ import annotations
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Optional
from prometheus_client import Counter
from sqlalchemy import select
from sanctuary_engine import store
from sanctuary_engine.clock import Clock, utcnow
from sanctuary_engine.errors import Conflict, Forbidden, ValidationError
from sanctuary_engine.models.states import (
    Role, RoomStatus, ConnectionStatus, ConnectionQuality, OPEN_STATUSES, PRIVILEGED_ROLES,
)
from sanctuary_engine.models.tables import Participant, BreakoutRoom, Reaction
from sanctuary_engine.quality import QualityThresholds, classify, connection_status_for
from sanctuary_engine.realtime.fanout import NORMAL, EPHEMERAL, PendingEvent, publish_all
from sanctuary_engine.store import SessionStore
from sanctuary_engine.telemetry import TransportSample

logger = logging.getLogger(__name__)

REMOVALS = Counter('participant_removals_total', 'Participants removed from sessions', ['reason'])
TELEMETRY_UPDATES = Counter('participant_telemetry_updates_total', 'Audio telemetry updates')
REACTIONS = Counter('participant_reactions_total', 'Reactions sent')


def vacate_room(s, p: Participant, now: datetime) -> list[PendingEvent]:
    """Take ``p`` out of their breakout room, handing the room over if they facilitated it."""
    if p.room_id is None:
        return []
    room = s.get(BreakoutRoom, p.room_id)
    p.room_id = None
    p.room_joined_at = None
    s.flush()
    if room is None:
        return []
    events: list[PendingEvent] = [("room.member_left", {"room_id": room.id, "participant_id": p.participant_id}, NORMAL)]
    if room.facilitator_id == p.participant_id and p.left_at is not None:
        events.extend(reassign_facilitator(s, room, now))
    return events


def reassign_facilitator(s, room: BreakoutRoom, now: datetime) -> list[PendingEvent]:
    """The member who joined the room first takes over; an empty room is closed."""
    remaining = store.room_members(s, room.id)
    if remaining:
        room.facilitator_id = remaining[0].participant_id
        return [("room.facilitator_changed", {"room_id": room.id, "facilitator_id": room.facilitator_id}, NORMAL)]
    room.status = RoomStatus.ENDED.value
    room.ended_at = now
    return [("room.closed", {"room_id": room.id, "reason": "facilitator_left"}, NORMAL)]


class MembershipManager:
    def __init__(self, session_store: SessionStore, locks, broker, lifecycle, telemetry, media, *,
                 clock: Clock = utcnow, epoch_clock=time.time,
                 thresholds: Optional[QualityThresholds] = None,
                 reaction_ttl_seconds: float = 3.0, hand_raise_ttl_seconds: float = 600.0):
        self.store = session_store
        self.locks = locks
        self.broker = broker
        self.lifecycle = lifecycle
        self.telemetry = telemetry
        self.media = media
        self.clock = clock
        self.epoch_clock = epoch_clock
        self.thresholds = thresholds or QualityThresholds()
        self.reaction_ttl = timedelta(seconds=reaction_ttl_seconds)
        self.hand_raise_ttl = timedelta(seconds=hand_raise_ttl_seconds)

    # -- join / leave / kick ----------------------------------------------

    def join(self, session_id: str, participant_id: str, alias: str | None = None,
             acknowledgment: bool = False, invitation_code: str | None = None) -> dict[str, Any]:
        return self.lifecycle.admit(session_id, participant_id, alias, acknowledgment, invitation_code)

    def _remove(self, s, sess, p: Participant, reason: str) -> list[PendingEvent]:
        now = self.clock()
        p.left_at = now
        p.removal_reason = reason
        p.hand_raised = False
        p.hand_raised_at = None
        events = vacate_room(s, p, now)
        s.flush()
        # Facilitators who were not sitting in their own room still need a successor.
        for room in store.open_rooms(s, sess.id):
            if room.facilitator_id == p.participant_id:
                events.extend(reassign_facilitator(s, room, now))
        self.media.revoke(p.join_token)
        p.join_token = None
        events.append(("participant.left", {"participant_id": p.participant_id, "reason": reason}, NORMAL))
        REMOVALS.labels(reason=reason).inc()
        return events

    def leave(self, session_id: str, participant_id: str) -> dict[str, Any]:
        with self.locks.hold(session_id):
            with self.store.transaction() as s:
                sess = store.get_session(s, session_id)
                p = store.require_active_participant(s, session_id, participant_id)
                events = self._remove(s, sess, p, "left")
                view = store.participant_view(p)
            publish_all(self.broker, session_id, events)
        self.telemetry.discard(session_id, participant_id)
        return view

    def kick(self, session_id: str, participant_id: str, actor: str) -> dict[str, Any]:
        with self.locks.hold(session_id):
            with self.store.transaction() as s:
                sess = store.get_session(s, session_id)
                store.require_privileged(s, sess, actor)
                p = store.require_active_participant(s, session_id, participant_id)
                if participant_id == sess.host_id:
                    raise Forbidden("the host cannot be removed")
                if participant_id == actor:
                    raise ValidationError("use leave to remove yourself")
                p.kicked = True
                events = self._remove(s, sess, p, "kicked")
                view = store.participant_view(p)
            publish_all(self.broker, session_id, events)
        self.telemetry.discard(session_id, participant_id)
        logger.info(f"Participant {participant_id} removed from {session_id} by {actor}")
        return view

    # -- privileged state --------------------------------------------------

    def _mutate(self, session_id: str, participant_id: str, mutate) -> dict[str, Any]:
        with self.locks.hold(session_id):
            with self.store.transaction() as s:
                sess = store.get_session(s, session_id)
                p = store.require_active_participant(s, session_id, participant_id)
                mutate(s, sess, p)
                view = store.participant_view(p, self.telemetry.read(session_id, participant_id))
            publish_all(self.broker, session_id, [("participant.updated", {"participant": view}, NORMAL)])
        return view

    def set_role(self, session_id: str, participant_id: str, role: str, actor: str) -> dict[str, Any]:
        if role not in (Role.MODERATOR.value, Role.MEMBER.value):
            raise ValidationError(f"role must be moderator or member, got {role!r}")

        def apply(s, sess, p):
            store.require_host(sess, actor)
            if p.role == Role.HOST.value:
                raise Forbidden("the host role cannot be changed")
            p.role = role

        return self._mutate(session_id, participant_id, apply)

    def set_muted(self, session_id: str, participant_id: str, muted: bool, actor: str) -> dict[str, Any]:
        def apply(s, sess, p):
            if actor != participant_id:
                store.require_privileged(s, sess, actor)
            p.is_muted = muted

        return self._mutate(session_id, participant_id, apply)

    def raise_hand(self, session_id: str, participant_id: str) -> dict[str, Any]:
        def apply(s, sess, p):
            if sess.status not in OPEN_STATUSES:
                raise Conflict("hands can only be raised in a live session")
            if not p.hand_raised:
                p.hand_raised = True
                p.hand_raised_at = self.clock()

        return self._mutate(session_id, participant_id, apply)

    def lower_hand(self, session_id: str, participant_id: str, actor: str | None = None) -> dict[str, Any]:
        actor = actor or participant_id

        def apply(s, sess, p):
            if actor != participant_id:
                store.require_privileged(s, sess, actor)
            p.hand_raised = False
            p.hand_raised_at = None

        return self._mutate(session_id, participant_id, apply)

    # -- high-frequency / ephemeral -----------------------------------------

    def update_audio_telemetry(self, session_id: str, participant_id: str, level: int,
                               connection_status: str | None = None,
                               sample: Optional[TransportSample] = None) -> dict[str, Any]:
        """Last-write-wins telemetry. Takes no session lock and touches no table."""
        if not 0 <= level <= 100:
            raise ValidationError("audio level must be between 0 and 100")
        if connection_status is not None:
            try:
                ConnectionStatus(connection_status)
            except ValueError:
                raise ValidationError(f"unknown connection status {connection_status!r}")
        now = self.epoch_clock()
        if sample is not None and not sample.at:
            sample.at = now
        quality = None
        if sample is not None:
            prev = self.telemetry.read(session_id, participant_id)
            samples = (list(prev.samples) if prev else []) + [sample]
            quality = classify(samples[-self.thresholds.window:], now, self.thresholds).value
            if connection_status is None:
                connection_status = connection_status_for(quality)
        state = self.telemetry.write(session_id, participant_id, audio_level=level,
                                     connection_status=connection_status, sample=sample,
                                     quality=quality, at=now)
        TELEMETRY_UPDATES.inc()
        payload = {
            "participant_id": participant_id,
            "audio_level": state.audio_level,
            "connection_status": state.connection_status,
            "connection_quality": state.quality,
        }
        self.broker.publish(session_id, "participant.telemetry", payload, EPHEMERAL)
        return payload

    def evaluate_stale(self) -> int:
        """Re-classify every tracked participant against the current time; publish changes."""
        now = self.epoch_clock()
        changed = 0
        for session_id in self.telemetry.sessions():
            for participant_id, state in self.telemetry.read_session(session_id).items():
                if state.samples:
                    quality = classify(state.samples, now, self.thresholds).value
                elif now - state.updated_at > self.thresholds.stale_after_seconds:
                    quality = ConnectionQuality.DISCONNECTED.value
                else:
                    continue
                status = connection_status_for(quality)
                if quality == state.quality and status == state.connection_status:
                    continue
                self.telemetry.write(session_id, participant_id, quality=quality, connection_status=status)
                self.broker.publish(session_id, "participant.telemetry", {
                    "participant_id": participant_id, "audio_level": state.audio_level,
                    "connection_status": status, "connection_quality": quality,
                }, EPHEMERAL)
                changed += 1
        return changed

    def send_reaction(self, session_id: str, participant_id: str, emoji: str,
                      target_participant_id: str | None = None) -> dict[str, Any]:
        if not (emoji or "").strip():
            raise ValidationError("emoji must not be empty")
        with self.locks.hold(session_id):
            with self.store.transaction() as s:
                sess = store.get_session(s, session_id)
                if sess.status not in OPEN_STATUSES:
                    raise Conflict("reactions are only accepted in a live session")
                store.require_active_participant(s, session_id, participant_id)
                if target_participant_id is not None:
                    store.require_active_participant(s, session_id, target_participant_id)
                now = self.clock()
                reaction = Reaction(session_id=session_id, participant_id=participant_id, emoji=emoji,
                                    target_participant_id=target_participant_id, created_at=now,
                                    expires_at=now + self.reaction_ttl)
                s.add(reaction)
                s.flush()
                payload = {
                    "reaction_id": reaction.id, "participant_id": participant_id, "emoji": emoji,
                    "target_participant_id": target_participant_id, "expires_at": store.iso(reaction.expires_at),
                }
            self.broker.publish(session_id, "reaction.added", payload, EPHEMERAL)
        REACTIONS.inc()
        return payload

    def sweep(self) -> dict[str, int]:
        """Expire reactions and stale hand raises."""
        now = self.clock()
        hand_cutoff = now - self.hand_raise_ttl
        with self.store.transaction() as s:
            session_ids = set(s.scalars(select(Reaction.session_id).where(Reaction.expires_at <= now)).all())
            session_ids |= set(s.scalars(select(Participant.session_id).where(
                Participant.hand_raised.is_(True), Participant.hand_raised_at <= hand_cutoff)).all())
        expired_reactions = lowered_hands = 0
        for session_id in sorted(session_ids):
            with self.locks.hold(session_id):
                events: list[PendingEvent] = []
                with self.store.transaction() as s:
                    for r in s.scalars(select(Reaction).where(
                            Reaction.session_id == session_id, Reaction.expires_at <= now)).all():
                        events.append(("reaction.expired", {"reaction_id": r.id, "participant_id": r.participant_id}, EPHEMERAL))
                        s.delete(r)
                        expired_reactions += 1
                    for p in s.scalars(select(Participant).where(
                            Participant.session_id == session_id, Participant.hand_raised.is_(True),
                            Participant.hand_raised_at <= hand_cutoff)).all():
                        p.hand_raised = False
                        p.hand_raised_at = None
                        events.append(("participant.updated", {"participant": store.participant_view(p)}, NORMAL))
                        lowered_hands += 1
                publish_all(self.broker, session_id, events)
        return {"reactions": expired_reactions, "hands": lowered_hands}

    # -- reads -------------------------------------------------------------

    def participants(self, session_id: str) -> list[dict[str, Any]]:
        telemetry = self.telemetry.read_session(session_id)
        with self.store.transaction() as s:
            store.get_session(s, session_id)
            return [store.participant_view(p, telemetry.get(p.participant_id))
                    for p in store.active_participants(s, session_id)]

    def snapshot(self, session_id: str, viewer: str | None = None) -> dict[str, Any]:
        """Full state for a late joiner. ``seq`` is the last event already reflected."""
        self.lifecycle.get(session_id)  # applies any due conversion
        telemetry = self.telemetry.read_session(session_id)
        with self.locks.hold(session_id):
            with self.store.transaction() as s:
                sess = store.get_session(s, session_id)
                participants = store.active_participants(s, session_id)
                rooms = [store.room_view(r, store.room_members(s, r.id)) for r in store.open_rooms(s, session_id)]
                now = self.clock()
                reactions = s.scalars(select(Reaction).where(
                    Reaction.session_id == session_id, Reaction.expires_at > now)).all()
                alerts = []
                viewer_row = store.get_active_participant(s, session_id, viewer) if viewer else None
                if viewer == sess.host_id or (viewer_row is not None and viewer_row.role in PRIVILEGED_ROLES):
                    alerts = [store.alert_view(a) for a in store.open_alerts(s, session_id)]
                return {
                    "seq": self.broker.last_seq(session_id),
                    "session": store.session_view(sess, include_invitation=viewer == sess.host_id),
                    "participants": [store.participant_view(p, telemetry.get(p.participant_id)) for p in participants],
                    "rooms": rooms,
                    "reactions": [{
                        "reaction_id": r.id, "participant_id": r.participant_id, "emoji": r.emoji,
                        "target_participant_id": r.target_participant_id, "expires_at": store.iso(r.expires_at),
                    } for r in reactions],
                    "alerts": alerts,
                }
