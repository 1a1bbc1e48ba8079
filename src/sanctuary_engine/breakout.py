"""Breakout Room Coordinator.

Rooms live inside an open session. Membership is the nullable ``Participant.room_id``
column, so a participant is in at most one room by construction; capacity is checked
under the session lock before every insert.
"""
from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import Any, Optional
from prometheus_client import Counter
from sqlalchemy import select
from sanctuary_engine import store
from sanctuary_engine.clock import Clock, utcnow
from sanctuary_engine.errors import Conflict, RoomFull, ValidationError
from sanctuary_engine.infrastructure.idempotency import (
    IdempotentOperation, IdempotencyError, IdempotencyConflictError,
)
from sanctuary_engine.media import room_channel
from sanctuary_engine.membership import vacate_room
from sanctuary_engine.models.states import OPEN_STATUSES, Role, RoomStatus
from sanctuary_engine.models.tables import BreakoutRoom
from sanctuary_engine.realtime.fanout import NORMAL, PendingEvent, publish_all
from sanctuary_engine.store import SYSTEM_ACTOR, SessionStore

logger = logging.getLogger(__name__)

ROOM_OPERATIONS = Counter('breakout_room_operations_total', 'Breakout room operations', ['operation', 'result'])


@dataclass
class BreakoutConfig:
    name: str
    topic: str | None = None
    description: str | None = None
    max_participants: int = 6
    facilitator_id: str | None = None
    duration_minutes: int | None = None
    auto_close: bool = False
    auto_close_after_minutes: int | None = None


class BreakoutCoordinator:
    def __init__(self, session_store: SessionStore, locks, broker, *, clock: Clock = utcnow,
                 min_participants: int = 2, max_participants: int = 20,
                 channel_prefix: str = "sanctuary", idempotency_ttl_hours: int = 24):
        self.store = session_store
        self.locks = locks
        self.broker = broker
        self.clock = clock
        self.min_participants = min_participants
        self.max_participants = max_participants
        self.channel_prefix = channel_prefix
        self._create_op = IdempotentOperation("create_breakout_room", ttl_hours=idempotency_ttl_hours,
                                              session_factory=lambda: session_store.session_factory())

    def _session_of(self, room_id: str) -> str:
        with self.store.transaction() as s:
            return store.get_room(s, room_id).session_id

    # -- create ------------------------------------------------------------

    def create_room(self, session_id: str, config: BreakoutConfig, actor: str,
                    idempotency_key: Optional[str] = None) -> dict[str, Any]:
        """Create a room. With ``idempotency_key`` a retried request returns the first room."""
        params = dict(session_id=session_id, actor=actor, **asdict(config))
        if not idempotency_key:
            return self._create_room(**params)
        try:
            return self._create_op.execute(idempotency_key, self._create_room, **params)
        except IdempotencyConflictError as e:
            raise Conflict(str(e), idempotency_key=idempotency_key)
        except IdempotencyError as e:
            raise Conflict(f"idempotency key {idempotency_key}: {e}", idempotency_key=idempotency_key)

    def _create_room(self, session_id: str, actor: str, name: str, topic: str | None = None,
                     description: str | None = None, max_participants: int = 6,
                     facilitator_id: str | None = None, duration_minutes: int | None = None,
                     auto_close: bool = False, auto_close_after_minutes: int | None = None) -> dict[str, Any]:
        with self.locks.hold(session_id):
            with self.store.transaction() as s:
                sess = store.get_session(s, session_id)
                store.require_privileged(s, sess, actor)
                if sess.status not in OPEN_STATUSES:
                    raise Conflict(f"rooms can only be created in a live session (status {sess.status})")
                if not (name or "").strip():
                    raise ValidationError("room name must not be empty")
                if not self.min_participants <= max_participants <= self.max_participants:
                    raise ValidationError(
                        f"max_participants must be between {self.min_participants} and {self.max_participants}")
                if auto_close and not (auto_close_after_minutes and auto_close_after_minutes > 0):
                    raise ValidationError("auto_close requires a positive auto_close_after_minutes")
                facilitator = facilitator_id or actor
                if store.get_active_participant(s, session_id, facilitator) is None:
                    raise ValidationError(f"facilitator {facilitator} is not in the session")
                room_id = str(uuid.uuid4())
                room = BreakoutRoom(
                    id=room_id, session_id=session_id, name=name.strip(), topic=topic, description=description,
                    facilitator_id=facilitator, max_participants=max_participants,
                    status=RoomStatus.WAITING.value, duration_minutes=duration_minutes,
                    auto_close=auto_close, auto_close_after_minutes=auto_close_after_minutes,
                    media_channel=room_channel(self.channel_prefix, session_id, room_id),
                    created_seq=store.next_room_seq(s, session_id), created_by=actor, created_at=self.clock(),
                )
                s.add(room)
                s.flush()
                view = store.room_view(room, [])
            publish_all(self.broker, session_id, [("room.created", {"room": view}, NORMAL)])
        ROOM_OPERATIONS.labels(operation="create", result="ok").inc()
        logger.info(f"Room {room_id} created in {session_id} by {actor}")
        return view

    # -- membership --------------------------------------------------------

    def join_room(self, room_id: str, participant_id: str, actor: str | None = None) -> dict[str, Any]:
        """Move a participant into a room, leaving any room they were in."""
        actor = actor or participant_id
        session_id = self._session_of(room_id)
        with self.locks.hold(session_id):
            with self.store.transaction() as s:
                sess = store.get_session(s, session_id)
                if actor != participant_id:
                    store.require_privileged(s, sess, actor)
                room = store.get_room(s, room_id)
                if room.status == RoomStatus.ENDED.value:
                    raise Conflict("room is closed", room_id=room_id)
                if sess.status not in OPEN_STATUSES:
                    raise Conflict(f"session is not live (status {sess.status})")
                p = store.require_active_participant(s, session_id, participant_id)
                if p.room_id == room_id:
                    return store.room_view(room, store.room_members(s, room_id))
                if store.room_occupancy(s, room_id) >= room.max_participants:
                    ROOM_OPERATIONS.labels(operation="join", result="full").inc()
                    raise RoomFull("room is full", room_id=room_id, max_participants=room.max_participants)
                events = vacate_room(s, p, self.clock())
                p.room_id = room_id
                p.room_joined_at = self.clock()
                room.status = RoomStatus.ACTIVE.value
                s.flush()
                events.append(("room.member_joined", {"room_id": room_id, "participant_id": participant_id}, NORMAL))
                view = store.room_view(room, store.room_members(s, room_id))
            publish_all(self.broker, session_id, events)
        ROOM_OPERATIONS.labels(operation="join", result="ok").inc()
        return view

    def leave_room(self, room_id: str, participant_id: str, actor: str | None = None) -> dict[str, Any]:
        actor = actor or participant_id
        session_id = self._session_of(room_id)
        with self.locks.hold(session_id):
            with self.store.transaction() as s:
                sess = store.get_session(s, session_id)
                if actor != participant_id:
                    store.require_privileged(s, sess, actor)
                room = store.get_room(s, room_id)
                p = store.require_active_participant(s, session_id, participant_id)
                if p.room_id != room_id:
                    raise Conflict(f"participant {participant_id} is not in room {room_id}")
                events = vacate_room(s, p, self.clock())
                view = store.room_view(room, store.room_members(s, room_id))
            publish_all(self.broker, session_id, events)
        ROOM_OPERATIONS.labels(operation="leave", result="ok").inc()
        return view

    def auto_assign(self, session_id: str, actor: str) -> dict[str, Any]:
        """Deterministically place unassigned members into open rooms.

        Candidates are admitted members without a room, ordered by join time. Rooms are
        visited by ascending occupancy, ties broken by creation order, and each is filled
        up to its remaining capacity. Members that do not fit are reported as unassigned.
        Running it again on an unchanged snapshot assigns nobody.
        """
        with self.locks.hold(session_id):
            with self.store.transaction() as s:
                sess = store.get_session(s, session_id)
                store.require_privileged(s, sess, actor)
                if sess.status not in OPEN_STATUSES:
                    raise Conflict(f"session is not live (status {sess.status})")
                candidates = [p for p in store.active_participants(s, session_id)
                              if p.role == Role.MEMBER.value and p.room_id is None]
                rooms = store.open_rooms(s, session_id)
                occupancy = {r.id: store.room_occupancy(s, r.id) for r in rooms}
                order = sorted(rooms, key=lambda r: (occupancy[r.id], r.created_seq))
                now = self.clock()
                assignments: dict[str, list[str]] = {r.id: [] for r in rooms}
                queue = list(candidates)
                for room in order:
                    free = room.max_participants - occupancy[room.id]
                    while free > 0 and queue:
                        p = queue.pop(0)
                        p.room_id = room.id
                        p.room_joined_at = now
                        assignments[room.id].append(p.participant_id)
                        occupancy[room.id] += 1
                        free -= 1
                    if assignments[room.id]:
                        room.status = RoomStatus.ACTIVE.value
                events: list[PendingEvent] = [
                    ("room.member_joined", {"room_id": room_id, "participant_id": pid}, NORMAL)
                    for room_id, pids in assignments.items() for pid in pids
                ]
                result = {
                    "assignments": [{"room_id": r.id, "participants": assignments[r.id]} for r in rooms],
                    "occupancy": [{"room_id": r.id, "count": occupancy[r.id]} for r in rooms],
                    "unassigned": [p.participant_id for p in queue],
                }
                events.append(("breakout.auto_assigned", result, NORMAL))
            publish_all(self.broker, session_id, events)
        ROOM_OPERATIONS.labels(operation="auto_assign", result="ok").inc()
        return result

    # -- close -------------------------------------------------------------

    def _close_locked(self, s, room: BreakoutRoom, reason: str) -> list[PendingEvent]:
        evicted = []
        for p in store.room_members(s, room.id):
            p.room_id = None
            p.room_joined_at = None
            evicted.append(p.participant_id)
        room.status = RoomStatus.ENDED.value
        room.ended_at = self.clock()
        return [("room.closed", {"room_id": room.id, "reason": reason, "evicted": evicted}, NORMAL)]

    def delete_room(self, room_id: str, actor: str) -> dict[str, Any]:
        """Evict every member back to the session, then close the room."""
        session_id = self._session_of(room_id)
        with self.locks.hold(session_id):
            with self.store.transaction() as s:
                sess = store.get_session(s, session_id)
                store.require_privileged(s, sess, actor)
                room = store.get_room(s, room_id)
                if room.status == RoomStatus.ENDED.value:
                    return store.room_view(room, [])
                events = self._close_locked(s, room, "deleted" if actor != SYSTEM_ACTOR else "expired")
                view = store.room_view(room, [])
            publish_all(self.broker, session_id, events)
        ROOM_OPERATIONS.labels(operation="delete", result="ok").inc()
        return view

    def close_expired_rooms(self) -> list[str]:
        now = self.clock()
        with self.store.transaction() as s:
            rooms = s.scalars(select(BreakoutRoom).where(
                BreakoutRoom.status != RoomStatus.ENDED.value, BreakoutRoom.auto_close.is_(True))).all()
            due = [r.id for r in rooms
                   if r.auto_close_after_minutes and r.created_at + timedelta(minutes=r.auto_close_after_minutes) <= now]
        for room_id in due:
            self.delete_room(room_id, SYSTEM_ACTOR)
        return due

    # -- reads -------------------------------------------------------------

    def list_rooms(self, session_id: str) -> list[dict[str, Any]]:
        with self.store.transaction() as s:
            store.get_session(s, session_id)
            return [store.room_view(r, store.room_members(s, r.id)) for r in store.open_rooms(s, session_id)]

    def get_room(self, room_id: str) -> dict[str, Any]:
        with self.store.transaction() as s:
            room = store.get_room(s, room_id)
            return store.room_view(room, store.room_members(s, room_id))
