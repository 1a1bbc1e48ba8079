from __future__ import annotations
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sanctuary_engine.api.deps import actor_id, engine_dep, optional_actor
from sanctuary_engine.clock import to_naive_utc
from sanctuary_engine.engine import SanctuaryEngine
from sanctuary_engine.lifecycle import SessionConfig
from sanctuary_engine.models.schemas import (
    SessionCreate, SessionOut, ScheduleRequest, AdmitRequest, ParticipantOut,
    RoleUpdate, MuteUpdate, TelemetryUpdate, ReactionCreate,
)
from sanctuary_engine.telemetry import TransportSample

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post("", status_code=201)
def create_session(body: SessionCreate, actor: str = Depends(actor_id),
                   engine: SanctuaryEngine = Depends(engine_dep)):
    config = SessionConfig(**body.model_dump(exclude={"host_alias", "scheduled_at"}))
    if body.scheduled_at is None:
        return engine.lifecycle.create_instant(config, actor, body.host_alias)
    return engine.lifecycle.create_scheduled(config, actor, body.host_alias, to_naive_utc(body.scheduled_at))


@router.get("", response_model=List[SessionOut])
def list_sessions(status: Optional[str] = Query(None), limit: int = Query(100, ge=1, le=500),
                  engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.lifecycle.list_sessions(status=status, limit=limit)


@router.get("/{session_id}", response_model=SessionOut)
def get_session(session_id: str, viewer: Optional[str] = Depends(optional_actor),
                engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.lifecycle.get(session_id, viewer)


@router.get("/{session_id}/snapshot")
def get_snapshot(session_id: str, viewer: Optional[str] = Depends(optional_actor),
                 engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.membership.snapshot(session_id, viewer)


@router.get("/{session_id}/audit")
def get_audit(session_id: str, actor: str = Depends(actor_id), engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.lifecycle.audit_trail(session_id, actor)


@router.post("/{session_id}/schedule")
def schedule_session(session_id: str, body: ScheduleRequest, actor: str = Depends(actor_id),
                     engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.lifecycle.schedule(session_id, to_naive_utc(body.scheduled_at), actor)


@router.post("/{session_id}/start")
def start_session(session_id: str, actor: str = Depends(actor_id), engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.lifecycle.start_now(session_id, actor)


@router.post("/{session_id}/cancel-start")
def cancel_start(session_id: str, actor: str = Depends(actor_id), engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.lifecycle.cancel_scheduled_start(session_id, actor)


@router.post("/{session_id}/reopen")
def reopen_session(session_id: str, body: ScheduleRequest, actor: str = Depends(actor_id),
                   engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.lifecycle.reopen(session_id, actor, to_naive_utc(body.scheduled_at))


@router.post("/{session_id}/end")
def end_session(session_id: str, actor: str = Depends(actor_id), engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.lifecycle.end(session_id, actor)


# -- membership ------------------------------------------------------------

@router.post("/{session_id}/participants")
def join_session(session_id: str, body: AdmitRequest, actor: str = Depends(actor_id),
                 engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.membership.join(session_id, actor, alias=body.alias, acknowledgment=body.acknowledgment,
                                  invitation_code=body.invitation_code)


@router.get("/{session_id}/participants", response_model=List[ParticipantOut])
def list_participants(session_id: str, engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.membership.participants(session_id)


@router.post("/{session_id}/leave")
def leave_session(session_id: str, actor: str = Depends(actor_id), engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.membership.leave(session_id, actor)


@router.post("/{session_id}/participants/{participant_id}/kick")
def kick_participant(session_id: str, participant_id: str, actor: str = Depends(actor_id),
                     engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.membership.kick(session_id, participant_id, actor)


@router.put("/{session_id}/participants/{participant_id}/role")
def update_role(session_id: str, participant_id: str, body: RoleUpdate, actor: str = Depends(actor_id),
                engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.membership.set_role(session_id, participant_id, body.role, actor)


@router.put("/{session_id}/participants/{participant_id}/mute")
def update_mute(session_id: str, participant_id: str, body: MuteUpdate, actor: str = Depends(actor_id),
                engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.membership.set_muted(session_id, participant_id, body.muted, actor)


@router.post("/{session_id}/hand")
def raise_hand(session_id: str, actor: str = Depends(actor_id), engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.membership.raise_hand(session_id, actor)


@router.delete("/{session_id}/hand")
def lower_own_hand(session_id: str, actor: str = Depends(actor_id), engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.membership.lower_hand(session_id, actor)


@router.delete("/{session_id}/participants/{participant_id}/hand")
def lower_hand(session_id: str, participant_id: str, actor: str = Depends(actor_id),
               engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.membership.lower_hand(session_id, participant_id, actor)


@router.post("/{session_id}/telemetry")
def post_telemetry(session_id: str, body: TelemetryUpdate, actor: str = Depends(actor_id),
                   engine: SanctuaryEngine = Depends(engine_dep)):
    sample = None
    if body.packet_loss is not None and body.rtt_ms is not None:
        sample = TransportSample(packet_loss=body.packet_loss, rtt_ms=body.rtt_ms, jitter_ms=body.jitter_ms or 0.0)
    return engine.membership.update_audio_telemetry(session_id, actor, body.audio_level,
                                                    connection_status=body.connection_status, sample=sample)


@router.post("/{session_id}/reactions", status_code=201)
def post_reaction(session_id: str, body: ReactionCreate, actor: str = Depends(actor_id),
                  engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.membership.send_reaction(session_id, actor, body.emoji, body.target_participant_id)
