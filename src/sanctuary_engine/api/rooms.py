from __future__ import annotations
from typing import List, Optional
from fastapi import APIRouter, Depends, Header
from sanctuary_engine.api.deps import actor_id, engine_dep
from sanctuary_engine.breakout import BreakoutConfig
from sanctuary_engine.engine import SanctuaryEngine
from sanctuary_engine.models.schemas import RoomCreate, RoomMove, RoomOut

router = APIRouter(tags=["rooms"])


@router.post("/sessions/{session_id}/rooms", status_code=201, response_model=RoomOut)
def create_room(session_id: str, body: RoomCreate, actor: str = Depends(actor_id),
                x_idempotency_key: Optional[str] = Header(None, alias="X-Idempotency-Key"),
                engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.breakout.create_room(session_id, BreakoutConfig(**body.model_dump()), actor,
                                       idempotency_key=x_idempotency_key)


@router.get("/sessions/{session_id}/rooms", response_model=List[RoomOut])
def list_rooms(session_id: str, engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.breakout.list_rooms(session_id)


@router.post("/sessions/{session_id}/rooms/auto-assign")
def auto_assign(session_id: str, actor: str = Depends(actor_id), engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.breakout.auto_assign(session_id, actor)


@router.get("/rooms/{room_id}", response_model=RoomOut)
def get_room(room_id: str, engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.breakout.get_room(room_id)


@router.post("/rooms/{room_id}/join", response_model=RoomOut)
def join_room(room_id: str, body: RoomMove = RoomMove(), actor: str = Depends(actor_id),
              engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.breakout.join_room(room_id, body.participant_id or actor, actor)


@router.post("/rooms/{room_id}/leave", response_model=RoomOut)
def leave_room(room_id: str, body: RoomMove = RoomMove(), actor: str = Depends(actor_id),
               engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.breakout.leave_room(room_id, body.participant_id or actor, actor)


@router.delete("/rooms/{room_id}", response_model=RoomOut)
def delete_room(room_id: str, actor: str = Depends(actor_id), engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.breakout.delete_room(room_id, actor)
