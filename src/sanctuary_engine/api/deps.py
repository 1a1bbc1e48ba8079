from __future__ import annotations
from typing import Optional
from fastapi import Header
from sanctuary_engine.engine import SanctuaryEngine, get_engine
from sanctuary_engine.errors import Forbidden


def engine_dep() -> SanctuaryEngine:
    return get_engine()


def actor_id(x_participant_id: Optional[str] = Header(None, alias="X-Participant-Id")) -> str:
    # Identities are issued upstream; the caller's pseudonymous id arrives as a header.
    if not x_participant_id or not x_participant_id.strip():
        raise Forbidden("missing X-Participant-Id header")
    return x_participant_id.strip()


def optional_actor(x_participant_id: Optional[str] = Header(None, alias="X-Participant-Id")) -> Optional[str]:
    return x_participant_id.strip() if x_participant_id and x_participant_id.strip() else None
