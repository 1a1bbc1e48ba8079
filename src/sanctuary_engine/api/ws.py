"""Live session stream.

A client connects to ``/ws/sessions/{id}?participant_id=...``, receives a ``snapshot``
message, then every event with a higher sequence number in order. When the subscriber
buffer had to drop a state delta a fresh snapshot is sent in its place. Alert and
monitoring events only reach the host and moderators.
"""
from __future__ import annotations
import asyncio
import json
import logging
from typing import Optional
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from sanctuary_engine.engine import get_engine
from sanctuary_engine.errors import SanctuaryError
from sanctuary_engine.models.states import PRIVILEGED_ROLES

router = APIRouter(tags=["stream"])

POLL_SECONDS = 1.0
_PRIVILEGED_PREFIXES = ("alert.", "monitoring.")


def _viewer_privileged(snapshot: dict, viewer: Optional[str]) -> bool:
    if viewer is None:
        return False
    if snapshot["session"].get("host_id") == viewer:
        return True
    return any(p["participant_id"] == viewer and p["role"] in PRIVILEGED_ROLES for p in snapshot["participants"])


@router.websocket("/ws/sessions/{session_id}")
async def session_stream(websocket: WebSocket, session_id: str, participant_id: Optional[str] = None):
    engine = get_engine()
    await websocket.accept()
    # Subscribe before taking the snapshot so nothing falls between the two.
    sub = engine.broker.subscribe(session_id)
    try:
        try:
            snapshot = await run_in_threadpool(engine.membership.snapshot, session_id, participant_id)
        except SanctuaryError as e:
            await websocket.send_json({"type": "error", "payload": e.to_dict()})
            await websocket.close(code=4404 if e.status_code == 404 else 4400)
            return
        await websocket.send_json({"type": "snapshot", "seq": snapshot["seq"], "payload": snapshot})
        state = {"seq": snapshot["seq"], "privileged": _viewer_privileged(snapshot, participant_id)}

        async def pump():
            while True:
                event = await run_in_threadpool(sub.get, POLL_SECONDS)
                if sub.needs_resync:
                    sub.needs_resync = False
                    sub.drain()
                    fresh = await run_in_threadpool(engine.membership.snapshot, session_id, participant_id)
                    state["seq"] = fresh["seq"]
                    state["privileged"] = _viewer_privileged(fresh, participant_id)
                    await websocket.send_json({"type": "snapshot", "seq": fresh["seq"], "payload": fresh})
                    continue
                if event is None:
                    if sub.closed:
                        return
                    continue
                if event.seq <= state["seq"]:
                    continue
                state["seq"] = event.seq
                if event.type == "participant.updated":
                    p = event.payload.get("participant") or {}
                    if p.get("participant_id") == participant_id and snapshot["session"].get("host_id") != participant_id:
                        state["privileged"] = p.get("role") in PRIVILEGED_ROLES
                if event.type.startswith(_PRIVILEGED_PREFIXES) and not state["privileged"]:
                    continue
                await websocket.send_json(event.to_dict())
                if event.type == "session.ended":
                    return

        async def drain_client():
            # Clients only ever send keepalives; reading is how a disconnect is noticed.
            while True:
                msg = await websocket.receive_text()
                if msg == "ping":
                    await websocket.send_text(json.dumps({"type": "pong"}))

        tasks = [asyncio.create_task(pump()), asyncio.create_task(drain_client())]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for t in pending:
            t.cancel()
        for t in done:
            exc = t.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
        if any(t is tasks[0] for t in done):
            await websocket.close()
    except WebSocketDisconnect:
        logging.getLogger(__name__).debug(f"Stream client for {session_id} disconnected")
    finally:
        engine.broker.unsubscribe(sub)
