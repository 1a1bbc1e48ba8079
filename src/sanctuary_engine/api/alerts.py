from __future__ import annotations
from typing import List
from fastapi import APIRouter, Depends, Query
from sanctuary_engine.api.deps import actor_id, engine_dep
from sanctuary_engine.engine import SanctuaryEngine
from sanctuary_engine.models.schemas import (
    ContentReport, EmergencyRequest, AlertActionRequest, AlertStepRequest, AlertOut,
)

router = APIRouter(tags=["safety"])


@router.post("/sessions/{session_id}/reports")
def report_content(session_id: str, body: ContentReport, actor: str = Depends(actor_id),
                   engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.alerts.report_content(session_id, actor, body.subject_id, body.content_sample)


@router.post("/sessions/{session_id}/emergency", status_code=201, response_model=AlertOut)
def raise_emergency(session_id: str, body: EmergencyRequest, actor: str = Depends(actor_id),
                    engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.alerts.raise_emergency(session_id, actor, body.emergency_type, body.message, body.severity)


@router.get("/sessions/{session_id}/alerts", response_model=List[AlertOut])
def list_alerts(session_id: str, include_resolved: bool = Query(False), actor: str = Depends(actor_id),
                engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.alerts.list_alerts(session_id, actor, include_resolved=include_resolved)


@router.get("/alerts/{alert_id}", response_model=AlertOut)
def get_alert(alert_id: str, actor: str = Depends(actor_id), engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.alerts.get_alert(alert_id, actor)


@router.post("/alerts/{alert_id}/actions", response_model=AlertOut)
def act_on_alert(alert_id: str, body: AlertActionRequest, actor: str = Depends(actor_id),
                 engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.alerts.act(alert_id, actor, body.action, body.note)


@router.post("/alerts/{alert_id}/steps", response_model=AlertOut)
def complete_step(alert_id: str, body: AlertStepRequest, actor: str = Depends(actor_id),
                  engine: SanctuaryEngine = Depends(engine_dep)):
    return engine.alerts.complete_step(alert_id, actor, body.step)
