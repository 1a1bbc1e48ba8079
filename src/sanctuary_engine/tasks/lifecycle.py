"""Session lifecycle tasks.

 - convert_scheduled_session(): eta task armed when a session is scheduled.
 - tick_due_sessions(): periodic safety net for timers lost to worker restarts.
 - expire_overdue_sessions(): ends sessions that ran past duration plus grace.
"""
from __future__ import annotations
from celery import shared_task
from sanctuary_engine.engine import get_engine


@shared_task
def convert_scheduled_session(session_id: str, version: int):
    view = get_engine().lifecycle.check_conversion(session_id, version=version)
    return {"status": "ok", "session_id": session_id, "session_status": view["status"]}


@shared_task
def tick_due_sessions():
    converted = get_engine().lifecycle.tick()
    return {"status": "ok", "converted": converted}


@shared_task
def expire_overdue_sessions():
    ended = get_engine().lifecycle.expire_overdue()
    return {"status": "ok", "ended": ended}


__all__ = ["convert_scheduled_session", "tick_due_sessions", "expire_overdue_sessions"]
