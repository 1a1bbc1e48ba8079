"""Housekeeping for ephemeral state, rooms, pending emergency notifications and idempotency records."""
from __future__ import annotations
from celery import shared_task
from sanctuary_engine.config import get_settings
from sanctuary_engine.engine import get_engine
from sanctuary_engine.infrastructure.idempotency import cleanup_expired_idempotency_records


@shared_task
def sweep_ephemeral():
    result = get_engine().membership.sweep()
    return {"status": "ok", **result}


@shared_task
def close_expired_rooms():
    closed = get_engine().breakout.close_expired_rooms()
    return {"status": "ok", "closed": closed}


@shared_task
def evaluate_stale_telemetry():
    changed = get_engine().membership.evaluate_stale()
    return {"status": "ok", "changed": changed}


@shared_task
def resend_emergency_notifications():
    sent = get_engine().alerts.resend_pending_notifications()
    return {"status": "ok", "notified": sent}


@shared_task
def cleanup_idempotency(batch_size: int = 1000):
    result = cleanup_expired_idempotency_records(batch_size=batch_size,
                                                 session_factory=get_engine().store.session_factory)
    return {"status": "ok", "ttl_hours": get_settings().idempotency_ttl_hours, **result}


__all__ = ["sweep_ephemeral", "close_expired_rooms", "evaluate_stale_telemetry", "resend_emergency_notifications",
           "cleanup_idempotency"]
