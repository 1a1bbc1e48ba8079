from celery import Celery
from celery import signals
import time
from prometheus_client import Counter, Histogram
from sanctuary_engine.config import get_settings

settings = get_settings()

celery_app = Celery(
    "sanctuary_engine",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "sanctuary_engine.tasks.lifecycle",
        "sanctuary_engine.tasks.maintenance",
    ],
)

celery_app.conf.update(task_serializer="json", result_serializer="json", accept_content=["json"], timezone="UTC", enable_utc=True)

# Task metrics
TASK_SUCCESS = Counter('celery_task_success_total', 'Celery task successes', ['task'])
TASK_FAILURE = Counter('celery_task_failure_total', 'Celery task failures', ['task'])
TASK_DURATION = Histogram('celery_task_duration_seconds', 'Celery task runtime', ['task'], buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60))

_task_start_times = {}


@signals.task_prerun.connect
def _task_prerun(sender=None, task_id=None, **kwargs):  # noqa
    _task_start_times[task_id] = time.time()


@signals.task_postrun.connect
def _task_postrun(sender=None, task_id=None, state=None, **kwargs):  # noqa
    name = sender.name if sender else 'unknown'
    start = _task_start_times.pop(task_id, None)
    if start is not None:
        TASK_DURATION.labels(task=name).observe(time.time() - start)
    if state == 'SUCCESS':
        TASK_SUCCESS.labels(task=name).inc()
    elif state is not None:
        TASK_FAILURE.labels(task=name).inc()


# Periodic tasks (beat). Requires worker with -B or separate beat service.
celery_app.conf.beat_schedule = {
    "tick-due-sessions": {  # safety net behind the per-session eta tasks
        "task": "sanctuary_engine.tasks.lifecycle.tick_due_sessions",
        "schedule": settings.tick_interval_seconds,
    },
    "expire-overdue-sessions-5m": {
        "task": "sanctuary_engine.tasks.lifecycle.expire_overdue_sessions",
        "schedule": 300.0,
    },
    "sweep-ephemeral": {
        "task": "sanctuary_engine.tasks.maintenance.sweep_ephemeral",
        "schedule": settings.sweep_interval_seconds,
    },
    "close-expired-rooms-1m": {
        "task": "sanctuary_engine.tasks.maintenance.close_expired_rooms",
        "schedule": 60.0,
    },
    "evaluate-stale-telemetry": {
        "task": "sanctuary_engine.tasks.maintenance.evaluate_stale_telemetry",
        "schedule": settings.telemetry_stale_seconds,
    },
    "resend-emergency-notifications": {
        "task": "sanctuary_engine.tasks.maintenance.resend_emergency_notifications",
        "schedule": settings.emergency_resend_interval_seconds,
    },
    "cleanup-idempotency-hourly": {
        "task": "sanctuary_engine.tasks.maintenance.cleanup_idempotency",
        "schedule": 3600.0,
    },
}
