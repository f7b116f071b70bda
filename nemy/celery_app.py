from __future__ import annotations

import json
import os
from datetime import datetime

from celery import Celery
from celery.schedules import crontab
from celery.signals import task_failure, task_retry

from nemy.utils.observability import AUDIT_KEYS


_SIGNALS_BOUND = False


def _broker_url() -> str:
    return (
        (os.getenv("CELERY_BROKER_URL") or "").strip()
        or (os.getenv("REDIS_URL") or "").strip()
        or "redis://localhost:6379/0"
    )


def _result_backend(broker_url: str) -> str:
    return (
        (os.getenv("CELERY_RESULT_BACKEND") or "").strip()
        or (os.getenv("REDIS_URL") or "").strip()
        or broker_url
    )


def _task_context(args, kwargs) -> dict:
    """Pull the trace id and any ledger entity ids out of a task's arguments."""
    out = {"trace_id": ""}
    if not isinstance(kwargs, dict):
        return out
    out["trace_id"] = str(kwargs.get("trace_id") or "").strip()
    for key in AUDIT_KEYS:
        if kwargs.get(key) is not None:
            out[key] = kwargs[key]
    event = kwargs.get("event")
    if isinstance(event, dict) and event.get("id"):
        out["event_id"] = str(event["id"])
    return out


def _bind_task_observers(flask_app) -> None:
    global _SIGNALS_BOUND
    if _SIGNALS_BOUND:
        return

    @task_failure.connect(weak=False)
    def _on_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, einfo=None, **extra):
        payload = {
            "event": "celery_task_failure",
            "task_name": getattr(sender, "name", "") if sender is not None else "",
            "task_id": str(task_id or ""),
            "exception": str(exception or ""),
            "timestamp": datetime.utcnow().isoformat(),
        }
        payload.update(_task_context(args, kwargs))
        if einfo is not None:
            payload["einfo"] = str(einfo)
        flask_app.logger.error(json.dumps(payload, default=str))

    @task_retry.connect(weak=False)
    def _on_task_retry(request=None, reason=None, einfo=None, **extra):
        payload = {
            "event": "celery_task_retry",
            "task_name": str(getattr(request, "task", "") or ""),
            "task_id": str(getattr(request, "id", "") or ""),
            "reason": str(reason or ""),
            "retry_count": int(getattr(request, "retries", 0) or 0),
            "timestamp": datetime.utcnow().isoformat(),
        }
        payload.update(_task_context(getattr(request, "args", None), getattr(request, "kwargs", None)))
        flask_app.logger.warning(json.dumps(payload, default=str))

    _SIGNALS_BOUND = True


def beat_schedule(flask_app) -> dict:
    return {
        "settlement-close-week": {
            "task": "nemy.tasks.settlement_tasks.close_week",
            "schedule": crontab(minute=59, hour=23, day_of_week="fri"),
        },
        "settlement-block-overdue": {
            "task": "nemy.tasks.settlement_tasks.block_overdue",
            "schedule": crontab(minute=0, hour=0, day_of_week="mon"),
        },
        "outbox-drain": {
            "task": "nemy.tasks.settlement_tasks.drain_outbox",
            "schedule": float(flask_app.config.get("OUTBOX_INTERVAL_SECONDS", 30)),
        },
        "webhook-events-prune": {
            "task": "nemy.tasks.settlement_tasks.prune_webhook_events",
            "schedule": crontab(minute=30, hour=3),
        },
        "wallet-reconcile": {
            "task": "nemy.tasks.settlement_tasks.reconcile_wallets",
            "schedule": crontab(minute=15, hour=2),
        },
        "driver-block-expiry": {
            "task": "nemy.tasks.settlement_tasks.lift_expired_blocks",
            "schedule": crontab(minute=5),
        },
    }


def create_celery_app(flask_app) -> Celery:
    broker = _broker_url()
    backend = _result_backend(broker)
    celery = Celery(flask_app.import_name, broker=broker, backend=backend)
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_track_started=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        enable_utc=True,
        beat_schedule=beat_schedule(flask_app),
    )

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    celery.autodiscover_tasks(["nemy.tasks"], related_name="settlement_tasks")
    _bind_task_observers(flask_app)
    return celery
