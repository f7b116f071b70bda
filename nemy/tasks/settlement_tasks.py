from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


def _run_with_retry(task, task_name: str, fn, *, trace_id: str = "", **log_extra):
    started = time.perf_counter()
    try:
        result = fn()
    except Exception as exc:
        if int(task.request.retries or 0) < int(task.max_retries or 0):
            countdown = _retry_countdown(int(task.request.retries or 0))
            _task_log(
                task_name,
                status="retrying",
                started_at=started,
                trace_id=trace_id,
                detail=str(exc),
                countdown=countdown,
                **log_extra,
            )
            raise task.retry(exc=exc, countdown=countdown)
        _task_log(task_name, status="failed", started_at=started, trace_id=trace_id, detail=str(exc), **log_extra)
        raise
    _task_log(
        task_name,
        status="ok" if bool((result or {}).get("ok", True)) else "failed",
        started_at=started,
        trace_id=trace_id,
        **log_extra,
    )
    return result


@shared_task(bind=True, name="nemy.tasks.settlement_tasks.close_week", max_retries=3)
def close_week(self, *, trace_id: str = ""):
    from nemy.jobs.settlement_runner import close_week as run

    return _run_with_retry(self, "close_week", run, trace_id=trace_id)


@shared_task(bind=True, name="nemy.tasks.settlement_tasks.block_overdue", max_retries=3)
def block_overdue(self, *, trace_id: str = ""):
    from nemy.jobs.settlement_runner import block_overdue as run

    return _run_with_retry(self, "block_overdue", run, trace_id=trace_id)


@shared_task(bind=True, name="nemy.tasks.settlement_tasks.lift_expired_blocks", max_retries=3)
def lift_expired_blocks(self, *, trace_id: str = ""):
    from nemy.services.driver_service import lift_expired_blocks as run

    return _run_with_retry(self, "lift_expired_blocks", run, trace_id=trace_id)


@shared_task(bind=True, name="nemy.tasks.settlement_tasks.drain_outbox", max_retries=3)
def drain_outbox(self, *, trace_id: str = ""):
    from nemy.services.outbox_service import process_outbox

    limit = int(current_app.config.get("OUTBOX_BATCH_LIMIT", 100))
    return _run_with_retry(self, "drain_outbox", lambda: process_outbox(limit=limit), trace_id=trace_id, limit=limit)


@shared_task(bind=True, name="nemy.tasks.settlement_tasks.prune_webhook_events", max_retries=3)
def prune_webhook_events(self, *, trace_id: str = ""):
    from nemy.services.payment_event_service import prune_webhook_events as run

    return _run_with_retry(self, "prune_webhook_events", run, trace_id=trace_id)


@shared_task(bind=True, name="nemy.tasks.settlement_tasks.reconcile_wallets", max_retries=3)
def reconcile_wallets(self, *, trace_id: str = ""):
    from nemy.services.reconciliation_service import persist_report, recompute_wallet_balances

    def _run():
        summary = recompute_wallet_balances()
        summary["report_id"] = int(persist_report(summary).id)
        return summary

    return _run_with_retry(self, "reconcile_wallets", _run, trace_id=trace_id)


@shared_task(bind=True, name="nemy.tasks.settlement_tasks.process_payment_event", max_retries=5)
def process_payment_event(self, *, provider: str, event: dict, trace_id: str = ""):
    from nemy.services.payment_event_service import apply_event

    return _run_with_retry(
        self,
        "process_payment_event",
        lambda: apply_event(event, provider=provider),
        trace_id=trace_id,
        provider=provider,
        event_id=str((event or {}).get("id") or ""),
    )
