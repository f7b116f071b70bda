from __future__ import annotations

import json
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from nemy.extensions import db
from nemy.models import JobRun

# Longest healthy gap between successful runs of each scheduled job.
EXPECTED_CADENCE = {
    "settlement_close_week": timedelta(days=7, hours=6),
    "settlement_block_overdue": timedelta(days=7, hours=6),
    "outbox_drain": timedelta(minutes=15),
    "driver_block_expiry": timedelta(hours=2),
}


def record_job_run(
    *,
    job_name: str,
    ok: bool,
    started_at: datetime,
    error: str | None = None,
    result: dict | None = None,
) -> JobRun | None:
    """Persist one run of a scheduled job and commit it."""
    now = datetime.utcnow()
    row = JobRun(
        job_name=(job_name or "unknown").strip()[:64],
        ran_at=now,
        ok=bool(ok),
        duration_ms=max(0, int((now - started_at).total_seconds() * 1000)) if started_at else None,
        error=(error or "")[:1000] or None,
        result_json=json.dumps(result or {}, default=str)[:20000],
    )
    try:
        db.session.add(row)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.warning("job_run_record_failed job_name=%s err=%s", job_name, e)
        return None
    return row


def last_success(job_name: str) -> JobRun | None:
    return (
        JobRun.query.filter_by(job_name=job_name, ok=True)
        .order_by(JobRun.ran_at.desc(), JobRun.id.desc())
        .first()
    )


def job_health(*, now: datetime | None = None, cadence: dict | None = None) -> dict:
    """Flag scheduled jobs whose last success is older than their cadence.

    A job that never ran is reported as ``never_ran`` rather than stale, so a
    fresh deployment does not look broken.
    """
    now = now or datetime.utcnow()
    out = {}
    for name, max_gap in (cadence or EXPECTED_CADENCE).items():
        row = last_success(name)
        if row is None:
            out[name] = {"status": "never_ran", "last_ok_at": None}
            continue
        stale = now - row.ran_at > max_gap
        out[name] = {"status": "stale" if stale else "ok", "last_ok_at": row.ran_at.isoformat()}
        if stale:
            current_app.logger.warning("job_stale job_name=%s last_ok_at=%s", name, row.ran_at.isoformat())
    return out
