from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from nemy.extensions import db
from nemy.models import PlatformEvent
from nemy.utils.observability import audit_context, get_request_id

SEVERITIES = ("INFO", "WARNING", "ERROR")


def _json_default(value):
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


def safe_json(data) -> str:
    if not isinstance(data, dict):
        data = {"value": data}
    return json.dumps(data, default=_json_default, separators=(",", ":"), ensure_ascii=False, sort_keys=True)


def log_event(
    event_type: str,
    *,
    actor_user_id: int | None = None,
    subject_type: str | None = None,
    subject_id: int | str | None = None,
    severity: str = "INFO",
    request_id: str | None = None,
    idempotency_key: str | None = None,
    metadata: dict | None = None,
) -> PlatformEvent | None:
    """Record an audit event inside the caller's transaction.

    Ledger ids bound to the current request (order, wallet, driver, event)
    are folded into the metadata unless the caller already set them. The
    insert runs in a savepoint, so a duplicate idempotency key or a failed
    insert never poisons the surrounding unit of work.
    """
    key = (idempotency_key or "").strip()[:180] or None
    if key:
        existing = PlatformEvent.query.filter_by(idempotency_key=key).first()
        if existing is not None:
            return existing

    level = (severity or "INFO").strip().upper()
    if level not in SEVERITIES:
        level = "INFO"
    meta = dict(audit_context())
    meta.update(metadata or {})

    event = PlatformEvent(
        event_type=(event_type or "unknown").strip()[:80],
        actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
        subject_type=(subject_type or "").strip()[:40] or None,
        subject_id=str(subject_id)[:120] if subject_id is not None else None,
        request_id=(request_id or get_request_id() or "").strip()[:80] or None,
        idempotency_key=key,
        severity=level,
        metadata_json=safe_json(meta),
    )
    try:
        with db.session.begin_nested():
            db.session.add(event)
            db.session.flush()
    except SQLAlchemyError as e:
        current_app.logger.warning("platform_event_write_failed event_type=%s subject=%s:%s err=%s", event_type, subject_type, subject_id, e)
        return None
    return event


def events_for(subject_type: str, subject_id, *, limit: int = 100) -> list[PlatformEvent]:
    """Audit events for one order, wallet, settlement or driver, oldest first."""
    return (
        PlatformEvent.query.filter_by(subject_type=subject_type, subject_id=str(subject_id))
        .order_by(PlatformEvent.created_at.asc(), PlatformEvent.id.asc())
        .limit(max(1, int(limit)))
        .all()
    )
