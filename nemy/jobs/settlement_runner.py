from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from nemy.extensions import db
from nemy.models import DriverProfile, Wallet, WeeklySettlement
from nemy.services import outbox_service
from nemy.services.settlement_service import SETTLEMENT_BLOCK_PREFIX, SettlementStatus, move
from nemy.utils.events import log_event
from nemy.utils.job_runs import record_job_run


def _now():
    return datetime.utcnow()


def close_week(*, now: datetime | None = None) -> dict:
    """Open a settlement for every driver carrying cash debt.

    Safe to re-run: drivers with a pending or submitted settlement, or one
    already opened for this week, are skipped. Each driver commits on its
    own, so one failure never aborts the batch.
    """
    started_at = _now()
    now = now or _now()
    week_start = (now - timedelta(days=7)).date()
    week_end = now.date()
    deadline = now + timedelta(hours=int(current_app.config.get("SETTLEMENT_DEADLINE_HOURS", 48)))

    processed = 0
    created = 0
    skipped = 0
    errors = 0

    wallet_ids = [
        int(w.id)
        for w in Wallet.query.filter(Wallet.cash_owed > 0).order_by(Wallet.id.asc()).all()
    ]
    for wid in wallet_ids:
        processed += 1
        driver_id = None
        try:
            wallet = db.session.get(Wallet, wid)
            driver_id = int(wallet.user_id)
            profile = DriverProfile.query.filter_by(user_id=driver_id).first()
            if profile is None:
                skipped += 1
                continue
            open_row = WeeklySettlement.query.filter(
                WeeklySettlement.driver_id == driver_id,
                (WeeklySettlement.status.in_((SettlementStatus.PENDING, SettlementStatus.SUBMITTED)))
                | (WeeklySettlement.week_start == week_start),
            ).first()
            if open_row is not None:
                skipped += 1
                continue

            row = WeeklySettlement(
                driver_id=driver_id,
                week_start=week_start,
                week_end=week_end,
                amount_owed=int(wallet.cash_owed or 0),
                status=SettlementStatus.PENDING,
                deadline=deadline,
            )
            db.session.add(row)
            profile.is_available = False
            db.session.flush()
            outbox_service.enqueue_notification(
                driver_id,
                "settlement_due",
                {
                    "settlement_id": int(row.id),
                    "amount_owed": int(row.amount_owed),
                    "deadline": deadline.isoformat(),
                },
                dedupe_key=f"notify:settlement:{int(row.id)}:due",
            )
            log_event(
                "settlement_hold",
                subject_type="driver",
                subject_id=driver_id,
                idempotency_key=f"settlement_hold:{int(row.id)}",
                metadata={"settlement_id": int(row.id), "amount_owed": int(row.amount_owed)},
            )
            db.session.commit()
            created += 1
        except Exception:
            errors += 1
            db.session.rollback()
            current_app.logger.exception("settlement_close_week_failed wallet_id=%s driver_id=%s", wid, driver_id)

    result = {
        "ok": True,
        "processed": processed,
        "created": created,
        "skipped": skipped,
        "errors": errors,
        "week_start": week_start.isoformat(),
        "ts": _now().isoformat(),
    }
    current_app.logger.info(
        "settlement_close_week processed=%s created=%s skipped=%s errors=%s",
        processed,
        created,
        skipped,
        errors,
    )
    record_job_run(
        job_name="settlement_close_week",
        ok=errors == 0,
        started_at=started_at,
        error=None if errors == 0 else f"errors={errors}",
        result=result,
    )
    return result


def block_overdue(*, now: datetime | None = None) -> dict:
    """Move pending settlements past their deadline to overdue and block the driver."""
    started_at = _now()
    now = now or _now()

    processed = 0
    blocked = 0
    errors = 0

    ids = [
        int(r.id)
        for r in WeeklySettlement.query.filter(
            WeeklySettlement.status == SettlementStatus.PENDING,
            WeeklySettlement.deadline < now,
        )
        .order_by(WeeklySettlement.id.asc())
        .all()
    ]
    for sid in ids:
        processed += 1
        try:
            row = (
                WeeklySettlement.query.filter_by(id=sid)
                .with_for_update()
                .populate_existing()
                .first()
            )
            if row is None or row.status != SettlementStatus.PENDING:
                continue
            move(row, SettlementStatus.OVERDUE)
            profile = DriverProfile.query.filter_by(user_id=int(row.driver_id)).with_for_update().first()
            if profile is not None:
                if not profile.is_blocked:
                    profile.blocked_reason = f"{SETTLEMENT_BLOCK_PREFIX}{int(row.id)}"
                profile.is_blocked = True
                profile.is_available = False
            outbox_service.enqueue_notification(
                int(row.driver_id),
                "settlement_overdue",
                {"settlement_id": int(row.id), "amount_owed": int(row.amount_owed or 0)},
                dedupe_key=f"notify:settlement:{int(row.id)}:overdue",
            )
            log_event(
                "driver_blocked",
                subject_type="driver",
                subject_id=int(row.driver_id),
                severity="WARNING",
                idempotency_key=f"driver_blocked:settlement:{int(row.id)}",
                metadata={"settlement_id": int(row.id), "amount_owed": int(row.amount_owed or 0)},
            )
            db.session.commit()
            blocked += 1
        except Exception:
            errors += 1
            db.session.rollback()
            current_app.logger.exception("settlement_block_overdue_failed settlement_id=%s", sid)

    result = {
        "ok": True,
        "processed": processed,
        "blocked": blocked,
        "errors": errors,
        "ts": _now().isoformat(),
    }
    current_app.logger.info(
        "settlement_block_overdue processed=%s blocked=%s errors=%s",
        processed,
        blocked,
        errors,
    )
    record_job_run(
        job_name="settlement_block_overdue",
        ok=errors == 0,
        started_at=started_at,
        error=None if errors == 0 else f"errors={errors}",
        result=result,
    )
    return result
