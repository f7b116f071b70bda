from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from nemy.errors import NotFoundError, ValidationError
from nemy.extensions import db
from nemy.models import DriverProfile, Wallet, WeeklySettlement
from nemy.utils.events import log_event
from nemy.utils.job_runs import record_job_run
from nemy.utils.observability import bind_audit_ids

MAX_STRIKES = 3
STRIKE_BLOCK_PREFIX = "strikes:"


def _lock_profile(driver_id: int) -> DriverProfile:
    profile = (
        DriverProfile.query.filter_by(user_id=int(driver_id))
        .with_for_update()
        .populate_existing()
        .first()
    )
    if profile is None:
        raise NotFoundError("driver not found", driver_id=driver_id)
    return profile


def _finish(commit: bool) -> None:
    if not commit:
        db.session.flush()
        return
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def is_strike_block(profile: DriverProfile) -> bool:
    return bool(profile.is_blocked) and (profile.blocked_reason or "").startswith(STRIKE_BLOCK_PREFIX)


def add_strike(
    driver_id: int,
    reason: str,
    *,
    order_id: int | None = None,
    actor_id: int | None = None,
    now: datetime | None = None,
    commit: bool = False,
) -> DriverProfile:
    """Count one strike against a driver.

    Reaching MAX_STRIKES blocks the driver for STRIKE_BLOCK_DAYS, replacing
    any other block reason. Every later strike restarts that window.
    """
    label = (reason or "").strip()[:120]
    if not label:
        raise ValidationError("strike reason required", driver_id=driver_id)
    now = now or datetime.utcnow()
    bind_audit_ids(driver_id=driver_id, order_id=order_id)

    profile = _lock_profile(driver_id)
    profile.strikes = int(profile.strikes or 0) + 1
    blocked = profile.strikes >= MAX_STRIKES
    if blocked:
        days = int(current_app.config.get("STRIKE_BLOCK_DAYS", 7))
        profile.is_blocked = True
        profile.is_available = False
        profile.blocked_reason = f"{STRIKE_BLOCK_PREFIX}{label}"[:240]
        profile.blocked_until = now + timedelta(days=days)

    log_event(
        "driver_strike",
        actor_user_id=actor_id,
        subject_type="driver",
        subject_id=int(driver_id),
        severity="WARNING",
        metadata={"reason": label, "strikes": int(profile.strikes), "order_id": order_id, "blocked": blocked},
    )
    _finish(commit)
    current_app.logger.warning(
        "driver_strike driver_id=%s strikes=%s reason=%s order_id=%s blocked=%s",
        int(driver_id),
        int(profile.strikes),
        label,
        order_id,
        blocked,
    )
    return profile


def remove_strike(driver_id: int, *, actor_id: int | None = None, commit: bool = True) -> DriverProfile:
    """Take back one strike. A running block stays in place."""
    profile = _lock_profile(driver_id)
    if int(profile.strikes or 0) == 0:
        return profile
    profile.strikes = int(profile.strikes) - 1
    log_event(
        "driver_strike_removed",
        actor_user_id=actor_id,
        subject_type="driver",
        subject_id=int(driver_id),
        metadata={"strikes": int(profile.strikes)},
    )
    _finish(commit)
    current_app.logger.info("driver_strike_removed driver_id=%s strikes=%s", int(driver_id), int(profile.strikes))
    return profile


def _clear_block(profile: DriverProfile) -> None:
    profile.is_blocked = False
    profile.blocked_reason = None
    profile.blocked_until = None
    profile.strikes = 0


def unblock_driver(driver_id: int, *, actor_id: int | None = None, commit: bool = True) -> DriverProfile:
    """Lift any block and reset the strike count.

    Availability comes back only when no settlement hold or unfinished
    delivery applies.
    """
    from nemy.services.order_lifecycle_service import release_driver

    profile = _lock_profile(driver_id)
    previous = profile.blocked_reason
    _clear_block(profile)
    db.session.flush()
    release_driver(int(driver_id))
    log_event(
        "driver_unblocked",
        actor_user_id=actor_id,
        subject_type="driver",
        subject_id=int(driver_id),
        metadata={"previous_reason": previous},
    )
    _finish(commit)
    current_app.logger.info("driver_unblocked driver_id=%s previous_reason=%s", int(driver_id), previous)
    return profile


def lift_expired_blocks(*, now: datetime | None = None) -> dict:
    """Unblock drivers whose strike block has run out. Each driver commits on its own."""
    from nemy.services.order_lifecycle_service import release_driver

    started_at = datetime.utcnow()
    now = now or started_at
    ids = [
        int(p.user_id)
        for p in DriverProfile.query.filter(
            DriverProfile.is_blocked.is_(True),
            DriverProfile.blocked_reason.like(f"{STRIKE_BLOCK_PREFIX}%"),
            DriverProfile.blocked_until.isnot(None),
            DriverProfile.blocked_until <= now,
        )
        .order_by(DriverProfile.user_id.asc())
        .all()
    ]
    lifted = 0
    errors = 0
    for driver_id in ids:
        try:
            profile = _lock_profile(driver_id)
            if not is_strike_block(profile) or profile.blocked_until is None or profile.blocked_until > now:
                continue
            _clear_block(profile)
            db.session.flush()
            release_driver(driver_id)
            log_event(
                "driver_unblocked",
                subject_type="driver",
                subject_id=driver_id,
                metadata={"previous_reason": "strike_block_expired"},
            )
            db.session.commit()
            lifted += 1
        except Exception:
            errors += 1
            db.session.rollback()
            current_app.logger.exception("driver_block_expiry_failed driver_id=%s", driver_id)

    result = {"ok": True, "processed": len(ids), "lifted": lifted, "errors": errors, "ts": datetime.utcnow().isoformat()}
    current_app.logger.info("driver_blocks_expired processed=%s lifted=%s errors=%s", len(ids), lifted, errors)
    record_job_run(
        job_name="driver_block_expiry",
        ok=errors == 0,
        started_at=started_at,
        error=None if errors == 0 else f"errors={errors}",
        result=result,
    )
    return result


def cash_owed_limit() -> int:
    return int(current_app.config.get("CASH_OWED_LIMIT_MINOR", 50000))


def cash_restricted_ids(driver_ids) -> set[int]:
    """Drivers among ``driver_ids`` who may not collect cash right now.

    A driver is restricted once the cash they owe reaches the limit, or
    while one of their settlements is overdue.
    """
    ids = sorted({int(d) for d in driver_ids if d is not None})
    if not ids:
        return set()
    over_limit = {
        int(w.user_id)
        for w in Wallet.query.filter(Wallet.user_id.in_(ids), Wallet.cash_owed >= cash_owed_limit()).all()
    }
    overdue = {
        int(r.driver_id)
        for r in WeeklySettlement.query.filter(
            WeeklySettlement.driver_id.in_(ids),
            WeeklySettlement.status == "overdue",
        ).all()
    }
    return over_limit | overdue


def can_accept_cash_order(driver_id: int) -> bool:
    return int(driver_id) not in cash_restricted_ids([driver_id])
