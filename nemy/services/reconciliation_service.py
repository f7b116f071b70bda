from __future__ import annotations

import json
from datetime import datetime

from flask import current_app

from nemy.extensions import db
from nemy.models import ReconciliationReport, Wallet
from nemy.services import ledger_service
from nemy.services.ledger_service import Bucket
from nemy.utils.events import log_event


def recompute_wallet_balances(*, tolerance: int = 0, auto_correct: bool = True, since: str | None = None) -> dict:
    """Replay every wallet's ledger per bucket and compare with the stored field.

    Drift beyond ``tolerance`` is corrected with an ``adjustment`` entry so
    the ledger replays to the stored value again. Drift is reported, never
    raised.
    """
    run_stamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
    wallet_ids = [int(w.id) for w in Wallet.query.order_by(Wallet.id.asc()).all()]
    drift_items = []
    corrected = 0

    for wid in wallet_ids:
        try:
            wallet = ledger_service.lock_wallet(wid)
            for bucket in Bucket.ALL:
                computed = ledger_service.replay_balance(wid, bucket)
                stored = wallet.bucket_value(bucket)
                drift = stored - computed
                if abs(drift) <= int(tolerance):
                    continue
                item = {
                    "wallet_id": wid,
                    "user_id": int(wallet.user_id),
                    "bucket": bucket,
                    "stored": stored,
                    "computed": computed,
                    "drift": drift,
                    "corrected": False,
                }
                current_app.logger.warning(
                    "reconciliation_drift wallet_id=%s user_id=%s bucket=%s stored=%s computed=%s drift=%s",
                    wid,
                    int(wallet.user_id),
                    bucket,
                    stored,
                    computed,
                    drift,
                )
                if auto_correct:
                    txn = ledger_service.record_drift_adjustment(
                        wallet,
                        bucket,
                        computed,
                        reference=f"recon:{run_stamp}:{wid}:{bucket}",
                    )
                    item["corrected"] = txn is not None
                    item["txn_id"] = int(txn.id) if txn is not None else None
                    if txn is not None:
                        corrected += 1
                log_event(
                    "reconciliation_drift",
                    subject_type="wallet",
                    subject_id=wid,
                    severity="WARNING",
                    metadata=item,
                )
                drift_items.append(item)
            db.session.commit()
        except Exception:
            db.session.rollback()
            current_app.logger.exception("reconciliation_wallet_failed wallet_id=%s", wid)
            drift_items.append({"wallet_id": wid, "error": "reconcile_failed"})

    return {
        "ok": True,
        "scope": "wallet_ledger",
        "since": since or "",
        "wallet_count": len(wallet_ids),
        "drift_count": len(drift_items),
        "corrected_count": corrected,
        "drift_items": drift_items,
        "generated_at": datetime.utcnow().isoformat(),
    }


def persist_report(summary: dict, *, created_by: int | None = None) -> ReconciliationReport:
    report = ReconciliationReport(
        scope=(summary.get("scope") or "wallet_ledger")[:64],
        summary_json=json.dumps(summary, default=str)[:200000],
        wallet_count=int(summary.get("wallet_count") or 0),
        drift_count=int(summary.get("drift_count") or 0),
        corrected_count=int(summary.get("corrected_count") or 0),
        created_by=int(created_by) if created_by is not None else None,
        created_at=datetime.utcnow(),
    )
    try:
        db.session.add(report)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return report


def latest_report() -> ReconciliationReport | None:
    return ReconciliationReport.query.order_by(
        ReconciliationReport.created_at.desc(), ReconciliationReport.id.desc()
    ).first()
