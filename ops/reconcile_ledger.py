from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _bootstrap_app():
    from nemy import create_app

    app = create_app()
    app.app_context().push()
    return app


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Replay wallet ledgers and report or correct drift.")
    parser.add_argument("--tolerance", type=int, default=0, help="Ignore drift up to this many minor units.")
    parser.add_argument("--dry-run", action="store_true", help="Report drift without writing adjustment entries.")
    parser.add_argument("--persist", action="store_true", help="Persist a row in reconciliation_reports.")
    args = parser.parse_args(argv)

    _bootstrap_app()
    from nemy.services.reconciliation_service import persist_report, recompute_wallet_balances

    summary = recompute_wallet_balances(tolerance=max(0, args.tolerance), auto_correct=not args.dry_run)
    if args.persist:
        row = persist_report(summary, created_by=None)
        summary["report_id"] = int(row.id)

    print(json.dumps(summary, indent=2, default=str))
    return 0 if int(summary.get("drift_count") or 0) == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
