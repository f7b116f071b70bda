from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> int:
    try:
        from celery_worker import celery

        schedule = sorted((celery.conf.beat_schedule or {}).keys())
        print(f"ok: celery_worker:celery broker={celery.conf.broker_url} beat={','.join(schedule)}")
        return 0
    except Exception as exc:
        print(f"error: failed to import celery_worker:celery -> {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
