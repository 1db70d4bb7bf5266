#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
import sys
from datetime import date, datetime, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from attendance_engine.logging_utils import setup_json_logging
from attendance_engine.services.reconcile_jobs import lookback_dates, run_cycle
from attendance_engine.settings import get_settings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Pull raw punches and rebuild attendance sessions for a date window.")
    parser.add_argument("--from", dest="date_from", type=date.fromisoformat, help="First local work date (YYYY-MM-DD).")
    parser.add_argument("--to", dest="date_to", type=date.fromisoformat, help="Last local work date (YYYY-MM-DD).")
    parser.add_argument("--sync", action="store_true", help="Pull the punch feed for the window first.")
    parser.add_argument("--workers", type=int, default=None, help="Worker threads for the pure stage.")
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> dict:
    args = parse_args(argv)
    setup_json_logging(args.log_level.upper(), service="attendance-engine-cli")

    default_from, default_to = lookback_dates(datetime.now(timezone.utc), get_settings().reconcile_lookback_days)
    date_from = args.date_from or default_from
    date_to = args.date_to or default_to
    if date_to < date_from:
        raise SystemExit("--to must be on or after --from")

    return run_cycle(date_from=date_from, date_to=date_to, sync=args.sync, workers=args.workers)


if __name__ == "__main__":
    summary = run()
    print(json.dumps(summary, ensure_ascii=False, indent=2, default=str))
    reconcile = summary.get("reconcile") or {}
    sys.exit(1 if reconcile.get("failed") else 0)
