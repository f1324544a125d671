#!/usr/bin/env python3
"""
Monthly commission run.

Calculates commissions for the previous calendar month (or an explicit
`--year/--month`) and can optionally approve everything it calculated.
Re-running a period is safe: orders that already carry a commission are
reported as skipped.

Usage:
  python -m backend.workers.commission_scheduler
  python -m backend.workers.commission_scheduler --year 2024 --month 2 --approve
  python -m backend.workers.commission_scheduler --loop --sleep 3600
"""

from __future__ import annotations

import argparse
import sys
import time
import traceback
from datetime import date
from typing import Optional

import psycopg
from psycopg.rows import dict_row

from backend.app.commissions import approve_all_for_period, calculate_for_period, month_period, previous_month
from backend.app.config import settings
from backend.app.logs import json_log


def resolve_period(today: date, year: Optional[int] = None, month: Optional[int] = None) -> tuple[date, date]:
    if year and month:
        return month_period(year, month)
    if year or month:
        raise ValueError("--year and --month must be given together")
    return previous_month(today)


def is_due(today: date, run_day: int, last_period: Optional[tuple[date, date]]) -> bool:
    # Once per month, on or after the configured day.
    if today.day < run_day:
        return False
    return last_period != previous_month(today)


def run_commission_scheduler(
    db_url: str,
    period_start: date,
    period_end: date,
    *,
    approve: bool = False,
    approver_id: Optional[int] = None,
) -> dict:
    # autocommit: each order's insert is its own transaction, so progress survives a crash mid-run.
    with psycopg.connect(db_url, row_factory=dict_row, autocommit=True) as conn:
        results = calculate_for_period(conn, period_start, period_end)
        approved = 0
        if approve:
            with conn.transaction():
                with conn.cursor() as cur:
                    approved = approve_all_for_period(cur, period_start, period_end, approver_id)

    summary = {"period_start": period_start, "period_end": period_end, "approved": approved, **results}
    json_log("info", "worker.commissions.done", **summary)
    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(description="Calculate monthly sales commissions")
    parser.add_argument("--db", default=settings.db_url)
    parser.add_argument("--year", type=int)
    parser.add_argument("--month", type=int, choices=range(1, 13))
    parser.add_argument("--approve", action="store_true", help="Approve calculated commissions of the period")
    parser.add_argument("--approver-id", type=int, default=None)
    parser.add_argument("--loop", action="store_true", help="Keep running; closes each month once it is due")
    parser.add_argument("--sleep", type=float, default=3600.0)
    args = parser.parse_args(argv)

    if not args.loop:
        start, end = resolve_period(date.today(), args.year, args.month)
        run_commission_scheduler(args.db, start, end, approve=args.approve, approver_id=args.approver_id)
        return 0

    last_period = None
    while True:
        today = date.today()
        if is_due(today, settings.commission_scheduler_day, last_period):
            period = previous_month(today)
            try:
                run_commission_scheduler(args.db, *period, approve=args.approve, approver_id=args.approver_id)
                last_period = period
            except Exception as ex:
                # Never crash the loop; the next tick retries the same period.
                json_log("error", "worker.commissions.error", period_start=period[0], error=str(ex))
                traceback.print_exc(file=sys.stderr)
        time.sleep(args.sleep)


if __name__ == "__main__":
    raise SystemExit(main())
