"""
Sales commission calculation.

Attribution rules:
- Direct sale: the rep on the order (orders.sales_rep_id) earns the commission.
- Assigned customer: when nobody placed the order for the customer, the
  customer's assigned rep (customers.assigned_sales_rep_id) earns it.
- Direct seller wins: if rep A sells to a customer assigned to rep B, only A earns.

An order earns at most one commission, ever. `commission_calculations.order_id`
is unique and inserts use ON CONFLICT DO NOTHING, so concurrent runs over
overlapping periods cannot double count.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional

from .audit import write_audit_log
from .commission_rates import resolve_rate
from .logs import json_log
from .money import Amount, sum_amounts


def month_period(year: int, month: int) -> tuple[date, date]:
    last = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last)


def previous_month(today: date) -> tuple[date, date]:
    year, month = today.year, today.month - 1
    if month == 0:
        year -= 1
        month = 12
    return month_period(year, month)


def attribute_commission(order: dict) -> Optional[tuple[int, str]]:
    """(earning rep, commission type) for an order, or None when nobody earns."""
    if order.get("sales_rep_id"):
        return int(order["sales_rep_id"]), "direct_sale"
    if order.get("assigned_sales_rep_id"):
        return int(order["assigned_sales_rep_id"]), "assigned_customer"
    return None


def _invoice_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def calculate_commission_for_order(cur, order_id: int) -> Optional[dict]:
    cur.execute(
        """
        SELECT o.id AS order_id, o.sales_rep_id, o.customer_id, c.assigned_sales_rep_id,
               i.id AS invoice_id, i.total_usd, i.total_lbp,
               COALESCE(i.issued_at, i.created_at)::date AS invoice_date
        FROM orders o
        JOIN invoices i ON i.order_id = o.id
        LEFT JOIN customers c ON c.id = o.customer_id
        WHERE o.id = %s
          AND i.status IN ('issued', 'paid')
        """,
        (order_id,),
    )
    row = cur.fetchone()
    if not row:
        return None

    attribution = attribute_commission(row)
    if attribution is None:
        return None
    sales_rep_id, commission_type = attribution

    invoice_date = _invoice_date(row["invoice_date"])
    rate = resolve_rate(cur, sales_rep_id, commission_type, invoice_date)
    total = Amount.from_row(row)
    commission = total.percent(rate)

    return {
        "order_id": row["order_id"],
        "invoice_id": row["invoice_id"],
        "invoice_date": invoice_date,
        "sales_rep_id": sales_rep_id,
        "commission_type": commission_type,
        "order_total_usd": total.usd,
        "order_total_lbp": total.lbp,
        "rate_percentage": rate,
        "commission_amount_usd": commission.usd,
        "commission_amount_lbp": commission.lbp,
    }


def _insert_calculation(cur, c: dict, period_start: date, period_end: date) -> Optional[int]:
    cur.execute(
        """
        INSERT INTO commission_calculations
          (sales_rep_id, order_id, invoice_id, commission_type, order_total_usd, order_total_lbp,
           rate_percentage, commission_amount_usd, commission_amount_lbp, status, period_start, period_end)
        VALUES
          (%s, %s, %s, %s, %s, %s, %s, %s, %s, 'calculated', %s, %s)
        ON CONFLICT (order_id) DO NOTHING
        RETURNING id
        """,
        (
            c["sales_rep_id"],
            c["order_id"],
            c["invoice_id"],
            c["commission_type"],
            c["order_total_usd"],
            c["order_total_lbp"],
            c["rate_percentage"],
            c["commission_amount_usd"],
            c["commission_amount_lbp"],
            period_start,
            period_end,
        ),
    )
    row = cur.fetchone()
    return row["id"] if row else None


def _candidate_orders(cur, period_start: date, period_end: date, sales_rep_id: Optional[int]) -> list[dict]:
    sql = """
        SELECT DISTINCT o.id AS order_id,
               EXISTS (SELECT 1 FROM commission_calculations cc WHERE cc.order_id = o.id) AS has_commission
        FROM orders o
        JOIN invoices i ON i.order_id = o.id
        WHERE i.status IN ('issued', 'paid')
          AND COALESCE(i.issued_at, i.created_at)::date BETWEEN %s AND %s
    """
    params: list = [period_start, period_end]
    if sales_rep_id is not None:
        # Only orders this rep would earn under the attribution rules.
        sql += """
          AND (
            o.sales_rep_id = %s
            OR (o.sales_rep_id IS NULL AND EXISTS (
                SELECT 1 FROM customers c WHERE c.id = o.customer_id AND c.assigned_sales_rep_id = %s
            ))
          )
        """
        params.extend([sales_rep_id, sales_rep_id])
    sql += " ORDER BY o.id"
    cur.execute(sql, params)
    return cur.fetchall() or []


def calculate_for_period(conn, period_start: date, period_end: date, sales_rep_id: Optional[int] = None) -> dict:
    """
    Compute commissions for every invoiced order of the period that has none yet.

    Each order is committed on its own; a failing order is logged, counted and
    skipped so a long run never loses the progress it already made.
    """
    if period_end < period_start:
        raise ValueError("period_end must be on or after period_start")

    results = {
        "calculated": 0,
        "skipped": 0,
        "errors": 0,
        "total_commission_usd": Decimal("0"),
        "total_commission_lbp": Decimal("0"),
    }

    # Closed before the loop so every order below commits on its own instead of
    # as a savepoint of an implicit outer transaction.
    with conn.transaction():
        with conn.cursor() as cur:
            candidates = _candidate_orders(cur, period_start, period_end, sales_rep_id)

    for cand in candidates:
        order_id = cand["order_id"]
        if cand.get("has_commission"):
            results["skipped"] += 1
            continue
        try:
            with conn.transaction():
                with conn.cursor() as cur:
                    commission = calculate_commission_for_order(cur, order_id)
                    if commission is None:
                        results["skipped"] += 1
                        continue
                    calc_id = _insert_calculation(cur, commission, period_start, period_end)
        except Exception as ex:
            results["errors"] += 1
            json_log("error", "commission.calculate.order_failed", order_id=order_id, error=str(ex))
            continue

        if calc_id is None:
            # Lost the race to a concurrent run: the order already has its commission.
            results["skipped"] += 1
            continue
        results["calculated"] += 1
        results["total_commission_usd"] += commission["commission_amount_usd"]
        results["total_commission_lbp"] += commission["commission_amount_lbp"]

    json_log(
        "info",
        "commission.calculate.done",
        period_start=period_start,
        period_end=period_end,
        sales_rep_id=sales_rep_id,
        **results,
    )
    return results


def _ids(ids: Iterable) -> list[int]:
    return sorted({int(i) for i in (ids or [])})


def approve_commissions(cur, commission_ids: Iterable, approver_id: int) -> int:
    ids = _ids(commission_ids)
    if not ids:
        return 0
    cur.execute(
        """
        UPDATE commission_calculations
        SET status = 'approved', approved_by = %s, approved_at = now()
        WHERE id = ANY(%s) AND status = 'calculated'
        RETURNING id
        """,
        (approver_id, ids),
    )
    approved = [r["id"] for r in (cur.fetchall() or [])]
    if approved:
        write_audit_log(cur, approver_id, "commission.approve", "commission_calculation", None, {"ids": approved})
    return len(approved)


def approve_all_for_period(cur, period_start: date, period_end: date, approver_id: int) -> int:
    cur.execute(
        """
        SELECT id
        FROM commission_calculations
        WHERE status = 'calculated'
          AND period_start >= %s AND period_end <= %s
        """,
        (period_start, period_end),
    )
    ids = [r["id"] for r in (cur.fetchall() or [])]
    return approve_commissions(cur, ids, approver_id)


def mark_as_paid(cur, commission_ids: Iterable) -> int:
    ids = _ids(commission_ids)
    if not ids:
        return 0
    cur.execute(
        """
        UPDATE commission_calculations
        SET status = 'paid', paid_at = now()
        WHERE id = ANY(%s) AND status = 'approved'
        RETURNING id
        """,
        (ids,),
    )
    return len(cur.fetchall() or [])


def summary_by_rep(cur, period_start: date, period_end: date) -> list[dict]:
    cur.execute(
        """
        SELECT
          u.id AS sales_rep_id,
          u.name AS sales_rep_name,
          COUNT(DISTINCT cc.order_id) AS order_count,
          COALESCE(SUM(cc.order_total_usd), 0) AS total_sales_usd,
          COALESCE(SUM(cc.commission_amount_usd), 0) AS total_commission_usd,
          COALESCE(SUM(cc.commission_amount_lbp), 0) AS total_commission_lbp,
          COALESCE(SUM(CASE WHEN cc.status = 'calculated' THEN cc.commission_amount_usd ELSE 0 END), 0) AS pending_usd,
          COALESCE(SUM(CASE WHEN cc.status = 'approved' THEN cc.commission_amount_usd ELSE 0 END), 0) AS approved_usd,
          COALESCE(SUM(CASE WHEN cc.status = 'paid' THEN cc.commission_amount_usd ELSE 0 END), 0) AS paid_usd
        FROM users u
        LEFT JOIN commission_calculations cc
          ON cc.sales_rep_id = u.id
         AND cc.period_start >= %s AND cc.period_end <= %s
        WHERE u.role = 'sales_rep'
        GROUP BY u.id, u.name
        ORDER BY total_commission_usd DESC, u.name
        """,
        (period_start, period_end),
    )
    return cur.fetchall() or []


def commissions_for_rep(cur, sales_rep_id: int, period_start: date, period_end: date, status: Optional[str] = None) -> list[dict]:
    sql = """
        SELECT cc.id, cc.order_id, cc.invoice_id, cc.commission_type, cc.order_total_usd,
               cc.rate_percentage, cc.commission_amount_usd, cc.commission_amount_lbp,
               cc.status, cc.created_at, i.invoice_number, c.name AS customer_name
        FROM commission_calculations cc
        JOIN invoices i ON i.id = cc.invoice_id
        JOIN orders o ON o.id = cc.order_id
        LEFT JOIN customers c ON c.id = o.customer_id
        WHERE cc.sales_rep_id = %s
          AND cc.period_start >= %s
          AND cc.period_end <= %s
    """
    params: list = [sales_rep_id, period_start, period_end]
    if status:
        sql += " AND cc.status = %s"
        params.append(status)
    sql += " ORDER BY cc.created_at DESC, cc.id DESC"
    cur.execute(sql, params)
    return cur.fetchall() or []


def commission_total(rows: Iterable[dict]) -> Amount:
    return sum_amounts(Amount.of(r.get("commission_amount_usd"), r.get("commission_amount_lbp")) for r in rows)


def period_bounds(rows: list[dict]) -> tuple[Optional[date], Optional[date]]:
    starts = [r["period_start"] for r in rows if r.get("period_start")]
    ends = [r["period_end"] for r in rows if r.get("period_end")]
    return (min(starts) if starts else None, max(ends) if ends else None)
