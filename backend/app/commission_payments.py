from __future__ import annotations

import secrets
from datetime import date
from typing import Iterable, Optional

from .audit import write_audit_log
from .commissions import commission_total, mark_as_paid, period_bounds
from .logs import json_log
from .validation import PAYMENT_METHODS

REFERENCE_ATTEMPTS = 20


def _reference_candidate(sales_rep_id: int, on_date: date) -> str:
    suffix = 100 + secrets.randbelow(900)
    return f"COMM-{on_date:%Y%m%d}-{int(sales_rep_id):03d}-{suffix}"


def generate_payment_reference(cur, sales_rep_id: int, on_date: date) -> str:
    # Human-readable references with a short random suffix; check for collisions
    # (payment_reference is also UNIQUE in the schema).
    for _ in range(REFERENCE_ATTEMPTS):
        ref = _reference_candidate(sales_rep_id, on_date)
        cur.execute("SELECT 1 FROM commission_payments WHERE payment_reference = %s", (ref,))
        if not cur.fetchone():
            return ref
    raise RuntimeError("could not allocate a unique payment reference")


def _failure(error: str, message: str) -> dict:
    return {"success": False, "payment_id": None, "reference": None, "error": error, "message": message}


def record_commission_payment(
    conn,
    *,
    sales_rep_id: int,
    calculation_ids: Iterable,
    payment_method: str,
    payment_date: date,
    actor_id: Optional[int],
    bank_reference: Optional[str] = None,
    notes: Optional[str] = None,
) -> dict:
    """
    Disburse a set of approved commissions to one rep.

    Ids that are not approved or belong to another rep are ignored. Header,
    lines and the paid flip commit together or not at all.
    """
    method = str(payment_method or "").strip().lower()
    if method not in PAYMENT_METHODS:
        return _failure("invalid_payment_method", f"Invalid payment method: {payment_method}")

    ids = sorted({int(i) for i in (calculation_ids or [])})
    if not ids:
        return _failure("no_valid_commissions", "No valid approved commissions found for this sales rep")

    try:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, commission_amount_usd, commission_amount_lbp, period_start, period_end
                    FROM commission_calculations
                    WHERE id = ANY(%s) AND sales_rep_id = %s AND status = 'approved'
                    ORDER BY id
                    FOR UPDATE
                    """,
                    (ids, sales_rep_id),
                )
                rows = cur.fetchall() or []
                if not rows:
                    return _failure("no_valid_commissions", "No valid approved commissions found for this sales rep")

                total = commission_total(rows)
                period_start, period_end = period_bounds(rows)
                reference = generate_payment_reference(cur, sales_rep_id, payment_date)

                cur.execute(
                    """
                    INSERT INTO commission_payments
                      (sales_rep_id, payment_reference, period_start, period_end, total_amount_usd, total_amount_lbp,
                       payment_method, payment_date, bank_reference, notes, paid_by)
                    VALUES
                      (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        sales_rep_id,
                        reference,
                        period_start,
                        period_end,
                        total.usd,
                        total.lbp,
                        method,
                        payment_date,
                        (bank_reference or "").strip() or None,
                        (notes or "").strip() or None,
                        actor_id,
                    ),
                )
                payment_id = cur.fetchone()["id"]

                for r in rows:
                    cur.execute(
                        """
                        INSERT INTO commission_payment_items (payment_id, calculation_id, amount_usd, amount_lbp)
                        VALUES (%s, %s, %s, %s)
                        """,
                        (payment_id, r["id"], r["commission_amount_usd"], r["commission_amount_lbp"]),
                    )

                paid = mark_as_paid(cur, [r["id"] for r in rows])
                if paid != len(rows):
                    # Rows are locked above, so this only happens on a broken invariant; abort everything.
                    raise RuntimeError(f"expected to mark {len(rows)} commissions paid, marked {paid}")

                write_audit_log(
                    cur,
                    actor_id,
                    "commission.payment.recorded",
                    "commission_payment",
                    payment_id,
                    {"reference": reference, "sales_rep_id": sales_rep_id, "calculation_ids": [r["id"] for r in rows]},
                )
    except Exception as ex:
        json_log("error", "commission.payment.failed", sales_rep_id=sales_rep_id, actor_id=actor_id, error=str(ex))
        return _failure("payment_failed", f"Failed to record payment: {ex}")

    return {
        "success": True,
        "payment_id": payment_id,
        "reference": reference,
        "total_usd": total.usd,
        "total_lbp": total.lbp,
        "period_start": period_start,
        "period_end": period_end,
        "message": f"Payment recorded. Reference: {reference}",
    }


def list_commission_payments(cur, sales_rep_id: Optional[int] = None, limit: int = 100) -> list[dict]:
    sql = """
        SELECT p.id, p.sales_rep_id, u.name AS sales_rep_name, p.payment_reference,
               p.period_start, p.period_end, p.total_amount_usd, p.total_amount_lbp,
               p.payment_method, p.payment_date, p.bank_reference, p.notes, p.created_at,
               (SELECT COUNT(*) FROM commission_payment_items pi WHERE pi.payment_id = p.id) AS item_count
        FROM commission_payments p
        LEFT JOIN users u ON u.id = p.sales_rep_id
    """
    params: list = []
    if sales_rep_id is not None:
        sql += " WHERE p.sales_rep_id = %s"
        params.append(sales_rep_id)
    sql += " ORDER BY p.payment_date DESC, p.id DESC LIMIT %s"
    params.append(max(1, min(int(limit), 500)))
    cur.execute(sql, params)
    return cur.fetchall() or []
