from __future__ import annotations

from typing import Optional

from .audit import write_audit_log
from .money import Amount, q_lbp, q_usd, to_decimal
from .validation import ADJUSTMENT_TYPES


def compute_new_balance(adjustment_type: str, previous: Amount, amount: Amount) -> Amount:
    # credit / write_off: customer owes less; debit: owes more;
    # correction / opening_balance: the amounts are the new balance.
    if adjustment_type in {"credit", "write_off"}:
        return Amount(usd=previous.usd - abs(amount.usd), lbp=previous.lbp - abs(amount.lbp))
    if adjustment_type == "debit":
        return Amount(usd=previous.usd + abs(amount.usd), lbp=previous.lbp + abs(amount.lbp))
    if adjustment_type in {"correction", "opening_balance"}:
        return amount
    raise ValueError(f"invalid adjustment type: {adjustment_type}")


def _failure(error: str, message: str) -> dict:
    return {"success": False, "adjustment_id": None, "error": error, "message": message}


def record_balance_adjustment(
    conn,
    *,
    customer_id: int,
    adjustment_type: str,
    amount_usd,
    amount_lbp,
    reason: str,
    actor_id: Optional[int],
    notes: Optional[str] = None,
) -> dict:
    kind = str(adjustment_type or "").strip().lower()
    if kind not in ADJUSTMENT_TYPES:
        return _failure("invalid_adjustment_type", f"Invalid adjustment type: {adjustment_type}")
    amount = Amount(usd=q_usd(to_decimal(amount_usd)), lbp=q_lbp(to_decimal(amount_lbp)))
    if amount.is_zero():
        return _failure("amount_required", "Please enter an amount to adjust")
    reason = (reason or "").strip()
    if not reason:
        return _failure("reason_required", "Please provide a reason for this adjustment")

    with conn.transaction():
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id,
                       COALESCE(account_balance_usd, 0) AS balance_usd,
                       COALESCE(account_balance_lbp, 0) AS balance_lbp
                FROM customers
                WHERE id = %s
                FOR UPDATE
                """,
                (customer_id,),
            )
            row = cur.fetchone()
            if not row:
                return _failure("customer_not_found", "Customer not found")

            previous = Amount.from_row(row, "balance_usd", "balance_lbp")
            new = compute_new_balance(kind, previous, amount)

            cur.execute(
                "UPDATE customers SET account_balance_usd = %s, account_balance_lbp = %s WHERE id = %s",
                (new.usd, new.lbp, customer_id),
            )
            cur.execute(
                """
                INSERT INTO customer_balance_adjustments
                  (customer_id, adjustment_type, amount_usd, amount_lbp,
                   previous_balance_usd, previous_balance_lbp, new_balance_usd, new_balance_lbp,
                   reason, reference_type, notes, performed_by)
                VALUES
                  (%s, %s, %s, %s, %s, %s, %s, %s, %s, 'manual', %s, %s)
                RETURNING id
                """,
                (
                    customer_id,
                    kind,
                    amount.usd,
                    amount.lbp,
                    previous.usd,
                    previous.lbp,
                    new.usd,
                    new.lbp,
                    reason,
                    (notes or "").strip() or None,
                    actor_id,
                ),
            )
            adjustment_id = cur.fetchone()["id"]
            write_audit_log(
                cur,
                actor_id,
                "customer.balance.adjusted",
                "customer",
                customer_id,
                {"adjustment_id": adjustment_id, "type": kind, "reason": reason},
            )

    return {
        "success": True,
        "adjustment_id": adjustment_id,
        "previous_balance_usd": previous.usd,
        "previous_balance_lbp": previous.lbp,
        "new_balance_usd": new.usd,
        "new_balance_lbp": new.lbp,
        "message": "Balance adjustment recorded successfully",
    }


def list_balance_adjustments(cur, customer_id: int, limit: int = 100) -> list[dict]:
    cur.execute(
        """
        SELECT a.id, a.adjustment_type, a.amount_usd, a.amount_lbp,
               a.previous_balance_usd, a.previous_balance_lbp, a.new_balance_usd, a.new_balance_lbp,
               a.reason, a.reference_type, a.notes, a.performed_by, u.name AS performed_by_name, a.created_at
        FROM customer_balance_adjustments a
        LEFT JOIN users u ON u.id = a.performed_by
        WHERE a.customer_id = %s
        ORDER BY a.created_at DESC, a.id DESC
        LIMIT %s
        """,
        (customer_id, max(1, min(int(limit), 500))),
    )
    return cur.fetchall() or []
