from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from .audit import write_audit_log
from .money import to_decimal
from .validation import COMMISSION_TYPES

# Used when neither a rep override nor a default row covers the date.
DEFAULT_COMMISSION_RATE = Decimal("4.00")


def _validate_type(commission_type: str) -> str:
    ct = str(commission_type or "").strip().lower()
    if ct not in COMMISSION_TYPES:
        raise ValueError(f"invalid commission type: {commission_type}")
    return ct


def _validate_rate(rate_percentage) -> Decimal:
    rate = to_decimal(rate_percentage)
    if rate < 0 or rate > 100:
        raise ValueError("rate_percentage must be between 0 and 100")
    return rate


def _scope_clause(sales_rep_id: Optional[int]) -> tuple[str, tuple]:
    if sales_rep_id is None:
        return "sales_rep_id IS NULL", ()
    return "sales_rep_id = %s", (sales_rep_id,)


def _active_rate(cur, sales_rep_id: Optional[int], commission_type: str, as_of: date) -> Optional[dict]:
    scope_sql, scope_params = _scope_clause(sales_rep_id)
    cur.execute(
        f"""
        SELECT id, rate_percentage
        FROM commission_rates
        WHERE {scope_sql}
          AND commission_type = %s
          AND effective_from <= %s
          AND (effective_to IS NULL OR effective_to >= %s)
        ORDER BY effective_from DESC, id DESC
        LIMIT 1
        """,
        (*scope_params, commission_type, as_of, as_of),
    )
    return cur.fetchone()


def pick_commission_rate(cur, sales_rep_id: Optional[int], commission_type: str, as_of: date) -> dict:
    # 1) Rep override active on the date.
    if sales_rep_id is not None:
        row = _active_rate(cur, sales_rep_id, commission_type, as_of)
        if row:
            return {"rate_percentage": to_decimal(row["rate_percentage"]), "source": "override", "rate_id": row["id"]}

    # 2) Company default active on the date.
    row = _active_rate(cur, None, commission_type, as_of)
    if row:
        return {"rate_percentage": to_decimal(row["rate_percentage"]), "source": "default", "rate_id": row["id"]}

    # 3) Hard fallback.
    return {"rate_percentage": DEFAULT_COMMISSION_RATE, "source": "fallback", "rate_id": None}


def resolve_rate(cur, sales_rep_id: Optional[int], commission_type: str, as_of: date) -> Decimal:
    return pick_commission_rate(cur, sales_rep_id, commission_type, as_of)["rate_percentage"]


def set_commission_rate(
    cur,
    *,
    sales_rep_id: Optional[int],
    commission_type: str,
    rate_percentage,
    effective_from: date,
    actor_id: Optional[int],
) -> int:
    """
    Start a new open-ended rate for (scope, type) on `effective_from`.

    Any row still running on `effective_from`, open or already closed, is cut
    back to the day before, so at most one rate is active for a scope on any
    date. Rows that would only start on or after `effective_from` are dropped.
    """
    ct = _validate_type(commission_type)
    rate = _validate_rate(rate_percentage)
    scope_sql, scope_params = _scope_clause(sales_rep_id)

    cur.execute(
        f"""
        SELECT id, effective_from
        FROM commission_rates
        WHERE {scope_sql}
          AND commission_type = %s
          AND (effective_to IS NULL OR effective_to >= %s)
        FOR UPDATE
        """,
        (*scope_params, ct, effective_from),
    )
    closed_ids: list[int] = []
    superseded_ids: list[int] = []
    for r in cur.fetchall() or []:
        if r["effective_from"] >= effective_from:
            cur.execute("DELETE FROM commission_rates WHERE id = %s", (r["id"],))
            superseded_ids.append(r["id"])
        else:
            closed_ids.append(r["id"])
            cur.execute(
                "UPDATE commission_rates SET effective_to = %s WHERE id = %s",
                (effective_from - timedelta(days=1), r["id"]),
            )

    cur.execute(
        """
        INSERT INTO commission_rates
          (sales_rep_id, commission_type, rate_percentage, effective_from, effective_to, created_by)
        VALUES
          (%s, %s, %s, %s, NULL, %s)
        RETURNING id
        """,
        (sales_rep_id, ct, rate, effective_from, actor_id),
    )
    rate_id = cur.fetchone()["id"]
    write_audit_log(
        cur,
        actor_id,
        "commission.rate.set",
        "commission_rate",
        rate_id,
        {
            "sales_rep_id": sales_rep_id,
            "commission_type": ct,
            "rate_percentage": str(rate),
            "effective_from": effective_from.isoformat(),
            "closed_rate_ids": closed_ids,
            "superseded_rate_ids": superseded_ids,
        },
    )
    return rate_id


def add_rate_override(cur, *, sales_rep_id: int, commission_type: str, rate_percentage, effective_from: date, actor_id: Optional[int]) -> int:
    if not sales_rep_id:
        raise ValueError("sales_rep_id is required for an override")
    return set_commission_rate(
        cur,
        sales_rep_id=sales_rep_id,
        commission_type=commission_type,
        rate_percentage=rate_percentage,
        effective_from=effective_from,
        actor_id=actor_id,
    )


def set_default_rates(cur, *, direct_rate, assigned_rate, effective_from: date, actor_id: Optional[int]) -> dict:
    return {
        "direct_sale": set_commission_rate(
            cur,
            sales_rep_id=None,
            commission_type="direct_sale",
            rate_percentage=direct_rate,
            effective_from=effective_from,
            actor_id=actor_id,
        ),
        "assigned_customer": set_commission_rate(
            cur,
            sales_rep_id=None,
            commission_type="assigned_customer",
            rate_percentage=assigned_rate,
            effective_from=effective_from,
            actor_id=actor_id,
        ),
    }


def delete_rate_override(cur, rate_id: int, actor_id: Optional[int] = None) -> bool:
    # Defaults are never deleted; they are superseded by set_default_rates.
    cur.execute(
        "DELETE FROM commission_rates WHERE id = %s AND sales_rep_id IS NOT NULL RETURNING id, sales_rep_id, commission_type",
        (rate_id,),
    )
    row = cur.fetchone()
    if not row:
        return False
    write_audit_log(
        cur,
        actor_id,
        "commission.rate.delete",
        "commission_rate",
        rate_id,
        {"sales_rep_id": row["sales_rep_id"], "commission_type": row["commission_type"]},
    )
    return True


def list_commission_rates(cur, as_of: date) -> dict:
    defaults = {}
    for ct in COMMISSION_TYPES:
        picked = pick_commission_rate(cur, None, ct, as_of)
        defaults[ct] = picked

    cur.execute(
        """
        SELECT cr.id, cr.sales_rep_id, u.name AS sales_rep_name, cr.commission_type,
               cr.rate_percentage, cr.effective_from, cr.effective_to
        FROM commission_rates cr
        LEFT JOIN users u ON u.id = cr.sales_rep_id
        WHERE cr.sales_rep_id IS NOT NULL
        ORDER BY u.name, cr.commission_type, cr.effective_from DESC
        """
    )
    return {"defaults": defaults, "overrides": cur.fetchall() or []}
