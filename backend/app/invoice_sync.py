"""
Order -> invoice promotion.

`sync_order_invoice` is the only writer of `invoices`/`invoice_items` for an
order. It runs in a single transaction and never raises: persistence errors
come back as a failed result after the rollback.
"""

from __future__ import annotations

from typing import Optional

from .audit import write_audit_log
from .invoice_readiness import evaluate_invoice_ready, load_order, load_order_items
from .logs import json_log
from .money import to_decimal
from .validation import ORDER_STATUSES

AUTO_PROMOTE_STATUSES = frozenset({"confirmed", "ready_to_ship", "shipped"})
LOCKED_INVOICE_STATUSES = frozenset({"paid", "voided"})


def invoice_number_for_order(order_id: int) -> str:
    return f"INV-{int(order_id):06d}"


def find_invoice_for_order(cur, order_id: int) -> Optional[dict]:
    cur.execute(
        "SELECT id, invoice_number, status FROM invoices WHERE order_id = %s LIMIT 1",
        (order_id,),
    )
    return cur.fetchone()


def _failure(error: str, message: str) -> dict:
    return {"success": False, "invoice_id": None, "error": error, "message": message}


def _insert_invoice(cur, order: dict, actor_id: Optional[int]) -> Optional[int]:
    cur.execute(
        """
        INSERT INTO invoices
          (invoice_number, order_id, sales_rep_id, status, total_usd, total_lbp, created_by, created_at, updated_at)
        VALUES
          (%s, %s, %s, 'draft', %s, %s, %s, now(), now())
        ON CONFLICT (order_id) DO NOTHING
        RETURNING id
        """,
        (
            invoice_number_for_order(order["id"]),
            order["id"],
            order.get("sales_rep_id"),
            to_decimal(order.get("total_usd")),
            to_decimal(order.get("total_lbp")),
            actor_id,
        ),
    )
    row = cur.fetchone()
    return row["id"] if row else None


def _refresh_invoice(cur, invoice_id: int, order: dict) -> None:
    cur.execute(
        """
        UPDATE invoices
        SET total_usd = %s,
            total_lbp = %s,
            updated_at = now()
        WHERE id = %s
        """,
        (to_decimal(order.get("total_usd")), to_decimal(order.get("total_lbp")), invoice_id),
    )
    # Lines are replaced wholesale, never patched.
    cur.execute("DELETE FROM invoice_items WHERE invoice_id = %s", (invoice_id,))


def _copy_items(cur, invoice_id: int, items: list[dict]) -> int:
    for it in items:
        cur.execute(
            """
            INSERT INTO invoice_items
              (invoice_id, product_id, quantity, unit_price_usd, unit_price_lbp, discount_percent)
            VALUES
              (%s, %s, %s, %s, %s, %s)
            """,
            (
                invoice_id,
                it.get("product_id"),
                it.get("quantity"),
                to_decimal(it.get("unit_price_usd")),
                to_decimal(it.get("unit_price_lbp")),
                to_decimal(it.get("discount_percent")),
            ),
        )
    return len(items)


def sync_order_invoice(conn, order_id: int, actor_id: Optional[int]) -> dict:
    try:
        with conn.transaction():
            with conn.cursor() as cur:
                order = load_order(cur, order_id, for_update=True)
                if not order:
                    return _failure("order_not_found", "Order not found")

                existing = find_invoice_for_order(cur, order_id)
                if existing and existing.get("status") in LOCKED_INVOICE_STATUSES:
                    return _failure("invoice_locked", f"Invoice is {existing['status']} and can no longer change")

                created = False
                if existing:
                    invoice_id = existing["id"]
                else:
                    invoice_id = _insert_invoice(cur, order, actor_id)
                    if invoice_id is None:
                        # Another request created it between our lookup and insert.
                        existing = find_invoice_for_order(cur, order_id)
                        invoice_id = existing["id"]
                    else:
                        created = True
                if not created:
                    _refresh_invoice(cur, invoice_id, order)

                lines = _copy_items(cur, invoice_id, load_order_items(cur, order_id))
                write_audit_log(
                    cur,
                    actor_id,
                    "invoice.created" if created else "invoice.synced",
                    "invoice",
                    invoice_id,
                    {"order_id": order_id, "invoice_number": invoice_number_for_order(order_id), "lines": lines},
                )
    except Exception as ex:
        json_log("error", "invoice.sync.failed", order_id=order_id, actor_id=actor_id, error=str(ex))
        return _failure("sync_failed", f"Failed to sync invoice: {ex}")

    return {
        "success": True,
        "invoice_id": invoice_id,
        "created": created,
        "message": "Invoice created successfully" if created else "Invoice updated successfully",
    }


def auto_promote_invoice_if_ready(conn, order_id: int, new_status: str, actor_id: Optional[int]) -> Optional[dict]:
    """
    Hook for order status changes. Returns the sync result when an invoice was
    created, otherwise None; an order that is not ready is not an error.
    """
    if new_status not in AUTO_PROMOTE_STATUSES:
        return None
    with conn.cursor() as cur:
        evaluation = evaluate_invoice_ready(cur, order_id)
        if not evaluation["ready"]:
            return None
        if find_invoice_for_order(cur, order_id):
            # Re-sync is an explicit admin action, never automatic.
            return None
    return sync_order_invoice(conn, order_id, actor_id)


def change_order_status(conn, order_id: int, new_status: str, actor_id: Optional[int]) -> dict:
    status = str(new_status or "").strip().lower()
    if status not in ORDER_STATUSES:
        return {"success": False, "error": "invalid_status", "message": f"Unknown order status: {new_status}"}

    with conn.transaction():
        with conn.cursor() as cur:
            cur.execute("SELECT status FROM orders WHERE id = %s FOR UPDATE", (order_id,))
            current = cur.fetchone()
            if not current:
                return {"success": False, "error": "order_not_found", "message": "Order not found"}
            cur.execute(
                """
                UPDATE orders
                SET status = %s, updated_at = now()
                WHERE id = %s
                """,
                (status, order_id),
            )
            write_audit_log(
                cur,
                actor_id,
                "order.status_changed",
                "order",
                order_id,
                {"previous_status": current["status"], "status": status},
            )

    invoice = auto_promote_invoice_if_ready(conn, order_id, status, actor_id)
    return {"success": True, "order_id": order_id, "status": status, "invoice": invoice}
