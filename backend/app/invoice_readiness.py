"""
Invoice readiness rules for orders.

An order is invoice-ready when it has a customer, a sales rep, a positive
total, an exchange rate when priced in both currencies, and at least one
well-formed line. Rules are evaluated independently so the caller sees every
problem at once; only the per-line checks stop at the first bad line.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional

from .money import Amount, to_decimal


class ReasonCode(str, Enum):
    ORDER_NOT_FOUND = "order_not_found"
    NO_CUSTOMER = "no_customer"
    NO_SALES_REP = "no_sales_rep"
    TOTAL_ZERO_OR_NEGATIVE = "total_zero_or_negative"
    MISSING_EXCHANGE_RATE = "missing_exchange_rate"
    NO_ITEMS = "no_items"
    ITEM_MISSING_PRODUCT = "item_missing_product"
    ITEM_QUANTITY_ZERO_OR_NEGATIVE = "item_quantity_zero_or_negative"
    ITEM_PRICE_ZERO_OR_NEGATIVE = "item_price_zero_or_negative"


REASON_DESCRIPTIONS = {
    ReasonCode.ORDER_NOT_FOUND: "Order not found",
    ReasonCode.NO_CUSTOMER: "Customer not assigned",
    ReasonCode.NO_SALES_REP: "Sales representative not assigned",
    ReasonCode.TOTAL_ZERO_OR_NEGATIVE: "Order total is zero or negative",
    ReasonCode.MISSING_EXCHANGE_RATE: "Exchange rate not set for multi-currency order",
    ReasonCode.NO_ITEMS: "Order has no line items",
    ReasonCode.ITEM_MISSING_PRODUCT: "One or more items missing product reference",
    ReasonCode.ITEM_QUANTITY_ZERO_OR_NEGATIVE: "One or more items have zero or negative quantity",
    ReasonCode.ITEM_PRICE_ZERO_OR_NEGATIVE: "One or more items have zero or negative price",
}

READY_MESSAGE = "Order is ready for invoicing"


def load_order(cur, order_id: int, *, for_update: bool = False) -> Optional[dict]:
    cur.execute(
        f"""
        SELECT id, customer_id, sales_rep_id, total_usd, total_lbp, exchange_rate_id, status
        FROM orders
        WHERE id = %s
        {"FOR UPDATE" if for_update else ""}
        """,
        (order_id,),
    )
    return cur.fetchone()


def load_order_items(cur, order_id: int) -> list[dict]:
    cur.execute(
        """
        SELECT id, product_id, quantity, unit_price_usd, unit_price_lbp, discount_percent
        FROM order_items
        WHERE order_id = %s
        ORDER BY id
        """,
        (order_id,),
    )
    return cur.fetchall() or []


def _first_item_problem(items: Iterable[dict]) -> Optional[ReasonCode]:
    for item in items:
        if not item.get("product_id"):
            return ReasonCode.ITEM_MISSING_PRODUCT
        if to_decimal(item.get("quantity")) <= 0:
            return ReasonCode.ITEM_QUANTITY_ZERO_OR_NEGATIVE
        price = Amount.of(item.get("unit_price_usd"), item.get("unit_price_lbp"))
        if not price.is_positive_any():
            return ReasonCode.ITEM_PRICE_ZERO_OR_NEGATIVE
    return None


def evaluate_order(order: dict, items: list[dict]) -> dict:
    reasons: list[ReasonCode] = []

    if not order.get("customer_id"):
        reasons.append(ReasonCode.NO_CUSTOMER)
    if not order.get("sales_rep_id"):
        reasons.append(ReasonCode.NO_SALES_REP)

    total = Amount.from_row(order)
    if not total.is_positive_any():
        reasons.append(ReasonCode.TOTAL_ZERO_OR_NEGATIVE)
    if total.is_multi_currency() and not order.get("exchange_rate_id"):
        reasons.append(ReasonCode.MISSING_EXCHANGE_RATE)

    if not items:
        reasons.append(ReasonCode.NO_ITEMS)
    problem = _first_item_problem(items)
    if problem is not None:
        reasons.append(problem)

    return {"ready": not reasons, "reasons": reasons}


def evaluate_invoice_ready(cur, order_id: int) -> dict:
    """Read-only check; callers decide whether to persist the outcome."""
    order = load_order(cur, order_id)
    if not order:
        return {"ready": False, "reasons": [ReasonCode.ORDER_NOT_FOUND]}
    return evaluate_order(order, load_order_items(cur, order_id))


def describe_invoice_reasons(reasons: Iterable) -> str:
    reasons = list(reasons or [])
    if not reasons:
        return READY_MESSAGE
    out = []
    for r in reasons:
        try:
            out.append(REASON_DESCRIPTIONS[ReasonCode(r)])
        except ValueError:
            out.append(str(r))
    return "; ".join(out)


def refresh_invoice_ready(conn, order_id: int) -> dict:
    with conn.transaction():
        with conn.cursor() as cur:
            evaluation = evaluate_invoice_ready(cur, order_id)
            if ReasonCode.ORDER_NOT_FOUND in evaluation["reasons"]:
                return {
                    "success": False,
                    "error": ReasonCode.ORDER_NOT_FOUND.value,
                    "ready": False,
                    "reasons": evaluation["reasons"],
                    "message": REASON_DESCRIPTIONS[ReasonCode.ORDER_NOT_FOUND],
                }
            cur.execute(
                "UPDATE orders SET invoice_ready = %s, updated_at = now() WHERE id = %s",
                (evaluation["ready"], order_id),
            )
            return {
                "success": True,
                "ready": evaluation["ready"],
                "reasons": evaluation["reasons"],
                "message": READY_MESSAGE if evaluation["ready"] else "Order is not ready for invoicing",
            }
