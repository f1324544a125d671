from decimal import Decimal

from backend.app.invoice_readiness import (
    READY_MESSAGE,
    ReasonCode,
    describe_invoice_reasons,
    evaluate_invoice_ready,
    evaluate_order,
    refresh_invoice_ready,
)
from backend.tests.fake_db import seed_ready_order


def _order(**overrides):
    base = {
        "id": 1,
        "customer_id": 3,
        "sales_rep_id": 7,
        "total_usd": Decimal("100"),
        "total_lbp": Decimal("0"),
        "exchange_rate_id": None,
    }
    base.update(overrides)
    return base


def _item(**overrides):
    base = {"id": 1, "product_id": 10, "quantity": Decimal("2"), "unit_price_usd": Decimal("50"), "unit_price_lbp": Decimal("0")}
    base.update(overrides)
    return base


def test_complete_order_is_ready():
    res = evaluate_order(_order(), [_item()])
    assert res == {"ready": True, "reasons": []}


def test_order_without_items_is_not_ready():
    res = evaluate_order(_order(), [])
    assert res["ready"] is False
    assert ReasonCode.NO_ITEMS in res["reasons"]


def test_missing_customer_is_reported_alongside_other_problems():
    res = evaluate_order(_order(customer_id=None, sales_rep_id=None, total_usd=Decimal("0")), [])
    assert res["reasons"] == [
        ReasonCode.NO_CUSTOMER,
        ReasonCode.NO_SALES_REP,
        ReasonCode.TOTAL_ZERO_OR_NEGATIVE,
        ReasonCode.NO_ITEMS,
    ]


def test_single_zero_quantity_item_reports_only_quantity():
    res = evaluate_order(_order(), [_item(quantity=Decimal("0"))])
    assert res == {"ready": False, "reasons": [ReasonCode.ITEM_QUANTITY_ZERO_OR_NEGATIVE]}


def test_item_checks_stop_at_first_offending_item():
    items = [
        _item(id=1),
        _item(id=2, product_id=None, quantity=Decimal("0")),
        _item(id=3, unit_price_usd=Decimal("0")),
    ]
    res = evaluate_order(_order(), items)
    assert res["reasons"] == [ReasonCode.ITEM_MISSING_PRODUCT]


def test_item_priced_only_in_lbp_is_fine():
    res = evaluate_order(_order(), [_item(unit_price_usd=Decimal("0"), unit_price_lbp=Decimal("89500"))])
    assert res["ready"] is True


def test_item_without_any_price_is_rejected():
    res = evaluate_order(_order(), [_item(unit_price_usd=Decimal("0"), unit_price_lbp=Decimal("-1"))])
    assert res["reasons"] == [ReasonCode.ITEM_PRICE_ZERO_OR_NEGATIVE]


def test_multi_currency_order_needs_exchange_rate():
    res = evaluate_order(_order(total_lbp=Decimal("895000")), [_item()])
    assert res["reasons"] == [ReasonCode.MISSING_EXCHANGE_RATE]

    res = evaluate_order(_order(total_lbp=Decimal("895000"), exchange_rate_id=5), [_item()])
    assert res["ready"] is True


def test_lbp_only_order_does_not_need_exchange_rate():
    res = evaluate_order(_order(total_usd=Decimal("0"), total_lbp=Decimal("895000")), [_item()])
    assert res["ready"] is True


def test_evaluate_invoice_ready_unknown_order(conn):
    with conn.cursor() as cur:
        res = evaluate_invoice_ready(cur, 999)
    assert res == {"ready": False, "reasons": [ReasonCode.ORDER_NOT_FOUND]}


def test_evaluate_invoice_ready_reads_order_and_items(db, conn):
    seed_ready_order(db, 42)
    db.add("order_items", order_id=42, product_id=None, quantity=Decimal("1"), unit_price_usd=Decimal("1"))
    with conn.cursor() as cur:
        res = evaluate_invoice_ready(cur, 42)
    assert res["reasons"] == [ReasonCode.ITEM_MISSING_PRODUCT]


def test_describe_invoice_reasons():
    assert describe_invoice_reasons([]) == READY_MESSAGE
    text = describe_invoice_reasons([ReasonCode.NO_CUSTOMER, "no_items"])
    assert text == "Customer not assigned; Order has no line items"


def test_refresh_invoice_ready_persists_flag(db, conn):
    seed_ready_order(db, 42)
    res = refresh_invoice_ready(conn, 42)
    assert res["success"] is True
    assert res["ready"] is True
    assert db.one("orders", id=42)["invoice_ready"] is True

    db.one("orders", id=42)["customer_id"] = None
    res = refresh_invoice_ready(conn, 42)
    assert res["ready"] is False
    assert res["reasons"] == [ReasonCode.NO_CUSTOMER]
    assert db.one("orders", id=42)["invoice_ready"] is False


def test_refresh_invoice_ready_unknown_order(conn):
    res = refresh_invoice_ready(conn, 5)
    assert res["success"] is False
    assert res["error"] == "order_not_found"
