from contextlib import contextmanager
from datetime import date
from decimal import Decimal

import pytest

from backend.app.commission_rates import add_rate_override
from backend.app.commissions import (
    approve_all_for_period,
    approve_commissions,
    attribute_commission,
    calculate_commission_for_order,
    calculate_for_period,
    commissions_for_rep,
    mark_as_paid,
    month_period,
    previous_month,
    summary_by_rep,
)
from backend.tests.fake_db import seed_invoiced_order

FEB = (date(2024, 2, 1), date(2024, 2, 29))


def test_month_helpers():
    assert month_period(2024, 2) == FEB
    assert month_period(2023, 12) == (date(2023, 12, 1), date(2023, 12, 31))
    assert previous_month(date(2024, 1, 15)) == (date(2023, 12, 1), date(2023, 12, 31))
    assert previous_month(date(2024, 3, 31)) == FEB


def test_attribution_rules():
    assert attribute_commission({"sales_rep_id": 7, "assigned_sales_rep_id": 9}) == (7, "direct_sale")
    assert attribute_commission({"sales_rep_id": None, "assigned_sales_rep_id": 9}) == (9, "assigned_customer")
    assert attribute_commission({"sales_rep_id": None, "assigned_sales_rep_id": None}) is None


def test_order_42_earns_four_percent_fallback(db, conn):
    seed_invoiced_order(db, 42, issued_on=date(2024, 2, 10), sales_rep_id=7, total_usd="100")

    res = calculate_for_period(conn, *FEB)

    assert res == {
        "calculated": 1,
        "skipped": 0,
        "errors": 0,
        "total_commission_usd": Decimal("4.00"),
        "total_commission_lbp": Decimal("0"),
    }
    calc = db.one("commission_calculations", order_id=42)
    assert calc["sales_rep_id"] == 7
    assert calc["commission_type"] == "direct_sale"
    assert calc["rate_percentage"] == Decimal("4.00")
    assert calc["commission_amount_usd"] == Decimal("4.00")
    assert calc["status"] == "calculated"
    assert (calc["period_start"], calc["period_end"]) == FEB


def test_direct_seller_wins_over_assigned_rep(db, conn):
    seed_invoiced_order(db, 1, issued_on=date(2024, 2, 3), sales_rep_id=7, assigned_sales_rep_id=9)

    calculate_for_period(conn, *FEB)

    calcs = db.rows("commission_calculations")
    assert len(calcs) == 1
    assert calcs[0]["sales_rep_id"] == 7
    assert calcs[0]["commission_type"] == "direct_sale"


def test_assigned_rep_earns_when_nobody_placed_the_order(db, conn):
    seed_invoiced_order(db, 1, issued_on=date(2024, 2, 3), sales_rep_id=None, assigned_sales_rep_id=9)
    seed_invoiced_order(db, 2, issued_on=date(2024, 2, 3), sales_rep_id=None)

    res = calculate_for_period(conn, *FEB)

    assert res["calculated"] == 1
    assert res["skipped"] == 1
    calc = db.one("commission_calculations", order_id=1)
    assert calc["sales_rep_id"] == 9
    assert calc["commission_type"] == "assigned_customer"
    assert db.one("commission_calculations", order_id=2) is None


def test_second_overlapping_run_skips_already_commissioned_orders(db, conn):
    seed_invoiced_order(db, 42, issued_on=date(2024, 2, 10))

    calculate_for_period(conn, *FEB)
    again = calculate_for_period(conn, date(2024, 2, 1), date(2024, 3, 31))

    assert again["calculated"] == 0
    assert again["skipped"] == 1
    assert again["total_commission_usd"] == Decimal("0")
    assert len(db.rows("commission_calculations", order_id=42)) == 1


def test_only_issued_or_paid_invoices_in_period_count(db, conn):
    seed_invoiced_order(db, 1, issued_on=date(2024, 2, 1))
    seed_invoiced_order(db, 2, issued_on=date(2024, 2, 29), status="paid")
    seed_invoiced_order(db, 3, issued_on=date(2024, 2, 15), status="draft")
    seed_invoiced_order(db, 4, issued_on=date(2024, 2, 15), status="voided")
    seed_invoiced_order(db, 5, issued_on=date(2024, 3, 1))

    res = calculate_for_period(conn, *FEB)

    assert res["calculated"] == 2
    assert sorted(c["order_id"] for c in db.rows("commission_calculations")) == [1, 2]


def test_invoice_without_issue_date_uses_creation_date(db, conn):
    inv = seed_invoiced_order(db, 1, issued_on=date(2024, 1, 1))
    inv["issued_at"] = None
    inv["created_at"] = date(2024, 2, 20)

    res = calculate_for_period(conn, *FEB)
    assert res["calculated"] == 1


def test_rate_is_resolved_on_invoice_date(db, conn):
    seed_invoiced_order(db, 1, issued_on=date(2024, 1, 15), total_usd="200")
    seed_invoiced_order(db, 2, issued_on=date(2024, 2, 10), total_usd="200")
    with conn.cursor() as cur:
        add_rate_override(
            cur, sales_rep_id=7, commission_type="direct_sale", rate_percentage="6",
            effective_from=date(2024, 2, 1), actor_id=1,
        )

    calculate_for_period(conn, date(2024, 1, 1), date(2024, 2, 29))

    assert db.one("commission_calculations", order_id=1)["commission_amount_usd"] == Decimal("8.00")
    assert db.one("commission_calculations", order_id=2)["commission_amount_usd"] == Decimal("12.00")


def test_lbp_commission_rounds_to_whole_pounds(db, conn):
    seed_invoiced_order(db, 1, issued_on=date(2024, 2, 10), total_usd="0", total_lbp="8950123")
    res = calculate_for_period(conn, *FEB)
    assert res["total_commission_lbp"] == Decimal("358005")


def test_rep_filter_limits_candidates_to_what_the_rep_earns(db, conn):
    seed_invoiced_order(db, 1, issued_on=date(2024, 2, 3), sales_rep_id=7)
    seed_invoiced_order(db, 2, issued_on=date(2024, 2, 3), sales_rep_id=8, assigned_sales_rep_id=7)
    seed_invoiced_order(db, 3, issued_on=date(2024, 2, 3), sales_rep_id=None, assigned_sales_rep_id=7)

    res = calculate_for_period(conn, *FEB, sales_rep_id=7)

    assert res["calculated"] == 2
    assert sorted(c["order_id"] for c in db.rows("commission_calculations")) == [1, 3]


def test_concurrent_insert_counts_as_skipped(db, conn):
    seed_invoiced_order(db, 42, issued_on=date(2024, 2, 10))

    def _other_run(d):
        d.add(
            "commission_calculations",
            order_id=42,
            invoice_id=1,
            sales_rep_id=7,
            commission_type="direct_sale",
            commission_amount_usd=Decimal("4.00"),
            commission_amount_lbp=Decimal("0"),
            period_start=FEB[0],
            period_end=FEB[1],
        )

    db.before("INSERT INTO commission_calculations", _other_run)
    res = calculate_for_period(conn, *FEB)

    assert res["calculated"] == 0
    assert res["skipped"] == 1
    assert len(db.rows("commission_calculations", order_id=42)) == 1


def test_failing_order_is_counted_and_batch_continues(db, conn):
    seed_invoiced_order(db, 1, issued_on=date(2024, 2, 3))
    seed_invoiced_order(db, 2, issued_on=date(2024, 2, 4))

    def _boom(_db):
        raise RuntimeError("disk full")

    db.before("INSERT INTO commission_calculations", _boom)
    res = calculate_for_period(conn, *FEB)

    assert res["errors"] == 1
    assert res["calculated"] == 1
    assert db.one("commission_calculations", order_id=1) is None
    assert db.one("commission_calculations", order_id=2) is not None


class _TransactionSpy:
    """Wraps a connection and records how deep in transactions each statement runs."""

    def __init__(self, inner):
        self.inner = inner
        self.depth = 0
        self.opened_at: list[int] = []
        self.statements: list[tuple[int, str]] = []

    def cursor(self):
        return _SpyCursor(self, self.inner.cursor())

    @contextmanager
    def transaction(self):
        self.opened_at.append(self.depth)
        self.depth += 1
        try:
            with self.inner.transaction():
                yield self
        finally:
            self.depth -= 1


class _SpyCursor:
    def __init__(self, spy, cur):
        self.spy = spy
        self.cur = cur

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.spy.statements.append((self.spy.depth, " ".join(sql.split())))
        return self.cur.execute(sql, params)

    def fetchone(self):
        return self.cur.fetchone()

    def fetchall(self):
        return self.cur.fetchall()


def test_each_order_commits_in_its_own_top_level_transaction(db, conn):
    seed_invoiced_order(db, 1, issued_on=date(2024, 2, 3))
    seed_invoiced_order(db, 2, issued_on=date(2024, 2, 4))
    spy = _TransactionSpy(conn)

    res = calculate_for_period(spy, *FEB)

    assert res["calculated"] == 2
    # One transaction for the candidate read, then one per order, none nested.
    assert spy.opened_at == [0, 0, 0]
    # No statement runs outside an explicit transaction, so no implicit
    # transaction is left open to swallow the per-order commits.
    assert spy.statements and all(depth == 1 for depth, _ in spy.statements)
    inserts = [s for _, s in spy.statements if s.startswith("INSERT INTO commission_calculations")]
    assert len(inserts) == 2


def test_period_end_before_start_is_rejected(conn):
    with pytest.raises(ValueError):
        calculate_for_period(conn, date(2024, 2, 29), date(2024, 2, 1))


def test_calculate_commission_for_order_is_read_only(db, conn):
    seed_invoiced_order(db, 42, issued_on=date(2024, 2, 10))
    with conn.cursor() as cur:
        c = calculate_commission_for_order(cur, 42)
        assert calculate_commission_for_order(cur, 999) is None
    assert c["invoice_date"] == date(2024, 2, 10)
    assert c["commission_amount_usd"] == Decimal("4.00")
    assert db.rows("commission_calculations") == []


def test_approve_moves_only_calculated_rows(db, conn):
    for oid in (1, 2, 3):
        seed_invoiced_order(db, oid, issued_on=date(2024, 2, 5))
    calculate_for_period(conn, *FEB)
    ids = [c["id"] for c in db.rows("commission_calculations")]

    with conn.cursor() as cur:
        assert approve_commissions(cur, [], approver_id=1) == 0
        assert approve_commissions(cur, ids[:2], approver_id=1) == 2
        assert approve_commissions(cur, ids, approver_id=1) == 1
        assert mark_as_paid(cur, ids[:1]) == 1
        assert approve_commissions(cur, ids[:1], approver_id=1) == 0

    statuses = {c["id"]: c["status"] for c in db.rows("commission_calculations")}
    assert statuses == {ids[0]: "paid", ids[1]: "approved", ids[2]: "approved"}
    assert db.one("commission_calculations", id=ids[1])["approved_by"] == 1
    assert len(db.rows("audit_logs", action="commission.approve")) == 2


def test_approve_all_for_period(db, conn):
    seed_invoiced_order(db, 1, issued_on=date(2024, 2, 5))
    seed_invoiced_order(db, 2, issued_on=date(2024, 3, 5))
    calculate_for_period(conn, *FEB)
    calculate_for_period(conn, date(2024, 3, 1), date(2024, 3, 31))

    with conn.cursor() as cur:
        assert approve_all_for_period(cur, *FEB, approver_id=1) == 1

    assert db.one("commission_calculations", order_id=1)["status"] == "approved"
    assert db.one("commission_calculations", order_id=2)["status"] == "calculated"


def test_mark_as_paid_requires_approval(db, conn):
    seed_invoiced_order(db, 1, issued_on=date(2024, 2, 5))
    calculate_for_period(conn, *FEB)
    calc_id = db.one("commission_calculations", order_id=1)["id"]
    with conn.cursor() as cur:
        assert mark_as_paid(cur, [calc_id]) == 0
    assert db.one("commission_calculations", id=calc_id)["status"] == "calculated"


def test_summary_and_rep_listing(db, conn):
    seed_invoiced_order(db, 1, issued_on=date(2024, 2, 5), sales_rep_id=7, total_usd="100")
    seed_invoiced_order(db, 2, issued_on=date(2024, 2, 6), sales_rep_id=7, total_usd="50")
    seed_invoiced_order(db, 3, issued_on=date(2024, 2, 7), sales_rep_id=8, total_usd="500")
    calculate_for_period(conn, *FEB)

    with conn.cursor() as cur:
        summary = summary_by_rep(cur, *FEB)
        rows = commissions_for_rep(cur, 7, *FEB)
        none_paid = commissions_for_rep(cur, 7, *FEB, status="paid")

    assert [s["sales_rep_id"] for s in summary] == [8, 7]
    rep7 = summary[1]
    assert rep7["order_count"] == 2
    assert rep7["total_commission_usd"] == Decimal("6.00")
    assert rep7["pending_usd"] == Decimal("6.00")
    assert [r["order_id"] for r in rows] == [2, 1]
    assert rows[0]["invoice_number"] == "INV-000002"
    assert none_paid == []
