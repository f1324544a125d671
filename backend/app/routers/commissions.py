from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..commission_payments import list_commission_payments, record_commission_payment
from ..commission_rates import add_rate_override, delete_rate_override, list_commission_rates, set_default_rates
from ..commissions import (
    approve_all_for_period,
    approve_commissions,
    calculate_for_period,
    commission_total,
    commissions_for_rep,
    month_period,
    summary_by_rep,
)
from ..db import get_conn
from ..deps import get_current_user, raise_for_failure, require_permission
from ..permissions import Permission
from ..validation import CommissionType, PaymentMethod

router = APIRouter(prefix="/commissions", tags=["commissions"])

COMMISSION_STATUSES = {"calculated", "approved", "paid"}


class PeriodIn(BaseModel):
    year: Optional[int] = Field(default=None, ge=2000, le=2100)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    period_start: Optional[date] = None
    period_end: Optional[date] = None


class CalculateIn(PeriodIn):
    sales_rep_id: Optional[int] = None


class ApproveIn(BaseModel):
    commission_ids: List[int]


class DefaultRatesIn(BaseModel):
    direct_rate: Decimal = Field(ge=0, le=100)
    assigned_rate: Decimal = Field(ge=0, le=100)
    effective_from: date


class RateOverrideIn(BaseModel):
    sales_rep_id: int
    commission_type: CommissionType
    rate_percentage: Decimal = Field(ge=0, le=100)
    effective_from: date


class PaymentIn(BaseModel):
    sales_rep_id: int
    commission_ids: List[int]
    payment_method: PaymentMethod = "bank_transfer"
    payment_date: Optional[date] = None
    bank_reference: Optional[str] = None
    notes: Optional[str] = None


def _resolve_period(
    year: Optional[int],
    month: Optional[int],
    period_start: Optional[date],
    period_end: Optional[date],
) -> tuple[date, date]:
    if period_start or period_end:
        if not (period_start and period_end):
            raise HTTPException(status_code=400, detail="period_start and period_end are required together")
        if period_end < period_start:
            raise HTTPException(status_code=400, detail="period_end must be on or after period_start")
        return period_start, period_end
    today = date.today()
    return month_period(year or today.year, month or today.month)


@router.post("/calculate", dependencies=[Depends(require_permission(Permission.COMMISSIONS_WRITE))])
def calculate(data: CalculateIn):
    start, end = _resolve_period(data.year, data.month, data.period_start, data.period_end)
    with get_conn() as conn:
        results = calculate_for_period(conn, start, end, data.sales_rep_id)
    return {"period_start": start, "period_end": end, **results}


@router.post("/approve", dependencies=[Depends(require_permission(Permission.COMMISSIONS_APPROVE))])
def approve(data: ApproveIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                approved = approve_commissions(cur, data.commission_ids, user["user_id"])
    return {"approved": approved}


@router.post("/approve-all", dependencies=[Depends(require_permission(Permission.COMMISSIONS_APPROVE))])
def approve_all(data: PeriodIn, user=Depends(get_current_user)):
    start, end = _resolve_period(data.year, data.month, data.period_start, data.period_end)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                approved = approve_all_for_period(cur, start, end, user["user_id"])
    return {"period_start": start, "period_end": end, "approved": approved}


@router.get("/summary", dependencies=[Depends(require_permission(Permission.COMMISSIONS_READ))])
def summary(
    year: Optional[int] = None,
    month: Optional[int] = None,
    period_start: Optional[date] = None,
    period_end: Optional[date] = None,
):
    start, end = _resolve_period(year, month, period_start, period_end)
    with get_conn() as conn:
        with conn.cursor() as cur:
            reps = summary_by_rep(cur, start, end)
    return {"period_start": start, "period_end": end, "reps": reps}


@router.get("/reps/{sales_rep_id}", dependencies=[Depends(require_permission(Permission.COMMISSIONS_READ))])
def rep_commissions(
    sales_rep_id: int,
    year: Optional[int] = None,
    month: Optional[int] = None,
    period_start: Optional[date] = None,
    period_end: Optional[date] = None,
    status: Optional[str] = None,
):
    if status and status not in COMMISSION_STATUSES:
        raise HTTPException(status_code=400, detail="invalid status")
    start, end = _resolve_period(year, month, period_start, period_end)
    with get_conn() as conn:
        with conn.cursor() as cur:
            rows = commissions_for_rep(cur, sales_rep_id, start, end, status)
    total = commission_total(rows)
    return {
        "sales_rep_id": sales_rep_id,
        "period_start": start,
        "period_end": end,
        "commissions": rows,
        "total_commission_usd": total.usd,
        "total_commission_lbp": total.lbp,
    }


@router.get("/rates", dependencies=[Depends(require_permission(Permission.COMMISSIONS_READ))])
def get_rates(as_of: Optional[date] = None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return list_commission_rates(cur, as_of or date.today())


@router.post("/rates/defaults", dependencies=[Depends(require_permission(Permission.COMMISSIONS_WRITE))])
def update_default_rates(data: DefaultRatesIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                try:
                    ids = set_default_rates(
                        cur,
                        direct_rate=data.direct_rate,
                        assigned_rate=data.assigned_rate,
                        effective_from=data.effective_from,
                        actor_id=user["user_id"],
                    )
                except ValueError as ex:
                    raise HTTPException(status_code=400, detail=str(ex))
    return {"ok": True, "rate_ids": ids}


@router.post("/rates/overrides", dependencies=[Depends(require_permission(Permission.COMMISSIONS_WRITE))])
def create_rate_override(data: RateOverrideIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM users WHERE id = %s", (data.sales_rep_id,))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="sales rep not found")
                try:
                    rate_id = add_rate_override(
                        cur,
                        sales_rep_id=data.sales_rep_id,
                        commission_type=data.commission_type,
                        rate_percentage=data.rate_percentage,
                        effective_from=data.effective_from,
                        actor_id=user["user_id"],
                    )
                except ValueError as ex:
                    raise HTTPException(status_code=400, detail=str(ex))
    return {"id": rate_id}


@router.delete("/rates/overrides/{rate_id}", dependencies=[Depends(require_permission(Permission.COMMISSIONS_WRITE))])
def remove_rate_override(rate_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if not delete_rate_override(cur, rate_id, user["user_id"]):
                    raise HTTPException(status_code=404, detail="rate override not found")
    return {"ok": True}


@router.post("/payments", dependencies=[Depends(require_permission(Permission.COMMISSIONS_PAY))])
def create_payment(data: PaymentIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        res = record_commission_payment(
            conn,
            sales_rep_id=data.sales_rep_id,
            calculation_ids=data.commission_ids,
            payment_method=data.payment_method,
            payment_date=data.payment_date or date.today(),
            actor_id=user["user_id"],
            bank_reference=data.bank_reference,
            notes=data.notes,
        )
    return raise_for_failure(res)


@router.get("/payments", dependencies=[Depends(require_permission(Permission.COMMISSIONS_READ))])
def get_payments(sales_rep_id: Optional[int] = None, limit: int = 100):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"payments": list_commission_payments(cur, sales_rep_id, limit)}
