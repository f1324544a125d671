from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..balance_adjustments import list_balance_adjustments, record_balance_adjustment
from ..db import get_conn
from ..deps import get_current_user, raise_for_failure, require_permission
from ..permissions import Permission
from ..validation import AdjustmentType

router = APIRouter(prefix="/customers", tags=["customers"])


class BalanceAdjustmentIn(BaseModel):
    adjustment_type: AdjustmentType
    amount_usd: Decimal = Decimal("0")
    amount_lbp: Decimal = Decimal("0")
    reason: str
    notes: Optional[str] = None


@router.post("/{customer_id}/balance-adjustments", dependencies=[Depends(require_permission(Permission.CUSTOMERS_BALANCE))])
def create_balance_adjustment(customer_id: int, data: BalanceAdjustmentIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        res = record_balance_adjustment(
            conn,
            customer_id=customer_id,
            adjustment_type=data.adjustment_type,
            amount_usd=data.amount_usd,
            amount_lbp=data.amount_lbp,
            reason=data.reason,
            actor_id=user["user_id"],
            notes=data.notes,
        )
    return raise_for_failure(res)


@router.get("/{customer_id}/balance-adjustments", dependencies=[Depends(require_permission(Permission.CUSTOMERS_BALANCE))])
def get_balance_adjustments(customer_id: int, limit: int = 100):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"customer_id": customer_id, "adjustments": list_balance_adjustments(cur, customer_id, limit)}
