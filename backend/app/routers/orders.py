from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..db import get_conn
from ..deps import get_current_user, raise_for_failure, require_permission
from ..invoice_readiness import describe_invoice_reasons, evaluate_invoice_ready, refresh_invoice_ready
from ..invoice_sync import change_order_status, sync_order_invoice
from ..permissions import Permission
from ..validation import OrderStatus

router = APIRouter(prefix="/orders", tags=["orders"])


class OrderStatusIn(BaseModel):
    status: OrderStatus


@router.get("/{order_id}/invoice-readiness", dependencies=[Depends(require_permission(Permission.ORDERS_READ))])
def get_invoice_readiness(order_id: int):
    with get_conn() as conn:
        with conn.cursor() as cur:
            res = evaluate_invoice_ready(cur, order_id)
    reasons = [str(getattr(r, "value", r)) for r in res["reasons"]]
    return {
        "order_id": order_id,
        "ready": res["ready"],
        "reasons": reasons,
        "message": describe_invoice_reasons(res["reasons"]),
    }


@router.post("/{order_id}/invoice-readiness/refresh", dependencies=[Depends(require_permission(Permission.ORDERS_WRITE))])
def refresh_readiness(order_id: int):
    with get_conn() as conn:
        res = raise_for_failure(refresh_invoice_ready(conn, order_id))
    return {
        "order_id": order_id,
        "ready": res["ready"],
        "reasons": [str(getattr(r, "value", r)) for r in res["reasons"]],
        "message": res["message"],
    }


@router.post("/{order_id}/invoice/sync", dependencies=[Depends(require_permission(Permission.INVOICES_WRITE))])
def sync_invoice(order_id: int, user=Depends(get_current_user)):
    with get_conn() as conn:
        res = sync_order_invoice(conn, order_id, user["user_id"])
    return raise_for_failure(res)


@router.post("/{order_id}/status", dependencies=[Depends(require_permission(Permission.ORDERS_WRITE))])
def update_order_status(order_id: int, data: OrderStatusIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        res = change_order_status(conn, order_id, data.status, user["user_id"])
    return raise_for_failure(res)
