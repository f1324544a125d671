from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


# Canonical codes mirror the CHECK constraints in `backend/db/migrations/001_init.sql`.
ORDER_STATUSES = (
    "pending",
    "on_hold",
    "confirmed",
    "ready_to_ship",
    "shipped",
    "delivered",
    "completed",
    "cancelled",
)
OrderStatus = Annotated[
    Literal["pending", "on_hold", "confirmed", "ready_to_ship", "shipped", "delivered", "completed", "cancelled"],
    BeforeValidator(_to_lower_str),
]

COMMISSION_TYPES = ("direct_sale", "assigned_customer")
CommissionType = Annotated[Literal["direct_sale", "assigned_customer"], BeforeValidator(_to_lower_str)]

PAYMENT_METHODS = ("cash", "bank_transfer", "check", "other")
PaymentMethod = Annotated[Literal["cash", "bank_transfer", "check", "other"], BeforeValidator(_to_lower_str)]

ADJUSTMENT_TYPES = ("credit", "debit", "correction", "write_off", "opening_balance")
AdjustmentType = Annotated[
    Literal["credit", "debit", "correction", "write_off", "opening_balance"],
    BeforeValidator(_to_lower_str),
]
