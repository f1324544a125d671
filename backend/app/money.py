from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

USD_Q = Decimal("0.0001")
LBP_Q = Decimal("0.01")

# Commission money is settled in cents (USD) and whole pounds (LBP).
COMMISSION_USD_Q = Decimal("0.01")
COMMISSION_LBP_Q = Decimal("1")

ZERO = Decimal("0")


def to_decimal(v: Any) -> Decimal:
    if v is None or v == "":
        return ZERO
    if isinstance(v, Decimal):
        return v
    # str() first so floats coming from JSON don't leak binary artefacts.
    return Decimal(str(v))


def q_usd(v: Decimal) -> Decimal:
    return (v or ZERO).quantize(USD_Q, rounding=ROUND_HALF_UP)


def q_lbp(v: Decimal) -> Decimal:
    return (v or ZERO).quantize(LBP_Q, rounding=ROUND_HALF_UP)


def commission_usd(v: Decimal) -> Decimal:
    return (v or ZERO).quantize(COMMISSION_USD_Q, rounding=ROUND_HALF_UP)


def commission_lbp(v: Decimal) -> Decimal:
    return (v or ZERO).quantize(COMMISSION_LBP_Q, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Amount:
    """
    A monetary value carried in both ledgers (USD and LBP).

    Documents in this system keep both legs side by side instead of converting;
    an order may be priced in one currency, the other, or both.
    """

    usd: Decimal = ZERO
    lbp: Decimal = ZERO

    @classmethod
    def of(cls, usd: Any = None, lbp: Any = None) -> "Amount":
        return cls(usd=to_decimal(usd), lbp=to_decimal(lbp))

    @classmethod
    def from_row(cls, row: dict, usd_key: str = "total_usd", lbp_key: str = "total_lbp") -> "Amount":
        return cls.of(row.get(usd_key), row.get(lbp_key))

    def __add__(self, other: "Amount") -> "Amount":
        return Amount(usd=self.usd + other.usd, lbp=self.lbp + other.lbp)

    def is_zero(self) -> bool:
        return self.usd == 0 and self.lbp == 0

    def is_positive_any(self) -> bool:
        return self.usd > 0 or self.lbp > 0

    def is_multi_currency(self) -> bool:
        return self.usd > 0 and self.lbp > 0

    def percent(self, rate_percentage: Any) -> "Amount":
        """Commission share of this amount, each leg rounded independently."""
        rate = to_decimal(rate_percentage)
        return Amount(
            usd=commission_usd(self.usd * rate / Decimal("100")),
            lbp=commission_lbp(self.lbp * rate / Decimal("100")),
        )


def sum_amounts(amounts) -> Amount:
    total = Amount()
    for a in amounts:
        total = total + a
    return total
