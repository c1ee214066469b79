from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from src.core.ledger import amount_of, is_income, txn_date
from src.core.types import TaxAdvice, TaxLiability
from src.utils.money import round_half_up
from src.utils.time import UTC, ensure_utc, utcnow


@dataclass(frozen=True)
class TaxSlab:
    lower: float
    upper: float
    rate: float


# New regime, FY 2024-25.
TAX_SLABS: list[TaxSlab] = [
    TaxSlab(0, 300_000, 0),
    TaxSlab(300_000, 700_000, 5),
    TaxSlab(700_000, 1_000_000, 10),
    TaxSlab(1_000_000, 1_200_000, 15),
    TaxSlab(1_200_000, 1_500_000, 20),
    TaxSlab(1_500_000, math.inf, 30),
]
NIL_TAX_INCOME = 300_000
GST_RATE = 18.0
GST_ANNUAL_TURNOVER = 2_000_000
CESS_RATE = 4.0


def calculate_income_tax(annual_income: float, *, cess: bool = False) -> int:
    tax = 0.0
    for slab in TAX_SLABS:
        if annual_income > slab.lower:
            taxable = min(annual_income, slab.upper) - slab.lower
            tax += taxable * slab.rate / 100
    if cess:
        tax *= 1 + CESS_RATE / 100
    return round_half_up(tax)


def calculate_gst(quarterly_income: float) -> int:
    """GST is due only once annualised turnover reaches 20 lakh."""
    if quarterly_income * 4 < GST_ANNUAL_TURNOVER:
        return 0
    return round_half_up(quarterly_income * GST_RATE / 100)


def financial_year(now: dt.datetime) -> tuple[dt.date, dt.date]:
    start_year = now.year if now.month >= 4 else now.year - 1
    return dt.date(start_year, 4, 1), dt.date(start_year + 1, 3, 31)


def months_into_financial_year(now: dt.datetime) -> int:
    fy_start, _ = financial_year(now)
    return (now.year - fy_start.year) * 12 + now.month - fy_start.month


def quarter_start(now: dt.datetime) -> dt.datetime:
    return dt.datetime(now.year, (now.month - 1) // 3 * 3 + 1, 1, tzinfo=UTC)


def estimate_tax_liability(
    transactions: Sequence[Any],
    *,
    now: Optional[dt.datetime] = None,
    cess: bool = False,
) -> TaxLiability:
    now = ensure_utc(now or utcnow())
    fy_start, fy_end = financial_year(now)
    fy_lo = dt.datetime(fy_start.year, fy_start.month, fy_start.day, tzinfo=UTC)
    fy_hi = dt.datetime(fy_end.year, fy_end.month, fy_end.day, 23, 59, 59, tzinfo=UTC)
    q_start = quarter_start(now)

    total_income = 0.0
    quarter_income = 0.0
    for t in transactions:
        if not is_income(t):
            continue
        d = txn_date(t)
        if fy_lo <= d <= fy_hi:
            total_income += amount_of(t)
        if d >= q_start:
            quarter_income += amount_of(t)

    income_tax = calculate_income_tax(total_income, cess=cess)
    gst = calculate_gst(quarter_income)
    elapsed = months_into_financial_year(now)
    months_remaining = max(1, 12 - elapsed)

    return TaxLiability(
        total_income=total_income,
        income_tax=income_tax,
        gst=gst,
        total_tax=income_tax + gst,
        monthly_savings=round_half_up((income_tax + gst) / months_remaining),
        fy_start=fy_start.isoformat(),
        fy_end=fy_end.isoformat(),
        quarter_income=quarter_income,
        projected_annual_income=total_income * 12 / max(1, elapsed),
    )


def get_tax_advice(liability: TaxLiability) -> TaxAdvice:
    if liability.total_income < NIL_TAX_INCOME:
        return TaxAdvice(
            status="safe",
            message="You're below the tax threshold. No income tax liability.",
            action="Keep tracking your income to stay informed.",
        )
    if liability.monthly_savings > 0:
        amount = f"₹{liability.monthly_savings:,}"
        return TaxAdvice(
            status="action_needed",
            message=f"You need to save {amount}/month for taxes.",
            action=f"Set aside {amount} this month to avoid a tax crunch.",
        )
    return TaxAdvice(
        status="info",
        message="Tax estimation in progress.",
        action="Add more income transactions for accurate estimates.",
    )
