from __future__ import annotations

import math
from typing import Any, Sequence

from src.core.ledger import amount_of, is_expense, is_income, total_balance, txn_date
from src.core.types import AllowanceBreakdown, SpendingAllowance


SAFETY_BUFFER = 2000.0
DEFAULT_DAYS_UNTIL_INCOME = 30
MONTHLY_BILL_INTERVALS = {"MONTHLY", "WEEKLY"}


def _days_until_income(transactions: Sequence[Any]) -> int:
    incomes = sorted((t for t in transactions if is_income(t)), key=txn_date, reverse=True)[:3]
    if len(incomes) < 2:
        return DEFAULT_DAYS_UNTIL_INCOME
    gaps = [abs((txn_date(a) - txn_date(b)).total_seconds()) / 86400.0 for a, b in zip(incomes, incomes[1:])]
    days = math.ceil(sum(gaps) / len(gaps))
    # Two paychecks on the same day would otherwise divide by zero.
    return max(1, days)


def _message(amount: float, status: str) -> str:
    if amount <= 0:
        return "Time to be extra careful with spending. Focus on essentials only."
    if status == "tight":
        return "Budget is tight. Stick to necessities for now."
    if status == "moderate":
        return "You're doing okay. Spend mindfully today."
    return "You're in good shape! Enjoy your day guilt-free."


def calculate_spending_allowance(
    transactions: Sequence[Any],
    accounts: Sequence[Any],
    *,
    safety_buffer: float = SAFETY_BUFFER,
) -> SpendingAllowance:
    """Guilt-free spend for today: what is left after the buffer and recurring bills, spread to next payday."""
    balance = total_balance(accounts)

    upcoming_bills = sum(
        amount_of(t)
        for t in transactions
        if getattr(t, "is_recurring", False)
        and is_expense(t)
        and (getattr(t, "recurring_interval", None) or "").upper() in MONTHLY_BILL_INTERVALS
    )
    days_until_income = _days_until_income(transactions)
    available = balance - safety_buffer - upcoming_bills
    daily = available / days_until_income if available > 0 else 0.0

    if daily < 100:
        status = "tight"
    elif daily < 500:
        status = "moderate"
    else:
        status = "healthy"

    return SpendingAllowance(
        amount=max(0, math.floor(daily)),
        breakdown=AllowanceBreakdown(
            total_balance=balance,
            safety_buffer=safety_buffer,
            upcoming_bills=upcoming_bills,
            available_balance=max(0.0, available),
            days_until_income=days_until_income,
        ),
        status=status,
        message=_message(daily, status),
    )
