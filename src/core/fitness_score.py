from __future__ import annotations

import datetime as dt
from typing import Any, Optional, Sequence

from src.core.ledger import is_expense, is_income, month_expenses, sum_amounts, total_balance, within_days
from src.core.types import FitnessBreakdown, FitnessLevel, FitnessScore
from src.utils.money import to_float
from src.utils.time import ensure_utc, utcnow


# (minimum score, level name), best first
LEVELS: list[tuple[int, str]] = [
    (80, "Financial Master"),
    (60, "Smart Saver"),
    (40, "Building Wealth"),
    (0, "Just Starting"),
]

FALLBACK_MONTHLY_EXPENSE = 10000.0
LATE_FEE_MARKERS = ("late fee",)
PENALTY_MARKERS = ("penalty",)


def level_for(score: int) -> FitnessLevel:
    for floor, name in LEVELS:
        if score >= floor:
            return FitnessLevel(name=name)
    return FitnessLevel(name=LEVELS[-1][1])


def next_level_for(score: int) -> Optional[FitnessLevel]:
    for (floor, name), (lower, _) in zip(LEVELS, LEVELS[1:]):
        if lower <= score < floor:
            return FitnessLevel(name=name, points_needed=floor - score)
    return None


def _has_late_fees(transactions: Sequence[Any]) -> bool:
    for t in transactions:
        desc = (getattr(t, "description", None) or "").lower()
        cat = (getattr(t, "category", None) or "").lower()
        if any(m in desc for m in LATE_FEE_MARKERS) or any(m in cat for m in PENALTY_MARKERS):
            return True
    return False


def calculate_fitness_score(
    accounts: Sequence[Any],
    transactions: Sequence[Any],
    budget: Any = None,
    nudges: Sequence[Any] = (),
    *,
    now: Optional[dt.datetime] = None,
) -> FitnessScore:
    """
    Five-part 0-100 score: savings rate (30), bill discipline (20), budget
    adherence (20), emergency fund (15) and nudge engagement (15).
    """
    now = ensure_utc(now or utcnow())
    b = FitnessBreakdown()
    recent = within_days(transactions, now, 30)

    income = sum_amounts(t for t in recent if is_income(t))
    expenses = sum_amounts(t for t in recent if is_expense(t))
    savings_rate = (income - expenses) / income * 100 if income > 0 else 0.0
    if savings_rate >= 20:
        b.savings = 30
    elif savings_rate >= 10:
        b.savings = 20
    elif savings_rate > 0:
        b.savings = 10

    if not _has_late_fees(recent):
        b.bills = 20

    if budget is not None:
        limit = to_float(getattr(budget, "amount", None))
        if limit > 0:
            usage = month_expenses(transactions, now) / limit * 100
            if usage <= 90:
                b.budget = 20
            elif usage <= 100:
                b.budget = 10

    balance = total_balance(accounts)
    monthly_expense = expenses or FALLBACK_MONTHLY_EXPENSE
    if balance >= monthly_expense * 3:
        b.emergency = 15
    elif balance >= monthly_expense:
        b.emergency = 10

    accepted = sum(1 for n in nudges if getattr(n, "status", None) == "executed")
    if accepted >= 5:
        b.engagement = 15
    elif accepted >= 1:
        b.engagement = 5 + accepted * 2

    score = min(b.savings + b.bills + b.budget + b.emergency + b.engagement, 100)
    return FitnessScore(score=score, breakdown=b, level=level_for(score), next_level=next_level_for(score))
