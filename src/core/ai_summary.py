from __future__ import annotations

import datetime as dt
from typing import Any, Optional, Sequence

from src.core.ledger import amount_of, days_ago, is_expense, month_expenses, sum_amounts
from src.core.types import SummaryCard
from src.utils.money import format_inr, to_float
from src.utils.time import ensure_utc, utcnow


MAX_CARDS = 4


def _budget_card(transactions: Sequence[Any], budget: Any, now: dt.datetime) -> Optional[SummaryCard]:
    limit = to_float(getattr(budget, "amount", None))
    if limit <= 0:
        return None
    spent = month_expenses(transactions, now)
    usage = spent / limit * 100
    remaining = limit - spent
    if usage < 70:
        return SummaryCard(
            type="success",
            message=f"You're {format_inr(remaining)} under budget this month",
            detail=f"{usage:.0f}% used",
        )
    if usage < 90:
        return SummaryCard(type="warning", message=f"Budget is {usage:.0f}% used", detail=f"{format_inr(remaining)} remaining")
    return SummaryCard(type="danger", message="Budget almost exhausted", detail=f"Only {format_inr(remaining)} left")


def _trend_card(transactions: Sequence[Any], now: dt.datetime) -> Optional[SummaryCard]:
    this_week = sum_amounts(t for t in transactions if is_expense(t) and days_ago(t, now) <= 7)
    last_week = sum_amounts(t for t in transactions if is_expense(t) and 7 < days_ago(t, now) <= 14)
    if last_week <= 0:
        return None
    change = (this_week - last_week) / last_week * 100
    detail = f"{format_inr(this_week)} vs {format_inr(last_week)}"
    if change < -10:
        return SummaryCard(type="success", message=f"You spent {abs(change):.0f}% less this week", detail=detail)
    if change > 10:
        return SummaryCard(type="info", message=f"Spending up {change:.0f}% this week", detail=detail)
    return None


def _bill_card(transactions: Sequence[Any]) -> Optional[SummaryCard]:
    recurring = [t for t in transactions if getattr(t, "is_recurring", False) and is_expense(t)]
    if not recurring:
        return None
    nxt = recurring[0]
    return SummaryCard(
        type="info",
        message=f"{getattr(nxt, 'description', None) or 'Recurring bill'} due soon",
        detail=format_inr(amount_of(nxt)),
    )


def _action_card(insights: Sequence[Any]) -> Optional[SummaryCard]:
    for insight in insights:
        action = getattr(insight, "action", None)
        if not action:
            continue
        content = getattr(insight, "content", "") or ""
        return SummaryCard(
            type="success" if action == "AUTO_SAVED" else "warning",
            message=content[:60] + "...",
            detail="AI action",
        )
    return None


def generate_ai_summary(
    transactions: Sequence[Any],
    budget: Any = None,
    insights: Sequence[Any] = (),
    *,
    now: Optional[dt.datetime] = None,
) -> list[SummaryCard]:
    """
    Dashboard headline cards, in order: budget usage, week-over-week spend,
    next recurring bill, latest agent action. At most four.

    `transactions` and `insights` are expected newest first.
    """
    now = ensure_utc(now or utcnow())
    cards = [
        _budget_card(transactions, budget, now) if budget is not None else None,
        _trend_card(transactions, now),
        _bill_card(transactions),
        _action_card(insights),
    ]
    return [c for c in cards if c is not None][:MAX_CARDS]
