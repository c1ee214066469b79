from __future__ import annotations

import datetime as dt
from typing import Any, Iterable

from src.utils.money import to_float
from src.utils.time import days_between, ensure_utc, parse_datetime


INCOME = "INCOME"
EXPENSE = "EXPENSE"


def amount_of(row: Any) -> float:
    return to_float(getattr(row, "amount", None))


def txn_date(txn: Any) -> dt.datetime:
    d = parse_datetime(getattr(txn, "date", None))
    if d is None:
        raise ValueError(f"transaction {getattr(txn, 'id', None)!r} has no date")
    return ensure_utc(d)


def days_ago(txn: Any, now: dt.datetime) -> float:
    return days_between(now, txn_date(txn))


def is_income(txn: Any) -> bool:
    return (getattr(txn, "type", None) or "").upper() == INCOME


def is_expense(txn: Any) -> bool:
    return (getattr(txn, "type", None) or "").upper() == EXPENSE


def total_balance(accounts: Iterable[Any]) -> float:
    return sum(amount_of_balance(a) for a in accounts)


def amount_of_balance(account: Any) -> float:
    return to_float(getattr(account, "balance", None))


def within_days(transactions: Iterable[Any], now: dt.datetime, days: float) -> list[Any]:
    """Transactions dated at most `days` before `now` (future-dated rows included)."""
    return [t for t in transactions if days_ago(t, now) <= days]


def sum_amounts(transactions: Iterable[Any]) -> float:
    return sum(amount_of(t) for t in transactions)


def same_month(value: dt.datetime, now: dt.datetime) -> bool:
    v = ensure_utc(value)
    n = ensure_utc(now)
    return v.year == n.year and v.month == n.month


def month_expenses(transactions: Iterable[Any], now: dt.datetime) -> float:
    return sum_amounts(t for t in transactions if is_expense(t) and same_month(txn_date(t), now))


def upcoming_recurring_expenses(transactions: Iterable[Any], now: dt.datetime, days: int) -> list[Any]:
    horizon = ensure_utc(now) + dt.timedelta(days=days)
    out = []
    for t in transactions:
        if not getattr(t, "is_recurring", False) or not is_expense(t):
            continue
        nxt = parse_datetime(getattr(t, "next_recurring_date", None))
        if nxt is not None and ensure_utc(nxt) <= horizon:
            out.append(t)
    return out
