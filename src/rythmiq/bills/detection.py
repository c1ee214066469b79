from __future__ import annotations

import datetime as dt
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.core.ledger import EXPENSE, amount_of, txn_date
from src.db.models import Transaction
from src.utils.money import round_half_up
from src.utils.time import ensure_utc, utcnow


LOOKBACK_DAYS = 182
MIN_CONFIDENCE = 60
SIMILAR_LIMIT = 10

_CATEGORY_NAMES = {
    "Food & Dining": "Dining Subscription",
    "Shopping": "Shopping Subscription",
    "Entertainment": "Entertainment Subscription",
    "Transportation": "Transport Pass",
    "Bills & Utilities": "Utility Bill",
    "Healthcare": "Health Insurance",
    "Education": "Course Fee",
    "Other": "Recurring Payment",
}


@dataclass(frozen=True)
class _Occurrence:
    id: Optional[int]
    amount: float
    day: int
    date: dt.datetime
    description: Optional[str]


@dataclass
class BillSuggestion:
    name: str
    category: str
    amount: int
    due_day: int
    confidence: int
    occurrences: int
    last_transaction_id: Optional[int]


def _occurrence(t: Any) -> _Occurrence:
    d = txn_date(t)
    return _Occurrence(id=getattr(t, "id", None), amount=amount_of(t), day=d.day, date=d, description=getattr(t, "description", None))


def is_recurring_pattern(occurrences: Sequence[_Occurrence]) -> bool:
    """Monthly (gaps 25-35 d, each within 5 of 30) or weekly (6-8 d, each within 2 of 7)."""
    if len(occurrences) < 2:
        return False
    ordered = sorted(occurrences, key=lambda o: o.date)
    gaps = [round_half_up((b.date - a.date).total_seconds() / 86400) for a, b in zip(ordered, ordered[1:])]
    avg = sum(gaps) / len(gaps)
    if 25 <= avg <= 35:
        return all(abs(g - 30) <= 5 for g in gaps)
    if 6 <= avg <= 8:
        return all(abs(g - 7) <= 2 for g in gaps)
    return False


def pattern_confidence(occurrences: Sequence[_Occurrence]) -> int:
    n = len(occurrences)
    score = 40 if n >= 6 else 30 if n >= 4 else 20 if n >= 2 else 0

    amounts = [o.amount for o in occurrences]
    avg_amount = sum(amounts) / len(amounts)
    if avg_amount > 0 and all(abs(a - avg_amount) / avg_amount <= 0.1 for a in amounts):
        score += 30

    days = [o.day for o in occurrences]
    avg_day = sum(days) / len(days)
    if all(abs(d - avg_day) <= 3 for d in days):
        score += 30
    return min(100, score)


def suggest_bill_name(category: Optional[str], description: Optional[str]) -> str:
    cleaned = (description or "").strip()[:30]
    if len(cleaned) > 3:
        return cleaned
    return _CATEGORY_NAMES.get(category or "Other", "Recurring Bill")


def analyze_bill_patterns(transactions: Sequence[Any]) -> list[BillSuggestion]:
    """
    Group expenses by category and amount rounded to 100, then keep the groups
    whose timing is regular. Input is expected newest first.
    """
    grouped: dict[tuple[str, int], list[_Occurrence]] = defaultdict(list)
    for t in transactions:
        occ = _occurrence(t)
        category = getattr(t, "category", None) or "Other"
        grouped[(category, round_half_up(occ.amount / 100) * 100)].append(occ)

    out: list[BillSuggestion] = []
    for (category, _bucket), rows in grouped.items():
        if len(rows) < 2 or not is_recurring_pattern(rows):
            continue
        out.append(
            BillSuggestion(
                name=suggest_bill_name(category, rows[0].description),
                category=category,
                amount=round_half_up(sum(r.amount for r in rows) / len(rows)),
                due_day=round_half_up(sum(r.day for r in rows) / len(rows)),
                confidence=pattern_confidence(rows),
                occurrences=len(rows),
                last_transaction_id=rows[0].id,
            )
        )
    return out


def detect_recurring_bills(session: Session, user_id: int, *, now: Optional[dt.datetime] = None) -> dict[str, Any]:
    now = ensure_utc(now or utcnow())
    rows = list(
        session.scalars(
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.type == EXPENSE,
                Transaction.date >= now - dt.timedelta(days=LOOKBACK_DAYS),
            )
            .order_by(Transaction.date.desc())
        )
    )
    suggestions = [s for s in analyze_bill_patterns(rows) if s.confidence >= MIN_CONFIDENCE]
    return {"suggestions": suggestions, "total_analyzed": len(rows)}


def analyze_single_transaction(session: Session, user_id: int, transaction_id: int) -> Optional[dict[str, Any]]:
    """Whether one expense looks like part of a recurring bill. None when the transaction is not the user's."""
    txn = session.scalars(
        select(Transaction).where(Transaction.id == transaction_id, Transaction.user_id == user_id)
    ).first()
    if txn is None:
        return None
    amount = amount_of(txn)
    similar = list(
        session.scalars(
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.category == txn.category,
                Transaction.type == EXPENSE,
                Transaction.amount >= amount * 0.9,
                Transaction.amount <= amount * 1.1,
                Transaction.id != transaction_id,
            )
            .order_by(Transaction.date.desc())
            .limit(SIMILAR_LIMIT)
        )
    )
    occurrences = [_occurrence(t) for t in [txn, *similar]]
    if not is_recurring_pattern(occurrences):
        return {"is_recurring": False}
    return {
        "is_recurring": True,
        "suggestion": {
            "name": suggest_bill_name(txn.category, txn.description),
            "category": txn.category,
            "amount": amount,
            "due_day": txn_date(txn).day,
            "confidence": pattern_confidence(occurrences),
        },
    }
