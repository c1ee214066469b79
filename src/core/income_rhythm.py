from __future__ import annotations

import datetime as dt
from typing import Any, Optional, Sequence

from sqlalchemy.orm import Session

from src.core.ledger import amount_of, is_expense, is_income, sum_amounts, txn_date, within_days
from src.core.types import CategoryShare, HighRiskDay, IncomeRhythm, Rhythm, SpendRhythm
from src.db.models import FinancialProfile, Transaction
from src.utils.time import ensure_utc, utcnow


LOOKBACK_DAYS = 120
PROFILE_TXN_LIMIT = 400
WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
HOUR_BUCKETS: list[tuple[str, int, int]] = [
    ("dawn", 0, 6),
    ("morning", 6, 12),
    ("afternoon", 12, 17),
    ("evening", 17, 21),
    ("late-night", 21, 24),
]
REPRESENTATIVE_HOUR = {"dawn": 6, "morning": 9, "afternoon": 14, "evening": 19, "late-night": 22}


def bucket_hour(hour: int) -> str:
    for label, start, end in HOUR_BUCKETS:
        if start <= hour < end:
            return label
    return "unknown"


def representative_hour(bucket: Optional[str]) -> int:
    return REPRESENTATIVE_HOUR.get(bucket or "", 10)


def detect_cadence(income_dates: Sequence[dt.datetime]) -> str:
    if len(income_dates) < 2:
        return "irregular"
    ordered = sorted(income_dates)
    gaps = [(b - a).total_seconds() / 86400.0 for a, b in zip(ordered, ordered[1:])]
    avg = sum(gaps) / len(gaps)
    if avg <= 8:
        return "weekly"
    if avg <= 16:
        return "bi-weekly"
    if avg <= 40:
        return "monthly"
    return "irregular"


def percentage(part: float, total: float) -> float:
    if not total:
        return 0.0
    return round(part / total * 100, 1)


def _top(totals: dict[str, float]) -> Optional[tuple[str, float]]:
    if not totals:
        return None
    return sorted(totals.items(), key=lambda kv: kv[1], reverse=True)[0]


def analyze_rhythm(transactions: Sequence[Any], *, now: Optional[dt.datetime] = None) -> Optional[Rhythm]:
    """
    When money arrives and when it leaves, over the last 120 days.

    Income rhythm: the weekday carrying most inflow, its share of inflow, the
    usual hour bucket and the pay cadence. Spend rhythm: weekend and late-night
    shares, weekdays running 20% above the mean, top categories and the peak
    hour bucket. Returns None when there is nothing in the window.
    """
    now = ensure_utc(now or utcnow())
    recent = [t for t in within_days(transactions, now, LOOKBACK_DAYS) if txn_date(t) <= now]
    if not recent:
        return None

    incomes = [t for t in recent if is_income(t)]
    expenses = [t for t in recent if is_expense(t)]

    income_by_weekday: dict[str, float] = {}
    income_by_bucket: dict[str, float] = {}
    for t in incomes:
        d = txn_date(t)
        weekday = WEEKDAYS[d.weekday()]
        income_by_weekday[weekday] = income_by_weekday.get(weekday, 0.0) + amount_of(t)
        bucket = bucket_hour(d.hour)
        income_by_bucket[bucket] = income_by_bucket.get(bucket, 0.0) + amount_of(t)

    total_income = sum_amounts(incomes)
    payday = _top(income_by_weekday)
    slot = _top(income_by_bucket)
    income_rhythm = None
    if payday is not None:
        income_rhythm = IncomeRhythm(
            payday=payday[0],
            reliability=percentage(payday[1], total_income),
            hour_slot=slot[0] if slot else None,
            cadence=detect_cadence([txn_date(t) for t in incomes]),
            lookback_days=LOOKBACK_DAYS,
        )

    spend_by_weekday: dict[str, float] = {}
    spend_by_bucket: dict[str, float] = {}
    spend_by_category: dict[str, float] = {}
    weekend = 0.0
    late_night = 0.0
    for t in expenses:
        d = txn_date(t)
        amt = amount_of(t)
        weekday = WEEKDAYS[d.weekday()]
        bucket = bucket_hour(d.hour)
        spend_by_weekday[weekday] = spend_by_weekday.get(weekday, 0.0) + amt
        spend_by_bucket[bucket] = spend_by_bucket.get(bucket, 0.0) + amt
        category = getattr(t, "category", None) or "uncategorized"
        spend_by_category[category] = spend_by_category.get(category, 0.0) + amt
        if d.weekday() >= 5:
            weekend += amt
        if bucket == "late-night":
            late_night += amt

    total_spend = sum_amounts(expenses)
    avg_spend = total_spend / (len(spend_by_weekday) or 1)
    high_risk = [
        HighRiskDay(weekday=day, overspend=percentage(amt - avg_spend, avg_spend))
        for day, amt in spend_by_weekday.items()
        if amt > avg_spend * 1.2
    ]
    top_categories = [
        CategoryShare(category=cat, share=percentage(amt, total_spend))
        for cat, amt in sorted(spend_by_category.items(), key=lambda kv: kv[1], reverse=True)[:3]
    ]
    peak = _top(spend_by_bucket)

    return Rhythm(
        income_rhythm=income_rhythm,
        spend_rhythm=SpendRhythm(
            weekend_share=percentage(weekend, total_spend),
            late_night_share=percentage(late_night, total_spend),
            high_risk_days=high_risk,
            top_categories=top_categories,
            peak_hour_slot=peak[0] if peak else None,
        ),
        optimal_hour=representative_hour(income_rhythm.hour_slot) if income_rhythm and income_rhythm.hour_slot else None,
    )


def get_or_create_profile(session: Session, user_id: int) -> FinancialProfile:
    profile = session.query(FinancialProfile).filter(FinancialProfile.user_id == user_id).one_or_none()
    if profile is None:
        profile = FinancialProfile(
            user_id=user_id,
            risk_tolerance="MODERATE",
            spending_style="BALANCED",
            auto_nudge_enabled=False,
            preferred_nudge_types_json=[],
            disliked_nudge_types_json=[],
        )
        session.add(profile)
        session.flush()
    return profile


def update_rhythm_profile(session: Session, user_id: int, *, now: Optional[dt.datetime] = None) -> Optional[Rhythm]:
    now = ensure_utc(now or utcnow())
    rows = (
        session.query(Transaction)
        .filter(Transaction.user_id == user_id)
        .order_by(Transaction.date.desc())
        .limit(PROFILE_TXN_LIMIT)
        .all()
    )
    rhythm = analyze_rhythm(rows, now=now)
    if rhythm is None:
        return None

    profile = get_or_create_profile(session, user_id)
    profile.income_rhythm_json = rhythm.income_rhythm.model_dump() if rhythm.income_rhythm else None
    profile.spend_rhythm_json = rhythm.spend_rhythm.model_dump()
    if rhythm.optimal_hour is not None:
        profile.optimal_nudge_hour = rhythm.optimal_hour
    profile.last_personalization_update = now
    return rhythm
