from __future__ import annotations

import datetime as dt
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.core.ledger import (
    amount_of,
    days_ago,
    is_expense,
    is_income,
    month_expenses,
    same_month,
    total_balance,
    txn_date,
    upcoming_recurring_expenses,
)
from src.core.predictions import calculate_safe_to_save, check_emi_at_risk, get_7_day_forecast, map_risk_to_meter
from src.core.risk_engine import load_user_finances
from src.db.models import Budget, FinancialProfile, Goal
from src.rythmiq.config import get_config
from src.rythmiq.nudges.behavior import NudgeSettings, get_personalized_nudge_settings
from src.utils.money import format_inr, round_half_up, to_float
from src.utils.time import DAY, ensure_utc, parse_datetime, utcnow


log = logging.getLogger(__name__)

AUTO_SAVE = "auto-save"
BILL_PAY = "bill-pay"
BILL_GUARD = "bill-guard"
SPENDING_ALERT = "spending-alert"
INCOME_OPPORTUNITY = "income-opportunity"
EMERGENCY_BUFFER = "emergency-buffer"
MICRO_SAVE = "micro-save"
GUARDIAN_ALERT = "guardian-alert"
SPENDING_GUARDRAIL = "spending-guardrail"
GOAL_BACKSTOP = "goal-backstop"
SUMMARY = "SUMMARY"

NUDGE_TYPES = [
    AUTO_SAVE,
    BILL_PAY,
    BILL_GUARD,
    SPENDING_ALERT,
    INCOME_OPPORTUNITY,
    EMERGENCY_BUFFER,
    MICRO_SAVE,
    GUARDIAN_ALERT,
    SPENDING_GUARDRAIL,
    GOAL_BACKSTOP,
]

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
GUARDIAN_WAYS = ["Cut dining out", "Delay non-essentials", "Pick up a quick gig"]
SUMMARY_SIZE = 3


@dataclass
class NudgeCandidate:
    type: str
    message: str
    reason: str
    priority: int
    expires_at: dt.datetime
    amount: Optional[float] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "amount": self.amount,
            "message": self.message,
            "reason": self.reason,
            "priority": self.priority,
            "expires_at": self.expires_at.isoformat(),
            "metadata": self.metadata,
        }


def days_until_weekday(weekday: Optional[str], now: dt.datetime) -> Optional[int]:
    """Days until the next `weekday`; today counts as a week away."""
    if not weekday or weekday not in WEEKDAYS:
        return None
    diff = (WEEKDAYS.index(weekday) - now.weekday()) % 7
    return 7 if diff == 0 else diff


def calculate_nudge_impact(nudge_type: str, amount: Optional[float]) -> float:
    """Estimated money effect of an executed nudge."""
    amt = to_float(amount)
    if nudge_type in (AUTO_SAVE, MICRO_SAVE, GOAL_BACKSTOP):
        return amt
    if nudge_type == BILL_PAY:
        # avoided late fee
        return 50.0
    factors = {
        BILL_GUARD: 0.05,
        SPENDING_ALERT: 0.1,
        INCOME_OPPORTUNITY: 0.5,
        GUARDIAN_ALERT: 0.8,
        SPENDING_GUARDRAIL: 0.15,
    }
    return amt * factors.get(nudge_type, 0.0)


def _goal_nudge(session: Session, user_id: int, budget_remaining: float, now: dt.datetime) -> Optional[NudgeCandidate]:
    goal = session.scalars(
        select(Goal).where(Goal.user_id == user_id, Goal.status == "active").order_by(Goal.id).limit(1)
    ).first()
    if goal is None:
        return None
    remaining = to_float(goal.target_amount) - to_float(goal.saved_amount)
    if remaining <= 0 or budget_remaining <= 500:
        return None
    amount = min(2000, max(500, round_half_up(remaining * 0.05)))
    target = ensure_utc(goal.target_date).date().isoformat() if goal.target_date else "target date"
    return NudgeCandidate(
        type=AUTO_SAVE,
        amount=amount,
        message=f"Goal: Save {format_inr(amount)} for {goal.name} now?",
        reason=f"Progress toward {goal.name}. Saving consistently will reach target by {target}",
        priority=4,
        expires_at=now + DAY,
        metadata={"goal_id": goal.id, "goal_name": goal.name},
    )


def build_candidates(
    session: Session,
    user_id: int,
    *,
    now: dt.datetime,
) -> tuple[list[NudgeCandidate], dict[str, Any]]:
    """Every nudge the user's current state justifies, before personalisation."""
    cfg = get_config().thresholds
    accounts, transactions = load_user_finances(session, user_id, limit=cfg.transaction_lookback)
    budget = session.scalars(select(Budget).where(Budget.user_id == user_id)).first()
    profile = session.scalars(select(FinancialProfile).where(FinancialProfile.user_id == user_id)).first()
    rhythm = (profile.income_rhythm_json if profile else None) or {}
    payday_eta = days_until_weekday(rhythm.get("payday"), now)

    balance = total_balance(accounts)
    past = [t for t in transactions if txn_date(t) <= now]
    spent = month_expenses(past, now)
    budget_remaining = to_float(budget.amount) - spent if budget is not None else 0.0

    forecast = get_7_day_forecast(transactions, accounts, now=now)
    risk_level = map_risk_to_meter(forecast.risk_score)
    emi_risk = check_emi_at_risk(transactions, accounts, 7, now=now, buffer=cfg.emi_buffer)

    out: list[NudgeCandidate] = []

    goal = _goal_nudge(session, user_id, budget_remaining, now)
    if goal is not None:
        out.append(goal)

    if balance > 20000 and budget_remaining > 5000:
        amount = min(2000.0, budget_remaining * 0.2)
        out.append(
            NudgeCandidate(
                type=AUTO_SAVE,
                amount=amount,
                message=f"You have {format_inr(budget_remaining)} left in your budget. Save {format_inr(amount)} now?",
                reason="You're ahead of your budget and have extra funds. Saving now helps build your emergency fund.",
                priority=3,
                expires_at=now + DAY,
            )
        )

    if risk_level in ("Caution", "Danger"):
        amount = min(120, max(50, calculate_safe_to_save(transactions, accounts, budget, now=now)))
        eta = f" (payday in {payday_eta} days)" if payday_eta else ""
        out.append(
            NudgeCandidate(
                type=MICRO_SAVE,
                amount=amount,
                message=f"Risk level: {risk_level}. Save {format_inr(amount)} to buffer today{eta}?",
                reason=f"Your 7-day forecast shows {risk_level.lower()} risk. Small saves build security."
                + (" Next inflow is expected soon, so this buffer keeps you safe." if payday_eta else ""),
                priority=6,
                expires_at=now + DAY,
                metadata={"risk_level": risk_level, "forecast": forecast.model_dump(), "income_rhythm": rhythm or None},
            )
        )

    upcoming = upcoming_recurring_expenses(transactions, now, 7)
    if upcoming:
        bill = upcoming[0]
        due = ensure_utc(parse_datetime(bill.next_recurring_date))
        days_until = math.ceil((due - now).total_seconds() / 86400)
        amount = amount_of(bill)
        name = bill.description or bill.category or "Bill"
        meta = {"transaction_id": bill.id, "bill_name": name}
        out.append(
            NudgeCandidate(
                type=BILL_PAY,
                amount=amount,
                message=f"{name} ({format_inr(amount)}) is due in {days_until} days. Auto-pay now?",
                reason="Paying bills early avoids late fees and keeps your credit score healthy.",
                priority=5,
                expires_at=due,
                metadata=dict(meta),
            )
        )
        out.append(
            NudgeCandidate(
                type=BILL_GUARD,
                amount=amount,
                message=f"Freeze {format_inr(amount)} for {name}?",
                reason="Bill guard will ring-fence this amount so it cannot be overspent before due date.",
                priority=6,
                expires_at=due,
                metadata=dict(meta),
            )
        )

    if emi_risk.at_risk:
        out.append(
            NudgeCandidate(
                type=GUARDIAN_ALERT,
                amount=emi_risk.shortfall,
                message=f"Upcoming EMIs ({format_inr(emi_risk.total_emi)}) in 7 days. "
                f"Short by {format_inr(emi_risk.shortfall)}. Act now?",
                reason=f"Your forecast shows shortfall for {emi_risk.upcoming_emis} EMIs. {' or '.join(GUARDIAN_WAYS)}.",
                priority=8,
                expires_at=now + 7 * DAY,
                metadata={"emi_risk": emi_risk.model_dump(), "ways": GUARDIAN_WAYS},
            )
        )

    by_category: dict[str, float] = {}
    for t in transactions:
        if is_expense(t) and same_month(txn_date(t), now):
            cat = t.category or "Other"
            by_category[cat] = by_category.get(cat, 0.0) + amount_of(t)
    # Each major category is assumed to get a fifth of the budget.
    category_budget = to_float(budget.amount) * 0.2 if budget is not None else 2000.0
    for cat, cat_spent in by_category.items():
        if category_budget * 0.8 < cat_spent < category_budget * 1.2:
            out.append(
                NudgeCandidate(
                    type=SPENDING_ALERT,
                    amount=cat_spent,
                    message=f"You've spent {format_inr(cat_spent)} on {cat} "
                    f"({cat_spent / category_budget * 100:.0f}% of typical budget)",
                    reason=f"You're approaching your usual {cat} spending limit. Consider reducing expenses in this category.",
                    priority=2,
                    expires_at=now + 2 * DAY,
                    metadata={"category": cat},
                )
            )

    threshold = cfg.emergency_threshold
    if 0 < balance < threshold:
        out.append(
            NudgeCandidate(
                type=EMERGENCY_BUFFER,
                amount=threshold - balance,
                message=f"Your balance is {format_inr(balance)}, below the emergency threshold. Reduce spending?",
                reason=f"Maintaining at least {format_inr(threshold)} helps you handle unexpected expenses.",
                priority=10,
                expires_at=now + dt.timedelta(hours=12),
            )
        )

    month_income = [t for t in transactions if is_income(t) and 0 <= days_ago(t, now) <= 30]
    avg_income = sum(amount_of(t) for t in month_income) / len(month_income) if month_income else 0.0
    week_income = sum(amount_of(t) for t in transactions if is_income(t) and 0 <= days_ago(t, now) <= 7)
    if avg_income > 0 and week_income < avg_income * 0.7:
        deficit = avg_income - week_income
        payday = rhythm.get("payday")
        label = f"{payday} {rhythm['hour_slot']}" if payday and rhythm.get("hour_slot") else payday
        cadence = rhythm.get("cadence")
        out.append(
            NudgeCandidate(
                type=INCOME_OPPORTUNITY,
                amount=deficit,
                message=f"Your income this week ({format_inr(week_income)}) is {deficit / avg_income * 100:.0f}% below average"
                + (f". Payday usually hits {label}" if label else "")
                + ".",
                reason="Consider picking up extra gigs or work to maintain your usual income level."
                + (f" Typical cadence: {cadence}." if cadence else ""),
                priority=4,
                expires_at=now + 3 * DAY,
                metadata={"income_rhythm": rhythm or None},
            )
        )

    risk_context = {
        "risk_level": risk_level,
        "risk_score": forecast.risk_score,
        "trend": forecast.trend,
        "income_rhythm": rhythm or None,
    }
    return out, risk_context


def collapse_to_summary(nudges: list[NudgeCandidate], now: dt.datetime) -> list[NudgeCandidate]:
    if not nudges:
        return []
    head = sorted(nudges, key=lambda n: n.priority, reverse=True)[:SUMMARY_SIZE]
    return [
        NudgeCandidate(
            type=SUMMARY,
            message="Daily Summary: " + "; ".join(n.message for n in head),
            reason="Based on your preferences, here's a consolidated view.",
            # Carries the strongest member's priority so the threshold filter keeps it.
            priority=head[0].priority,
            expires_at=now + DAY,
            metadata={"original_nudges": [n.to_dict() for n in head]},
        )
    ]


def personalize(
    nudges: list[NudgeCandidate],
    settings: NudgeSettings,
    risk_context: dict[str, Any],
    now: dt.datetime,
    *,
    preferred: Sequence[str] = (),
    disliked: Sequence[str] = (),
) -> list[NudgeCandidate]:
    """Disliked types are dropped before anything else; preferred types sort ahead of priority."""
    nudges = [n for n in nudges if n.type not in disliked]
    if settings.prefer_summaries:
        nudges = collapse_to_summary(nudges, now)
    kept = [n for n in nudges if n.priority >= settings.priority_threshold][: settings.max_nudges_per_day]
    for n in kept:
        n.metadata = {**n.metadata, "risk_context": risk_context}
    return sorted(kept, key=lambda n: (n.type in preferred, n.priority), reverse=True)


def generate_nudges(
    session: Session,
    user_id: int,
    *,
    now: Optional[dt.datetime] = None,
    settings: Optional[NudgeSettings] = None,
) -> list[NudgeCandidate]:
    """
    Nudges worth showing the user right now, highest priority first.

    Candidates come from balances, the 7-day forecast, EMI exposure, budget and
    income history; the user's response history then decides how many survive
    and whether they are folded into one summary.
    """
    now = ensure_utc(now or utcnow())
    candidates, risk_context = build_candidates(session, user_id, now=now)
    settings = settings or get_personalized_nudge_settings(session, user_id, now=now)
    profile = session.scalars(select(FinancialProfile).where(FinancialProfile.user_id == user_id)).first()
    preferred = list(profile.preferred_nudge_types_json or []) if profile else []
    disliked = list(profile.disliked_nudge_types_json or []) if profile else []
    out = personalize(candidates, settings, risk_context, now, preferred=preferred, disliked=disliked)
    log.info(
        "nudges generated user=%s candidates=%d kept=%d threshold=%d",
        user_id,
        len(candidates),
        len(out),
        settings.priority_threshold,
    )
    return out
