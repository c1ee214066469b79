from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from src.core.ledger import (
    amount_of,
    days_ago,
    is_expense,
    is_income,
    month_expenses,
    sum_amounts,
    total_balance,
    txn_date,
    upcoming_recurring_expenses,
    within_days,
)
from src.core.types import CashFlowForecast, CashFlowPoint, EmiRisk, HistoricalBalancePoint, RiskMeter, ShortForecast
from src.utils.money import round_half_up, to_float
from src.utils.time import ensure_utc, utcnow


RATE_WINDOW_DAYS = 60
TREND_THRESHOLD = 50.0
SAFE_TO_SAVE_FLOOR = 1000.0
SAFE_TO_SAVE_BUFFER = 2000.0
SAFE_TO_SAVE_CAP = 500.0
EMI_BUFFER = 1000.0


@dataclass(frozen=True)
class Trend:
    direction: str
    rate: float


def detect_trend(transactions: Sequence[Any], now: dt.datetime) -> Trend:
    """
    Compare the mean net flow of the most recent week against the week three
    weeks back. Positive slope means inflow is outpacing spend.
    """
    weeks: list[list[float]] = [[], [], [], []]
    for t in transactions:
        ago = days_ago(t, now)
        if ago < 0 or ago > 30:
            continue
        idx = int(ago // 7)
        if idx < 4:
            amt = amount_of(t)
            weeks[idx].append(amt if is_income(t) else -amt)

    means = [sum(w) / len(w) if w else 0.0 for w in weeks]
    slope = (means[0] - means[3]) / 4
    if slope > TREND_THRESHOLD:
        return Trend("improving", slope)
    if slope < -TREND_THRESHOLD:
        return Trend("declining", slope)
    return Trend("stable", slope)


def detect_seasonal_pattern(transactions: Sequence[Any]) -> dict[str, float]:
    """Mean expense size per third of the month (start: 1-10, mid: 11-20, end: 21+)."""
    buckets: dict[str, list[float]] = {}
    for t in transactions:
        if not is_expense(t):
            continue
        day = txn_date(t).day
        bucket = "start" if day <= 10 else "mid" if day <= 20 else "end"
        buckets.setdefault(bucket, []).append(amount_of(t))
    return {k: sum(v) / len(v) for k, v in buckets.items()}


def calculate_confidence(transactions: Sequence[Any], days: int, now: dt.datetime) -> float:
    points = len(transactions)
    # Rows arrive newest-first; the last one bounds the observed span.
    span = days_ago(transactions[-1], now) if transactions else 0.0

    confidence = min(points / 50, 1.0) * 100
    confidence *= max(0.0, 1 - days / 60)
    if span < 7:
        confidence *= 1.1
    elif span > 30:
        confidence *= 0.8
    return min(max(confidence, 20.0), 95.0)


def predict_cash_flow(
    transactions: Sequence[Any],
    accounts: Sequence[Any],
    days: int = 30,
    *,
    now: Optional[dt.datetime] = None,
) -> CashFlowForecast:
    now = ensure_utc(now or utcnow())
    balance = total_balance(accounts)

    recent = within_days(transactions, now, RATE_WINDOW_DAYS)
    daily_income = sum_amounts(t for t in recent if is_income(t)) / RATE_WINDOW_DAYS
    daily_expense = sum_amounts(t for t in recent if is_expense(t)) / RATE_WINDOW_DAYS

    trend = detect_trend(transactions, now)
    trend_per_day = trend.rate / 7
    seasonal = detect_seasonal_pattern(transactions)
    confidence = calculate_confidence(transactions, days, now)
    variance = abs(daily_income - daily_expense) * 0.3

    points: list[CashFlowPoint] = []
    running = balance
    for i in range(days + 1):
        day = now + dt.timedelta(days=i)
        daily_net = (daily_income + trend_per_day * i) - daily_expense

        multiplier = 1.0
        if daily_expense > 0:
            if day.day <= 10 and seasonal.get("start"):
                multiplier = seasonal["start"] / daily_expense
            elif day.day > 20 and seasonal.get("end"):
                multiplier = seasonal["end"] / daily_expense

        running += daily_net * multiplier
        spread = variance * i * 0.1
        decay = 1 - i / (days * 2) if days > 0 else 1.0
        points.append(
            CashFlowPoint(
                date=day.date().isoformat(),
                predicted=round_half_up(running),
                upper_bound=round_half_up(running + spread),
                lower_bound=round_half_up(running - spread),
                confidence=round_half_up(confidence * decay),
                day_offset=i,
            )
        )

    return CashFlowForecast(
        predictions=points,
        trend=trend.direction,
        trend_rate=round_half_up(trend.rate),
        confidence=round_half_up(confidence),
        daily_income=round_half_up(daily_income),
        daily_expense=round_half_up(daily_expense),
        daily_net=round_half_up(daily_income - daily_expense),
    )


def calculate_risk_score(predictions: Sequence[CashFlowPoint], current_balance: float) -> int:
    """0-100, higher is riskier."""
    if not predictions:
        return 0
    values = [p.predicted for p in predictions]
    low = min(values)
    volatility = max(values) - low

    risk = 0.0
    if low < 500:
        risk += 40
    elif low < 1000:
        risk += 25
    elif low < 2000:
        risk += 10

    # An empty or overdrawn account is measured against a ₹1 base.
    base = max(current_balance, 1.0)
    volatility_pct = volatility / base * 100
    if volatility_pct > 50:
        risk += 30
    elif volatility_pct > 30:
        risk += 15

    end = values[-1]
    if end < current_balance:
        decline = (current_balance - end) / base * 100
        risk += min(decline, 30.0)

    return min(round_half_up(risk), 100)


def calculate_historical_balance(
    transactions: Sequence[Any],
    current_balance: float,
    days: int = 30,
    *,
    now: Optional[dt.datetime] = None,
) -> list[HistoricalBalancePoint]:
    """Walk the current balance back in time by undoing every later transaction."""
    now = ensure_utc(now or utcnow())
    history: list[HistoricalBalancePoint] = []
    for i in range(days + 1):
        day = now - dt.timedelta(days=i)
        adjusted = current_balance
        for t in transactions:
            if txn_date(t) > day:
                adjusted += -amount_of(t) if is_income(t) else amount_of(t)
        history.append(HistoricalBalancePoint(date=day.date().isoformat(), balance=adjusted, day_offset=-i))
    history.reverse()
    return history


def calculate_safe_to_save(
    transactions: Sequence[Any],
    accounts: Sequence[Any],
    budget: Any = None,
    *,
    now: Optional[dt.datetime] = None,
) -> int:
    now = ensure_utc(now or utcnow())
    balance = total_balance(accounts)
    if balance < SAFE_TO_SAVE_FLOOR:
        return 0

    if budget is not None:
        limit = to_float(getattr(budget, "amount", None))
        if limit > 0 and month_expenses(transactions, now) / limit * 100 > 70:
            return 0

    excess = balance - SAFE_TO_SAVE_BUFFER
    if excess <= 0:
        return 0
    return int(min(excess * 0.05, SAFE_TO_SAVE_CAP))


def get_7_day_forecast(
    transactions: Sequence[Any],
    accounts: Sequence[Any],
    *,
    now: Optional[dt.datetime] = None,
) -> ShortForecast:
    forecast = predict_cash_flow(transactions, accounts, 7, now=now)
    week = forecast.predictions[:7]
    return ShortForecast(
        predictions=week,
        risk_score=calculate_risk_score(week, total_balance(accounts)),
        trend=forecast.trend,
        confidence=forecast.confidence,
    )


def map_risk_to_meter(risk_score: float) -> RiskMeter:
    if risk_score <= 30:
        return "Safe"
    if risk_score <= 70:
        return "Caution"
    return "Danger"


def check_emi_at_risk(
    transactions: Sequence[Any],
    accounts: Sequence[Any],
    days: int = 7,
    *,
    now: Optional[dt.datetime] = None,
    buffer: float = EMI_BUFFER,
) -> EmiRisk:
    now = ensure_utc(now or utcnow())
    forecast = predict_cash_flow(transactions, accounts, days, now=now)
    min_predicted = float(min(p.predicted for p in forecast.predictions[:days] or forecast.predictions))

    emis = upcoming_recurring_expenses(transactions, now, days)
    total_emi = sum_amounts(emis)
    # Nothing due means nothing at risk, however thin the forecast.
    shortfall = total_emi - (min_predicted - buffer) if emis else 0.0
    return EmiRisk(
        at_risk=shortfall > 0,
        shortfall=max(0.0, shortfall),
        total_emi=total_emi,
        min_predicted=min_predicted,
        upcoming_emis=len(emis),
    )
