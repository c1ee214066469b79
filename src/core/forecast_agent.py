from __future__ import annotations

import datetime as dt
import logging
from functools import lru_cache
from typing import Any, Optional, Sequence

from src.core import genai_client
from src.core.genai_client import GenAIError
from src.core.ledger import amount_of, days_ago, is_expense, is_income, same_month, sum_amounts, total_balance, txn_date
from src.core.sanitize_ai import sanitize_json_response
from src.core.types import SpendingPatterns
from src.rythmiq.config import get_config
from src.utils.cache import UserTTLCache
from src.utils.money import round_half_up
from src.utils.time import ensure_utc, utcnow


log = logging.getLogger(__name__)

CRITICAL_LEVELS = {"high", "critical"}

@lru_cache(maxsize=1)
def get_forecast_cache() -> UserTTLCache[dict[str, Any]]:
    return UserTTLCache(get_config().cache.forecast_ttl_hours * 3600)


PROMPT = """You are a financial forecasting assistant. Generate a 30-day cash flow forecast.

Current status:
- Total balance: {total_balance}
- Monthly income: {monthly_income}
- Monthly expenses: {monthly_expenses}
- Savings rate: {savings_rate}%
- Days into month: {days_into_month}/30

Spending patterns:
- Weekly average spending: {weekly_average}
- Monthly average spending: {monthly_average}
- Top categories: {top_categories}
- Average transaction: {average_transaction_size}

Return ONLY JSON with keys: risk_level ("low"|"medium"|"high"|"critical"),
predicted_balance_day_30, critical_dates (list of {{day, reason, predicted_balance}}
for days the balance may drop below 1000), recommended_actions (2-3 strings),
confidence (0-100), summary (one sentence)."""


def analyze_spending_patterns(transactions: Sequence[Any], *, now: Optional[dt.datetime] = None) -> SpendingPatterns:
    """Averages over the span covered by `transactions` (newest first)."""
    if not transactions:
        return SpendingPatterns()
    now = ensure_utc(now or utcnow())
    by_category: dict[str, float] = {}
    expenses = [t for t in transactions if is_expense(t)]
    for t in expenses:
        cat = getattr(t, "category", None) or "Other"
        by_category[cat] = by_category.get(cat, 0.0) + amount_of(t)
    total = sum_amounts(expenses)

    span = max(1.0, days_ago(transactions[-1], now))
    daily = total / span
    top = sorted(by_category.items(), key=lambda kv: kv[1], reverse=True)[:5]
    return SpendingPatterns(
        weekly_average=round_half_up(daily * 7),
        monthly_average=round_half_up(daily * 30),
        top_categories=[{"category": c, "amount": a} for c, a in top],
        total_expenses=round_half_up(total),
        average_transaction_size=round_half_up(total / max(1, len(expenses))),
    )


def summarize_finances(transactions: Sequence[Any], accounts: Sequence[Any], *, now: Optional[dt.datetime] = None) -> dict[str, Any]:
    now = ensure_utc(now or utcnow())
    month = [t for t in transactions if same_month(txn_date(t), now)]
    income = sum_amounts(t for t in month if is_income(t))
    expenses = sum_amounts(t for t in month if is_expense(t))
    savings_rate = (income - expenses) / income * 100 if income > 0 else 0.0
    return {
        "total_balance": total_balance(accounts),
        "monthly_income": income,
        "monthly_expenses": expenses,
        "savings_rate": round(savings_rate, 1),
        "days_into_month": now.day,
    }


def fallback_forecast(finances: dict[str, Any]) -> dict[str, Any]:
    return {
        "risk_level": "unknown",
        "predicted_balance_day_30": finances.get("total_balance") or 0,
        "critical_dates": [],
        "recommended_actions": ["Unable to generate forecast. Please try again later."],
        "confidence": 0,
        "summary": "Forecast generation failed",
    }


def generate_cash_flow_forecast(
    transactions: Sequence[Any],
    accounts: Sequence[Any],
    *,
    now: Optional[dt.datetime] = None,
) -> dict[str, Any]:
    """
    Ask the model for a 30-day outlook. Any model failure yields the fallback
    forecast with ``success: False``; the caller never sees an exception.
    """
    now = ensure_utc(now or utcnow())
    finances = summarize_finances(transactions, accounts, now=now)
    patterns = analyze_spending_patterns(transactions, now=now)
    prompt = PROMPT.format(
        **finances,
        weekly_average=patterns.weekly_average,
        monthly_average=patterns.monthly_average,
        top_categories=", ".join(f"{c['category']} ({c['amount']:.0f})" for c in patterns.top_categories) or "none",
        average_transaction_size=patterns.average_transaction_size,
    )
    try:
        forecast = genai_client.generate_json(prompt)
        if not isinstance(forecast, dict):
            raise GenAIError("Forecast is not a JSON object")
    except GenAIError as e:
        log.warning("Forecast generation failed, using fallback: %s", e)
        return {
            "success": False,
            "error": str(e),
            "forecast": fallback_forecast(finances),
            "patterns": patterns.model_dump(),
            "generated_at": now.isoformat(),
        }
    return {
        "success": True,
        "forecast": sanitize_json_response(forecast),
        "patterns": patterns.model_dump(),
        "generated_at": now.isoformat(),
    }


def is_forecast_critical(forecast: Optional[dict[str, Any]]) -> bool:
    if not forecast:
        return False
    return forecast.get("risk_level") in CRITICAL_LEVELS or bool(forecast.get("critical_dates"))
