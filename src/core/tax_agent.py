from __future__ import annotations

import datetime as dt
import logging
from collections import Counter
from functools import lru_cache
from typing import Any, Optional, Sequence

from src.core import genai_client
from src.core.genai_client import GenAIError
from src.core.ledger import amount_of, is_income, txn_date
from src.core.sanitize_ai import sanitize_json_response
from src.core.tax_estimation import CESS_RATE, GST_ANNUAL_TURNOVER, GST_RATE, calculate_gst, calculate_income_tax
from src.rythmiq.config import get_config
from src.utils.cache import UserTTLCache
from src.utils.money import round_half_up
from src.utils.time import ensure_utc, utcnow


log = logging.getLogger(__name__)

@lru_cache(maxsize=1)
def get_tax_cache() -> UserTTLCache[dict[str, Any]]:
    return UserTTLCache(get_config().cache.tax_estimate_ttl_hours * 3600)


FALLBACK_RECOMMENDATIONS = {
    "recommendations": [
        {"action": "Save monthly for tax payments", "savings": 0, "priority": "high"},
        {"action": "Maintain expense records for deductions", "savings": 0, "priority": "medium"},
        {"action": "Consult a CA for tax planning", "savings": 0, "priority": "low"},
    ],
    "urgency": "medium",
    "next_deadline": "Quarterly advance tax",
    "summary": "Basic tax estimate calculated successfully.",
}

PROMPT = """You are a tax advisor for Indian gig workers.

- Quarterly income: {quarterly_income:.0f}
- Annual income: {annual_income:.0f}
- GST liability: {gst:.0f}
- Income tax: {income_tax:.0f}
- Total tax: {total:.0f}

Return ONLY JSON: {{"recommendations": [{{"action": str, "savings": number, "priority": "high"|"medium"|"low"}}] (3 items),
"urgency": str, "next_deadline": str, "summary": str}}"""


def gst_details(quarterly_income: float) -> dict[str, Any]:
    annual = quarterly_income * 4
    amount = calculate_gst(quarterly_income)
    if annual < GST_ANNUAL_TURNOVER:
        return {
            "gst_amount": 0,
            "gst_required": False,
            "annual_projection": annual,
            "message": "GST registration not required (below ₹20L threshold)",
        }
    return {
        "gst_amount": amount,
        "gst_required": True,
        "annual_projection": annual,
        "quarterly_income": quarterly_income,
        "gst_rate": GST_RATE,
        "message": f"GST applicable at {GST_RATE:.0f}%",
    }


def income_tax_details(annual_income: float) -> dict[str, Any]:
    before_cess = calculate_income_tax(annual_income)
    total = calculate_income_tax(annual_income, cess=True)
    return {
        "tax_amount": total,
        "tax_before_cess": before_cess,
        "cess": round_half_up(before_cess * CESS_RATE / 100),
        "annual_income": annual_income,
        "effective_rate": f"{total / annual_income * 100:.2f}" if annual_income > 0 else "0.00",
    }


def income_windows(transactions: Sequence[Any], *, now: Optional[dt.datetime] = None) -> dict[str, Any]:
    """Trailing 3-month and 12-month income, each projected from the other when empty."""
    now = ensure_utc(now or utcnow())
    incomes = [t for t in transactions if is_income(t)]
    quarter_from = now - dt.timedelta(days=91)
    year_from = now - dt.timedelta(days=365)
    quarterly = sum(amount_of(t) for t in incomes if txn_date(t) >= quarter_from)
    annual = sum(amount_of(t) for t in incomes if txn_date(t) >= year_from)
    categories = Counter(getattr(t, "category", None) or "Other" for t in incomes)
    return {
        "quarterly_income": quarterly if quarterly > 0 else round_half_up(annual / 4),
        "annual_income": annual if annual > 0 else quarterly * 4,
        "category": categories.most_common(1)[0][0] if categories else "services",
        "transaction_count": len(incomes),
    }


def generate_tax_estimate(quarterly_income: float, annual_income: float) -> dict[str, Any]:
    gst = gst_details(quarterly_income)
    income_tax = income_tax_details(annual_income)
    total = gst["gst_amount"] + income_tax["tax_amount"]

    error: Optional[str] = None
    recommendations: Any = None
    if genai_client.is_configured():
        prompt = PROMPT.format(
            quarterly_income=quarterly_income,
            annual_income=annual_income,
            gst=gst["gst_amount"],
            income_tax=income_tax["tax_amount"],
            total=total,
        )
        try:
            recommendations = sanitize_json_response(genai_client.generate_json(prompt))
        except GenAIError as e:
            log.warning("Tax recommendations failed, using fallback: %s", e)
            error = str(e)
        if isinstance(recommendations, dict) and "error" in recommendations:
            recommendations = None
    if not recommendations:
        recommendations = FALLBACK_RECOMMENDATIONS

    return {
        "success": True,
        "gst": gst,
        "income_tax": income_tax,
        "total_tax_liability": total,
        "quarterly_tax_liability": round_half_up(total / 4),
        "suggested_monthly_savings": round_half_up(total / 12),
        "ai_recommendations": recommendations,
        "error": error,
        "generated_at": utcnow().isoformat(),
    }
