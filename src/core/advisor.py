from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Optional, Sequence

from sqlalchemy.orm import Session

from src.core import genai_client
from src.core.agent_watchdog import evaluate_agent_output
from src.core.ai_summary import generate_ai_summary
from src.core.forecast_agent import summarize_finances
from src.core.genai_client import GenAIError
from src.core.ledger import amount_of, txn_date
from src.core.sanitize_ai import sanitize_ai_response, sanitize_insights
from src.utils.money import format_inr, to_float
from src.utils.time import ensure_utc, utcnow


log = logging.getLogger(__name__)

CONTEXT_TXNS = 5
FALLBACK_ANSWER = "I can't reach the assistant right now. Your balances and forecasts are still available on the dashboard."

CHAT_PROMPT = """You are RythmIQ, a financial advisor for gig economy workers.
Give proactive, empathetic, actionable advice in a few sentences.

User context:
{context}

User message: "{message}"
"""

INSIGHTS_PROMPT = """You are RythmIQ, a financial advisor for gig economy workers.

User context:
{context}

Return ONLY a JSON list of up to 4 insights, each {{"type": "success"|"warning"|"danger"|"info", "message": str, "detail": str}}."""


def build_context(
    transactions: Sequence[Any],
    accounts: Sequence[Any],
    budget: Any = None,
    *,
    now: Optional[dt.datetime] = None,
) -> str:
    f = summarize_finances(transactions, accounts, now=now)
    lines = [
        f"Total balance: {format_inr(f['total_balance'])}",
        f"Monthly income: {format_inr(f['monthly_income'])}",
        f"Monthly expenses: {format_inr(f['monthly_expenses'])}",
        f"Savings rate: {f['savings_rate']}%",
        f"Budget: {format_inr(to_float(budget.amount)) if budget is not None else 'Not set'}",
        "Recent transactions:",
    ]
    for t in list(transactions)[:CONTEXT_TXNS]:
        lines.append(
            f"- {txn_date(t).date().isoformat()}: {getattr(t, 'description', None) or '-'} "
            f"({format_inr(amount_of(t))}) [{t.type}]"
        )
    return "\n".join(lines)


def answer_chat(
    session: Session,
    *,
    user_id: int,
    message: str,
    transactions: Sequence[Any],
    accounts: Sequence[Any],
    budget: Any = None,
    now: Optional[dt.datetime] = None,
) -> dict[str, Any]:
    """
    Answer a free-form finance question. The reply is screened by the agent
    watchdog and sanitised before it leaves this function.
    """
    now = ensure_utc(now or utcnow())
    prompt = CHAT_PROMPT.format(context=build_context(transactions, accounts, budget, now=now), message=message)
    try:
        reply = genai_client.generate_text(prompt)
    except GenAIError as e:
        log.warning("Chat generation failed, using fallback: %s", e)
        return {"success": False, "message": FALLBACK_ANSWER, "error": str(e)}

    # Rough token estimate; the SDK usage block is not relied on.
    verdict = evaluate_agent_output(session, user_id=user_id, summary=reply, tokens=len(reply) // 4)
    if verdict.locked:
        return {
            "success": False,
            "message": "This response was withheld by the safety monitor.",
            "anomalies": verdict.anomalies,
        }
    return {"success": True, "message": sanitize_ai_response(reply), "anomalies": verdict.anomalies}


def generate_insights(
    transactions: Sequence[Any],
    accounts: Sequence[Any],
    budget: Any = None,
    agent_insights: Sequence[Any] = (),
    *,
    now: Optional[dt.datetime] = None,
) -> dict[str, Any]:
    now = ensure_utc(now or utcnow())
    fallback = [c.model_dump() for c in generate_ai_summary(transactions, budget, agent_insights, now=now)]
    if not genai_client.is_configured():
        return {"success": True, "source": "summary", "insights": sanitize_insights(fallback)}
    try:
        raw = genai_client.generate_json(INSIGHTS_PROMPT.format(context=build_context(transactions, accounts, budget, now=now)))
    except GenAIError as e:
        log.warning("Insight generation failed, using summary cards: %s", e)
        return {"success": False, "source": "summary", "insights": sanitize_insights(fallback), "error": str(e)}
    insights = sanitize_insights(raw if isinstance(raw, list) else [])
    if not insights:
        return {"success": True, "source": "summary", "insights": sanitize_insights(fallback)}
    return {"success": True, "source": "model", "insights": insights[:4]}
