from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from src.app.auth import current_user
from src.app.db import db_session
from src.app.ratelimit import rate_limited
from src.app.utils import jsonable
from src.core.advisor import answer_chat, generate_insights
from src.core.forecast_agent import generate_cash_flow_forecast, get_forecast_cache, is_forecast_critical
from src.core.risk_engine import load_budget, load_user_finances
from src.core.spending_allowance import calculate_spending_allowance
from src.core.tax_agent import generate_tax_estimate, get_tax_cache, income_windows
from src.db.models import AgentInsight, User
from src.rythmiq.config import get_config


router = APIRouter(prefix="/api/ai", tags=["ai"])


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=2000)


@router.post("/chat")
def chat(
    body: ChatRequest,
    session: Session = Depends(db_session),
    user: User = Depends(rate_limited("/api/ai/chat")),
):
    accounts, transactions = load_user_finances(session, user.id, limit=get_config().thresholds.transaction_lookback)
    out = answer_chat(
        session,
        user_id=user.id,
        message=body.message,
        transactions=transactions,
        accounts=accounts,
        budget=load_budget(session, user.id),
    )
    session.commit()
    return jsonable(out)


@router.get("/insights")
def insights(
    session: Session = Depends(db_session),
    user: User = Depends(rate_limited("/api/ai/insights")),
):
    accounts, transactions = load_user_finances(session, user.id, limit=get_config().thresholds.transaction_lookback)
    agent_insights = list(
        session.scalars(
            select(AgentInsight).where(AgentInsight.user_id == user.id).order_by(AgentInsight.created_at.desc()).limit(5)
        )
    )
    return jsonable(generate_insights(transactions, accounts, load_budget(session, user.id), agent_insights))


@router.get("/predict")
def predict(
    refresh: bool = False,
    session: Session = Depends(db_session),
    user: User = Depends(rate_limited("/api/ai/predict")),
):
    cached = None if refresh else get_forecast_cache().get(user.id)
    if cached is not None:
        return jsonable({**cached, "cached": True})

    accounts, transactions = load_user_finances(session, user.id, limit=get_config().thresholds.transaction_lookback)
    out = generate_cash_flow_forecast(transactions, accounts)
    out["is_critical"] = is_forecast_critical(out.get("forecast"))
    if out.get("success"):
        get_forecast_cache().set(user.id, out)
    return jsonable({**out, "cached": False})


@router.get("/spending-allowance")
def spending_allowance(
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    accounts, transactions = load_user_finances(session, user.id, limit=get_config().thresholds.transaction_lookback)
    allowance = calculate_spending_allowance(
        transactions, accounts, safety_buffer=get_config().thresholds.safety_buffer
    )
    session.commit()
    return {"success": True, "allowance": jsonable(allowance)}


@router.get("/tax-estimate")
def tax_estimate(
    refresh: bool = False,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    cached = None if refresh else get_tax_cache().get(user.id)
    if cached is not None:
        return jsonable({**cached, "cached": True})

    # A full year of income is needed, not just the recent window.
    _accounts, transactions = load_user_finances(session, user.id, limit=5000)
    windows = income_windows(transactions)
    out = generate_tax_estimate(windows["quarterly_income"], windows["annual_income"])
    out["income_data"] = windows
    get_tax_cache().set(user.id, out)
    session.commit()
    return jsonable({**out, "cached": False})
