from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from src.app.auth import current_user
from src.app.db import db_session
from src.app.utils import jsonable
from src.core.fitness_score import calculate_fitness_score
from src.core.income_rhythm import update_rhythm_profile
from src.core.risk_engine import generate_risk_snapshot, get_latest_risk_snapshot, load_budget, load_user_finances
from src.db.models import NudgeAction, RiskSnapshot, User
from src.rythmiq.nudges.behavior import analyze_nudge_behavior, get_personalized_nudge_settings
from src.rythmiq.nudges.feedback import calculate_nudge_effectiveness, get_behavioral_insights, get_effectiveness_trends


router = APIRouter(prefix="/api/analytics", tags=["analytics"])


def _snapshot_dict(s: RiskSnapshot) -> dict:
    return {
        "id": s.id,
        "risk_score": s.risk_score,
        "risk_level": s.risk_level,
        "drivers": s.drivers_json or [],
        "forecast": s.forecast_json or {},
        "metrics": s.metrics_json or {},
        "created_at": s.created_at,
    }


@router.get("/risk")
def risk(
    refresh: bool = False,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    snapshot = None if refresh else get_latest_risk_snapshot(session, user.id)
    if snapshot is None:
        snapshot = generate_risk_snapshot(session, user.id)
        session.commit()
    if snapshot is None:
        return {"success": True, "snapshot": None, "message": "Add an account to see your risk score"}
    return {"success": True, "snapshot": jsonable(_snapshot_dict(snapshot))}


@router.get("/fitness")
def fitness(
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    accounts, transactions = load_user_finances(session, user.id)
    nudges = list(session.scalars(select(NudgeAction).where(NudgeAction.user_id == user.id)))
    score = calculate_fitness_score(accounts, transactions, load_budget(session, user.id), nudges)
    return {"success": True, "fitness": jsonable(score)}


@router.get("/behavior")
def behavior(
    days: int = Query(30, ge=1, le=365),
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    return {
        "success": True,
        "behavior": jsonable(analyze_nudge_behavior(session, user.id, days)),
        "settings": jsonable(get_personalized_nudge_settings(session, user.id)),
        "insights": jsonable(get_behavioral_insights(session, user.id)),
    }


@router.get("/effectiveness")
def effectiveness(
    days: int = Query(30, ge=1, le=365),
    weeks: int = Query(4, ge=1, le=52),
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    return {
        "success": True,
        "effectiveness": jsonable(calculate_nudge_effectiveness(session, user.id, days)),
        "trends": get_effectiveness_trends(session, user.id, weeks),
    }


@router.get("/rhythm")
def rhythm(
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    result = update_rhythm_profile(session, user.id)
    session.commit()
    if result is None:
        return {"success": True, "rhythm": None, "message": "Not enough recent transactions"}
    return {"success": True, "rhythm": jsonable(result)}
