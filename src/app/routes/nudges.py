from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from src.app.auth import current_user
from src.app.db import db_session
from src.app.utils import jsonable
from src.db.models import User
from src.rythmiq.nudges.actions import (
    NudgeError,
    accept_nudge,
    generate_and_create_nudges,
    get_nudge_history,
    get_nudge_metrics,
    reject_nudge,
    serialize_nudge,
)
from src.rythmiq.nudges.feedback import collect_feedback


router = APIRouter(prefix="/api/nudges", tags=["nudges"])


class FeedbackRequest(BaseModel):
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=1000)
    was_helpful: Optional[bool] = None
    dismiss_reason: Optional[str] = Field(default=None, max_length=200)


def _nudge_error(session: Session, e: NudgeError) -> HTTPException:
    session.rollback()
    code = 404 if "not found" in str(e).lower() else 400
    return HTTPException(status_code=code, detail=str(e))


@router.get("")
def list_nudges(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    rows = get_nudge_history(session, user.id, limit=limit, status=status)
    return {"success": True, "nudges": [serialize_nudge(n) for n in rows]}


@router.post("/generate")
def generate(
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    created = generate_and_create_nudges(session, user.id)
    session.commit()
    return {"success": True, "count": len(created), "nudges": [serialize_nudge(n) for n in created]}


@router.get("/metrics")
def metrics(
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    return {"success": True, "metrics": get_nudge_metrics(session, user.id)}


@router.post("/{nudge_id}/accept")
def accept(
    nudge_id: int,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    try:
        result = accept_nudge(session, user.id, nudge_id)
    except NudgeError as e:
        raise _nudge_error(session, e) from e
    session.commit()
    return {"success": True, "nudge": serialize_nudge(result["nudge"]), "impact": jsonable(result["impact"])}


@router.post("/{nudge_id}/reject")
def reject(
    nudge_id: int,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    try:
        nudge = reject_nudge(session, user.id, nudge_id)
    except NudgeError as e:
        raise _nudge_error(session, e) from e
    session.commit()
    return {"success": True, "nudge": serialize_nudge(nudge)}


@router.post("/{nudge_id}/feedback")
def feedback(
    nudge_id: int,
    body: FeedbackRequest,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    try:
        nudge = collect_feedback(
            session,
            user.id,
            nudge_id,
            rating=body.rating,
            comment=body.comment,
            was_helpful=body.was_helpful,
            dismiss_reason=body.dismiss_reason,
        )
    except NudgeError as e:
        raise _nudge_error(session, e) from e
    session.commit()
    return {"success": True, "nudge": serialize_nudge(nudge)}
