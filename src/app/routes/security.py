from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from src.app.auth import current_user
from src.app.db import db_session
from src.app.utils import jsonable
from src.core.action_guard import OtpError, enforce_high_value_guard
from src.core.agent_watchdog import get_safety_state, reset_autopilot
from src.db.audit import log_security_event
from src.db.models import User


router = APIRouter(prefix="/api/security", tags=["security"])


class GuardRequest(BaseModel):
    action: str = Field(min_length=1, max_length=100)
    amount: float = Field(default=0, ge=0)
    otp_code: Optional[str] = None


class UnlockRequest(BaseModel):
    note: str = Field(default="user_acknowledged", max_length=200)


@router.post("/guard")
def guard(
    body: GuardRequest,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    try:
        result = enforce_high_value_guard(
            session,
            user_id=user.id,
            action=body.action,
            amount=body.amount,
            otp_code=body.otp_code,
        )
    except OtpError as e:
        session.commit()
        raise HTTPException(status_code=403, detail=str(e)) from e
    session.commit()
    return {"success": True, **result.to_dict()}


@router.get("/safety")
def safety(
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    state = get_safety_state(session, user.id)
    if state is None:
        return {"success": True, "state": None}
    return {
        "success": True,
        "state": jsonable(
            {
                "autopilot_locked": state.autopilot_locked,
                "locked_at": state.locked_at,
                "reason": state.reason,
                "last_anomaly": state.last_anomaly_json,
                "updated_at": state.updated_at,
            }
        ),
    }


@router.post("/unlock")
def unlock(
    body: Optional[UnlockRequest] = None,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    note = (body or UnlockRequest()).note
    reset_autopilot(session, user.id, {"actor": "user", "note": note})
    log_security_event(session, user_id=user.id, action="autopilot_unlock", context={"note": note})
    session.commit()
    return {"success": True}
