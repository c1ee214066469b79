from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from src.app.auth import current_user
from src.app.db import db_session
from src.app.utils import jsonable
from src.core.action_guard import OtpError, enforce_high_value_guard
from src.db.models import Bill, User
from src.rythmiq.bills.detection import analyze_single_transaction, detect_recurring_bills
from src.rythmiq.bills.tracking import (
    DEFAULT_LOCK_DAYS,
    BillError,
    create_bill,
    get_bill,
    get_upcoming_bills,
    get_user_bills,
    mark_bill_paid,
    protect_bill,
)
from src.utils.money import to_float


router = APIRouter(prefix="/api/bills", tags=["bills"])


class BillCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    category: Optional[str] = None
    amount: float = Field(gt=0)
    due_day: int = Field(ge=1, le=31)
    auto_detected: bool = False
    confidence: Optional[int] = Field(default=None, ge=0, le=100)


class PayRequest(BaseModel):
    otp_code: Optional[str] = None


class ProtectRequest(BaseModel):
    amount: Optional[float] = Field(default=None, gt=0)
    lock_days: int = Field(default=DEFAULT_LOCK_DAYS, ge=1, le=60)


def serialize_bill(b: Bill) -> dict[str, Any]:
    return jsonable(
        {
            "id": b.id,
            "name": b.name,
            "category": b.category,
            "amount": b.amount,
            "due_day": b.due_day,
            "next_due_date": b.next_due_date,
            "is_active": b.is_active,
            "is_paid": b.is_paid,
            "last_paid_date": b.last_paid_date,
            "is_protected": b.is_protected,
            "protected_amount": b.protected_amount,
            "protected_until": b.protected_until,
            "auto_detected": b.auto_detected,
            "detection_confidence": b.detection_confidence,
        }
    )


@router.get("")
def list_bills(
    include_inactive: bool = False,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    return {"success": True, "bills": [serialize_bill(b) for b in get_user_bills(session, user.id, include_inactive=include_inactive)]}


@router.post("")
def add_bill(
    body: BillCreate,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    bill = create_bill(
        session,
        user_id=user.id,
        name=body.name,
        category=body.category,
        amount=body.amount,
        due_day=body.due_day,
        auto_detected=body.auto_detected,
        confidence=body.confidence,
    )
    session.commit()
    return {"success": True, "bill": serialize_bill(bill)}


@router.get("/detect")
def detect(
    transaction_id: Optional[int] = None,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    if transaction_id is not None:
        result = analyze_single_transaction(session, user.id, transaction_id)
        if result is None:
            raise HTTPException(status_code=404, detail="Transaction not found")
        return {"success": True, **jsonable(result)}
    result = detect_recurring_bills(session, user.id)
    return {
        "success": True,
        "suggestions": jsonable(result["suggestions"]),
        "total_analyzed": result["total_analyzed"],
    }


@router.get("/upcoming")
def upcoming(
    days: int = Query(7, ge=1, le=90),
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    result = get_upcoming_bills(session, user.id, days)
    return {
        "success": True,
        "bills": [serialize_bill(b) for b in result["bills"]],
        "total_amount": result["total_amount"],
        "days_ahead": result["days_ahead"],
        "has_risk": result["has_risk"],
        "current_balance": result["current_balance"],
    }


@router.post("/{bill_id}/pay")
def pay(
    bill_id: int,
    body: Optional[PayRequest] = None,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    try:
        bill = get_bill(session, user.id, bill_id)
        guard = enforce_high_value_guard(
            session,
            user_id=user.id,
            action="bill_pay",
            amount=to_float(bill.amount),
            otp_code=body.otp_code if body else None,
        )
        if not guard.verified:
            session.commit()
            return {"success": False, **guard.to_dict()}
        result = mark_bill_paid(session, user.id, bill_id)
    except BillError as e:
        session.rollback()
        raise HTTPException(status_code=404, detail=str(e)) from e
    except OtpError as e:
        session.commit()
        raise HTTPException(status_code=403, detail=str(e)) from e
    session.commit()
    return {"success": True, "bill": serialize_bill(result["bill"]), "transaction_created": result["transaction_created"]}


@router.post("/{bill_id}/protect")
def protect(
    bill_id: int,
    body: Optional[ProtectRequest] = None,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    body = body or ProtectRequest()
    try:
        bill = protect_bill(session, user.id, bill_id, amount=body.amount, lock_days=body.lock_days)
    except BillError as e:
        session.rollback()
        raise HTTPException(status_code=404, detail=str(e)) from e
    session.commit()
    return {"success": True, "bill": serialize_bill(bill)}
