from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from src.core.agent_watchdog import autopilot_locked
from src.core.field_crypto import FieldCryptoError, decrypt_field
from src.db.models import FinancialProfile, Goal, NudgeAction, Transaction
from src.rythmiq.bills.tracking import (
    BillError,
    default_account,
    ensure_bill_for_transaction,
    get_bill,
    mark_bill_paid,
    protect_bill,
    record_expense,
)
from src.rythmiq.nudges.behavior import adjust_profile_from_behavior
from src.rythmiq.nudges.engine import (
    AUTO_SAVE,
    BILL_GUARD,
    BILL_PAY,
    MICRO_SAVE,
    NudgeCandidate,
    calculate_nudge_impact,
    generate_nudges,
)
from src.utils.money import to_float
from src.utils.time import ensure_utc, utcnow


log = logging.getLogger(__name__)

HISTORY_LIMIT = 50


class NudgeError(Exception):
    pass


def _feedback_comment(n: NudgeAction) -> Optional[str]:
    try:
        return decrypt_field(n.feedback_comment)
    except FieldCryptoError as e:
        log.warning("Unreadable feedback comment on nudge %s: %s", n.id, e)
        return None


def serialize_nudge(n: NudgeAction) -> dict[str, Any]:
    return {
        "id": n.id,
        "type": n.nudge_type,
        "amount": to_float(n.amount) if n.amount is not None else None,
        "message": n.message,
        "reason": n.reason,
        "priority": n.priority,
        "status": n.status,
        "expires_at": n.expires_at.isoformat() if n.expires_at else None,
        "metadata": n.metadata_json or {},
        "impact": to_float(n.impact) if n.impact is not None else None,
        "created_at": n.created_at.isoformat() if n.created_at else None,
        "responded_at": n.responded_at.isoformat() if n.responded_at else None,
        "executed_at": n.executed_at.isoformat() if n.executed_at else None,
        "feedback": {
            "rating": n.feedback_rating,
            "comment": _feedback_comment(n),
            "was_helpful": n.was_helpful,
            "dismiss_reason": n.dismiss_reason,
        },
    }


def get_user_nudge(session: Session, user_id: int, nudge_id: int) -> NudgeAction:
    nudge = session.scalars(select(NudgeAction).where(NudgeAction.id == nudge_id, NudgeAction.user_id == user_id)).first()
    if nudge is None:
        raise NudgeError("Nudge not found")
    return nudge


# --- Execution ---


def _save_to_default_account(session: Session, nudge: NudgeAction, description: str, now: dt.datetime) -> Transaction:
    account = default_account(session, nudge.user_id)
    if account is None:
        raise NudgeError("No default account found")
    return record_expense(
        session,
        user_id=nudge.user_id,
        account=account,
        amount=to_float(nudge.amount),
        description=description,
        category="Savings",
        now=now,
    )


def _execute_auto_save(session: Session, nudge: NudgeAction, now: dt.datetime) -> None:
    _save_to_default_account(session, nudge, "Auto-Save (AI Suggested)", now)
    goal_id = (nudge.metadata_json or {}).get("goal_id")
    if goal_id:
        goal = session.scalars(select(Goal).where(Goal.id == goal_id, Goal.user_id == nudge.user_id)).first()
        if goal is None:
            log.warning("Auto-save goal %s not found for nudge %s", goal_id, nudge.id)
        else:
            goal.saved_amount = Decimal(str(goal.saved_amount or 0)) + Decimal(str(to_float(nudge.amount)))


def _execute_micro_save(session: Session, nudge: NudgeAction, now: dt.datetime) -> None:
    _save_to_default_account(session, nudge, "Micro-Save (AI Buffer)", now)


def _resolve_bill_id(session: Session, nudge: NudgeAction, now: dt.datetime) -> int:
    meta = nudge.metadata_json or {}
    if meta.get("bill_id"):
        return int(meta["bill_id"])
    txn_id = meta.get("transaction_id")
    if not txn_id:
        raise NudgeError("Bill ID not found")
    txn = session.scalars(select(Transaction).where(Transaction.id == txn_id, Transaction.user_id == nudge.user_id)).first()
    if txn is None:
        raise NudgeError("Bill not found")
    return ensure_bill_for_transaction(session, txn, now=now).id


def _execute_bill_pay(session: Session, nudge: NudgeAction, now: dt.datetime) -> None:
    bill_id = _resolve_bill_id(session, nudge, now)
    if default_account(session, nudge.user_id) is None:
        raise NudgeError("No default account")
    try:
        mark_bill_paid(session, nudge.user_id, bill_id, now=now)
    except BillError as e:
        raise NudgeError(str(e)) from e


def _execute_bill_guard(session: Session, nudge: NudgeAction, now: dt.datetime) -> None:
    bill_id = _resolve_bill_id(session, nudge, now)
    try:
        get_bill(session, nudge.user_id, bill_id)
        protect_bill(session, nudge.user_id, bill_id, amount=to_float(nudge.amount) if nudge.amount is not None else None, now=now)
    except BillError as e:
        raise NudgeError(str(e)) from e


EXECUTORS: dict[str, Callable[[Session, NudgeAction, dt.datetime], None]] = {
    AUTO_SAVE: _execute_auto_save,
    BILL_PAY: _execute_bill_pay,
    BILL_GUARD: _execute_bill_guard,
    MICRO_SAVE: _execute_micro_save,
}


# --- Lifecycle ---


def accept_nudge(session: Session, user_id: int, nudge_id: int, *, now: Optional[dt.datetime] = None) -> dict[str, Any]:
    """
    Execute a pending nudge. Money-moving types book their transaction or
    bill update; the rest are simply marked executed. Any execution failure
    raises :class:`NudgeError` and leaves the nudge pending.
    """
    now = ensure_utc(now or utcnow())
    nudge = get_user_nudge(session, user_id, nudge_id)
    if nudge.status != "pending":
        raise NudgeError("Nudge already processed")

    executor = EXECUTORS.get(nudge.nudge_type)
    if executor is not None:
        with session.begin_nested():
            executor(session, nudge, now)

    impact = calculate_nudge_impact(nudge.nudge_type, nudge.amount)
    nudge.status = "executed"
    nudge.responded_at = now
    nudge.executed_at = now
    nudge.impact = impact
    session.flush()
    log.info("nudge executed user=%s nudge=%s type=%s impact=%.2f", user_id, nudge.id, nudge.nudge_type, impact)

    adjust_profile_from_behavior(session, user_id, now=now)
    return {"nudge": nudge, "impact": impact}


def reject_nudge(session: Session, user_id: int, nudge_id: int, *, now: Optional[dt.datetime] = None) -> NudgeAction:
    now = ensure_utc(now or utcnow())
    nudge = get_user_nudge(session, user_id, nudge_id)
    if nudge.status != "pending":
        raise NudgeError("Nudge already processed")
    nudge.status = "rejected"
    nudge.responded_at = now
    session.flush()
    log.info("nudge rejected user=%s nudge=%s type=%s", user_id, nudge.id, nudge.nudge_type)
    adjust_profile_from_behavior(session, user_id, now=now)
    return nudge


def create_nudge(
    session: Session,
    user_id: int,
    candidate: NudgeCandidate,
    *,
    now: Optional[dt.datetime] = None,
) -> tuple[NudgeAction, bool]:
    """
    Persist a candidate and auto-accept it when the user's profile allows.

    A locked autopilot leaves the nudge pending. Returns (row, auto_accepted).
    """
    now = ensure_utc(now or utcnow())
    nudge = NudgeAction(
        user_id=user_id,
        nudge_type=candidate.type,
        amount=candidate.amount,
        message=candidate.message,
        reason=candidate.reason,
        priority=candidate.priority or 0,
        status="pending",
        expires_at=candidate.expires_at,
        metadata_json=candidate.metadata or {},
        created_at=now,
    )
    session.add(nudge)
    session.flush()

    profile = session.scalars(select(FinancialProfile).where(FinancialProfile.user_id == user_id)).first()
    if profile is not None and profile.auto_nudge_enabled:
        if autopilot_locked(session, user_id):
            log.warning("Autopilot locked; nudge %s left pending for user=%s", nudge.id, user_id)
            return nudge, False
        try:
            accept_nudge(session, user_id, nudge.id, now=now)
            return nudge, True
        except NudgeError as e:
            log.warning("Auto-accept failed for nudge %s: %s", nudge.id, e)
    return nudge, False


def generate_and_create_nudges(session: Session, user_id: int, *, now: Optional[dt.datetime] = None) -> list[NudgeAction]:
    now = ensure_utc(now or utcnow())
    created = []
    for candidate in generate_nudges(session, user_id, now=now):
        nudge, _auto = create_nudge(session, user_id, candidate, now=now)
        created.append(nudge)
    return created


def get_nudge_history(
    session: Session,
    user_id: int,
    *,
    limit: int = HISTORY_LIMIT,
    status: Optional[str] = None,
) -> list[NudgeAction]:
    q = select(NudgeAction).where(NudgeAction.user_id == user_id)
    if status:
        q = q.where(NudgeAction.status == status)
    return list(session.scalars(q.order_by(NudgeAction.created_at.desc(), NudgeAction.id.desc()).limit(limit)))


def get_nudge_metrics(session: Session, user_id: int) -> dict[str, Any]:
    rows = list(session.scalars(select(NudgeAction).where(NudgeAction.user_id == user_id)))
    total = len(rows)
    accepted = sum(1 for n in rows if n.status == "executed")
    return {
        "total": total,
        "accepted": accepted,
        "rejected": sum(1 for n in rows if n.status == "rejected"),
        "pending": sum(1 for n in rows if n.status == "pending"),
        "expired": sum(1 for n in rows if n.status == "expired"),
        "acceptance_rate": round(accepted / total * 100, 1) if total else 0.0,
        "total_impact": round(sum(to_float(n.impact) for n in rows if n.impact)),
    }


def expire_stale_nudges(session: Session, *, now: Optional[dt.datetime] = None, user_id: Optional[int] = None) -> int:
    """Mark pending nudges past their expiry as expired. Returns the number updated."""
    now = ensure_utc(now or utcnow())
    stmt = (
        update(NudgeAction)
        .where(
            NudgeAction.status == "pending",
            NudgeAction.expires_at.is_not(None),
            NudgeAction.expires_at < now,
        )
        .values(status="expired")
    )
    if user_id is not None:
        stmt = stmt.where(NudgeAction.user_id == user_id)
    res = session.execute(stmt.execution_options(synchronize_session=False))
    count = int(res.rowcount or 0)
    if count:
        log.info("expired %d stale nudges", count)
    return count
