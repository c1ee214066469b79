from __future__ import annotations

import calendar
import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.core.ledger import EXPENSE, amount_of, total_balance
from src.db.models import Account, Bill, Transaction
from src.utils.money import to_float
from src.utils.time import UTC, ensure_utc, parse_datetime, utcnow


log = logging.getLogger(__name__)

DEFAULT_LOCK_DAYS = 10


class BillError(Exception):
    pass


def _clamped(year: int, month: int, day: int) -> dt.datetime:
    last = calendar.monthrange(year, month)[1]
    return dt.datetime(year, month, min(day, last), tzinfo=UTC)


def next_due_date(due_day: Optional[int], now: Optional[dt.datetime] = None) -> Optional[dt.datetime]:
    """
    Next occurrence of `due_day` strictly after today. Short months clamp to
    their last day.
    """
    if not due_day:
        return None
    now = ensure_utc(now or utcnow())
    this_month = _clamped(now.year, now.month, due_day)
    if this_month.date() > now.date():
        return this_month
    year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
    return _clamped(year, month, due_day)


def get_bill(session: Session, user_id: int, bill_id: int) -> Bill:
    bill = session.scalars(select(Bill).where(Bill.id == bill_id, Bill.user_id == user_id)).first()
    if bill is None:
        raise BillError("Bill not found")
    return bill


def default_account(session: Session, user_id: int) -> Optional[Account]:
    return session.scalars(
        select(Account).where(Account.user_id == user_id).order_by(Account.is_default.desc(), Account.id)
    ).first()


def record_expense(
    session: Session,
    *,
    user_id: int,
    account: Account,
    amount: float,
    description: str,
    category: Optional[str],
    now: Optional[dt.datetime] = None,
) -> Transaction:
    """Book a completed expense and debit the account."""
    now = ensure_utc(now or utcnow())
    txn = Transaction(
        user_id=user_id,
        account_id=account.id,
        type=EXPENSE,
        amount=amount,
        description=description,
        category=category,
        date=now,
        status="COMPLETED",
    )
    session.add(txn)
    account.balance = Decimal(str(account.balance or 0)) - Decimal(str(amount))
    session.flush()
    return txn


def create_bill(
    session: Session,
    *,
    user_id: int,
    name: str,
    amount: float,
    due_day: Optional[int],
    category: Optional[str] = None,
    auto_detected: bool = False,
    confidence: Optional[int] = None,
    now: Optional[dt.datetime] = None,
) -> Bill:
    bill = Bill(
        user_id=user_id,
        name=name,
        category=category,
        amount=amount,
        due_day=due_day,
        next_due_date=next_due_date(due_day, now),
        auto_detected=auto_detected,
        detection_confidence=confidence,
    )
    session.add(bill)
    session.flush()
    return bill


def ensure_bill_for_transaction(session: Session, txn: Transaction, *, now: Optional[dt.datetime] = None) -> Bill:
    """The bill tracked for a recurring expense, created from the transaction on first use."""
    name = txn.description or txn.category or "Recurring Bill"
    bill = session.scalars(
        select(Bill).where(Bill.user_id == txn.user_id, Bill.name == name, Bill.is_active.is_(True))
    ).first()
    if bill is not None:
        return bill
    due = parse_datetime(txn.next_recurring_date)
    bill = create_bill(
        session,
        user_id=txn.user_id,
        name=name,
        category=txn.category,
        amount=amount_of(txn),
        due_day=ensure_utc(due).day if due else None,
        auto_detected=True,
        now=now,
    )
    if due is not None:
        bill.next_due_date = ensure_utc(due)
    return bill


def get_user_bills(session: Session, user_id: int, *, include_inactive: bool = False) -> list[Bill]:
    q = select(Bill).where(Bill.user_id == user_id)
    if not include_inactive:
        q = q.where(Bill.is_active.is_(True))
    return list(session.scalars(q.order_by(Bill.next_due_date.asc(), Bill.id)))


def get_upcoming_bills(session: Session, user_id: int, days: int = 7, *, now: Optional[dt.datetime] = None) -> dict[str, Any]:
    now = ensure_utc(now or utcnow())
    bills = list(
        session.scalars(
            select(Bill)
            .where(
                Bill.user_id == user_id,
                Bill.is_active.is_(True),
                Bill.next_due_date >= now,
                Bill.next_due_date <= now + dt.timedelta(days=days),
            )
            .order_by(Bill.next_due_date.asc())
        )
    )
    total = sum(amount_of(b) for b in bills)
    balance = total_balance(session.scalars(select(Account).where(Account.user_id == user_id)))
    return {
        "bills": bills,
        "total_amount": total,
        "days_ahead": days,
        "has_risk": balance < total,
        "current_balance": balance,
    }


def check_bill_risk(session: Session, user_id: int, days: int = 7, *, now: Optional[dt.datetime] = None) -> dict[str, Any]:
    upcoming = get_upcoming_bills(session, user_id, days, now=now)
    has_risk = upcoming["has_risk"]
    return {
        "risk_level": "high" if has_risk else "low",
        "has_risk": has_risk,
        "shortfall": upcoming["total_amount"] - upcoming["current_balance"] if has_risk else 0.0,
        "total_due": upcoming["total_amount"],
        "current_balance": upcoming["current_balance"],
        "bills_count": len(upcoming["bills"]),
    }


def mark_bill_paid(session: Session, user_id: int, bill_id: int, *, now: Optional[dt.datetime] = None) -> dict[str, Any]:
    """Pay a bill from the default account, roll its due date forward and release any ring-fence."""
    now = ensure_utc(now or utcnow())
    bill = get_bill(session, user_id, bill_id)
    bill.is_paid = True
    bill.last_paid_date = now
    bill.next_due_date = next_due_date(bill.due_day, now)
    bill.is_protected = False
    bill.protected_amount = None
    bill.protected_until = None

    account = default_account(session, user_id)
    if account is not None:
        record_expense(
            session,
            user_id=user_id,
            account=account,
            amount=to_float(bill.amount),
            description=f"Bill payment: {bill.name}",
            category=bill.category,
            now=now,
        )
    session.flush()
    log.info("bill paid user=%s bill=%s transaction_created=%s", user_id, bill.id, account is not None)
    return {"bill": bill, "transaction_created": account is not None}


def protect_bill(
    session: Session,
    user_id: int,
    bill_id: int,
    *,
    amount: Optional[float] = None,
    lock_days: int = DEFAULT_LOCK_DAYS,
    now: Optional[dt.datetime] = None,
) -> Bill:
    """Ring-fence money for a bill until `lock_days` after it falls due."""
    now = ensure_utc(now or utcnow())
    bill = get_bill(session, user_id, bill_id)
    anchor = ensure_utc(bill.next_due_date) if bill.next_due_date else now
    bill.is_protected = True
    bill.protected_amount = amount if amount is not None else to_float(bill.amount)
    bill.protected_until = anchor + dt.timedelta(days=lock_days)
    session.flush()
    log.info("bill protected user=%s bill=%s amount=%s", user_id, bill.id, bill.protected_amount)
    return bill


def release_bill_protection(session: Session, user_id: int, bill_id: int) -> Bill:
    bill = get_bill(session, user_id, bill_id)
    bill.is_protected = False
    bill.protected_amount = None
    bill.protected_until = None
    session.flush()
    return bill
