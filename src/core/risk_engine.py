from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.core.predictions import check_emi_at_risk, get_7_day_forecast, map_risk_to_meter
from src.core.ledger import total_balance
from src.core.types import EmiRisk, RiskDriver, ShortForecast
from src.db.models import Account, Bill, Budget, RiskSnapshot, Transaction
from src.utils.time import ensure_utc, utcnow


log = logging.getLogger(__name__)

TRANSACTION_LOOKBACK = 120
LOW_BALANCE = 2000.0


def build_drivers(
    forecast: ShortForecast,
    balance: float,
    emi_risk: Optional[EmiRisk],
    bill_count: int,
) -> list[RiskDriver]:
    drivers: list[RiskDriver] = []
    if forecast.trend == "declining":
        drivers.append(RiskDriver(type="trend", message="Spending trending higher than inflow"))
    if forecast.risk_score >= 70:
        drivers.append(RiskDriver(type="buffer", message="Buffer may fall below ₹1,000"))
    if emi_risk is not None and emi_risk.at_risk:
        drivers.append(RiskDriver(type="emi", message=f"{emi_risk.upcoming_emis} EMI(s) at risk this week"))
    if bill_count > 0:
        drivers.append(RiskDriver(type="bills", message=f"{bill_count} protected bills in next 7 days"))
    if balance < LOW_BALANCE:
        drivers.append(RiskDriver(type="balance", message="Cash reserve under ₹2,000"))
    return drivers


def load_user_finances(
    session: Session, user_id: int, *, limit: int = TRANSACTION_LOOKBACK
) -> tuple[list[Account], list[Transaction]]:
    accounts = list(session.scalars(select(Account).where(Account.user_id == user_id)))
    transactions = list(
        session.scalars(
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.date.desc())
            .limit(limit)
        )
    )
    return accounts, transactions


def load_budget(session: Session, user_id: int) -> Optional[Budget]:
    return session.scalars(select(Budget).where(Budget.user_id == user_id)).first()


def bills_due_within(session: Session, user_id: int, now: dt.datetime, days: int = 7) -> Sequence[Bill]:
    horizon = now + dt.timedelta(days=days)
    return list(
        session.scalars(
            select(Bill).where(
                Bill.user_id == user_id,
                Bill.is_active.is_(True),
                Bill.next_due_date.is_not(None),
                Bill.next_due_date <= horizon,
            )
        )
    )


def generate_risk_snapshot(session: Session, user_id: int, *, now: Optional[dt.datetime] = None) -> Optional[RiskSnapshot]:
    """Score the next seven days and persist the result. None when the user has no accounts."""
    now = ensure_utc(now or utcnow())
    accounts, transactions = load_user_finances(session, user_id)
    if not accounts:
        return None

    balance = total_balance(accounts)
    forecast = get_7_day_forecast(transactions, accounts, now=now)
    level = map_risk_to_meter(forecast.risk_score)
    emi_risk = check_emi_at_risk(transactions, accounts, 7, now=now) if transactions else None
    bill_count = len(bills_due_within(session, user_id, now))

    drivers = build_drivers(forecast, balance, emi_risk, bill_count)
    snapshot = RiskSnapshot(
        user_id=user_id,
        risk_score=forecast.risk_score,
        risk_level=level,
        drivers_json=[d.model_dump() for d in drivers],
        forecast_json=forecast.model_dump(),
        metrics_json={
            "total_balance": balance,
            "emi_risk": emi_risk.model_dump() if emi_risk else None,
            "bill_count": bill_count,
        },
        created_at=now,
    )
    session.add(snapshot)
    session.flush()
    log.info("risk snapshot user=%s score=%s level=%s drivers=%d", user_id, forecast.risk_score, level, len(drivers))
    return snapshot


def get_latest_risk_snapshot(session: Session, user_id: int) -> Optional[RiskSnapshot]:
    return session.scalars(
        select(RiskSnapshot)
        .where(RiskSnapshot.user_id == user_id)
        .order_by(RiskSnapshot.created_at.desc(), RiskSnapshot.id.desc())
        .limit(1)
    ).first()
