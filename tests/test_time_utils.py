from __future__ import annotations

import datetime as dt

from conftest import make_user
from src.db.models import NudgeAction, Transaction
from src.utils.money import format_inr, round_half_up, to_float
from src.utils.time import UTC, days_between, ensure_utc, parse_datetime


IST = dt.timezone(dt.timedelta(hours=5, minutes=30))


def test_timestamps_come_back_as_utc(session):
    user = make_user(session)
    local = dt.datetime(2026, 6, 11, 9, 30, tzinfo=IST)
    session.add(Transaction(user_id=user.id, type="EXPENSE", amount=10, date=local))
    session.add(NudgeAction(user_id=user.id, nudge_type="auto-save", message="m", metadata_json={}))
    session.commit()
    session.expire_all()

    txn = session.query(Transaction).one()
    assert txn.date.tzinfo == UTC
    assert txn.date == dt.datetime(2026, 6, 11, 4, 0, tzinfo=UTC)

    nudge = session.query(NudgeAction).one()
    assert nudge.created_at.tzinfo == UTC


def test_parse_datetime():
    assert parse_datetime("2026-06-11T04:00:00Z") == dt.datetime(2026, 6, 11, 4, 0, tzinfo=UTC)
    assert parse_datetime(dt.date(2026, 6, 11)) == dt.datetime(2026, 6, 11, tzinfo=UTC)
    assert parse_datetime("  ") is None
    assert parse_datetime("not a date") is None
    assert parse_datetime(42) is None


def test_days_between_treats_naive_as_utc():
    later = dt.datetime(2026, 6, 11, 12, 0)
    earlier = dt.datetime(2026, 6, 10, 0, 0, tzinfo=UTC)
    assert days_between(later, earlier) == 1.5
    assert days_between(earlier, later) == -1.5
    assert ensure_utc(dt.datetime(2026, 6, 11, 9, 30, tzinfo=IST)).hour == 4


def test_money_helpers():
    assert to_float("₹1,234.50") == 1234.5
    assert to_float(None) == 0.0
    assert to_float("abc") == 0.0
    assert format_inr(1234.5) == "₹1235"
    assert format_inr(-99.999, digits=2) == "-₹100.00"
    assert format_inr(None) == "—"
    assert round_half_up(2.5) == 3
    assert round_half_up(-2.5) == -2
