from __future__ import annotations

import datetime as dt

from conftest import make_user, utc
from src.core.risk_engine import build_drivers, generate_risk_snapshot, get_latest_risk_snapshot
from src.core.types import EmiRisk, ShortForecast
from src.db.models import Bill


NOW = utc(2026, 6, 11, 9, 0)


def _forecast(score, trend="stable"):
    return ShortForecast(predictions=[], risk_score=score, trend=trend, confidence=50)


def test_drivers_cover_every_signal():
    emi = EmiRisk(at_risk=True, shortfall=800, total_emi=5000, min_predicted=4200, upcoming_emis=2)
    drivers = build_drivers(_forecast(75, "declining"), 1500, emi, 1)
    assert [d.type for d in drivers] == ["trend", "buffer", "emi", "bills", "balance"]
    assert drivers[2].message == "2 EMI(s) at risk this week"


def test_quiet_finances_have_no_drivers():
    assert build_drivers(_forecast(10), 50000, None, 0) == []


def test_snapshot_needs_an_account(session):
    user = make_user(session)
    assert generate_risk_snapshot(session, user.id, now=NOW) is None


def test_snapshot_is_persisted_with_drivers(session):
    user = make_user(session, balance=1500)
    session.add(Bill(user_id=user.id, name="Rent", amount=900, due_day=13, next_due_date=NOW + dt.timedelta(days=2)))
    session.add(Bill(user_id=user.id, name="Later", amount=900, due_day=1, next_due_date=NOW + dt.timedelta(days=20)))
    session.flush()

    snap = generate_risk_snapshot(session, user.id, now=NOW)
    assert snap.risk_score == 10
    assert snap.risk_level == "Safe"
    assert [d["type"] for d in snap.drivers_json] == ["bills", "balance"]
    assert snap.metrics_json["total_balance"] == 1500
    assert snap.metrics_json["bill_count"] == 1
    assert snap.metrics_json["emi_risk"] is None
    assert len(snap.forecast_json["predictions"]) == 7

    later = generate_risk_snapshot(session, user.id, now=NOW + dt.timedelta(hours=1))
    assert get_latest_risk_snapshot(session, user.id).id == later.id
