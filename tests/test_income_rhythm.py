from __future__ import annotations

import datetime as dt
from types import SimpleNamespace

from src.core.income_rhythm import analyze_rhythm, bucket_hour, detect_cadence, update_rhythm_profile
from src.db.models import FinancialProfile, Transaction, User


UTC = dt.timezone.utc
NOW = dt.datetime(2025, 6, 20, 18, 0, tzinfo=UTC)  # a Friday


def _txn(kind, amount, when, category=None):
    return SimpleNamespace(type=kind, amount=amount, date=when, category=category)


def _fixture_rows():
    fridays = [dt.datetime(2025, 6, d, 10, 0, tzinfo=UTC) for d in (13, 6)] + [
        dt.datetime(2025, 5, d, 10, 0, tzinfo=UTC) for d in (30, 23)
    ]
    rows = [_txn("INCOME", 5000, d) for d in fridays]
    rows.append(_txn("EXPENSE", 2000, dt.datetime(2025, 6, 14, 22, 30, tzinfo=UTC), "Shopping"))
    rows.append(_txn("EXPENSE", 500, dt.datetime(2025, 6, 16, 12, 0, tzinfo=UTC), "Food"))
    return rows


def test_bucket_hour_edges():
    assert bucket_hour(0) == "dawn"
    assert bucket_hour(6) == "morning"
    assert bucket_hour(12) == "afternoon"
    assert bucket_hour(17) == "evening"
    assert bucket_hour(23) == "late-night"


def test_cadence():
    base = dt.datetime(2025, 1, 1, tzinfo=UTC)
    assert detect_cadence([base]) == "irregular"
    assert detect_cadence([base, base + dt.timedelta(days=7)]) == "weekly"
    assert detect_cadence([base, base + dt.timedelta(days=14)]) == "bi-weekly"
    assert detect_cadence([base, base + dt.timedelta(days=30)]) == "monthly"
    assert detect_cadence([base, base + dt.timedelta(days=60)]) == "irregular"


def test_analyze_rhythm():
    r = analyze_rhythm(_fixture_rows(), now=NOW)
    assert r.income_rhythm.payday == "Friday"
    assert r.income_rhythm.reliability == 100.0
    assert r.income_rhythm.hour_slot == "morning"
    assert r.income_rhythm.cadence == "weekly"
    assert r.optimal_hour == 9

    s = r.spend_rhythm
    assert s.weekend_share == 80.0
    assert s.late_night_share == 80.0
    assert [(d.weekday, d.overspend) for d in s.high_risk_days] == [("Saturday", 60.0)]
    assert [(c.category, c.share) for c in s.top_categories] == [("Shopping", 80.0), ("Food", 20.0)]
    assert s.peak_hour_slot == "late-night"


def test_nothing_in_window():
    old = [_txn("INCOME", 100, NOW - dt.timedelta(days=200))]
    assert analyze_rhythm(old, now=NOW) is None
    assert analyze_rhythm([], now=NOW) is None


def test_update_rhythm_profile_persists(session):
    user = User(external_id="u1")
    session.add(user)
    session.flush()
    for r in _fixture_rows():
        session.add(Transaction(user_id=user.id, type=r.type, amount=r.amount, date=r.date, category=r.category))
    session.flush()

    update_rhythm_profile(session, user.id, now=NOW)
    session.flush()
    profile = session.query(FinancialProfile).filter(FinancialProfile.user_id == user.id).one()
    assert profile.income_rhythm_json["payday"] == "Friday"
    assert profile.spend_rhythm_json["peak_hour_slot"] == "late-night"
    assert profile.optimal_nudge_hour == 9
    assert profile.last_personalization_update is not None
