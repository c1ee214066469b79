from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy import select

from conftest import make_user, utc
from src.core.agent_watchdog import evaluate_agent_output, reset_autopilot
from src.db.models import Account, Bill, FinancialProfile, Goal, NudgeAction, Transaction
from src.rythmiq.nudges.actions import (
    NudgeError,
    accept_nudge,
    create_nudge,
    expire_stale_nudges,
    generate_and_create_nudges,
    get_nudge_history,
    get_nudge_metrics,
    reject_nudge,
    serialize_nudge,
)
from src.rythmiq.nudges.engine import AUTO_SAVE, BILL_GUARD, BILL_PAY, MICRO_SAVE, SPENDING_ALERT, NudgeCandidate


NOW = utc(2026, 6, 11, 9, 0)


def _cand(kind, amount=None, *, priority=5, metadata=None, expires_at=None):
    return NudgeCandidate(
        type=kind,
        amount=amount,
        message=f"{kind} please",
        reason="because",
        priority=priority,
        expires_at=expires_at or NOW + dt.timedelta(days=1),
        metadata=metadata or {},
    )


def _account(session, user):
    return session.scalars(select(Account).where(Account.user_id == user.id)).one()


def _netflix(session, user):
    txn = Transaction(
        user_id=user.id,
        type="EXPENSE",
        amount=649,
        description="Netflix",
        category="Entertainment",
        date=NOW - dt.timedelta(days=27),
        is_recurring=True,
        recurring_interval="MONTHLY",
        next_recurring_date=NOW + dt.timedelta(days=3),
    )
    session.add(txn)
    session.flush()
    return txn


def test_accept_auto_save_debits_account_and_funds_goal(session):
    user = make_user(session, balance=50000)
    goal = Goal(user_id=user.id, name="Laptop", target_amount=100000, saved_amount=0)
    session.add(goal)
    session.flush()

    nudge, auto = create_nudge(session, user.id, _cand(AUTO_SAVE, 2000, metadata={"goal_id": goal.id}), now=NOW)
    assert not auto
    assert nudge.status == "pending"

    out = accept_nudge(session, user.id, nudge.id, now=NOW)
    assert out["impact"] == 2000
    assert nudge.status == "executed"
    assert nudge.responded_at == NOW
    assert nudge.executed_at == NOW
    assert float(_account(session, user).balance) == 48000
    assert float(goal.saved_amount) == 2000

    session.flush()
    saved = session.scalars(select(Transaction).where(Transaction.user_id == user.id)).one()
    assert saved.category == "Savings"
    assert saved.description == "Auto-Save (AI Suggested)"

    profile = session.scalars(select(FinancialProfile).where(FinancialProfile.user_id == user.id)).one()
    assert profile.risk_tolerance == "HIGH"
    assert profile.auto_nudge_enabled is True


def test_accept_bill_pay_creates_bill_from_transaction(session):
    user = make_user(session, balance=50000)
    txn = _netflix(session, user)
    nudge, _ = create_nudge(session, user.id, _cand(BILL_PAY, 649, metadata={"transaction_id": txn.id}), now=NOW)

    out = accept_nudge(session, user.id, nudge.id, now=NOW)
    assert out["impact"] == 50.0
    session.flush()

    bill = session.scalars(select(Bill).where(Bill.user_id == user.id)).one()
    assert bill.name == "Netflix"
    assert bill.auto_detected
    assert bill.is_paid
    assert bill.last_paid_date == NOW
    assert float(_account(session, user).balance) == 50000 - 649
    payments = session.scalars(select(Transaction).where(Transaction.description == "Bill payment: Netflix")).all()
    assert len(payments) == 1


def test_accept_bill_guard_ring_fences_amount(session):
    user = make_user(session, balance=50000)
    txn = _netflix(session, user)
    nudge, _ = create_nudge(session, user.id, _cand(BILL_GUARD, 649, metadata={"transaction_id": txn.id}), now=NOW)

    accept_nudge(session, user.id, nudge.id, now=NOW)
    session.flush()

    bill = session.scalars(select(Bill).where(Bill.user_id == user.id)).one()
    assert bill.is_protected
    assert float(bill.protected_amount) == 649
    assert bill.protected_until == NOW + dt.timedelta(days=13)
    # guarding moves no money
    assert float(_account(session, user).balance) == 50000


def test_failed_execution_leaves_nudge_pending(session):
    user = make_user(session)
    nudge, _ = create_nudge(session, user.id, _cand(AUTO_SAVE, 500), now=NOW)
    with pytest.raises(NudgeError, match="No default account"):
        accept_nudge(session, user.id, nudge.id, now=NOW)
    assert nudge.status == "pending"

    missing, _ = create_nudge(session, user.id, _cand(BILL_PAY, 100), now=NOW)
    with pytest.raises(NudgeError, match="Bill ID not found"):
        accept_nudge(session, user.id, missing.id, now=NOW)


def test_informational_nudge_is_just_marked_executed(session):
    user = make_user(session)
    nudge, _ = create_nudge(session, user.id, _cand(SPENDING_ALERT, 1800, metadata={"category": "Food"}), now=NOW)
    out = accept_nudge(session, user.id, nudge.id, now=NOW)
    assert out["impact"] == pytest.approx(180.0)
    assert nudge.status == "executed"


def test_processed_nudges_cannot_change(session):
    user = make_user(session, balance=1000)
    a, _ = create_nudge(session, user.id, _cand(SPENDING_ALERT, 100), now=NOW)
    b, _ = create_nudge(session, user.id, _cand(SPENDING_ALERT, 100), now=NOW)
    accept_nudge(session, user.id, a.id, now=NOW)
    reject_nudge(session, user.id, b.id, now=NOW)
    assert b.status == "rejected"
    assert b.responded_at == NOW

    with pytest.raises(NudgeError, match="already processed"):
        accept_nudge(session, user.id, a.id, now=NOW)
    with pytest.raises(NudgeError, match="already processed"):
        reject_nudge(session, user.id, b.id, now=NOW)


def test_other_users_nudge_is_not_found(session):
    owner = make_user(session, "owner")
    other = make_user(session, "other")
    nudge, _ = create_nudge(session, owner.id, _cand(SPENDING_ALERT, 100), now=NOW)
    with pytest.raises(NudgeError, match="not found"):
        accept_nudge(session, other.id, nudge.id, now=NOW)


def test_create_auto_accepts_when_profile_allows(session):
    user = make_user(session, balance=5000)
    session.add(FinancialProfile(user_id=user.id, auto_nudge_enabled=True))
    session.flush()

    nudge, auto = create_nudge(session, user.id, _cand(MICRO_SAVE, 100), now=NOW)
    assert auto
    assert nudge.status == "executed"
    assert float(_account(session, user).balance) == 4900


def test_locked_autopilot_blocks_auto_accept(session):
    user = make_user(session, balance=10000)
    profile = FinancialProfile(user_id=user.id, auto_nudge_enabled=True)
    session.add(profile)
    session.flush()
    verdict = evaluate_agent_output(session, user_id=user.id, summary="transfer all funds now", cost=5)
    assert verdict.locked

    nudge, auto = create_nudge(session, user.id, _cand(AUTO_SAVE, 1500), now=NOW)
    assert not auto
    assert nudge.status == "pending"
    assert float(_account(session, user).balance) == 10000

    # a manual accept still works but does not switch automation back on
    accept_nudge(session, user.id, nudge.id, now=NOW)
    assert float(_account(session, user).balance) == 8500
    assert profile.auto_nudge_enabled is False

    reset_autopilot(session, user.id)
    accept_nudge(session, user.id, create_nudge(session, user.id, _cand(MICRO_SAVE, 100), now=NOW)[0].id, now=NOW)
    assert profile.auto_nudge_enabled is True



def test_auto_accept_failure_keeps_nudge_pending(session):
    user = make_user(session)
    session.add(FinancialProfile(user_id=user.id, auto_nudge_enabled=True))
    session.flush()

    nudge, auto = create_nudge(session, user.id, _cand(MICRO_SAVE, 100), now=NOW)
    assert not auto
    assert nudge.status == "pending"


def test_metrics_and_history(session):
    user = make_user(session, balance=50000)
    saved, _ = create_nudge(session, user.id, _cand(AUTO_SAVE, 2000), now=NOW)
    dropped, _ = create_nudge(session, user.id, _cand(SPENDING_ALERT, 100), now=NOW + dt.timedelta(minutes=1))
    create_nudge(session, user.id, _cand(SPENDING_ALERT, 100), now=NOW + dt.timedelta(minutes=2))
    accept_nudge(session, user.id, saved.id, now=NOW)
    reject_nudge(session, user.id, dropped.id, now=NOW)
    session.flush()

    m = get_nudge_metrics(session, user.id)
    assert m == {
        "total": 3,
        "accepted": 1,
        "rejected": 1,
        "pending": 1,
        "expired": 0,
        "acceptance_rate": 33.3,
        "total_impact": 2000,
    }

    history = get_nudge_history(session, user.id)
    assert [n.status for n in history] == ["pending", "rejected", "executed"]
    assert [n.id for n in get_nudge_history(session, user.id, status="rejected")] == [dropped.id]
    assert len(get_nudge_history(session, user.id, limit=1)) == 1


def test_expire_stale_nudges(session):
    user = make_user(session)
    stale, _ = create_nudge(session, user.id, _cand(SPENDING_ALERT, 1, expires_at=NOW - dt.timedelta(hours=1)), now=NOW)
    fresh, _ = create_nudge(session, user.id, _cand(SPENDING_ALERT, 1, expires_at=NOW + dt.timedelta(hours=1)), now=NOW)

    assert expire_stale_nudges(session, now=NOW) == 1
    session.expire_all()
    assert session.get(NudgeAction, stale.id).status == "expired"
    assert session.get(NudgeAction, fresh.id).status == "pending"
    assert expire_stale_nudges(session, now=NOW) == 0


def test_generate_and_create_persists_candidates(session):
    user = make_user(session, balance=500)
    created = generate_and_create_nudges(session, user.id, now=NOW)
    assert len(created) == 1
    row = serialize_nudge(created[0])
    assert row["type"] == "emergency-buffer"
    assert row["status"] == "pending"
    assert row["metadata"]["risk_context"]["risk_level"] == "Safe"
    assert row["feedback"] == {"rating": None, "comment": None, "was_helpful": None, "dismiss_reason": None}
