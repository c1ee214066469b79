from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy import select

from conftest import make_user, utc
from src.core.action_guard import OtpError, enforce_high_value_guard, hash_otp, otp_required
from src.db.models import OtpChallenge, SecurityAuditLog
from src.rythmiq.config import OtpConfig


NOW = utc(2025, 6, 20, 12, 0)
CFG = OtpConfig(enforce=True, threshold=500, expiry_minutes=5, expose_codes=True)


def _audit(session):
    session.flush()
    return list(session.scalars(select(SecurityAuditLog).order_by(SecurityAuditLog.id)))


def test_otp_required_respects_enforcement():
    assert otp_required(500, CFG)
    assert not otp_required(499.99, CFG)
    assert not otp_required(10_000, OtpConfig(enforce=False))


def test_below_threshold_passes_and_is_audited(session):
    user = make_user(session)
    res = enforce_high_value_guard(session, user_id=user.id, action="auto_save", amount=120, cfg=CFG, now=NOW)
    assert res.verified
    assert not res.requires_otp
    logs = _audit(session)
    assert [(l.action, l.otp_verified) for l in logs] == [("auto_save", True)]


def test_challenge_then_verify(session):
    user = make_user(session)
    first = enforce_high_value_guard(session, user_id=user.id, action="bill_pay", amount=1500, cfg=CFG, now=NOW)
    assert not first.verified
    assert first.requires_otp
    assert first.expires_at == NOW + dt.timedelta(minutes=5)
    assert first.dev_otp and len(first.dev_otp) == 6
    assert first.to_dict()["dev_otp"] == first.dev_otp

    row = session.scalars(select(OtpChallenge)).one()
    assert row.otp_hash == hash_otp(first.dev_otp)
    assert _audit(session) == []

    second = enforce_high_value_guard(
        session,
        user_id=user.id,
        action="bill_pay",
        amount=1500,
        otp_code=first.dev_otp,
        cfg=CFG,
        now=NOW + dt.timedelta(minutes=1),
    )
    assert second.verified
    assert session.scalars(select(OtpChallenge)).first() is None
    assert [(l.action, float(l.amount), l.otp_verified) for l in _audit(session)] == [("bill_pay", 1500.0, True)]


def test_codes_hidden_unless_exposed(session):
    user = make_user(session)
    res = enforce_high_value_guard(
        session,
        user_id=user.id,
        action="bill_pay",
        amount=900,
        cfg=OtpConfig(enforce=True, threshold=500, expose_codes=False),
        now=NOW,
    )
    assert res.requires_otp
    assert res.dev_otp is None
    assert "dev_otp" not in res.to_dict()


def test_wrong_code_keeps_challenge(session):
    user = make_user(session)
    first = enforce_high_value_guard(session, user_id=user.id, action="bill_pay", amount=900, cfg=CFG, now=NOW)
    wrong = "000000" if first.dev_otp != "000000" else "111111"
    with pytest.raises(OtpError, match="Invalid OTP"):
        enforce_high_value_guard(session, user_id=user.id, action="bill_pay", amount=900, otp_code=wrong, cfg=CFG, now=NOW)
    assert session.scalars(select(OtpChallenge)).first() is not None


def test_expired_code_is_rejected_and_removed(session):
    user = make_user(session)
    first = enforce_high_value_guard(session, user_id=user.id, action="bill_pay", amount=900, cfg=CFG, now=NOW)
    with pytest.raises(OtpError, match="expired"):
        enforce_high_value_guard(
            session,
            user_id=user.id,
            action="bill_pay",
            amount=900,
            otp_code=first.dev_otp,
            cfg=CFG,
            now=NOW + dt.timedelta(minutes=6),
        )
    assert session.scalars(select(OtpChallenge)).first() is None


def test_code_without_challenge(session):
    user = make_user(session)
    with pytest.raises(OtpError, match="No OTP challenge"):
        enforce_high_value_guard(session, user_id=user.id, action="bill_pay", amount=900, otp_code="123456", cfg=CFG, now=NOW)


def test_challenge_is_dropped_after_too_many_wrong_codes(session):
    cfg = CFG.model_copy(update={"max_attempts": 3})
    user = make_user(session)
    first = enforce_high_value_guard(session, user_id=user.id, action="bill_pay", amount=900, cfg=cfg, now=NOW)
    wrong = "000000" if first.dev_otp != "000000" else "111111"

    for _ in range(2):
        with pytest.raises(OtpError, match="Invalid OTP"):
            enforce_high_value_guard(session, user_id=user.id, action="bill_pay", amount=900, otp_code=wrong, cfg=cfg, now=NOW)
    assert session.scalars(select(OtpChallenge)).one().attempts == 2

    with pytest.raises(OtpError, match="Too many invalid attempts"):
        enforce_high_value_guard(session, user_id=user.id, action="bill_pay", amount=900, otp_code=wrong, cfg=cfg, now=NOW)
    assert session.scalars(select(OtpChallenge)).first() is None
    # the right code is useless once the challenge is gone
    with pytest.raises(OtpError, match="No OTP challenge"):
        enforce_high_value_guard(
            session, user_id=user.id, action="bill_pay", amount=900, otp_code=first.dev_otp, cfg=cfg, now=NOW
        )


def test_code_only_covers_its_action_and_amount(session):
    user = make_user(session)
    first = enforce_high_value_guard(session, user_id=user.id, action="bill_pay", amount=900, cfg=CFG, now=NOW)

    with pytest.raises(OtpError, match="No OTP challenge"):
        enforce_high_value_guard(
            session, user_id=user.id, action="transfer", amount=900, otp_code=first.dev_otp, cfg=CFG, now=NOW
        )
    with pytest.raises(OtpError, match="different amount"):
        enforce_high_value_guard(
            session, user_id=user.id, action="bill_pay", amount=5000, otp_code=first.dev_otp, cfg=CFG, now=NOW
        )
    res = enforce_high_value_guard(
        session, user_id=user.id, action="bill_pay", amount=900, otp_code=first.dev_otp, cfg=CFG, now=NOW
    )
    assert res.verified
