from __future__ import annotations

import datetime as dt
import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.db.audit import log_security_event
from src.db.models import OtpChallenge
from src.rythmiq.config import OtpConfig, get_config
from src.utils.money import to_float
from src.utils.time import ensure_utc, utcnow


log = logging.getLogger(__name__)


class OtpError(Exception):
    pass


@dataclass
class GuardResult:
    verified: bool
    requires_otp: bool = False
    expires_at: Optional[dt.datetime] = None
    dev_otp: Optional[str] = None

    def to_dict(self) -> dict:
        out: dict = {"verified": self.verified, "requires_otp": self.requires_otp}
        if self.expires_at is not None:
            out["expires_at"] = self.expires_at.isoformat()
        if self.dev_otp is not None:
            out["dev_otp"] = self.dev_otp
        return out


def hash_otp(code: str) -> str:
    return hashlib.sha256(str(code).strip().encode("utf-8")).hexdigest()


def generate_otp() -> str:
    return str(100000 + secrets.randbelow(900000))


def otp_required(amount: float, cfg: OtpConfig) -> bool:
    return cfg.enforce and amount >= cfg.threshold


def create_otp_challenge(
    session: Session,
    *,
    user_id: int,
    action: str,
    amount: float,
    cfg: OtpConfig,
    now: Optional[dt.datetime] = None,
) -> GuardResult:
    now = ensure_utc(now or utcnow())
    code = generate_otp()
    expires_at = now + dt.timedelta(minutes=cfg.expiry_minutes)
    session.add(
        OtpChallenge(
            user_id=user_id,
            action=action,
            amount=amount,
            otp_hash=hash_otp(code),
            expires_at=expires_at,
            created_at=now,
        )
    )
    session.flush()
    log.info("otp challenge issued user=%s action=%s expires_at=%s", user_id, action, expires_at.isoformat())
    return GuardResult(
        verified=False,
        requires_otp=True,
        expires_at=expires_at,
        dev_otp=code if cfg.expose_codes else None,
    )


def verify_otp_challenge(
    session: Session,
    *,
    user_id: int,
    otp_code: str,
    action: Optional[str] = None,
    amount: Optional[float] = None,
    cfg: Optional[OtpConfig] = None,
    now: Optional[dt.datetime] = None,
) -> OtpChallenge:
    """
    Check `otp_code` against the user's newest challenge for `action`.

    A used or expired challenge is deleted, as is one that has run out of attempts.
    A challenge only covers the amount it was issued for.
    """
    cfg = cfg or get_config().otp
    now = ensure_utc(now or utcnow())
    q = select(OtpChallenge).where(OtpChallenge.user_id == user_id)
    if action is not None:
        q = q.where(OtpChallenge.action == action)
    challenge = session.scalars(q.order_by(OtpChallenge.created_at.desc(), OtpChallenge.id.desc()).limit(1)).first()
    if challenge is None:
        raise OtpError("No OTP challenge found")
    if ensure_utc(challenge.expires_at) < now:
        session.delete(challenge)
        session.flush()
        raise OtpError("OTP expired")
    if amount is not None and round(to_float(challenge.amount), 2) != round(amount, 2):
        raise OtpError("OTP was issued for a different amount")
    if not secrets.compare_digest(challenge.otp_hash, hash_otp(otp_code)):
        challenge.attempts = (challenge.attempts or 0) + 1
        if challenge.attempts >= cfg.max_attempts:
            log.warning("otp challenge exhausted user=%s action=%s", user_id, challenge.action)
            session.delete(challenge)
            session.flush()
            raise OtpError("Too many invalid attempts")
        session.flush()
        raise OtpError("Invalid OTP")
    session.delete(challenge)
    session.flush()
    return challenge


def enforce_high_value_guard(
    session: Session,
    *,
    user_id: int,
    action: str,
    amount: object = 0,
    otp_code: Optional[str] = None,
    cfg: Optional[OtpConfig] = None,
    now: Optional[dt.datetime] = None,
) -> GuardResult:
    """
    Gate a money-moving action behind a one-time code.

    Below the threshold (or with enforcement off) the action passes and is
    audited. Otherwise a first call issues a challenge and a second call with
    the code verifies it. Verification failures raise :class:`OtpError`.
    """
    cfg = cfg or get_config().otp
    value = to_float(amount)

    if not otp_required(value, cfg):
        log_security_event(session, user_id=user_id, action=action, amount=value, otp_verified=True)
        return GuardResult(verified=True)

    if not otp_code:
        return create_otp_challenge(session, user_id=user_id, action=action, amount=value, cfg=cfg, now=now)

    verify_otp_challenge(session, user_id=user_id, otp_code=otp_code, action=action, amount=value, cfg=cfg, now=now)
    log_security_event(session, user_id=user_id, action=action, amount=value, otp_verified=True)
    return GuardResult(verified=True)
