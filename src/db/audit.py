from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from src.db.models import SecurityAuditLog
from src.utils.time import utcnow


log = logging.getLogger(__name__)


def log_security_event(
    session: Session,
    *,
    user_id: Optional[int],
    action: str,
    actor_type: str = "user",
    amount: Optional[float] = None,
    context: Optional[dict[str, Any]] = None,
    otp_verified: bool = False,
) -> SecurityAuditLog:
    row = SecurityAuditLog(
        at=utcnow(),
        user_id=user_id,
        actor_type=actor_type,
        action=action,
        amount=amount,
        context_json=context,
        otp_verified=otp_verified,
    )
    session.add(row)
    log.info("security event action=%s actor=%s user=%s otp_verified=%s", action, actor_type, user_id, otp_verified)
    return row
