from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.orm import Session

from src.db.models import AgentSafetyState
from src.utils.time import utcnow


log = logging.getLogger(__name__)

ANOMALY_THRESHOLD = 0.8
TOKEN_SPIKE = 2000
SUSPICIOUS_PHRASE = "transfer all funds"


@dataclass
class WatchdogVerdict:
    anomalies: list[str] = field(default_factory=list)
    risk_score: float = 0.0
    locked: bool = False


def score_agent_output(summary: Optional[str], cost: Optional[float] = None, tokens: Optional[int] = None) -> WatchdogVerdict:
    anomalies: list[str] = []
    if SUSPICIOUS_PHRASE in (summary or ""):
        anomalies.append("suspicious-transfer-language")
    if tokens and tokens > TOKEN_SPIKE:
        anomalies.append("token-spike")
    risk = min(1.0, len(anomalies) * 0.4 + (cost or 0) / 10)
    return WatchdogVerdict(anomalies=anomalies, risk_score=risk, locked=risk >= ANOMALY_THRESHOLD)


def _state_for(session: Session, user_id: int) -> AgentSafetyState:
    state = session.query(AgentSafetyState).filter(AgentSafetyState.user_id == user_id).one_or_none()
    if state is None:
        state = AgentSafetyState(user_id=user_id, autopilot_locked=False)
        session.add(state)
    return state


def evaluate_agent_output(
    session: Session,
    *,
    user_id: int,
    summary: Optional[str],
    cost: Optional[float] = None,
    tokens: Optional[int] = None,
) -> WatchdogVerdict:
    """Score an agent's output and lock autopilot for the user when the score crosses the threshold."""
    verdict = score_agent_output(summary, cost, tokens)
    if verdict.locked:
        state = _state_for(session, user_id)
        state.autopilot_locked = True
        state.locked_at = utcnow()
        state.reason = ",".join(verdict.anomalies)
        state.last_anomaly_json = {
            "anomalies": verdict.anomalies,
            "summary": summary,
            "cost": cost,
            "tokens": tokens,
        }
        session.flush()
        log.warning("autopilot locked user=%s anomalies=%s risk=%.2f", user_id, state.reason, verdict.risk_score)
    return verdict


def reset_autopilot(session: Session, user_id: int, context: Optional[dict[str, Any]] = None) -> AgentSafetyState:
    state = _state_for(session, user_id)
    state.autopilot_locked = False
    state.locked_at = None
    state.reason = None
    state.last_anomaly_json = context or {}
    session.flush()
    log.info("autopilot reset user=%s", user_id)
    return state


def get_safety_state(session: Session, user_id: int) -> Optional[AgentSafetyState]:
    return session.query(AgentSafetyState).filter(AgentSafetyState.user_id == user_id).one_or_none()


def autopilot_locked(session: Session, user_id: int) -> bool:
    state = get_safety_state(session, user_id)
    return bool(state and state.autopilot_locked)
