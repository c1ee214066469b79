from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.core.agent_watchdog import autopilot_locked
from src.core.income_rhythm import get_or_create_profile, update_rhythm_profile
from src.db.models import NudgeAction
from src.utils.time import ensure_utc, utcnow


log = logging.getLogger(__name__)

HIGH_ACCEPTANCE = 0.7
LOW_ACCEPTANCE = 0.3
IGNORE_THRESHOLD = 3
REJECT_THRESHOLD = 0.5
RECENT_WINDOW = 5


@dataclass
class NudgeBehavior:
    total: int = 0
    accepted: int = 0
    rejected: int = 0
    expired: int = 0
    pending: int = 0
    acceptance_rate: float = 0.0
    rejection_rate: float = 0.0
    ignore_rate: float = 0.0
    recent_ignores: int = 0
    aggressiveness: str = "neutral"
    recommendations: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class NudgeSettings:
    max_nudges_per_day: int
    prefer_summaries: bool
    priority_threshold: int
    timing: str


def analyze_nudge_behavior(
    session: Session,
    user_id: int,
    days: int = 30,
    *,
    now: Optional[dt.datetime] = None,
) -> NudgeBehavior:
    """
    Response rates over the last `days`. Expired nudges count as ignored;
    ``recent_ignores`` looks only at the five newest.
    """
    now = ensure_utc(now or utcnow())
    nudges = list(
        session.scalars(
            select(NudgeAction)
            .where(NudgeAction.user_id == user_id, NudgeAction.created_at >= now - dt.timedelta(days=days))
            .order_by(NudgeAction.created_at.desc(), NudgeAction.id.desc())
        )
    )
    if not nudges:
        return NudgeBehavior(recommendations=["Not enough data yet"])

    counts = {"executed": 0, "rejected": 0, "expired": 0, "pending": 0}
    for n in nudges:
        counts[n.status] = counts.get(n.status, 0) + 1
    total = len(nudges)
    out = NudgeBehavior(
        total=total,
        accepted=counts["executed"],
        rejected=counts["rejected"],
        expired=counts["expired"],
        pending=counts["pending"],
        acceptance_rate=counts["executed"] / total,
        rejection_rate=counts["rejected"] / total,
        ignore_rate=counts["expired"] / total,
        recent_ignores=sum(1 for n in nudges[:RECENT_WINDOW] if n.status == "expired"),
    )

    if out.acceptance_rate > HIGH_ACCEPTANCE:
        out.aggressiveness = "aggressive"
        out.recommendations.append("Increase nudge frequency and priority")
    elif out.acceptance_rate < LOW_ACCEPTANCE:
        out.aggressiveness = "conservative"
        out.recommendations.append("Reduce nudge frequency, prefer summaries")
    if out.recent_ignores > IGNORE_THRESHOLD:
        out.recommendations.append("Switch to nightly summary instead of real-time pushes")
    if out.rejection_rate > REJECT_THRESHOLD:
        out.recommendations.append("Adjust nudge types to match user preferences")
    return out


def adjust_profile_from_behavior(
    session: Session,
    user_id: int,
    *,
    now: Optional[dt.datetime] = None,
) -> tuple[NudgeBehavior, dict[str, Any]]:
    behavior = analyze_nudge_behavior(session, user_id, now=now)
    profile = get_or_create_profile(session, user_id)

    if behavior.acceptance_rate > HIGH_ACCEPTANCE:
        risk_tolerance = "HIGH"
    elif behavior.acceptance_rate < LOW_ACCEPTANCE:
        risk_tolerance = "LOW"
    else:
        risk_tolerance = "MODERATE"

    if behavior.rejection_rate > REJECT_THRESHOLD:
        spending_style = "CAUTIOUS"
    elif behavior.acceptance_rate > HIGH_ACCEPTANCE:
        spending_style = "BALANCED"
    else:
        spending_style = "IMPULSIVE"

    engagement = behavior.acceptance_rate + (behavior.pending / behavior.total if behavior.total else 0.0)
    updates = {
        "risk_tolerance": risk_tolerance,
        "spending_style": spending_style,
        # Automations stay off while the watchdog holds the lock.
        "auto_nudge_enabled": engagement > 0.5 and not autopilot_locked(session, user_id),
    }
    for k, v in updates.items():
        setattr(profile, k, v)
    session.flush()
    log.info("profile adjusted user=%s %s", user_id, updates)

    update_rhythm_profile(session, user_id, now=now)
    return behavior, updates


def settings_for(behavior: NudgeBehavior) -> NudgeSettings:
    level = behavior.aggressiveness
    return NudgeSettings(
        max_nudges_per_day={"aggressive": 5, "conservative": 1}.get(level, 3),
        prefer_summaries=behavior.recent_ignores > IGNORE_THRESHOLD,
        priority_threshold={"aggressive": 2, "conservative": 8}.get(level, 5),
        timing={"aggressive": "immediate", "conservative": "evening"}.get(level, "morning"),
    )


def get_personalized_nudge_settings(session: Session, user_id: int, *, now: Optional[dt.datetime] = None) -> NudgeSettings:
    return settings_for(analyze_nudge_behavior(session, user_id, now=now))
