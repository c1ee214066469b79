from __future__ import annotations

import datetime as dt
import logging
from collections import Counter
from typing import Any, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from src.core.field_crypto import encrypt_field
from src.core.income_rhythm import get_or_create_profile
from src.db.models import FinancialProfile, NudgeAction
from src.rythmiq.nudges.actions import NudgeError, get_user_nudge
from src.utils.time import ensure_utc, utcnow


log = logging.getLogger(__name__)

ACCEPTED_STATUSES = ("accepted", "executed")


def _is_positive(n: NudgeAction) -> bool:
    return n.was_helpful is True or (n.feedback_rating is not None and n.feedback_rating >= 4)


def _is_negative(n: NudgeAction) -> bool:
    return n.was_helpful is False or (n.feedback_rating is not None and n.feedback_rating <= 2)


def collect_feedback(
    session: Session,
    user_id: int,
    nudge_id: int,
    *,
    rating: Optional[int] = None,
    comment: Optional[str] = None,
    was_helpful: Optional[bool] = None,
    dismiss_reason: Optional[str] = None,
    now: Optional[dt.datetime] = None,
) -> NudgeAction:
    """
    Store feedback on a nudge and fold it into the user's type preferences.

    Only the fields given are written; earlier feedback on the other fields is kept.
    """
    if rating is not None and not 1 <= rating <= 5:
        raise NudgeError("Rating must be between 1 and 5")
    now = ensure_utc(now or utcnow())
    nudge = get_user_nudge(session, user_id, nudge_id)
    if rating is not None:
        nudge.feedback_rating = rating
    if comment:
        nudge.feedback_comment = encrypt_field(comment)
    if was_helpful is not None:
        nudge.was_helpful = was_helpful
    if dismiss_reason is not None:
        nudge.dismiss_reason = dismiss_reason
    nudge.feedback_at = now
    session.flush()

    update_personalization_from_feedback(session, user_id, nudge, now=now)
    return nudge


def update_personalization_from_feedback(
    session: Session,
    user_id: int,
    nudge: NudgeAction,
    *,
    now: Optional[dt.datetime] = None,
) -> FinancialProfile:
    profile = get_or_create_profile(session, user_id)
    preferred = list(profile.preferred_nudge_types_json or [])
    disliked = list(profile.disliked_nudge_types_json or [])
    kind = nudge.nudge_type

    if _is_positive(nudge):
        if kind not in preferred:
            preferred.append(kind)
        disliked = [t for t in disliked if t != kind]
    elif _is_negative(nudge):
        if kind not in disliked:
            disliked.append(kind)
        preferred = [t for t in preferred if t != kind]

    profile.preferred_nudge_types_json = preferred
    profile.disliked_nudge_types_json = disliked
    profile.optimal_nudge_hour = calculate_optimal_nudge_hour(session, user_id)
    profile.last_personalization_update = ensure_utc(now or utcnow())
    session.flush()
    log.info("feedback personalization user=%s preferred=%s disliked=%s", user_id, preferred, disliked)
    return profile


def calculate_optimal_nudge_hour(session: Session, user_id: int) -> Optional[int]:
    """UTC hour with the most positive responses; ties go to the hour seen first."""
    rows = session.scalars(
        select(NudgeAction).where(
            NudgeAction.user_id == user_id,
            or_(
                NudgeAction.status.in_(ACCEPTED_STATUSES),
                NudgeAction.was_helpful.is_(True),
                NudgeAction.feedback_rating >= 4,
            ),
        ).order_by(NudgeAction.id)
    )
    hours: Counter[int] = Counter()
    for n in rows:
        at = n.responded_at or n.feedback_at
        if at is not None:
            hours[ensure_utc(at).hour] += 1
    if not hours:
        return None
    return hours.most_common(1)[0][0]


def _empty_type_metrics() -> dict[str, Any]:
    return {
        "total": 0,
        "accepted": 0,
        "rejected": 0,
        "expired": 0,
        "acceptance_rate": 0.0,
        "avg_rating": 0.0,
        "rating_count": 0,
        "helpful_count": 0,
        "not_helpful_count": 0,
    }


def calculate_nudge_effectiveness(
    session: Session,
    user_id: int,
    days: int = 30,
    *,
    now: Optional[dt.datetime] = None,
) -> dict[str, Any]:
    now = ensure_utc(now or utcnow())
    start = now - dt.timedelta(days=days)
    nudges = list(
        session.scalars(
            select(NudgeAction)
            .where(NudgeAction.user_id == user_id, NudgeAction.created_at >= start)
            .order_by(NudgeAction.created_at.asc())
        )
    )

    overall = _empty_type_metrics()
    overall["with_feedback"] = overall.pop("rating_count")
    by_type: dict[str, dict[str, Any]] = {}
    rating_sums: Counter[str] = Counter()
    for n in nudges:
        m = by_type.setdefault(n.nudge_type, _empty_type_metrics())
        m["total"] += 1
        overall["total"] += 1
        if n.status in ACCEPTED_STATUSES:
            key = "accepted"
        elif n.status in ("rejected", "expired"):
            key = n.status
        else:
            key = None
        if key:
            m[key] += 1
            overall[key] += 1
        if n.feedback_rating:
            m["rating_count"] += 1
            rating_sums[n.nudge_type] += n.feedback_rating
            overall["with_feedback"] += 1
        if n.was_helpful is True:
            m["helpful_count"] += 1
            overall["helpful_count"] += 1
        elif n.was_helpful is False:
            m["not_helpful_count"] += 1
            overall["not_helpful_count"] += 1

    for kind, m in by_type.items():
        m["acceptance_rate"] = m["accepted"] / m["total"] * 100 if m["total"] else 0.0
        m["avg_rating"] = rating_sums[kind] / m["rating_count"] if m["rating_count"] else 0.0

    overall["acceptance_rate"] = overall["accepted"] / overall["total"] * 100 if overall["total"] else 0.0
    total_rating = sum(rating_sums.values())
    overall["avg_rating"] = total_rating / overall["with_feedback"] if overall["with_feedback"] else 0.0

    return {
        "overall": overall,
        "by_type": by_type,
        "period": {"days": days, "start": start, "end": now},
    }


def _time_of_day(hour: int) -> str:
    if hour < 12:
        return "morning"
    if hour < 17:
        return "afternoon"
    return "evening"


def generate_recommendations(profile: FinancialProfile, effectiveness: dict[str, Any]) -> list[dict[str, str]]:
    out = []
    if effectiveness["overall"]["acceptance_rate"] < 50:
        out.append(
            {
                "type": "low_acceptance",
                "message": "Your nudge acceptance rate is low. We're learning your preferences to show more relevant suggestions.",
                "action": "Keep providing feedback to help us improve!",
            }
        )
    preferred = profile.preferred_nudge_types_json or []
    if preferred:
        out.append(
            {
                "type": "preferences_learned",
                "message": f"You respond well to {', '.join(preferred)} nudges.",
                "action": "We'll prioritize these types for you.",
            }
        )
    if profile.optimal_nudge_hour is not None:
        hour = profile.optimal_nudge_hour
        out.append(
            {
                "type": "optimal_timing",
                "message": f"You're most responsive in the {_time_of_day(hour)} (around {hour}:00).",
                "action": "We'll send important nudges during this time.",
            }
        )
    return out


def get_behavioral_insights(session: Session, user_id: int, *, now: Optional[dt.datetime] = None) -> dict[str, Any]:
    profile = session.scalars(select(FinancialProfile).where(FinancialProfile.user_id == user_id)).first()
    if profile is None:
        return {"has_data": False, "message": "Not enough data yet. Keep using RythmIQ to build your profile!"}

    effectiveness = calculate_nudge_effectiveness(session, user_id, 30, now=now)
    overall = effectiveness["overall"]
    return {
        "has_data": True,
        "preferred_nudge_types": profile.preferred_nudge_types_json or [],
        "disliked_nudge_types": profile.disliked_nudge_types_json or [],
        "optimal_nudge_hour": profile.optimal_nudge_hour,
        "acceptance_rate": overall["acceptance_rate"],
        "avg_rating": overall["avg_rating"],
        "total_nudges": overall["total"],
        "last_update": profile.last_personalization_update,
        "rhythm": {"income": profile.income_rhythm_json, "spending": profile.spend_rhythm_json},
        "recommendations": generate_recommendations(profile, effectiveness),
    }


def get_effectiveness_trends(
    session: Session,
    user_id: int,
    weeks: int = 4,
    *,
    now: Optional[dt.datetime] = None,
) -> list[dict[str, Any]]:
    """Weekly acceptance and rating, oldest week first."""
    now = ensure_utc(now or utcnow())
    out = []
    for i in range(weeks - 1, -1, -1):
        end = now - dt.timedelta(days=7 * i)
        start = end - dt.timedelta(days=7)
        rows = list(
            session.scalars(
                select(NudgeAction).where(
                    NudgeAction.user_id == user_id,
                    NudgeAction.created_at >= start,
                    NudgeAction.created_at < end,
                )
            )
        )
        accepted = sum(1 for n in rows if n.status in ACCEPTED_STATUSES)
        ratings = [n.feedback_rating for n in rows if n.feedback_rating]
        out.append(
            {
                "week": f"Week {weeks - i}",
                "start_date": start.date().isoformat(),
                "end_date": end.date().isoformat(),
                "total": len(rows),
                "accepted": accepted,
                "acceptance_rate": round(accepted / len(rows) * 100) if rows else 0,
                "avg_rating": round(sum(ratings) / len(ratings), 1) if ratings else 0.0,
            }
        )
    return out
