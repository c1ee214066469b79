from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, Enum, Float, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from src.db.types import UTCDateTime
from src.utils.time import utcnow


class Base(DeclarativeBase):
    pass


AccountType = Enum("CURRENT", "SAVINGS", name="account_type")
TxnType = Enum("INCOME", "EXPENSE", name="txn_type")
RecurringInterval = Enum("DAILY", "WEEKLY", "MONTHLY", "YEARLY", name="recurring_interval")
TxnStatus = Enum("PENDING", "COMPLETED", "FAILED", name="txn_status")
NudgeStatus = Enum("pending", "executed", "rejected", "expired", name="nudge_status")
GoalStatus = Enum("active", "completed", "paused", name="goal_status")


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(320))
    name: Mapped[Optional[str]] = mapped_column(String(200))
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    accounts: Mapped[list["Account"]] = relationship(back_populates="user")
    transactions: Mapped[list["Transaction"]] = relationship(back_populates="user")
    budget: Mapped[Optional["Budget"]] = relationship(back_populates="user", uselist=False)
    profile: Mapped[Optional["FinancialProfile"]] = relationship(back_populates="user", uselist=False)


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(AccountType, nullable=False, default="CURRENT")
    balance: Mapped[float] = mapped_column(Numeric(20, 2), nullable=False, default=0)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    user: Mapped["User"] = relationship(back_populates="accounts")


class Budget(Base):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), unique=True, nullable=False)
    amount: Mapped[float] = mapped_column(Numeric(20, 2), nullable=False)
    last_alert_sent: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())

    user: Mapped["User"] = relationship(back_populates="budget")


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (Index("ix_transactions_user_date", "user_id", "date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    type: Mapped[str] = mapped_column(TxnType, nullable=False)
    amount: Mapped[float] = mapped_column(Numeric(20, 2), nullable=False)  # always positive; type carries the sign
    description: Mapped[Optional[str]] = mapped_column(String(500))
    date: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(TxnStatus, nullable=False, default="COMPLETED")
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurring_interval: Mapped[Optional[str]] = mapped_column(RecurringInterval)
    next_recurring_date: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    user: Mapped["User"] = relationship(back_populates="transactions")


class Goal(Base):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    target_amount: Mapped[float] = mapped_column(Numeric(20, 2), nullable=False)
    saved_amount: Mapped[float] = mapped_column(Numeric(20, 2), nullable=False, default=0)
    target_date: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    status: Mapped[str] = mapped_column(GoalStatus, nullable=False, default="active")
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class Bill(Base):
    __tablename__ = "bills"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100))
    amount: Mapped[float] = mapped_column(Numeric(20, 2), nullable=False)
    due_day: Mapped[Optional[int]] = mapped_column(Integer)  # 1..31
    next_due_date: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_paid_date: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    is_protected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    protected_amount: Mapped[Optional[float]] = mapped_column(Numeric(20, 2))
    protected_until: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    auto_detected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    detection_confidence: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class NudgeAction(Base):
    __tablename__ = "nudge_actions"
    __table_args__ = (Index("ix_nudge_actions_user_created", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    nudge_type: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Optional[float]] = mapped_column(Numeric(20, 2))
    message: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(NudgeStatus, nullable=False, default="pending")
    expires_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    impact: Mapped[Optional[float]] = mapped_column(Numeric(20, 2))
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    responded_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    executed_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    feedback_rating: Mapped[Optional[int]] = mapped_column(Integer)  # 1..5
    feedback_comment: Mapped[Optional[str]] = mapped_column(Text)
    was_helpful: Mapped[Optional[bool]] = mapped_column(Boolean)
    dismiss_reason: Mapped[Optional[str]] = mapped_column(String(200))
    feedback_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())


class FinancialProfile(Base):
    __tablename__ = "financial_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), unique=True, nullable=False)
    risk_tolerance: Mapped[str] = mapped_column(String(20), nullable=False, default="MODERATE")
    spending_style: Mapped[str] = mapped_column(String(20), nullable=False, default="BALANCED")
    auto_nudge_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    income_rhythm_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    spend_rhythm_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    optimal_nudge_hour: Mapped[Optional[int]] = mapped_column(Integer)
    preferred_nudge_types_json: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    disliked_nudge_types_json: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    last_personalization_update: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())

    user: Mapped["User"] = relationship(back_populates="profile")


class AgentInsight(Base):
    __tablename__ = "agent_insights"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[Optional[str]] = mapped_column(String(50))  # AUTO_SAVED|BILL_GUARDED|...
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


# --- Security ---


class OtpChallenge(Base):
    __tablename__ = "otp_challenges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[float] = mapped_column(Numeric(20, 2), nullable=False, default=0)
    otp_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class SecurityAuditLog(Base):
    __tablename__ = "security_audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False, default="user")  # user|agent|system
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Optional[float]] = mapped_column(Numeric(20, 2))
    context_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    otp_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class AgentSafetyState(Base):
    __tablename__ = "agent_safety_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), unique=True, nullable=False)
    autopilot_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    locked_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    reason: Mapped[Optional[str]] = mapped_column(String(200))
    last_anomaly_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)


class RiskSnapshot(Base):
    __tablename__ = "risk_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    risk_score: Mapped[float] = mapped_column(Float, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False)  # Safe|Caution|Danger
    drivers_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    forecast_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    metrics_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
