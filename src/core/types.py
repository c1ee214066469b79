from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


TrendDirection = Literal["improving", "declining", "stable"]
RiskMeter = Literal["Safe", "Caution", "Danger"]


class CashFlowPoint(BaseModel):
    date: str
    predicted: int
    upper_bound: int
    lower_bound: int
    confidence: int
    day_offset: int


class CashFlowForecast(BaseModel):
    predictions: list[CashFlowPoint]
    trend: TrendDirection
    trend_rate: int
    confidence: int
    daily_income: int
    daily_expense: int
    daily_net: int


class ShortForecast(BaseModel):
    predictions: list[CashFlowPoint]
    risk_score: int
    trend: TrendDirection
    confidence: int


class HistoricalBalancePoint(BaseModel):
    date: str
    balance: float
    day_offset: int


class EmiRisk(BaseModel):
    at_risk: bool
    shortfall: float
    total_emi: float
    min_predicted: float
    upcoming_emis: int


class RiskDriver(BaseModel):
    type: str
    message: str


class FitnessBreakdown(BaseModel):
    savings: int = 0
    bills: int = 0
    budget: int = 0
    emergency: int = 0
    engagement: int = 0


class FitnessLevel(BaseModel):
    name: str
    points_needed: Optional[int] = None


class FitnessScore(BaseModel):
    score: int
    breakdown: FitnessBreakdown
    level: FitnessLevel
    next_level: Optional[FitnessLevel] = None


class AllowanceBreakdown(BaseModel):
    total_balance: float
    safety_buffer: float
    upcoming_bills: float
    available_balance: float
    days_until_income: int


class SpendingAllowance(BaseModel):
    amount: int
    breakdown: AllowanceBreakdown
    status: Literal["healthy", "moderate", "tight"]
    message: str


class SummaryCard(BaseModel):
    type: Literal["success", "warning", "danger", "info"]
    message: str
    detail: str


class TaxAdvice(BaseModel):
    status: Literal["safe", "action_needed", "info"]
    message: str
    action: str


class TaxLiability(BaseModel):
    total_income: float
    income_tax: int
    gst: int
    total_tax: int
    monthly_savings: int
    fy_start: str
    fy_end: str
    quarter_income: float
    projected_annual_income: float


class IncomeRhythm(BaseModel):
    payday: str
    reliability: float
    hour_slot: Optional[str] = None
    cadence: Literal["weekly", "bi-weekly", "monthly", "irregular"]
    lookback_days: int


class HighRiskDay(BaseModel):
    weekday: str
    overspend: float


class CategoryShare(BaseModel):
    category: str
    share: float


class SpendRhythm(BaseModel):
    weekend_share: float
    late_night_share: float
    high_risk_days: list[HighRiskDay] = Field(default_factory=list)
    top_categories: list[CategoryShare] = Field(default_factory=list)
    peak_hour_slot: Optional[str] = None


class Rhythm(BaseModel):
    income_rhythm: Optional[IncomeRhythm] = None
    spend_rhythm: SpendRhythm
    optimal_hour: Optional[int] = None


class SpendingPatterns(BaseModel):
    weekly_average: int = 0
    monthly_average: int = 0
    top_categories: list[dict[str, Any]] = Field(default_factory=list)
    total_expenses: int = 0
    average_transaction_size: int = 0
