from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

HealthLabel = Literal["critical", "at_risk", "needs_attention", "healthy", "excellent"]
RiskProfile = Literal["stable", "moderate", "elevated", "high", "critical"]
Severity = Literal["healthy", "warning", "critical"]
MatchType = Literal["id", "email", "name", "fuzzy"]


class _MetaModel(BaseModel):
    """Base for results exposing a `_meta` block (pydantic reserves leading underscores)."""
    model_config = ConfigDict(populate_by_name=True)


# ---------- customers ----------

class CustomerOut(BaseModel):
    id: int
    name: str
    email: str
    model_config = ConfigDict(from_attributes=True)


class ResolvedCustomer(BaseModel):
    customer: CustomerOut
    match_type: MatchType


# ---------- usage ----------

class UsageSummary(BaseModel):
    total_pageviews: int = 0
    total_requests: int = 0
    total_bandwidth: float = 0.0
    total_months: int = 0
    total_pageviews_formatted: str = "0"
    total_requests_formatted: str = "0"
    total_bandwidth_formatted: str = "0B"


class UsageTrend(BaseModel):
    recent_3m_avg_pageviews: float = 0.0
    previous_3m_avg_pageviews: float = 0.0
    recent_3m_avg_requests: float = 0.0
    previous_3m_avg_requests: float = 0.0
    recent_3m_avg_bandwidth: float = 0.0
    previous_3m_avg_bandwidth: float = 0.0
    pageviews_change_pct: float = 0.0
    requests_change_pct: float = 0.0
    bandwidth_change_pct: float = 0.0


class UsageEfficiency(BaseModel):
    latest_request_pageview_ratio: Optional[float] = None
    latest_bandwidth_per_10k_pageviews: Optional[float] = None
    avg_request_pageview_ratio: Optional[float] = None
    avg_bandwidth_per_10k_pageviews: Optional[float] = None


class Anomaly(BaseModel):
    type: Literal["usage_drop", "usage_spike", "high_request_ratio", "heavy_assets"]
    severity: Literal["warning", "critical"]
    message: str
    detail: str


class UsagePoint(BaseModel):
    reference_month: date
    pageviews: int
    requests: int
    bandwidth: float
    plan: Optional[str] = None
    request_pageview_ratio: Optional[float] = None
    bandwidth_per_10k_pageviews: Optional[float] = None
    pageviews_formatted: str
    requests_formatted: str
    bandwidth_formatted: str


class UsageReport(_MetaModel):
    customer: CustomerOut
    total_points: int
    usage_history: List[UsagePoint]
    summary: UsageSummary
    summary_text: str
    trend: UsageTrend
    efficiency: UsageEfficiency
    anomalies: List[Anomaly]
    meta: Dict[str, Any] = Field(default_factory=dict, alias="_meta")


# ---------- health ----------

class HealthListFilters(BaseModel):
    sort_by: Literal["health_score", "overdue_amount", "overage_pct"] = "health_score"
    health_filter: Literal["all", "critical", "at_risk", "needs_attention", "healthy", "excellent"] = "all"
    strict_health_filter: bool = False
    min_invoices: int = Field(1, ge=0)
    limit: int = Field(50, ge=1, le=500)


class HealthScoreResult(BaseModel):
    customer: CustomerOut
    health_score: float = Field(..., ge=0, le=100)
    health_label: HealthLabel
    total_invoices: int
    paid_count: int
    overdue_count: int
    total_billed: float
    overdue_amount: float
    avg_monthly: float
    pageviews_trend_pct: Optional[float] = None
    overage_pct: float
    latest_plan: str
    issues: List[str] = Field(default_factory=list)


class HealthListResult(_MetaModel):
    total_customers: int
    returned: int
    distribution: Dict[str, int]
    customers: List[HealthScoreResult]
    meta: Dict[str, Any] = Field(default_factory=dict, alias="_meta")


# ---------- risk ----------

class RiskFactor(BaseModel):
    name: str
    weight: float
    raw_value: float
    normalized: float
    weighted_contribution: float
    description: str


class RiskScoreResult(BaseModel):
    customer: CustomerOut
    match_type: MatchType
    risk_score: float = Field(..., ge=0, le=10)
    risk_profile: RiskProfile
    factors: List[RiskFactor]
    issues: List[str]
    recommended_actions: List[str]


# ---------- summary ----------

class StatusResult(BaseModel):
    severity: Severity
    emoji: str
    text: str


class SummaryResult(_MetaModel):
    customer_id: int
    generated_at: datetime
    summary: str
    snapshot_saved: bool = False
    data_sources: Dict[str, Any] = Field(default_factory=dict)
    meta: Dict[str, Any] = Field(default_factory=dict, alias="_meta")


class SnapshotOut(BaseModel):
    customer_id: int
    generated_at: datetime
    model_config = ConfigDict(from_attributes=True)


# ---------- invoice explanation ----------

class InvoiceExtras(BaseModel):
    extra_pageviews: float = 0.0
    extra_requests: float = 0.0
    extra_bandwidth: float = 0.0
    seats_builder_cost: float = 0.0
    support_price: float = 0.0
    total_extras: float = 0.0


class InvoiceUsage(BaseModel):
    pageviews: int = 0
    requests: Optional[int] = None
    bandwidth: Optional[float] = None
    request_pageview_ratio: Optional[float] = None
    bandwidth_per_10k_pageviews: Optional[float] = None


class InvoiceBreakdown(BaseModel):
    reference_month: str
    plan: Optional[str] = None
    status: str
    total: float
    base_plan: float
    extras: InvoiceExtras
    extras_pct: float
    usage: InvoiceUsage
    due_date: Optional[date] = None
    paid_date: Optional[date] = None
    seats_builders: Optional[int] = None
    tiering_simulation: Dict[str, Optional[float]] = Field(default_factory=dict)


class InvoiceComparison(BaseModel):
    amount_change_pct: Optional[float] = None
    amount_change_abs: float
    direction: Literal["increased", "decreased", "unchanged"]
    details: Dict[str, float]
    usage_changes: Dict[str, Optional[float]] = Field(default_factory=dict)
    biggest_driver: str
    biggest_driver_change: float


class InvoiceExplanation(BaseModel):
    customer: CustomerOut
    match_type: MatchType
    invoice_found: bool
    explanation: Optional[str] = None
    breakdown: Optional[InvoiceBreakdown] = None
    previous_month: Optional[InvoiceBreakdown] = None
    comparison: Optional[InvoiceComparison] = None
    available_months: List[str] = Field(default_factory=list)
