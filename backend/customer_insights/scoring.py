"""
scoring.py
==========
Fleet-wide health score: 0–100 with a triage label and explainable issues.

Every customer starts at 100 and loses independent, capped penalties:
- Payment rate (paid / total invoices)    → <50%: -40, <80%: -20
- Overdue invoices                         → -10 each, capped at -30
- Pageview trend (recent 3 vs previous 3)  → drop >25%: -|drop|/5, capped at -20
- Overage share of billed amount           → >40%: -10

The final score is clamped to [0, 100]. Labels are monotonic in the score.
The whole population is loaded once and a pure function is mapped over it.
"""

# backend/customer_insights/scoring.py
from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .logging_config import get_logger
from .models import Customer, Invoice
from .repositories import BillingReader
from .schemas import CustomerOut, HealthListFilters, HealthListResult, HealthScoreResult

logger = get_logger(__name__)


# ---------- utilities ----------

def clamp(x: float, lo: float = 0.0, hi: float = 100.0) -> float:
    """Clamp a numeric value to [lo, hi]."""
    return max(lo, min(hi, float(x)))


def round2(x: float) -> float:
    return round(float(x), 2)


# Worst to best. Index order is what makes "at or below" comparisons possible.
HEALTH_LABELS = ("critical", "at_risk", "needs_attention", "healthy", "excellent")

# (minimum score, label), checked top-down
LABEL_THRESHOLDS = (
    (90.0, "excellent"),
    (70.0, "healthy"),
    (50.0, "needs_attention"),
    (30.0, "at_risk"),
)

# Penalty calibration (tuned against the anchors in tests/test_scoring.py)
PAYMENT_RATE_SEVERE = 0.5
PAYMENT_RATE_SEVERE_PENALTY = 40.0
PAYMENT_RATE_LOW = 0.8
PAYMENT_RATE_LOW_PENALTY = 20.0
OVERDUE_PENALTY_EACH = 10.0
OVERDUE_PENALTY_CAP = 30.0
USAGE_DROP_THRESHOLD_PCT = 25.0
USAGE_DROP_DIVISOR = 5.0
USAGE_DROP_PENALTY_CAP = 20.0
OVERAGE_THRESHOLD_PCT = 40.0
OVERAGE_PENALTY = 10.0

TRIAGE_LABELS = ("needs_attention", "at_risk", "critical")


# ---------- pure scoring helpers (UNIT-TESTED) ----------

def payment_penalty(paid_count: int, total_invoices: int) -> float:
    if total_invoices <= 0:
        return 0.0
    rate = paid_count / total_invoices
    if rate < PAYMENT_RATE_SEVERE:
        return PAYMENT_RATE_SEVERE_PENALTY
    if rate < PAYMENT_RATE_LOW:
        return PAYMENT_RATE_LOW_PENALTY
    return 0.0


def overdue_penalty(overdue_count: int) -> float:
    return min(OVERDUE_PENALTY_CAP, max(0, overdue_count) * OVERDUE_PENALTY_EACH)


def usage_trend_pct(recent_avg: float, previous_avg: float) -> Optional[float]:
    """
    Pageview change recent vs previous window.
    None when there is no usage at all; 100 when only the recent window has data.
    """
    if previous_avg > 0:
        return round2((recent_avg - previous_avg) / previous_avg * 100.0)
    if recent_avg > 0:
        return 100.0
    return None


def usage_drop_penalty(trend_pct: Optional[float]) -> float:
    if trend_pct is None or trend_pct >= -USAGE_DROP_THRESHOLD_PCT:
        return 0.0
    return min(USAGE_DROP_PENALTY_CAP, abs(trend_pct) / USAGE_DROP_DIVISOR)


def overage_penalty(overage_pct: float) -> float:
    return OVERAGE_PENALTY if overage_pct > OVERAGE_THRESHOLD_PCT else 0.0


def label_for_score(score: float) -> str:
    """Map a 0–100 score to a label; non-decreasing in the score."""
    for minimum, label in LABEL_THRESHOLDS:
        if score >= minimum:
            return label
    return "critical"


def label_rank(label: str) -> int:
    return HEALTH_LABELS.index(label)


def compute_health(
    customer: CustomerOut,
    total_invoices: int,
    paid_count: int,
    overdue_count: int,
    total_billed: float,
    overdue_amount: float,
    avg_pageviews_recent: float,
    avg_pageviews_previous: float,
    overage_total: float,
    latest_plan: Optional[str] = None,
) -> HealthScoreResult:
    """Score one customer from pre-aggregated billing and usage signals."""
    issues: List[str] = []
    score = 100.0

    p = payment_penalty(paid_count, total_invoices)
    if p:
        rate_pct = round2(paid_count / total_invoices * 100.0)
        label = "Low" if p == PAYMENT_RATE_SEVERE_PENALTY else "Below-average"
        issues.append(f"{label} payment rate: {rate_pct:g}%")
    score -= p

    p = overdue_penalty(overdue_count)
    if p:
        issues.append(f"{overdue_count} overdue invoice(s) totaling {overdue_amount:,.2f}")
    score -= p

    trend_pct = usage_trend_pct(avg_pageviews_recent, avg_pageviews_previous)
    p = usage_drop_penalty(trend_pct)
    if p:
        issues.append(f"Pageviews dropped {abs(trend_pct):g}%")
    score -= p

    overage_pct = round2(overage_total / total_billed * 100.0) if total_billed > 0 else 0.0
    p = overage_penalty(overage_pct)
    if p:
        issues.append(f"High overage: {overage_pct:g}% of billing")
    score -= p

    score = round2(clamp(score))
    return HealthScoreResult(
        customer=customer,
        health_score=score,
        health_label=label_for_score(score),
        total_invoices=total_invoices,
        paid_count=paid_count,
        overdue_count=overdue_count,
        total_billed=round2(total_billed),
        overdue_amount=round2(overdue_amount),
        avg_monthly=round2(total_billed / total_invoices) if total_invoices else 0.0,
        pageviews_trend_pct=trend_pct,
        overage_pct=overage_pct,
        latest_plan=latest_plan or "unknown",
        issues=issues,
    )


def health_from_invoices(customer: Customer, invoices: Sequence[Invoice]) -> HealthScoreResult:
    """Aggregate one customer's invoices (newest first) and score them."""
    paid = [inv for inv in invoices if inv.is_paid]
    overdue = [inv for inv in invoices if inv.is_overdue]
    recent = [float(inv.pageviews or 0) for inv in invoices[:3]]
    previous = [float(inv.pageviews or 0) for inv in invoices[3:6]]
    latest_plan = next((inv.plan for inv in invoices if inv.plan), None)

    return compute_health(
        customer=CustomerOut.model_validate(customer),
        total_invoices=len(invoices),
        paid_count=len(paid),
        overdue_count=len(overdue),
        total_billed=sum(float(inv.amount or 0) for inv in invoices),
        overdue_amount=sum(float(inv.amount or 0) for inv in overdue),
        avg_pageviews_recent=sum(recent) / len(recent) if recent else 0.0,
        avg_pageviews_previous=sum(previous) / len(previous) if previous else 0.0,
        overage_total=sum(inv.overage_total for inv in invoices),
        latest_plan=latest_plan,
    )


# ---------- filtering / triage ----------

def parse_filters(**kwargs) -> HealthListFilters:
    try:
        return HealthListFilters(**kwargs)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid health list filters: {exc.errors()[0]['msg']}") from exc


_SORT_KEYS = {
    "health_score": (lambda r: r.health_score, False),   # worst first
    "overdue_amount": (lambda r: r.overdue_amount, True),
    "overage_pct": (lambda r: r.overage_pct, True),
}


def rank_health(results: List[HealthScoreResult], filters: HealthListFilters) -> HealthListResult:
    """Apply label filter (with triage expansion), sort, distribution and limit."""
    triage_mode = filters.health_filter == "needs_attention" and not filters.strict_health_filter

    if filters.health_filter == "all":
        selected = list(results)
    elif triage_mode:
        selected = [r for r in results if r.health_label in TRIAGE_LABELS]
    else:
        selected = [r for r in results if r.health_label == filters.health_filter]

    key, reverse = _SORT_KEYS[filters.sort_by]
    selected.sort(key=key, reverse=reverse)

    distribution: Dict[str, int] = {label: 0 for label in reversed(HEALTH_LABELS)}
    for r in results:
        distribution[r.health_label] += 1

    limited = selected[: filters.limit]
    meta = {
        "applied_health_filter": filters.health_filter,
        "strict_health_filter": filters.strict_health_filter,
        "triage_mode": triage_mode,
        "sort_by": filters.sort_by,
    }
    if triage_mode:
        meta["note"] = "needs_attention expanded to include at_risk and critical."

    return HealthListResult(
        total_customers=len(results),
        returned=len(limited),
        distribution=distribution,
        customers=limited,
        meta=meta,
    )


# ---------- DB-backed batch (INTEGRATION-TESTED) ----------

def list_health(reader: BillingReader, filters: Optional[HealthListFilters] = None) -> HealthListResult:
    """Score the whole customer population in one pass and rank it."""
    filters = filters or HealthListFilters()
    population = reader.load_population()
    results = [
        health_from_invoices(customer, invoices)
        for customer, invoices in population
        if len(invoices) >= filters.min_invoices
    ]
    ranked = rank_health(results, filters)
    logger.info(
        "Health list computed",
        extra={
            "population": len(population),
            "scored": ranked.total_customers,
            "returned": ranked.returned,
            "triage_mode": ranked.meta["triage_mode"],
        },
    )
    return ranked
