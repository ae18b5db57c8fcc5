"""
risk.py
=======
Single-customer churn risk: 0–10 from five weighted factors.

Each factor is normalised to 0..10 and multiplied by its weight; WEIGHTS sum
to 1.0 so the weighted sum stays in 0..10.

- payment_delay       avg days paid after due date (paid invoices)   /3  → 30 days = 10
- usage_trend         pageview drop, recent 3 vs previous 3 invoices  /5  → -50% = 10
- overdue_frequency   unpaid / total invoices                         ×20 → 50% = 10
- overage_percentage  overage share of billed amount                  /6  → 60% = 10
- tiering_gap         % billed above the cheapest simulated tier      /3  → 30% = 10
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

from .config import settings
from .errors import ValidationError
from .logging_config import get_logger
from .models import Invoice
from .repositories import BillingReader
from .schemas import ResolvedCustomer, RiskFactor, RiskScoreResult

logger = get_logger(__name__)

WEIGHTS = {
    "payment_delay":      0.30,
    "usage_trend":        0.20,
    "overdue_frequency":  0.20,
    "overage_percentage": 0.15,
    "tiering_gap":        0.15,
}

# (maximum score, profile), checked top-down
PROFILE_THRESHOLDS = (
    (1.0, "stable"),
    (3.0, "moderate"),
    (5.0, "elevated"),
    (7.0, "high"),
)

PAYMENT_DELAY_ISSUE_DAYS = 10.0
USAGE_DECLINE_ISSUE_PCT = 25.0
HIGH_OVERAGE_PCT = 40.0
TIERING_GAP_ISSUE_PCT = 15.0
MAX_INVOICE_WINDOW = 120

NO_CHEAPER_TIER_ACTION = "Review billing structure and usage optimization; no cheaper tier identified"
UPGRADE_ACTION = "Suggest plan upgrade to reduce overage costs"
TIERING_ACTION = "Present tiering optimization options to customer"
MONITOR_ACTION = "Continue monitoring; no immediate action required"


def clamp(value: float, lo: float = 0.0, hi: float = 10.0) -> float:
    return max(lo, min(hi, float(value)))


def round2(x: float) -> float:
    return round(float(x), 2)


def profile_for_score(score: float) -> str:
    """Non-decreasing: a higher score never yields a milder profile."""
    for maximum, profile in PROFILE_THRESHOLDS:
        if score <= maximum:
            return profile
    return "critical"


# ---------- factor inputs ----------

def average_payment_delay(invoices: Sequence[Invoice]) -> float:
    """Mean (paid_date - due_date) in days over paid invoices; negative means early."""
    delays = [
        (inv.paid_date - inv.due_date).days
        for inv in invoices
        if inv.is_paid and inv.due_date and inv.paid_date
    ]
    return sum(delays) / len(delays) if delays else 0.0


def pageview_change_pct(invoices: Sequence[Invoice]) -> float:
    recent = [float(inv.pageviews or 0) for inv in invoices[:3]]
    previous = [float(inv.pageviews or 0) for inv in invoices[3:6]]
    avg_recent = sum(recent) / len(recent) if recent else 0.0
    avg_previous = sum(previous) / len(previous) if previous else 0.0
    if avg_previous <= 0:
        return 0.0
    return (avg_recent - avg_previous) / avg_previous * 100.0


def overage_pct(invoices: Sequence[Invoice]) -> float:
    billed = sum(float(inv.amount or 0) for inv in invoices)
    overage = sum(inv.overage_total for inv in invoices)
    return overage / billed * 100.0 if billed > 0 else 0.0


def tier_costs(invoice: Invoice) -> List[float]:
    costs = (invoice.tier_40_cost, invoice.tier_50_cost, invoice.tier_80_cost)
    return [float(c) for c in costs if c is not None and float(c) > 0]


def tiering_gap(invoices: Sequence[Invoice]) -> Tuple[float, float, float]:
    """
    Compare what was billed with the cheapest simulated tier per month.

    Months without tier data count as already optimal. Returns
    (gap %, total billed, total at best tier).
    """
    total_current = 0.0
    total_best = 0.0
    has_tier_data = False
    for inv in invoices:
        amount = float(inv.amount or 0)
        total_current += amount
        costs = tier_costs(inv)
        if costs:
            has_tier_data = True
            total_best += min(costs)
        else:
            total_best += amount
    if has_tier_data and total_best > 0 and total_current > total_best:
        return (total_current - total_best) / total_current * 100.0, total_current, total_best
    return 0.0, total_current, total_best


# ---------- scoring ----------

def _factor(name: str, raw: float, normalized: float, description: str) -> RiskFactor:
    weight = WEIGHTS[name]
    return RiskFactor(
        name=name,
        weight=weight,
        raw_value=round2(raw),
        normalized=round2(normalized),
        weighted_contribution=round2(normalized * weight),
        description=description,
    )


def _empty_factors() -> List[RiskFactor]:
    return [_factor(name, 0.0, 0.0, "No billing data") for name in WEIGHTS]


def score_invoices(resolved: ResolvedCustomer, invoices: Sequence[Invoice]) -> RiskScoreResult:
    """Pure risk model over an invoice window ordered newest first."""
    if not invoices:
        return RiskScoreResult(
            customer=resolved.customer,
            match_type=resolved.match_type,
            risk_score=0.0,
            risk_profile="stable",
            factors=_empty_factors(),
            issues=["No billing data available"],
            recommended_actions=["Upload billing data to assess risk"],
        )

    issues: List[str] = []
    actions: List[str] = []

    avg_delay = average_payment_delay(invoices)
    delay_norm = clamp(avg_delay / 3)
    if avg_delay > PAYMENT_DELAY_ISSUE_DAYS:
        issues.append(f"Average payment delay: {round2(avg_delay):g} days")
        actions.append("Review payment terms or offer payment plans")

    usage_change = pageview_change_pct(invoices)
    usage_norm = clamp(-usage_change / 5)
    if usage_change < -USAGE_DECLINE_ISSUE_PCT:
        issues.append(f"Usage declined {round2(abs(usage_change)):g}%")
        actions.append("Proactive outreach to understand engagement drop")

    total = len(invoices)
    unpaid = sum(1 for inv in invoices if not inv.is_paid)
    unpaid_rate = unpaid / total
    overdue_norm = clamp(unpaid_rate * 20)
    if unpaid:
        issues.append(f"{unpaid}/{total} invoices unpaid ({round2(unpaid_rate * 100):g}%)")
        actions.append(f"Follow up on {unpaid} overdue invoice(s)")

    over_pct = overage_pct(invoices)
    overage_norm = clamp(over_pct / 6)
    if over_pct > HIGH_OVERAGE_PCT:
        issues.append(f"High overage: {round2(over_pct):g}% of total billing")

    gap_pct, _, _ = tiering_gap(invoices)
    tiering_norm = clamp(gap_pct / 3)
    if gap_pct > TIERING_GAP_ISSUE_PCT:
        issues.append(f"Paying {round2(gap_pct):g}% more than the cheapest available tier")
        actions.append(TIERING_ACTION)

    # High overage alone does not mean a tier change helps.
    if over_pct > HIGH_OVERAGE_PCT:
        actions.append(UPGRADE_ACTION if gap_pct > TIERING_GAP_ISSUE_PCT else NO_CHEAPER_TIER_ACTION)

    factors = [
        _factor("payment_delay", avg_delay, delay_norm,
                f"Average {round2(avg_delay):g} days between due date and payment"),
        _factor("usage_trend", usage_change, usage_norm,
                f"Pageviews {'+' if usage_change >= 0 else ''}{round2(usage_change):g}% (recent 3 vs previous 3 invoices)"),
        _factor("overdue_frequency", unpaid_rate * 100, overdue_norm,
                f"{unpaid}/{total} invoices unpaid ({round2(unpaid_rate * 100):g}%)"),
        _factor("overage_percentage", over_pct, overage_norm,
                f"Overage is {round2(over_pct):g}% of total billing"),
        _factor("tiering_gap", gap_pct, tiering_norm,
                f"Paying {round2(gap_pct):g}% above cheapest tier" if gap_pct > 0
                else "Already on optimal or near-optimal tier"),
    ]

    score = round2(clamp(sum(f.normalized * f.weight for f in factors)))
    if not issues:
        issues.append("No significant risk factors detected")
    if not actions:
        actions.append(MONITOR_ACTION)

    return RiskScoreResult(
        customer=resolved.customer,
        match_type=resolved.match_type,
        risk_score=score,
        risk_profile=profile_for_score(score),
        factors=factors,
        issues=issues,
        recommended_actions=list(dict.fromkeys(actions)),
    )


def score_risk(
    reader: BillingReader,
    resolved: ResolvedCustomer,
    limit: Optional[int] = None,
) -> RiskScoreResult:
    """Load the most recent `limit` invoices (default 6) and score them."""
    limit = settings.DEFAULT_RISK_INVOICES if limit is None else limit
    if not isinstance(limit, int) or isinstance(limit, bool) or not 1 <= limit <= MAX_INVOICE_WINDOW:
        raise ValidationError(f"limit must be an integer between 1 and {MAX_INVOICE_WINDOW}.")

    invoices = reader.list_invoices(resolved.customer.id, limit=limit)
    result = score_invoices(resolved, invoices)
    logger.info(
        "Risk scored",
        extra={
            "customer_id": resolved.customer.id,
            "invoices": len(invoices),
            "risk_score": result.risk_score,
            "risk_profile": result.risk_profile,
        },
    )
    return result
