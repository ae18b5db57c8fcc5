"""
summary.py
==========
Status classification and the rule-based executive summary.

- determine_status():   billing + communication signals -> healthy / warning / critical
- format_*_section():   plain-text sections plus the metrics they were built from
- generate_analysis():  short narrative naming the strongest problem signals
- generate_action():    recommended next step scaled to the severity
- compose_summary():    deterministic template joining everything above

Complaint vocabularies come from settings (SOFT_COMPLAINT_KEYWORDS /
HARD_COMPLAINT_KEYWORDS) and are matched case- and accent-insensitively.
"""

from __future__ import annotations

import unicodedata
from collections import Counter
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from .config import settings
from .risk import tier_costs, tiering_gap
from .schemas import CustomerOut, StatusResult, UsageReport
from .usage import format_bytes, format_count, round2

STATUS_STYLES = {
    "healthy": ("✅", "Healthy"),
    "warning": ("⚠️", "Warning"),
    "critical": ("🔴", "Critical"),
}

USAGE_GROWTH_PCT = 10.0
USAGE_DECLINE_PCT = 25.0
USAGE_SURGE_PCT = 50.0
STALE_PAYMENT_DAYS = 60
TIERING_SAVINGS_PCT = 15.0
TIER_NAMES = ("tier_40", "tier_50", "tier_80")

NORMAL_RANGES_MESSAGE = (
    "All indicators are within normal ranges: payments are current, "
    "usage is stable and no complaints were detected."
)

InvoiceLike = Union[Mapping[str, Any], Any]


@dataclass(frozen=True)
class BillingMetrics:
    total_invoices: int = 0
    paid: int = 0
    overdue: int = 0
    overdue_amount: float = 0.0
    avg_monthly: float = 0.0
    last_payment_days: Optional[int] = None


@dataclass(frozen=True)
class UsageMetrics:
    pageviews: int = 0
    requests: int = 0
    bandwidth: float = 0.0
    months: int = 0
    pageviews_change: float = 0.0
    requests_change: float = 0.0
    bandwidth_change: float = 0.0


@dataclass(frozen=True)
class Tiering:
    months: int
    current_total: float
    best_total: float
    savings: float
    savings_pct: float
    best_tier: Optional[str]


@dataclass(frozen=True)
class Section:
    text: str
    metrics: Any


# ---------- text helpers ----------

def normalize_text(text: str) -> str:
    """Lowercase and strip accents so 'Ação' matches 'acao'."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()


def contains_keyword(text: str, keywords: Iterable[str]) -> bool:
    haystack = normalize_text(text)
    return any(normalize_text(k) in haystack for k in keywords if k)


def _field(item: InvoiceLike, name: str, default: Any = None) -> Any:
    if isinstance(item, Mapping):
        return item.get(name, default)
    return getattr(item, name, default)


def _status(item: InvoiceLike) -> str:
    return str(_field(item, "status", "") or "").strip().lower()


def _history_enabled(email_history: Optional[Mapping[str, Any]]) -> bool:
    if not email_history:
        return False
    return bool((email_history.get("_meta") or {}).get("enabled", False))


def _message_texts(email_history: Optional[Mapping[str, Any]]) -> list:
    if not _history_enabled(email_history):
        return []
    return [
        f"{m.get('subject') or ''} {m.get('snippet') or ''}"
        for m in email_history.get("messages") or []
    ]


def complaint_flags(
    email_history: Optional[Mapping[str, Any]],
    soft_keywords: Optional[Iterable[str]] = None,
    hard_keywords: Optional[Iterable[str]] = None,
) -> tuple:
    """(soft complaint found, hard complaint found); both False when history is disabled."""
    soft = list(settings.SOFT_COMPLAINT_KEYWORDS if soft_keywords is None else soft_keywords)
    hard = list(settings.HARD_COMPLAINT_KEYWORDS if hard_keywords is None else hard_keywords)
    texts = _message_texts(email_history)
    return (
        any(contains_keyword(t, soft) for t in texts),
        any(contains_keyword(t, hard) for t in texts),
    )


# ---------- status ----------

def determine_status(
    billing: Sequence[InvoiceLike],
    email_history: Optional[Mapping[str, Any]],
    soft_keywords: Optional[Iterable[str]] = None,
    hard_keywords: Optional[Iterable[str]] = None,
) -> StatusResult:
    """
    healthy by default; warning on an overdue invoice or any complaint;
    critical only when an overdue invoice AND a hard complaint coexist.
    """
    has_overdue = any(_status(inv) == "overdue" for inv in billing)
    soft, hard = complaint_flags(email_history, soft_keywords, hard_keywords)

    if has_overdue and hard:
        severity = "critical"
    elif has_overdue or soft or hard:
        severity = "warning"
    else:
        severity = "healthy"

    emoji, text = STATUS_STYLES[severity]
    return StatusResult(severity=severity, emoji=emoji, text=text)


# ---------- sections ----------

def billing_metrics(billing: Sequence[InvoiceLike], today: Optional[date] = None) -> BillingMetrics:
    today = today or date.today()
    amounts = [float(_field(inv, "amount", 0) or 0) for inv in billing]
    overdue = [inv for inv in billing if _status(inv) == "overdue"]
    paid_dates = [
        _field(inv, "paid_date") for inv in billing
        if _status(inv) == "paid" and _field(inv, "paid_date")
    ]
    paid_dates = [date.fromisoformat(d) if isinstance(d, str) else d for d in paid_dates]
    return BillingMetrics(
        total_invoices=len(billing),
        paid=sum(1 for inv in billing if _status(inv) == "paid"),
        overdue=len(overdue),
        overdue_amount=round2(sum(float(_field(inv, "amount", 0) or 0) for inv in overdue)),
        avg_monthly=round2(sum(amounts) / len(amounts)) if amounts else 0.0,
        last_payment_days=(today - max(paid_dates)).days if paid_dates else None,
    )


def format_billing_section(billing: Sequence[InvoiceLike], today: Optional[date] = None) -> Section:
    m = billing_metrics(billing, today)
    if not m.total_invoices:
        return Section(text="- No invoices on record.", metrics=m)
    lines = [
        f"- {m.total_invoices} invoices: {m.paid} paid, {m.overdue} overdue",
        f"- Average monthly billing: {m.avg_monthly:,.2f}",
    ]
    if m.overdue:
        lines.append(f"- Overdue amount: {m.overdue_amount:,.2f}")
    if m.last_payment_days is not None:
        lines.append(f"- Last payment: {m.last_payment_days} day(s) ago")
    else:
        lines.append("- Last payment: none recorded")
    return Section(text="\n".join(lines), metrics=m)


def _signed(pct: float) -> str:
    return f"{'+' if pct >= 0 else ''}{pct:g}%"


def format_usage_section(usage: UsageReport) -> Section:
    s, t = usage.summary, usage.trend
    m = UsageMetrics(
        pageviews=s.total_pageviews,
        requests=s.total_requests,
        bandwidth=s.total_bandwidth,
        months=s.total_months,
        pageviews_change=t.pageviews_change_pct,
        requests_change=t.requests_change_pct,
        bandwidth_change=t.bandwidth_change_pct,
    )
    if not m.months:
        return Section(text="- No usage data on record.", metrics=m)
    lines = [
        f"- {m.months} month(s): {format_count(m.pageviews)} pageviews, "
        f"{format_count(m.requests)} requests, {format_bytes(m.bandwidth)} bandwidth",
        f"- Trend (recent 3m vs previous 3m): pageviews {_signed(m.pageviews_change)}, "
        f"requests {_signed(m.requests_change)}, bandwidth {_signed(m.bandwidth_change)}",
    ]
    for anomaly in usage.anomalies:
        lines.append(f"- Anomaly ({anomaly.severity}): {anomaly.message}")
    return Section(text="\n".join(lines), metrics=m)


def compute_tiering(invoices: Sequence[Any], window: int = 6) -> Optional[Tiering]:
    """Cheapest-tier comparison over the most recent `window` invoices; None without tier data."""
    recent = list(invoices[:window])
    if not any(tier_costs(inv) for inv in recent):
        return None
    gap_pct, current_total, best_total = tiering_gap(recent)

    cheapest = Counter()
    for inv in recent:
        named = [
            (float(cost), name)
            for name, cost in zip(TIER_NAMES, (inv.tier_40_cost, inv.tier_50_cost, inv.tier_80_cost))
            if cost is not None and float(cost) > 0
        ]
        if named:
            cheapest[min(named)[1]] += 1

    return Tiering(
        months=len(recent),
        current_total=round2(current_total),
        best_total=round2(best_total),
        savings=round2(max(0.0, current_total - best_total)),
        savings_pct=round2(gap_pct),
        best_tier=cheapest.most_common(1)[0][0] if cheapest else None,
    )


def format_tiering_section(tiering: Tiering) -> str:
    lines = [
        f"- Billed over the last {tiering.months} invoice(s): {tiering.current_total:,.2f}",
        f"- Cheapest simulated tier ({tiering.best_tier or 'n/a'}): {tiering.best_total:,.2f}",
    ]
    if tiering.savings > 0:
        lines.append(f"- Potential saving: {tiering.savings:,.2f} ({tiering.savings_pct:g}%)")
    else:
        lines.append("- Already on the cheapest applicable tier")
    return "\n".join(lines)


# ---------- narrative ----------

def generate_analysis(
    billing: BillingMetrics,
    usage: UsageMetrics,
    email_history: Optional[Mapping[str, Any]],
    tiering: Optional[Tiering] = None,
) -> str:
    """Name the strongest contributing factors, or report normal ranges."""
    findings = []
    change = usage.pageviews_change

    if billing.overdue and change > USAGE_GROWTH_PCT:
        findings.append(
            f"Usage is growing ({_signed(change)}) while {billing.overdue} invoice(s) are overdue: "
            "the customer relies on the product, so the issue is likely payment process, not value."
        )
    elif billing.overdue and change < -USAGE_DECLINE_PCT:
        findings.append(
            f"Usage dropped {abs(change):g}% and {billing.overdue} invoice(s) are overdue: "
            "a strong churn signal."
        )
    elif billing.overdue:
        findings.append(
            f"{billing.overdue} overdue invoice(s) totaling {billing.overdue_amount:,.2f}."
        )
    elif change < -USAGE_DECLINE_PCT:
        findings.append(f"Usage dropped {abs(change):g}% in the last 3 months, suggesting disengagement.")

    if change > USAGE_SURGE_PCT:
        findings.append(f"Usage surged {_signed(change)}; overage costs may follow without a tier review.")

    soft, hard = complaint_flags(email_history)
    if hard:
        findings.append("Recent emails contain escalation language (legal or regulatory terms).")
    elif soft:
        findings.append("Recent emails mention problems or complaints.")

    if billing.last_payment_days is not None and billing.last_payment_days > STALE_PAYMENT_DAYS:
        findings.append(f"No payment recorded in {billing.last_payment_days} days.")

    if tiering and tiering.savings_pct > TIERING_SAVINGS_PCT:
        findings.append(
            f"The customer could save {tiering.savings_pct:g}% on the {tiering.best_tier} tier."
        )

    if not findings:
        return NORMAL_RANGES_MESSAGE
    return " ".join(findings)


def generate_action(status: StatusResult, billing: BillingMetrics, usage: UsageMetrics) -> str:
    if status.severity == "critical":
        return (
            f"URGENT: escalate to the account owner today. Contact the customer about "
            f"{billing.overdue} overdue invoice(s) ({billing.overdue_amount:,.2f}) and "
            "address the escalation before it proceeds."
        )
    if status.severity == "warning":
        steps = []
        if billing.overdue:
            steps.append(
                f"Follow up on {billing.overdue} overdue invoice(s) totaling "
                f"{billing.overdue_amount:,.2f} this week"
            )
        if usage.pageviews_change < -USAGE_DECLINE_PCT:
            steps.append("schedule a check-in to understand the usage decline")
        if not steps:
            steps.append("Review recent customer communication and respond to open concerns")
        text = "; ".join(steps)
        return text[0].upper() + text[1:] + "."
    if usage.pageviews_change > USAGE_SURGE_PCT:
        return "Continue routine monitoring; consider a proactive tier review given the usage growth."
    return "Continue routine monitoring; no action required."


def compose_summary(
    customer: CustomerOut,
    status: StatusResult,
    billing_section: str,
    usage_section: str,
    analysis: str,
    action: str,
    tiering_section: Optional[str] = None,
) -> str:
    parts = [
        f"Executive summary: {customer.name} (ID {customer.id})",
        f"Status: {status.emoji} {status.text}",
        "",
        "Billing:",
        billing_section,
        "",
        "Usage (aggregated over billing history):",
        usage_section,
    ]
    if tiering_section:
        parts += ["", "Tiering:", tiering_section]
    parts += [
        "",
        "Analysis:",
        analysis,
        "",
        "Recommended action:",
        action,
    ]
    return "\n".join(parts)