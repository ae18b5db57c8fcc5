"""
invoices.py
===========
Explain one monthly invoice: what it is made of, how it moved against the
previous month, and what the usage tiers would have cost instead.

- base plan     = amount minus every extra (never below 0)
- extras        = pageview, request and bandwidth overage + builder seats + support
- comparison    = component-by-component change vs the next older invoice
- alerts        = extras above 40% of the invoice, a swing beyond ±20%, overdue

Pageviews come from the invoice; requests and bandwidth from the usage record
of the same month, when there is one.
"""

# backend/customer_insights/invoices.py
from __future__ import annotations

from datetime import date, datetime
from typing import Dict, List, Optional, Union

from .errors import ValidationError
from .logging_config import get_logger
from .models import Invoice, UsageRecord
from .repositories import BillingReader, UsageReader
from .schemas import (
    InvoiceBreakdown,
    InvoiceComparison,
    InvoiceExplanation,
    InvoiceExtras,
    InvoiceUsage,
    ResolvedCustomer,
)
from .usage import efficiency_ratios, format_bytes, format_count, round2

logger = get_logger(__name__)

HIGH_EXTRAS_PCT = 40.0
BIG_SWING_PCT = 20.0

# component key -> label used in the explanation
COMPONENTS = {
    "base_plan": "Base plan",
    "extra_pageviews": "Extra pageviews",
    "extra_requests": "Extra requests",
    "extra_bandwidth": "Extra bandwidth",
    "seats_builder_cost": "Builder seats",
    "support_price": "Support",
}
TIERS = ("tier_40", "tier_50", "tier_80")


def money(x: float) -> str:
    return f"${float(x):,.2f}"


def parse_reference_month(value: Union[str, date, None]) -> Optional[date]:
    """'2024-11' or '2024-11-15' -> date(2024, 11, 1); None passes through."""
    if value is None:
        return None
    if isinstance(value, date):
        return value.replace(day=1)
    raw = str(value).strip()
    if not raw:
        return None
    for fmt in ("%Y-%m", "%Y-%m-%d"):
        try:
            return datetime.strptime(raw, fmt).date().replace(day=1)
        except ValueError:
            continue
    raise ValidationError("reference_month must be YYYY-MM or YYYY-MM-DD.")


def month_label(d: Optional[date]) -> str:
    return d.strftime("%Y-%m") if d else "unknown"


# ---------- pure helpers (UNIT-TESTED) ----------

def build_breakdown(invoice: Invoice, usage: Optional[UsageRecord] = None) -> InvoiceBreakdown:
    amount = float(invoice.amount or 0)
    extras = InvoiceExtras(
        extra_pageviews=round2(invoice.extra_pageviews_price or 0),
        extra_requests=round2(invoice.extra_req_price or 0),
        extra_bandwidth=round2(invoice.extra_bw_price or 0),
        seats_builder_cost=round2(invoice.seats_builder_cost or 0),
        support_price=round2(invoice.support_price or 0),
    )
    extras.total_extras = round2(
        extras.extra_pageviews + extras.extra_requests + extras.extra_bandwidth
        + extras.seats_builder_cost + extras.support_price
    )

    usage_out = InvoiceUsage(pageviews=int(invoice.pageviews or 0))
    if usage is not None:
        ratio, bw_ratio = efficiency_ratios(usage)
        usage_out.requests = int(usage.requests or 0)
        usage_out.bandwidth = float(usage.bandwidth or 0)
        usage_out.request_pageview_ratio = ratio
        usage_out.bandwidth_per_10k_pageviews = bw_ratio

    tiers = (invoice.tier_40_cost, invoice.tier_50_cost, invoice.tier_80_cost)
    return InvoiceBreakdown(
        reference_month=month_label(invoice.reference_month),
        plan=invoice.plan,
        status=(invoice.status or "").strip().lower(),
        total=round2(amount),
        base_plan=round2(max(0.0, amount - extras.total_extras)),
        extras=extras,
        extras_pct=round2(extras.total_extras / amount * 100.0) if amount > 0 else 0.0,
        usage=usage_out,
        due_date=invoice.due_date,
        paid_date=invoice.paid_date,
        seats_builders=invoice.seats_builders,
        tiering_simulation={
            name: (round2(cost) if cost is not None and float(cost) > 0 else None)
            for name, cost in zip(TIERS, tiers)
        },
    )


def _component_values(b: InvoiceBreakdown) -> Dict[str, float]:
    values = b.extras.model_dump(exclude={"total_extras"})
    values["base_plan"] = b.base_plan
    return values


def _usage_change(current: Optional[float], previous: Optional[float]) -> Optional[float]:
    if current is None or not previous:
        return None
    return round2((float(current) - float(previous)) / float(previous) * 100.0)


def build_comparison(current: InvoiceBreakdown, previous: InvoiceBreakdown) -> InvoiceComparison:
    """Change from `previous` to `current`; the biggest driver is the largest absolute component move."""
    diff = round2(current.total - previous.total)
    now, before = _component_values(current), _component_values(previous)
    details = {key: round2(now[key] - before[key]) for key in COMPONENTS}
    driver = max(COMPONENTS, key=lambda key: abs(details[key]))

    if diff > 0:
        direction = "increased"
    elif diff < 0:
        direction = "decreased"
    else:
        direction = "unchanged"

    return InvoiceComparison(
        amount_change_pct=round2(diff / previous.total * 100.0) if previous.total else None,
        amount_change_abs=diff,
        direction=direction,
        details=details,
        usage_changes={
            "pageviews": _usage_change(current.usage.pageviews, previous.usage.pageviews),
            "requests": _usage_change(current.usage.requests, previous.usage.requests),
            "bandwidth": _usage_change(current.usage.bandwidth, previous.usage.bandwidth),
        },
        biggest_driver=driver,
        biggest_driver_change=details[driver],
    )


def _pct(value: Optional[float]) -> str:
    return "N/A" if value is None else f"{value:+.1f}%"


def alerts_for(breakdown: InvoiceBreakdown, comparison: Optional[InvoiceComparison]) -> List[str]:
    alerts = []
    if breakdown.extras_pct > HIGH_EXTRAS_PCT:
        alerts.append(
            f"Extras are {breakdown.extras_pct:.1f}% of this invoice. "
            "Review the usage tier simulation with the customer."
        )
    if comparison is not None and comparison.amount_change_pct is not None:
        if comparison.amount_change_pct > BIG_SWING_PCT:
            alerts.append(f"Invoice rose {comparison.amount_change_pct:.1f}% on the previous month.")
        elif comparison.amount_change_pct < -BIG_SWING_PCT:
            alerts.append(
                f"Invoice fell {abs(comparison.amount_change_pct):.1f}% on the previous month; "
                "check whether the usage drop is expected."
            )
    if breakdown.status == "overdue":
        alerts.append("This invoice is overdue.")
    return alerts


def build_explanation(
    customer_name: str,
    breakdown: InvoiceBreakdown,
    previous: Optional[InvoiceBreakdown] = None,
    comparison: Optional[InvoiceComparison] = None,
) -> str:
    lines = [
        f"Invoice for {customer_name}, {breakdown.reference_month}",
        f"Status: {breakdown.status or 'unknown'}" + (f" (plan {breakdown.plan})" if breakdown.plan else ""),
        "",
        f"Total: {money(breakdown.total)}",
        f"- {COMPONENTS['base_plan']}: {money(breakdown.base_plan)}",
    ]
    extras = breakdown.extras.model_dump(exclude={"total_extras"})
    for key, value in extras.items():
        if value:
            lines.append(f"- {COMPONENTS[key]}: {money(value)}")
    if breakdown.seats_builders:
        lines.append(f"  ({breakdown.seats_builders} builder seats)")
    lines.append(f"Extras: {money(breakdown.extras.total_extras)} ({breakdown.extras_pct:.1f}% of the invoice)")

    usage = breakdown.usage
    lines += ["", f"Usage: {format_count(usage.pageviews)} pageviews"]
    if usage.requests is not None:
        lines.append(f"- Requests: {format_count(usage.requests)}")
    if usage.bandwidth is not None:
        lines.append(f"- Bandwidth: {format_bytes(usage.bandwidth)}")

    if breakdown.due_date or breakdown.paid_date:
        lines.append("")
    if breakdown.due_date:
        lines.append(f"Due: {breakdown.due_date.isoformat()}")
    if breakdown.paid_date:
        lines.append(f"Paid: {breakdown.paid_date.isoformat()}")

    if previous is not None and comparison is not None:
        lines += [
            "",
            f"Compared with {previous.reference_month} ({money(previous.total)}): "
            f"{comparison.direction} by {money(abs(comparison.amount_change_abs))} "
            f"({_pct(comparison.amount_change_pct)})",
        ]
        for key, change in comparison.details.items():
            if change:
                lines.append(f"- {COMPONENTS[key]}: {'+' if change > 0 else '-'}{money(abs(change))}")
        lines.append(
            "Usage change: "
            + ", ".join(f"{name} {_pct(pct)}" for name, pct in comparison.usage_changes.items())
        )
        if comparison.biggest_driver_change:
            lines.append(f"Main cost driver: {COMPONENTS[comparison.biggest_driver]}")

    tier_lines = []
    for name, cost in breakdown.tiering_simulation.items():
        if cost is None:
            continue
        gap = breakdown.total - cost
        if gap > 0:
            tier_lines.append(f"- {name}: {money(cost)} (saves {money(gap)})")
        else:
            tier_lines.append(f"- {name}: {money(cost)} (costs {money(-gap)} more)")
    if tier_lines:
        lines += ["", "Usage tier simulation:"] + tier_lines

    alerts = alerts_for(breakdown, comparison)
    if alerts:
        lines += ["", "Alerts:"] + [f"- {a}" for a in alerts]

    return "\n".join(lines)


# ---------- DB-backed (INTEGRATION-TESTED) ----------

def explain_invoice(
    billing: BillingReader,
    usage: UsageReader,
    resolved: ResolvedCustomer,
    reference_month: Union[str, date, None] = None,
) -> InvoiceExplanation:
    """
    Explain the invoice of `reference_month`, or the newest one when omitted.

    A month without an invoice is not an error: the result says so and lists
    the months that do have one.
    """
    month = parse_reference_month(reference_month)
    customer = resolved.customer
    invoices = billing.list_invoices(customer.id)
    base = {"customer": customer, "match_type": resolved.match_type}

    if not invoices:
        logger.info("No invoices to explain", extra={"customer_id": customer.id})
        return InvoiceExplanation(**base, invoice_found=False)

    available = [month_label(inv.reference_month) for inv in invoices]
    index = 0
    if month is not None:
        index = next(
            (i for i, inv in enumerate(invoices) if inv.reference_month.replace(day=1) == month),
            None,
        )
        if index is None:
            logger.info(
                "Invoice month not found",
                extra={"customer_id": customer.id, "reference_month": month_label(month)},
            )
            return InvoiceExplanation(
                **base,
                invoice_found=False,
                explanation=(
                    f"No invoice for {customer.name} in {month_label(month)}. "
                    f"Available months: {', '.join(available)}."
                ),
                available_months=available,
            )

    current = invoices[index]
    older = invoices[index + 1] if index + 1 < len(invoices) else None
    months = [current.reference_month] + ([older.reference_month] if older is not None else [])
    usage_rows = usage.for_months(customer.id, months)

    breakdown = build_breakdown(current, usage_rows.get(current.reference_month))
    previous = build_breakdown(older, usage_rows.get(older.reference_month)) if older is not None else None
    comparison = build_comparison(breakdown, previous) if previous is not None else None

    logger.info(
        "Invoice explained",
        extra={"customer_id": customer.id, "reference_month": breakdown.reference_month},
    )
    return InvoiceExplanation(
        **base,
        invoice_found=True,
        explanation=build_explanation(customer.name, breakdown, previous, comparison),
        breakdown=breakdown,
        previous_month=previous,
        comparison=comparison,
        available_months=available,
    )
