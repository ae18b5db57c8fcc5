"""
usage.py
========
Monthly usage trends, efficiency ratios and anomaly flags.

- Trend: average of the 3 most recent months vs the 3 months before them.
  change_pct = (recent - previous) / previous * 100, and 0 when previous is 0.
- Efficiency: requests per pageview and bandwidth (bytes) per 10k pageviews.
- Anomalies: usage_drop, usage_spike, high_request_ratio, heavy_assets.

History, summary and trend always describe the same `months` window (the
reader computes all three from one windowed subquery). Formatting helpers only
add `*_formatted` strings and never touch the numeric fields.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

from .config import settings
from .errors import ValidationError
from .logging_config import get_logger
from .models import UsageRecord
from .repositories import UsageReader
from .schemas import (
    Anomaly,
    CustomerOut,
    UsageEfficiency,
    UsagePoint,
    UsageReport,
    UsageSummary,
    UsageTrend,
)

logger = get_logger(__name__)

MAX_MONTHS = 60
HEAVY_ASSETS_BW_GROWTH_PCT = 15.0
HEAVY_ASSETS_BW_CRITICAL_PCT = 40.0
HEAVY_ASSETS_PV_STABLE_PCT = 5.0


# ---------- pure helpers ----------

def round2(x: float) -> float:
    return round(float(x), 2)


def change_pct(recent: float, previous: float) -> float:
    """Percentage change recent vs previous; defined as 0 when previous is 0."""
    if not previous:
        return 0.0
    return round2((float(recent) - float(previous)) / float(previous) * 100.0)


def format_bytes(n: float) -> str:
    """1536 -> '1.5KB'. Binary units, up to TB."""
    value = float(n or 0)
    for unit in ("B", "KB", "MB", "GB"):
        if abs(value) < 1024:
            return f"{round2(value):g}{unit}"
        value /= 1024
    return f"{round2(value):g}TB"


def format_count(n: float) -> str:
    """1_250_000 -> '1.25M', 45_300 -> '45.3K'."""
    value = float(n or 0)
    if abs(value) >= 1_000_000:
        return f"{round2(value / 1_000_000):g}M"
    if abs(value) >= 1_000:
        return f"{round2(value / 1_000):g}K"
    return str(int(round(value)))


def efficiency_ratios(record: UsageRecord) -> Tuple[Optional[float], Optional[float]]:
    """(requests per pageview, bandwidth per 10k pageviews); stored values win, else derived."""
    pageviews = float(record.pageviews or 0)
    ratio = record.request_pageview_ratio
    if ratio is None and pageviews > 0:
        ratio = float(record.requests or 0) / pageviews
    bw_ratio = record.bw_per_10k_pageviews
    if bw_ratio is None and pageviews > 0:
        bw_ratio = float(record.bandwidth or 0) / pageviews * 10_000
    return (
        round2(ratio) if ratio is not None else None,
        round2(bw_ratio) if bw_ratio is not None else None,
    )


def build_trend(raw: dict) -> UsageTrend:
    trend = UsageTrend(**{k: round2(v) for k, v in raw.items()})
    trend.pageviews_change_pct = change_pct(trend.recent_3m_avg_pageviews, trend.previous_3m_avg_pageviews)
    trend.requests_change_pct = change_pct(trend.recent_3m_avg_requests, trend.previous_3m_avg_requests)
    trend.bandwidth_change_pct = change_pct(trend.recent_3m_avg_bandwidth, trend.previous_3m_avg_bandwidth)
    return trend


def build_efficiency(history: List[UsagePoint]) -> UsageEfficiency:
    ratios = [p.request_pageview_ratio for p in history if p.request_pageview_ratio is not None]
    bw_ratios = [p.bandwidth_per_10k_pageviews for p in history if p.bandwidth_per_10k_pageviews is not None]
    latest = history[0] if history else None
    return UsageEfficiency(
        latest_request_pageview_ratio=latest.request_pageview_ratio if latest else None,
        latest_bandwidth_per_10k_pageviews=latest.bandwidth_per_10k_pageviews if latest else None,
        avg_request_pageview_ratio=round2(sum(ratios) / len(ratios)) if ratios else None,
        avg_bandwidth_per_10k_pageviews=round2(sum(bw_ratios) / len(bw_ratios)) if bw_ratios else None,
    )


def detect_anomalies(trend: UsageTrend, efficiency: Optional[UsageEfficiency] = None) -> List[Anomaly]:
    """
    Flag deviations from the trend and efficiency ratios.

    Change percentages are recomputed from the averages so a hand-built trend
    and a reader-built trend are judged the same way.
    """
    efficiency = efficiency or UsageEfficiency()
    anomalies: List[Anomaly] = []

    pv_change = change_pct(trend.recent_3m_avg_pageviews, trend.previous_3m_avg_pageviews)
    bw_change = change_pct(trend.recent_3m_avg_bandwidth, trend.previous_3m_avg_bandwidth)
    has_pv_baseline = trend.previous_3m_avg_pageviews > 0

    ratio = efficiency.latest_request_pageview_ratio
    if ratio is not None and ratio > settings.HIGH_REQUEST_RATIO:
        anomalies.append(Anomaly(
            type="high_request_ratio",
            severity="critical" if ratio > settings.CRITICAL_REQUEST_RATIO else "warning",
            message="Possible bot traffic or caching issue",
            detail=(
                f"Request/pageview ratio is {ratio} (normal: < {settings.HIGH_REQUEST_RATIO:g}). "
                "This may indicate bot traffic, misconfigured caching or excessive API calls per page."
            ),
        ))

    bw_ratio = efficiency.latest_bandwidth_per_10k_pageviews
    heavy_by_ratio = bw_ratio is not None and bw_ratio > settings.HEAVY_ASSETS_BYTES_PER_10K
    heavy_by_growth = (
        has_pv_baseline
        and trend.previous_3m_avg_bandwidth > 0
        and bw_change > HEAVY_ASSETS_BW_GROWTH_PCT
        and pv_change < HEAVY_ASSETS_PV_STABLE_PCT
    )
    if heavy_by_ratio:
        anomalies.append(Anomaly(
            type="heavy_assets",
            severity="critical" if bw_ratio > 2 * settings.HEAVY_ASSETS_BYTES_PER_10K else "warning",
            message="Heavy assets detected",
            detail=(
                f"Bandwidth per 10k pageviews is {format_bytes(bw_ratio)} "
                f"(threshold: {format_bytes(settings.HEAVY_ASSETS_BYTES_PER_10K)}). "
                "Pages may be serving unoptimized images or video."
            ),
        ))
    elif heavy_by_growth:
        anomalies.append(Anomaly(
            type="heavy_assets",
            severity="critical" if bw_change > HEAVY_ASSETS_BW_CRITICAL_PCT else "warning",
            message="Heavy assets detected",
            detail=(
                f"Bandwidth grew {bw_change}% while pageviews changed {pv_change}%. "
                "The customer may be serving heavier content, inflating bandwidth costs."
            ),
        ))

    if has_pv_baseline and pv_change < -settings.USAGE_DROP_PCT:
        anomalies.append(Anomaly(
            type="usage_drop",
            severity="critical" if pv_change < -2 * settings.USAGE_DROP_PCT else "warning",
            message="Significant usage decline detected",
            detail=(
                f"Pageviews dropped {abs(pv_change)}% comparing recent 3 months vs previous 3 months. "
                "This may indicate disengagement or migration."
            ),
        ))

    if has_pv_baseline and pv_change > settings.USAGE_SPIKE_PCT:
        anomalies.append(Anomaly(
            type="usage_spike",
            severity="warning",
            message="Significant usage increase",
            detail=(
                f"Pageviews grew {pv_change}% comparing recent 3 months vs previous 3 months. "
                "The customer may need a tier change to avoid excessive overage costs."
            ),
        ))

    return anomalies


def to_point(record: UsageRecord) -> UsagePoint:
    ratio, bw_ratio = efficiency_ratios(record)
    return UsagePoint(
        reference_month=record.reference_month,
        pageviews=int(record.pageviews or 0),
        requests=int(record.requests or 0),
        bandwidth=float(record.bandwidth or 0),
        plan=record.plan,
        request_pageview_ratio=ratio,
        bandwidth_per_10k_pageviews=bw_ratio,
        pageviews_formatted=format_count(record.pageviews),
        requests_formatted=format_count(record.requests),
        bandwidth_formatted=format_bytes(record.bandwidth),
    )


def build_summary(raw: dict) -> UsageSummary:
    return UsageSummary(
        **raw,
        total_pageviews_formatted=format_count(raw["total_pageviews"]),
        total_requests_formatted=format_count(raw["total_requests"]),
        total_bandwidth_formatted=format_bytes(raw["total_bandwidth"]),
    )


def analyze_usage(
    customer: CustomerOut,
    records: List[UsageRecord],
    summary_raw: dict,
    trend_raw: dict,
    months: int,
) -> UsageReport:
    """Assemble the report from rows and aggregates already scoped to `months`."""
    history = [to_point(r) for r in records]
    summary = build_summary(summary_raw)
    trend = build_trend(trend_raw)
    efficiency = build_efficiency(history)
    anomalies = detect_anomalies(trend, efficiency) if history else []

    ref_months = sorted(p.reference_month.isoformat() for p in history)
    period_start = ref_months[0] if ref_months else None
    period_end = ref_months[-1] if ref_months else None
    summary_text = (
        f"Usage aggregated over {summary.total_months} month(s) "
        f"({period_start or 'N/A'} to {period_end or 'N/A'}): "
        f"Pageviews {summary.total_pageviews_formatted}, "
        f"Requests {summary.total_requests_formatted}, "
        f"Bandwidth {summary.total_bandwidth_formatted}."
    )

    return UsageReport(
        customer=customer,
        total_points=len(history),
        usage_history=history,
        summary=summary,
        summary_text=summary_text,
        trend=trend,
        efficiency=efficiency,
        anomalies=anomalies,
        meta={
            "months_requested": months,
            "months_returned": len(history),
            "summary_months": summary.total_months,
            "period_start": period_start,
            "period_end": period_end,
        },
    )


def get_usage(reader: UsageReader, customer: CustomerOut, months: Optional[int] = None) -> UsageReport:
    months = settings.DEFAULT_USAGE_MONTHS if months is None else months
    if not isinstance(months, int) or isinstance(months, bool) or not 1 <= months <= MAX_MONTHS:
        raise ValidationError(f"months must be an integer between 1 and {MAX_MONTHS}.")

    records = reader.list_usage(customer.id, months)
    summary_raw = reader.summarize(customer.id, months)
    trend_raw = reader.trend(customer.id, months)
    report = analyze_usage(customer, records, summary_raw, trend_raw, months)
    logger.info(
        "Usage analysed",
        extra={"customer_id": customer.id, "months": months, "anomalies": [a.type for a in report.anomalies]},
    )
    return report
