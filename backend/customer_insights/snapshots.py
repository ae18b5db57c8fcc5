"""
snapshots.py
============
Executive summary pipeline with a one-row-per-customer snapshot cache.

- get_summary():       serve the cached snapshot, or generate and save one
- generate_summary():  always regenerate and replace the snapshot
- list_snapshots():    cached customers, newest first

A snapshot hit never touches the billing, usage or email readers. A failing
snapshot lookup is logged and treated as a miss; a failing save returns the
summary uncached with `snapshot_saved=False`.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .config import settings
from .errors import CollaboratorUnavailableError, ValidationError
from .logging_config import get_logger
from .models import Invoice, SummarySnapshot
from .repositories import (
    BillingReader,
    CustomerRepository,
    EmailHistoryReader,
    SnapshotStore,
    UsageReader,
)
from .resolver import resolve
from .schemas import ResolvedCustomer, SnapshotOut, SummaryResult
from .summary import (
    compose_summary,
    compute_tiering,
    determine_status,
    format_billing_section,
    format_tiering_section,
    format_usage_section,
    generate_action,
    generate_analysis,
)
from .usage import MAX_MONTHS, get_usage

logger = get_logger(__name__)

MAX_EMAIL_RESULTS = 50
BILLING_STATUSES = ("paid", "pending", "overdue", "open", "registered")


@dataclass
class SummaryDeps:
    """Collaborators of the summary pipeline; swapped for mocks in tests."""
    customers: CustomerRepository
    billing: BillingReader
    usage: UsageReader
    emails: EmailHistoryReader
    snapshots: SnapshotStore

    @classmethod
    def from_session(cls, db: Session) -> "SummaryDeps":
        return cls(
            customers=CustomerRepository(db),
            billing=BillingReader(db),
            usage=UsageReader(db),
            emails=EmailHistoryReader(db, enabled=settings.EMAIL_HISTORY_ENABLED),
            snapshots=SnapshotStore(db),
        )


def invoice_to_dict(inv: Invoice) -> Dict[str, Any]:
    return {
        "id": inv.id,
        "reference_month": inv.reference_month.isoformat() if inv.reference_month else None,
        "amount": inv.amount,
        "status": inv.status,
        "due_date": inv.due_date.isoformat() if inv.due_date else None,
        "paid_date": inv.paid_date.isoformat() if inv.paid_date else None,
        "plan": inv.plan,
        "pageviews": inv.pageviews,
        "overage_total": round(inv.overage_total, 2),
    }


def _validate_email_max(email_max_results: int) -> None:
    if not isinstance(email_max_results, int) or isinstance(email_max_results, bool) \
            or not 1 <= email_max_results <= MAX_EMAIL_RESULTS:
        raise ValidationError(f"email_max_results must be an integer between 1 and {MAX_EMAIL_RESULTS}.")


def _email_history(deps: SummaryDeps, customer_id: int, include: bool, max_results: int) -> Dict[str, Any]:
    if not include:
        return {
            "messages": [],
            "total_messages": 0,
            "_meta": {"enabled": False, "reason": "excluded by request"},
        }
    return deps.emails.list_messages(customer_id, max_results=max_results)


# ---------- cache lookup ----------

def _from_snapshot(row: SummarySnapshot) -> Optional[SummaryResult]:
    try:
        data_sources = json.loads(row.data_sources or "{}")
        meta = json.loads(row.meta or "{}")
    except ValueError:
        logger.warning("Snapshot unreadable, regenerating", extra={"customer_id": row.customer_id})
        return None
    meta.update(
        source="snapshot",
        hint=(
            f"Served from a cached snapshot generated at {row.generated_at.isoformat()}. "
            "Pass force_refresh=true to regenerate."
        ),
    )
    return SummaryResult(
        customer_id=row.customer_id,
        generated_at=row.generated_at,
        summary=row.summary_text,
        snapshot_saved=False,
        data_sources=data_sources,
        meta=meta,
    )


def _lookup(deps: SummaryDeps, customer_id: int) -> Optional[SummaryResult]:
    try:
        row = deps.snapshots.get(customer_id)
    except CollaboratorUnavailableError as exc:
        logger.warning("Snapshot lookup failed, generating", extra={"customer_id": customer_id, "error": str(exc)})
        return None
    if row is None:
        logger.info("Snapshot miss", extra={"customer_id": customer_id})
        return None
    result = _from_snapshot(row)
    if result is not None:
        logger.info("Snapshot hit", extra={"customer_id": customer_id})
    return result


# ---------- generation ----------

def _generate(
    deps: SummaryDeps,
    resolved: ResolvedCustomer,
    include_email_history: bool,
    email_max_results: int,
    billing_status: Optional[str] = None,
) -> SummaryResult:
    customer = resolved.customer

    invoices = deps.billing.list_invoices(customer.id, status=billing_status)
    usage = get_usage(deps.usage, customer, months=MAX_MONTHS)
    email_history = _email_history(deps, customer.id, include_email_history, email_max_results)

    status = determine_status(invoices, email_history)
    billing_section = format_billing_section(invoices)
    usage_section = format_usage_section(usage)
    tiering = compute_tiering(invoices)

    analysis = generate_analysis(billing_section.metrics, usage_section.metrics, email_history, tiering)
    action = generate_action(status, billing_section.metrics, usage_section.metrics)
    text = compose_summary(
        customer,
        status,
        billing_section.text,
        usage_section.text,
        analysis,
        action,
        tiering_section=format_tiering_section(tiering) if tiering else None,
    )

    data_sources = {
        "customer": customer.model_dump(),
        "match_type": resolved.match_type,
        "billing": [invoice_to_dict(inv) for inv in invoices],
        "usage": usage.model_dump(mode="json", by_alias=True),
        "email_history": email_history,
        "tiering": tiering.__dict__ if tiering else None,
        "filters_applied": {
            "billing_status": billing_status,
            "include_email_history": include_email_history,
            "email_max_results": email_max_results,
        },
    }
    meta = {"llm_used": False, "status_severity": status.severity}

    try:
        row = deps.snapshots.replace(customer.id, text, data_sources, meta)
    except CollaboratorUnavailableError as exc:
        logger.warning(
            "Snapshot save failed, returning uncached summary",
            extra={"customer_id": customer.id, "error": str(exc)},
        )
        row = None
    logger.info(
        "Summary generated",
        extra={"customer_id": customer.id, "status": status.severity, "invoices": len(invoices)},
    )
    return SummaryResult(
        customer_id=customer.id,
        generated_at=row.generated_at if row is not None else datetime.utcnow(),
        summary=text,
        snapshot_saved=row is not None,
        data_sources=data_sources,
        meta={
            **meta,
            "source": "generated",
            "hint": (
                "Freshly generated and saved as the customer's snapshot."
                if row is not None
                else "Freshly generated; the snapshot store is unavailable, so this summary was not cached."
            ),
        },
    )


# ---------- public operations ----------

def _clean_status(billing_status: Optional[str]) -> Optional[str]:
    if billing_status is None:
        return None
    cleaned = billing_status.strip().lower()
    if not cleaned:
        return None
    if cleaned not in BILLING_STATUSES:
        raise ValidationError(f"billing_status must be one of: {', '.join(BILLING_STATUSES)}.")
    return cleaned


def get_summary(
    deps: SummaryDeps,
    identifier: Any,
    force_refresh: bool = False,
    include_email_history: bool = True,
    email_max_results: int = 5,
    billing_status: Optional[str] = None,
) -> SummaryResult:
    """
    Serve the cached snapshot unless forced. A `billing_status` filter also
    skips the lookup, since the cached text may have been built unfiltered.
    """
    _validate_email_max(email_max_results)
    billing_status = _clean_status(billing_status)
    resolved = resolve(deps.customers, identifier)

    if not force_refresh and billing_status is None:
        cached = _lookup(deps, resolved.customer.id)
        if cached is not None:
            return cached

    return _generate(deps, resolved, include_email_history, email_max_results, billing_status)


def generate_summary(
    deps: SummaryDeps,
    identifier: Any,
    include_email_history: bool = True,
    email_max_results: int = 5,
    billing_status: Optional[str] = None,
) -> SummaryResult:
    return get_summary(
        deps,
        identifier,
        force_refresh=True,
        include_email_history=include_email_history,
        email_max_results=email_max_results,
        billing_status=billing_status,
    )


def list_snapshots(store: SnapshotStore) -> List[SnapshotOut]:
    return [SnapshotOut.model_validate(row) for row in store.list()]
