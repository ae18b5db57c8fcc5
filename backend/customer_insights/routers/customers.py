# backend/customer_insights/routers/customers.py
from __future__ import annotations

from typing import List, Optional, Union

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..errors import ValidationError
from ..invoices import explain_invoice
from ..repositories import BillingReader, CustomerRepository, UsageReader
from ..resolver import resolve, resolve_by_domain
from ..risk import score_risk
from ..schemas import (
    CustomerOut,
    InvoiceExplanation,
    ResolvedCustomer,
    RiskScoreResult,
    SummaryResult,
    UsageReport,
)
from ..snapshots import SummaryDeps, generate_summary, get_summary
from ..usage import get_usage

router = APIRouter(prefix="/api/customers", tags=["customers"])


@router.get("/resolve", response_model=Union[ResolvedCustomer, List[CustomerOut]])
def resolve_customer(
    q: Optional[str] = Query(None, description="Customer id, email or name"),
    domain: Optional[str] = Query(None, description="Email domain, e.g. acme.com"),
    db: Session = Depends(get_db),
):
    """
    Resolve `q` to exactly one customer, or list every customer of `domain`.

    Ambiguous names return 422 with the candidate ids.
    """
    repo = CustomerRepository(db)
    if domain is not None:
        return resolve_by_domain(repo, domain)
    if q is None:
        raise ValidationError("Provide either q or domain.")
    return resolve(repo, q)


@router.get("/{identifier}/usage", response_model=UsageReport)
def customer_usage(
    identifier: str,
    months: Optional[int] = Query(None, description="Window size in months (1-60, default 12)"),
    db: Session = Depends(get_db),
):
    resolved = resolve(CustomerRepository(db), identifier)
    return get_usage(UsageReader(db), resolved.customer, months=months)


@router.get("/{identifier}/risk", response_model=RiskScoreResult)
def customer_risk(
    identifier: str,
    limit: Optional[int] = Query(None, description="Most recent invoices to score (default 6)"),
    db: Session = Depends(get_db),
):
    resolved = resolve(CustomerRepository(db), identifier)
    return score_risk(BillingReader(db), resolved, limit=limit)


@router.get("/{identifier}/invoices/explain", response_model=InvoiceExplanation)
def customer_invoice_explanation(
    identifier: str,
    reference_month: Optional[str] = Query(None, description="YYYY-MM or YYYY-MM-DD; newest invoice when omitted"),
    db: Session = Depends(get_db),
):
    """Breakdown of one invoice with the change against the previous month."""
    resolved = resolve(CustomerRepository(db), identifier)
    return explain_invoice(BillingReader(db), UsageReader(db), resolved, reference_month)


@router.get("/{identifier}/summary", response_model=SummaryResult)
def customer_summary(
    identifier: str,
    force_refresh: bool = False,
    include_email_history: bool = True,
    email_max_results: int = 5,
    billing_status: Optional[str] = Query(None, description="paid | pending | overdue | open | registered"),
    db: Session = Depends(get_db),
):
    """Cached executive summary; generated and saved on first request or when forced."""
    return get_summary(
        SummaryDeps.from_session(db),
        identifier,
        force_refresh=force_refresh,
        include_email_history=include_email_history,
        email_max_results=email_max_results,
        billing_status=billing_status,
    )


@router.post("/{identifier}/summary", response_model=SummaryResult)
def regenerate_summary(
    identifier: str,
    include_email_history: bool = True,
    email_max_results: int = 5,
    billing_status: Optional[str] = Query(None, description="paid | pending | overdue | open | registered"),
    db: Session = Depends(get_db),
):
    return generate_summary(
        SummaryDeps.from_session(db),
        identifier,
        include_email_history=include_email_history,
        email_max_results=email_max_results,
        billing_status=billing_status,
    )
