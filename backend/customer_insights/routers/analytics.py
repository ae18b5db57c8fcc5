# backend/customer_insights/routers/analytics.py
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..repositories import BillingReader, SnapshotStore
from ..schemas import HealthListResult, SnapshotOut
from ..scoring import list_health, parse_filters
from ..snapshots import list_snapshots

router = APIRouter(prefix="/api/health", tags=["analytics"])


@router.get("/customers", response_model=HealthListResult)
def health_customers(
    sort_by: str = Query("health_score", description="health_score | overdue_amount | overage_pct"),
    health_filter: str = Query("all", description="all | critical | at_risk | needs_attention | healthy | excellent"),
    strict_health_filter: bool = Query(False, description="Disable needs_attention triage expansion"),
    min_invoices: int = Query(1),
    limit: int = Query(50),
    db: Session = Depends(get_db),
):
    """
    Score the whole population and return the ranked list plus the label
    distribution. `needs_attention` also returns at_risk and critical
    customers unless `strict_health_filter=true`.
    """
    filters = parse_filters(
        sort_by=sort_by,
        health_filter=health_filter,
        strict_health_filter=strict_health_filter,
        min_invoices=min_invoices,
        limit=limit,
    )
    return list_health(BillingReader(db), filters)


@router.get("/snapshots", response_model=List[SnapshotOut])
def health_snapshots(db: Session = Depends(get_db)):
    """Customers with a cached summary, newest first."""
    return list_snapshots(SnapshotStore(db))
