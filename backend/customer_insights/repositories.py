"""
repositories.py
===============
Thin SQLAlchemy readers for the collaborators the scorers depend on.

Every reader takes the request-scoped Session. Database failures are wrapped in
`CollaboratorUnavailableError` and surfaced immediately (no retries).

- CustomerRepository:  id / email / name lookups used by the resolver
- BillingReader:       invoice history (per customer and whole population)
- UsageReader:         monthly usage plus summary/trend aggregates over the SAME window
- EmailHistoryReader:  communication history, flagged `enabled=False` when not configured
- SnapshotStore:       summary snapshot lookup and atomic replace
"""

from __future__ import annotations

import json
from collections import defaultdict
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import CollaboratorUnavailableError
from .logging_config import get_logger
from .models import Customer, EmailMessage, Invoice, SummarySnapshot, UsageRecord

logger = get_logger(__name__)


@contextmanager
def _reading(source: str, db: Optional[Session] = None) -> Iterator[None]:
    """
    Translate driver/ORM failures into a typed, non-retried error.

    The session is rolled back first so a failed statement does not leave it
    in an aborted transaction for the reads that follow.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        if db is not None:
            db.rollback()
        logger.error("Collaborator read failed", extra={"source": source, "error": str(exc)})
        raise CollaboratorUnavailableError(f"{source} is unavailable: {exc.__class__.__name__}", source=source) from exc


# -----------------------------------------------------------------------------
# Customers
# -----------------------------------------------------------------------------
class CustomerRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, customer_id: int) -> Optional[Customer]:
        with _reading("customers", self.db):
            return self.db.get(Customer, customer_id)

    def find_by_email(self, email: str) -> List[Customer]:
        with _reading("customers", self.db):
            stmt = (
                select(Customer)
                .where(func.lower(Customer.email) == email.strip().lower())
                .order_by(Customer.id)
            )
            return list(self.db.scalars(stmt))

    def find_by_name(self, name: str) -> List[Customer]:
        """Case-insensitive exact name match."""
        with _reading("customers", self.db):
            stmt = (
                select(Customer)
                .where(func.lower(Customer.name) == name.strip().lower())
                .order_by(Customer.id)
            )
            return list(self.db.scalars(stmt))

    def search_by_name(self, fragment: str) -> List[Customer]:
        """Case-insensitive substring match; LIKE wildcards in the input are escaped."""
        with _reading("customers", self.db):
            stmt = (
                select(Customer)
                .where(func.lower(Customer.name).contains(fragment.strip().lower(), autoescape=True))
                .order_by(Customer.name, Customer.id)
            )
            return list(self.db.scalars(stmt))

    def find_by_domain(self, domain: str) -> List[Customer]:
        with _reading("customers", self.db):
            stmt = (
                select(Customer)
                .where(func.lower(Customer.email).endswith(f"@{domain}", autoescape=True))
                .order_by(Customer.name, Customer.id)
            )
            return list(self.db.scalars(stmt))


# -----------------------------------------------------------------------------
# Billing
# -----------------------------------------------------------------------------
class BillingReader:
    def __init__(self, db: Session):
        self.db = db

    def list_invoices(
        self,
        customer_id: int,
        limit: Optional[int] = None,
        status: Optional[str] = None,
    ) -> List[Invoice]:
        """Invoices newest first, optionally limited and filtered by status."""
        with _reading("billing", self.db):
            stmt = (
                select(Invoice)
                .where(Invoice.customer_id == customer_id)
                .order_by(Invoice.reference_month.desc(), Invoice.id.desc())
            )
            if status:
                stmt = stmt.where(func.lower(Invoice.status) == status.strip().lower())
            if limit is not None:
                stmt = stmt.limit(limit)
            return list(self.db.scalars(stmt))

    def load_population(self) -> List[Tuple[Customer, List[Invoice]]]:
        """
        Load every customer and every invoice in two queries.

        Returns (customer, invoices newest first) pairs; customers without
        invoices get an empty list so the caller decides how to filter them.
        """
        with _reading("billing", self.db):
            customers = list(self.db.scalars(select(Customer).order_by(Customer.id)))
            invoices = self.db.scalars(
                select(Invoice).order_by(
                    Invoice.customer_id,
                    Invoice.reference_month.desc(),
                    Invoice.id.desc(),
                )
            )
            by_customer: Dict[int, List[Invoice]] = defaultdict(list)
            for inv in invoices:
                by_customer[inv.customer_id].append(inv)
        return [(c, by_customer.get(c.id, [])) for c in customers]


# -----------------------------------------------------------------------------
# Usage
# -----------------------------------------------------------------------------
class UsageReader:
    """
    Monthly usage for one customer.

    `list_usage`, `summarize` and `trend` all read from the same windowed
    subquery (newest `months` rows), so the three results always describe
    the same months.
    """

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _window(customer_id: int, months: int):
        return (
            select(
                UsageRecord.id,
                UsageRecord.reference_month,
                UsageRecord.pageviews,
                UsageRecord.requests,
                UsageRecord.bandwidth,
            )
            .where(UsageRecord.customer_id == customer_id)
            .order_by(UsageRecord.reference_month.desc(), UsageRecord.id.desc())
            .limit(months)
            .subquery("usage_window")
        )

    def list_usage(self, customer_id: int, months: int) -> List[UsageRecord]:
        with _reading("usage", self.db):
            stmt = (
                select(UsageRecord)
                .where(UsageRecord.customer_id == customer_id)
                .order_by(UsageRecord.reference_month.desc(), UsageRecord.id.desc())
                .limit(months)
            )
            return list(self.db.scalars(stmt))

    def for_months(self, customer_id: int, months: Sequence[date]) -> Dict[date, UsageRecord]:
        """Usage rows keyed by reference month, for joining onto invoices."""
        if not months:
            return {}
        with _reading("usage", self.db):
            rows = self.db.scalars(
                select(UsageRecord)
                .where(UsageRecord.customer_id == customer_id, UsageRecord.reference_month.in_(list(months)))
                .order_by(UsageRecord.reference_month.desc(), UsageRecord.id.desc())
            )
            by_month: Dict[date, UsageRecord] = {}
            for row in rows:
                by_month.setdefault(row.reference_month, row)
        return by_month

    def summarize(self, customer_id: int, months: int) -> Dict[str, Any]:
        w = self._window(customer_id, months)
        with _reading("usage", self.db):
            row = self.db.execute(
                select(
                    func.coalesce(func.sum(w.c.pageviews), 0),
                    func.coalesce(func.sum(w.c.requests), 0),
                    func.coalesce(func.sum(w.c.bandwidth), 0),
                    func.count(),
                ).select_from(w)
            ).one()
        return {
            "total_pageviews": int(row[0] or 0),
            "total_requests": int(row[1] or 0),
            "total_bandwidth": float(row[2] or 0),
            "total_months": int(row[3] or 0),
        }

    def trend(self, customer_id: int, months: int) -> Dict[str, float]:
        """Average of the 3 newest months vs the 3 before them, inside the window."""
        w = self._window(customer_id, months)
        ranked = select(
            w.c.pageviews,
            w.c.requests,
            w.c.bandwidth,
            func.row_number().over(order_by=[w.c.reference_month.desc(), w.c.id.desc()]).label("rn"),
        ).subquery("usage_ranked")

        recent = ranked.c.rn <= 3
        previous = (ranked.c.rn > 3) & (ranked.c.rn <= 6)
        with _reading("usage", self.db):
            row = self.db.execute(
                select(
                    func.avg(case((recent, ranked.c.pageviews))),
                    func.avg(case((previous, ranked.c.pageviews))),
                    func.avg(case((recent, ranked.c.requests))),
                    func.avg(case((previous, ranked.c.requests))),
                    func.avg(case((recent, ranked.c.bandwidth))),
                    func.avg(case((previous, ranked.c.bandwidth))),
                ).select_from(ranked)
            ).one()
        keys = (
            "recent_3m_avg_pageviews",
            "previous_3m_avg_pageviews",
            "recent_3m_avg_requests",
            "previous_3m_avg_requests",
            "recent_3m_avg_bandwidth",
            "previous_3m_avg_bandwidth",
        )
        return {k: float(v or 0) for k, v in zip(keys, row)}


# -----------------------------------------------------------------------------
# Communication history
# -----------------------------------------------------------------------------
class EmailHistoryReader:
    def __init__(self, db: Session, enabled: bool = True):
        self.db = db
        self.enabled = enabled

    def list_messages(self, customer_id: int, max_results: int = 5) -> Dict[str, Any]:
        """Newest messages first, wrapped with `total_messages` and `_meta.enabled`."""
        if not self.enabled:
            return {
                "messages": [],
                "total_messages": 0,
                "_meta": {"enabled": False, "reason": "communication history is not configured"},
            }
        with _reading("email_history", self.db):
            rows = self.db.scalars(
                select(EmailMessage)
                .where(EmailMessage.customer_id == customer_id)
                .order_by(EmailMessage.sent_at.desc(), EmailMessage.id.desc())
                .limit(max_results)
            )
            messages = [
                {
                    "subject": m.subject,
                    "snippet": m.snippet or "",
                    "sent_at": m.sent_at.isoformat() if m.sent_at else None,
                }
                for m in rows
            ]
        return {
            "messages": messages,
            "total_messages": len(messages),
            "_meta": {"enabled": True, "max_results": max_results},
        }


# -----------------------------------------------------------------------------
# Snapshots
# -----------------------------------------------------------------------------
class SnapshotStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, customer_id: int) -> Optional[SummarySnapshot]:
        with _reading("snapshots", self.db):
            return self.db.get(SummarySnapshot, customer_id)

    def replace(
        self,
        customer_id: int,
        summary_text: str,
        data_sources: Dict[str, Any],
        meta: Dict[str, Any],
    ) -> SummarySnapshot:
        """
        Delete-then-insert inside one transaction.

        If the insert fails the delete is rolled back, so a customer never ends
        up with zero rows (or, thanks to the primary key, two).
        """
        row = SummarySnapshot(
            customer_id=customer_id,
            generated_at=datetime.utcnow(),
            summary_text=summary_text,
            data_sources=json.dumps(data_sources, default=str),
            meta=json.dumps(meta, default=str),
        )
        try:
            existing = self.db.get(SummarySnapshot, customer_id)
            if existing is not None:
                self.db.delete(existing)
                self.db.flush()
            self.db.add(row)
            self.db.commit()
            self.db.refresh(row)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Snapshot replace failed", extra={"customer_id": customer_id, "error": str(exc)})
            raise CollaboratorUnavailableError("snapshots is unavailable: replace failed", source="snapshots") from exc
        logger.info("Snapshot saved", extra={"customer_id": customer_id})
        return row

    def list(self) -> Sequence[SummarySnapshot]:
        with _reading("snapshots", self.db):
            return list(
                self.db.scalars(select(SummarySnapshot).order_by(SummarySnapshot.generated_at.desc()))
            )
