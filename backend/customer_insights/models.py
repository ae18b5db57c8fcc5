"""
models.py
=========
ORM models for the Customer Insights API.

- Customer:         accounts we analyse (id, name, email), read-only for the scorers
- Invoice:          one row per billing period, with overage and tier simulation costs
- UsageRecord:      one row per month of pageviews / requests / bandwidth
- EmailMessage:     customer communication history used for complaint detection
- SummarySnapshot:  cached executive summary, exactly one row per customer
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    BigInteger,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .db import Base


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class InvoiceStatus(str, PyEnum):
    """Billing statuses we recognise. Unknown raw values are stored as-is."""
    paid = "paid"
    overdue = "overdue"
    pending = "pending"
    open = "open"


# -----------------------------------------------------------------------------
# Customer
# -----------------------------------------------------------------------------
class Customer(Base):
    """
    Customers owned by the external billing/CRM system.

    Notes:
    - Names are NOT unique; the resolver reports ambiguity instead of guessing.
    - Emails are matched case-insensitively.
    """
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False, index=True)
    email = Column(String, nullable=False, index=True)

    invoices = relationship(
        "Invoice",
        back_populates="customer",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    usage_records = relationship(
        "UsageRecord",
        back_populates="customer",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    messages = relationship(
        "EmailMessage",
        back_populates="customer",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# -----------------------------------------------------------------------------
# Invoice
# -----------------------------------------------------------------------------
class Invoice(Base):
    """
    One invoice per billing period.

    Conventions:
    - extra_*_price are overage charges included in `amount`.
    - seats_builder_cost and support_price are add-ons, also included in
      `amount`; what remains is the base plan.
    - tier_*_cost are what the same month would have cost on each usage tier;
      0/NULL means no simulation is available for that tier.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        Index("ix_invoices_customer_ref", "customer_id", "reference_month"),
    )

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)

    amount = Column(Float, nullable=False, default=0.0)
    status = Column(String, nullable=False, default=InvoiceStatus.pending.value)
    due_date = Column(Date, nullable=True)
    paid_date = Column(Date, nullable=True)
    reference_month = Column(Date, nullable=False)
    plan = Column(String, nullable=True)

    extra_pageviews_price = Column(Float, nullable=False, default=0.0)
    extra_req_price = Column(Float, nullable=False, default=0.0)
    extra_bw_price = Column(Float, nullable=False, default=0.0)
    pageviews = Column(BigInteger, nullable=False, default=0)

    seats_builders = Column(Integer, nullable=True)
    seats_builder_cost = Column(Float, nullable=False, default=0.0)
    support_price = Column(Float, nullable=False, default=0.0)

    tier_40_cost = Column(Float, nullable=True)
    tier_50_cost = Column(Float, nullable=True)
    tier_80_cost = Column(Float, nullable=True)

    customer = relationship("Customer", back_populates="invoices")

    @property
    def overage_total(self) -> float:
        return float(self.extra_pageviews_price or 0) + float(self.extra_req_price or 0) + float(self.extra_bw_price or 0)

    @property
    def is_paid(self) -> bool:
        return (self.status or "").strip().lower() == InvoiceStatus.paid.value

    @property
    def is_overdue(self) -> bool:
        return (self.status or "").strip().lower() == InvoiceStatus.overdue.value


# -----------------------------------------------------------------------------
# UsageRecord
# -----------------------------------------------------------------------------
class UsageRecord(Base):
    """Monthly usage. `bandwidth` is in bytes; ratios may be NULL and are derived on read."""
    __tablename__ = "usage_records"
    __table_args__ = (
        Index("ix_usage_customer_ref", "customer_id", "reference_month"),
    )

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    reference_month = Column(Date, nullable=False)

    pageviews = Column(BigInteger, nullable=False, default=0)
    requests = Column(BigInteger, nullable=False, default=0)
    bandwidth = Column(Float, nullable=False, default=0.0)
    plan = Column(String, nullable=True)

    request_pageview_ratio = Column(Float, nullable=True)
    bw_per_10k_pageviews = Column(Float, nullable=True)

    customer = relationship("Customer", back_populates="usage_records")


# -----------------------------------------------------------------------------
# EmailMessage
# -----------------------------------------------------------------------------
class EmailMessage(Base):
    """Messages received from a customer; `subject` and `snippet` both feed the complaint classifier."""
    __tablename__ = "email_messages"
    __table_args__ = (
        Index("ix_email_messages_customer_sent", "customer_id", "sent_at"),
    )

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    subject = Column(String, nullable=True)
    snippet = Column(Text, nullable=False, default="")
    sent_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    customer = relationship("Customer", back_populates="messages")


# -----------------------------------------------------------------------------
# SummarySnapshot
# -----------------------------------------------------------------------------
class SummarySnapshot(Base):
    """
    Pre-computed executive summary keyed by customer.

    The primary key enforces at most one row per customer. Rows are replaced
    wholesale (delete-then-insert in one transaction), never updated.
    `data_sources` and `meta` hold JSON text.
    """
    __tablename__ = "summary_snapshots"

    customer_id = Column(Integer, primary_key=True, autoincrement=False)
    generated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    summary_text = Column(Text, nullable=False)
    data_sources = Column(Text, nullable=False)
    meta = Column(Text, nullable=False)
