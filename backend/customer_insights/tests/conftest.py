"""
Shared fixtures.

The database URL must be set before `customer_insights` is imported, since
the engine and settings are built at import time. Every test gets a file-backed
SQLite database that is emptied afterwards.
"""

import os
import tempfile
from datetime import date, timedelta

_TMP_DIR = tempfile.mkdtemp(prefix="customer-insights-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["SEED_ON_START"] = "false"
os.environ["EMAIL_HISTORY_ENABLED"] = "true"

import pytest
from fastapi.testclient import TestClient

from customer_insights.db import Base, SessionLocal, engine
from customer_insights.main import app
from customer_insights.models import Customer, EmailMessage, Invoice, UsageRecord


def month_back(n: int, newest: date = date(2024, 12, 1)) -> date:
    """First day of the month `n` months before `newest`."""
    year, month = newest.year, newest.month - n
    while month <= 0:
        month += 12
        year -= 1
    return date(year, month, 1)


@pytest.fixture()
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        with engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())


@pytest.fixture()
def client(db):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def make_customer(db):
    """
    Insert a customer plus optional history.

    `pageviews` / `usage` are listed newest first; index i lands in the month
    i months before Dec 2024.
    """

    def _make(
        name="Acme Corp",
        email="billing@acme.com",
        invoices=(),
        usage=(),
        messages=(),
    ) -> Customer:
        c = Customer(name=name, email=email)
        db.add(c)
        db.flush()

        for i, kw in enumerate(invoices):
            ref = month_back(i)
            row = dict(
                amount=1000.0,
                status="paid",
                reference_month=ref,
                due_date=ref + timedelta(days=10),
                pageviews=50_000,
            )
            row.update(kw)
            if row["status"] == "paid" and "paid_date" not in kw:
                row["paid_date"] = row["due_date"]
            db.add(Invoice(customer_id=c.id, **row))

        for i, kw in enumerate(usage):
            row = dict(reference_month=month_back(i), pageviews=50_000, requests=250_000, bandwidth=5.0 * 1024 ** 3)
            row.update(kw)
            db.add(UsageRecord(customer_id=c.id, **row))

        for i, snippet in enumerate(messages):
            db.add(EmailMessage(
                customer_id=c.id,
                subject=f"Message {i}",
                snippet=snippet,
            ))

        db.commit()
        db.refresh(c)
        return c

    return _make
