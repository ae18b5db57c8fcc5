"""
Cache behaviour of the summary pipeline, with every collaborator mocked.

The readers are MagicMocks so the tests can assert which of them were (not)
touched. The last two run against a real session: replacing a snapshot keeps
exactly one row per customer, and a missing snapshot table degrades to an
uncached summary.
"""

import json
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select

from customer_insights.db import Base, engine
from customer_insights.errors import CollaboratorUnavailableError, CustomerNotFoundError, ValidationError
from customer_insights.models import SummarySnapshot
from customer_insights.snapshots import SummaryDeps, generate_summary, get_summary

ACME = SimpleNamespace(id=7, name="Acme", email="billing@acme.com")
GENERATED_AT = datetime(2024, 12, 1, 9, 30)


def _snapshot_row():
    return SimpleNamespace(
        customer_id=7,
        generated_at=GENERATED_AT,
        summary_text="cached summary text",
        data_sources=json.dumps({"billing": []}),
        meta=json.dumps({"llm_used": False, "status_severity": "healthy"}),
    )


@pytest.fixture()
def deps():
    d = SummaryDeps(
        customers=MagicMock(),
        billing=MagicMock(),
        usage=MagicMock(),
        emails=MagicMock(),
        snapshots=MagicMock(),
    )
    d.customers.get.return_value = ACME
    d.billing.list_invoices.return_value = []
    d.usage.list_usage.return_value = []
    d.usage.summarize.return_value = {
        "total_pageviews": 0, "total_requests": 0, "total_bandwidth": 0.0, "total_months": 0,
    }
    d.usage.trend.return_value = {}
    d.emails.list_messages.return_value = {"messages": [], "total_messages": 0, "_meta": {"enabled": True}}
    d.snapshots.replace.return_value = SimpleNamespace(generated_at=GENERATED_AT)
    return d


def _assert_no_reader_called(d):
    d.billing.list_invoices.assert_not_called()
    d.usage.list_usage.assert_not_called()
    d.usage.summarize.assert_not_called()
    d.usage.trend.assert_not_called()
    d.emails.list_messages.assert_not_called()


def test_snapshot_hit_returns_cached_text_without_reading(deps):
    deps.snapshots.get.return_value = _snapshot_row()

    result = get_summary(deps, "7")

    assert result.summary == "cached summary text"
    assert result.meta["source"] == "snapshot"
    assert "cached snapshot" in result.meta["hint"]
    assert result.snapshot_saved is False
    _assert_no_reader_called(deps)
    deps.snapshots.replace.assert_not_called()


def test_force_refresh_never_looks_up_the_snapshot(deps):
    deps.snapshots.get.return_value = _snapshot_row()

    result = get_summary(deps, "7", force_refresh=True)

    deps.snapshots.get.assert_not_called()
    deps.snapshots.replace.assert_called_once()
    assert result.meta["source"] == "generated"
    assert result.snapshot_saved is True
    assert "Acme" in result.summary


def test_miss_generates_and_saves(deps):
    deps.snapshots.get.return_value = None

    result = get_summary(deps, "7")

    deps.billing.list_invoices.assert_called_once_with(7, status=None)
    customer_id, text, data_sources, meta = deps.snapshots.replace.call_args.args
    assert customer_id == 7
    assert text == result.summary
    assert meta == {"llm_used": False, "status_severity": "healthy"}
    assert data_sources["customer"]["id"] == 7


def test_lookup_failure_falls_back_to_generation(deps):
    deps.snapshots.get.side_effect = CollaboratorUnavailableError("down", source="snapshots")

    result = get_summary(deps, "7")

    assert result.meta["source"] == "generated"
    deps.snapshots.replace.assert_called_once()


def test_save_failure_returns_the_summary_uncached(deps):
    deps.snapshots.get.return_value = None
    deps.snapshots.replace.side_effect = CollaboratorUnavailableError("down", source="snapshots")

    result = get_summary(deps, "7")

    assert "Acme" in result.summary
    assert result.snapshot_saved is False
    assert result.meta["source"] == "generated"
    assert "not cached" in result.meta["hint"]


def test_billing_status_filter_skips_the_cache(deps):
    deps.snapshots.get.return_value = _snapshot_row()

    result = get_summary(deps, "7", billing_status=" Overdue ")

    deps.snapshots.get.assert_not_called()
    deps.billing.list_invoices.assert_called_once_with(7, status="overdue")
    assert result.data_sources["filters_applied"]["billing_status"] == "overdue"


def test_unknown_billing_status_is_rejected(deps):
    with pytest.raises(ValidationError):
        get_summary(deps, "7", billing_status="refunded")
    _assert_no_reader_called(deps)


def test_excluded_email_history_skips_the_reader(deps):
    deps.snapshots.get.return_value = None

    result = get_summary(deps, "7", include_email_history=False)

    deps.emails.list_messages.assert_not_called()
    assert result.data_sources["email_history"]["_meta"]["enabled"] is False


def test_unknown_customer_propagates_and_reads_nothing(deps):
    deps.customers.get.return_value = None

    with pytest.raises(CustomerNotFoundError):
        get_summary(deps, "999")

    deps.snapshots.get.assert_not_called()
    _assert_no_reader_called(deps)


# ----- DB-backed (INTEGRATION) -----

def test_regeneration_keeps_one_row_per_customer(db, make_customer):
    c = make_customer(invoices=[{}] * 3, usage=[{}] * 3)
    real = SummaryDeps.from_session(db)

    first = generate_summary(real, str(c.id))
    second = generate_summary(real, str(c.id))

    count = db.scalar(
        select(func.count()).select_from(SummarySnapshot).where(SummarySnapshot.customer_id == c.id)
    )
    assert count == 1
    assert second.generated_at >= first.generated_at

    cached = get_summary(real, str(c.id))
    assert cached.meta["source"] == "snapshot"
    assert cached.summary == second.summary


def test_missing_snapshot_table_still_returns_a_summary(db, make_customer):
    c = make_customer(invoices=[{}] * 2)
    SummarySnapshot.__table__.drop(bind=engine)
    try:
        result = get_summary(SummaryDeps.from_session(db), str(c.id))

        assert result.snapshot_saved is False
        assert result.meta["source"] == "generated"
        assert len(result.data_sources["billing"]) == 2
    finally:
        Base.metadata.create_all(bind=engine)
