"""
Unit tests for the single-customer risk model in `customer_insights.risk`.

Invoices are built in memory (newest first) so no DB is required, except for
the last test which goes through BillingReader.
"""

import math
from datetime import date, timedelta
from unittest.mock import MagicMock

import pytest

from customer_insights.errors import ValidationError
from customer_insights.models import Invoice
from customer_insights.repositories import BillingReader
from customer_insights.risk import (
    NO_CHEAPER_TIER_ACTION,
    TIERING_ACTION,
    UPGRADE_ACTION,
    WEIGHTS,
    profile_for_score,
    score_invoices,
    score_risk,
    tiering_gap,
)
from customer_insights.schemas import CustomerOut, ResolvedCustomer

RESOLVED = ResolvedCustomer(customer=CustomerOut(id=1, name="Acme", email="billing@acme.com"), match_type="id")


def _invoice(i, amount=1000.0, status="paid", delay=0, pageviews=50_000, overage=0.0, tiers=(None, None, None)):
    ref = date(2024, 12 - i, 1)
    due = ref + timedelta(days=10)
    return Invoice(
        amount=amount,
        status=status,
        reference_month=ref,
        due_date=due,
        paid_date=due + timedelta(days=delay) if status == "paid" else None,
        pageviews=pageviews,
        extra_pageviews_price=overage,
        extra_req_price=0.0,
        extra_bw_price=0.0,
        tier_40_cost=tiers[0],
        tier_50_cost=tiers[1],
        tier_80_cost=tiers[2],
    )


def test_weights_sum_to_one():
    assert math.isclose(sum(WEIGHTS.values()), 1.0)


def test_profiles_are_monotonic():
    order = ["stable", "moderate", "elevated", "high", "critical"]
    ranks = [order.index(profile_for_score(x / 10)) for x in range(0, 101)]
    assert ranks == sorted(ranks)


def test_perfect_customer_is_low_risk():
    r = score_invoices(RESOLVED, [_invoice(i) for i in range(6)])
    assert len(r.factors) == 5
    assert math.isclose(sum(f.weight for f in r.factors), 1.0)
    assert r.risk_score <= 2
    assert r.risk_profile in {"stable", "moderate"}


def test_problematic_customer_is_high_risk():
    invoices = (
        [_invoice(i, status="overdue", pageviews=20_000) for i in range(3)]
        + [_invoice(i, delay=30) for i in range(3, 6)]
    )
    r = score_invoices(RESOLVED, invoices)
    assert r.risk_score >= 5
    assert r.risk_profile in {"high", "critical"}
    assert any("unpaid" in i for i in r.issues)
    assert any("declined" in i for i in r.issues)


def test_high_overage_without_cheaper_tier_never_recommends_upgrade():
    invoices = [_invoice(i, overage=600.0, tiers=(1000.0, 1100.0, 1200.0)) for i in range(6)]
    r = score_invoices(RESOLVED, invoices)
    assert any("overage" in i.lower() for i in r.issues)
    assert NO_CHEAPER_TIER_ACTION in r.recommended_actions
    assert UPGRADE_ACTION not in r.recommended_actions


def test_cheaper_tier_adds_tiering_action():
    invoices = [_invoice(i, overage=600.0, tiers=(600.0, 700.0, None)) for i in range(6)]
    r = score_invoices(RESOLVED, invoices)
    gap = next(f for f in r.factors if f.name == "tiering_gap")
    assert gap.raw_value == pytest.approx(40.0)
    assert TIERING_ACTION in r.recommended_actions
    assert UPGRADE_ACTION in r.recommended_actions
    assert NO_CHEAPER_TIER_ACTION not in r.recommended_actions


def test_tiering_gap_ignores_months_without_simulation():
    gap, current, best = tiering_gap([_invoice(0), _invoice(1, tiers=(0.0, None, 0.0))])
    assert gap == 0.0
    assert current == best == 2000.0


def test_zero_invoices_is_a_degraded_result_not_an_error():
    r = score_invoices(RESOLVED, [])
    assert r.risk_score == 0
    assert len(r.factors) == 5
    assert r.risk_profile == "stable"
    assert r.issues == ["No billing data available"]


def test_score_risk_validates_limit_before_reading():
    reader = MagicMock()
    with pytest.raises(ValidationError):
        score_risk(reader, RESOLVED, limit=0)
    reader.list_invoices.assert_not_called()


def test_score_risk_reads_only_the_requested_window(db, make_customer):
    c = make_customer(invoices=[{}] * 3 + [{"status": "overdue"}] * 5)
    resolved = ResolvedCustomer(customer=CustomerOut.model_validate(c), match_type="id")

    recent = score_risk(BillingReader(db), resolved, limit=3)
    assert recent.risk_score == 0

    wider = score_risk(BillingReader(db), resolved, limit=8)
    assert wider.risk_score > recent.risk_score
