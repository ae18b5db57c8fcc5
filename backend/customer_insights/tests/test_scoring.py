"""
Unit tests for the fleet health scorer in `customer_insights.scoring`.

Scope
-----
- clamp() and the individual penalty helpers (pure, no DB)
- the two calibration anchors (healthy / failing customer)
- label monotonicity across the whole 0..100 range
- triage expansion, strict filtering, distribution, sort and limit
- list_health() over a real session (INTEGRATION)
"""

import pytest

from customer_insights.errors import ValidationError
from customer_insights.models import Customer, Invoice
from customer_insights.repositories import BillingReader
from customer_insights.schemas import CustomerOut, HealthListFilters
from customer_insights.scoring import (
    HEALTH_LABELS,
    clamp,
    compute_health,
    health_from_invoices,
    label_for_score,
    label_rank,
    list_health,
    overdue_penalty,
    parse_filters,
    rank_health,
    usage_drop_penalty,
    usage_trend_pct,
)

ACME = CustomerOut(id=1, name="Acme", email="billing@acme.com")


def _health(customer=ACME, **overrides):
    base = dict(
        customer=customer,
        total_invoices=10,
        paid_count=10,
        overdue_count=0,
        total_billed=10_000.0,
        overdue_amount=0.0,
        avg_pageviews_recent=50_000,
        avg_pageviews_previous=50_000,
        overage_total=0.0,
    )
    base.update(overrides)
    return compute_health(**base)


def test_clamp_limits():
    assert clamp(-10) == 0
    assert clamp(150) == 100
    assert clamp(42.5) == 42.5


def test_penalties_are_capped():
    assert overdue_penalty(2) < overdue_penalty(3)
    assert overdue_penalty(3) == overdue_penalty(30)
    assert usage_drop_penalty(-30) < usage_drop_penalty(-90)
    assert usage_drop_penalty(-100) == usage_drop_penalty(-1000)
    assert usage_drop_penalty(-10) == 0


def test_usage_trend_edge_cases():
    """No usage at all has no trend; a brand-new customer counts as growth."""
    assert usage_trend_pct(0, 0) is None
    assert usage_trend_pct(1000, 0) == 100.0
    assert usage_trend_pct(20_000, 50_000) == -60.0


def test_healthy_anchor():
    r = _health()
    assert r.health_score >= 80
    assert r.health_label in {"excellent", "healthy"}
    assert r.issues == []


def test_failing_anchor():
    r = _health(
        paid_count=4,
        overdue_count=3,
        overdue_amount=6000.0,
        total_billed=20_000.0,
        avg_pageviews_recent=20_000,
        avg_pageviews_previous=50_000,
        overage_total=12_000.0,
    )
    assert r.health_score < 30
    assert r.health_label in {"critical", "at_risk"}
    assert any("overdue" in i for i in r.issues)
    assert any("dropped" in i for i in r.issues)


def test_score_stays_in_bounds():
    worst = _health(
        paid_count=0,
        overdue_count=50,
        overdue_amount=1e9,
        avg_pageviews_recent=0.0,
        avg_pageviews_previous=1e9,
        overage_total=10_000.0,
    )
    assert 0 <= worst.health_score <= 100


def test_labels_are_monotonic_in_score():
    scores = [x / 2 for x in range(0, 201)]
    ranks = [label_rank(label_for_score(s)) for s in scores]
    assert ranks == sorted(ranks)
    assert label_for_score(0) == HEALTH_LABELS[0]
    assert label_for_score(100) == HEALTH_LABELS[-1]


def test_health_from_invoices_counts_statuses():
    customer = Customer(id=5, name="Globex", email="ap@globex.com")
    invoices = [
        Invoice(amount=100.0, status="overdue", pageviews=10_000),
        Invoice(amount=100.0, status="open", pageviews=10_000),
        Invoice(amount=100.0, status="PAID", pageviews=10_000, plan="growth"),
    ]
    r = health_from_invoices(customer, invoices)
    assert r.total_invoices == 3
    assert r.paid_count == 1
    assert r.overdue_count == 1
    assert r.overdue_amount == 100.0
    assert r.latest_plan == "growth"


def _invoices(statuses, pageviews, amount=1000.0, overage=0.0):
    return [
        Invoice(amount=amount, status=s, pageviews=pv, extra_pageviews_price=overage)
        for s, pv in zip(statuses, pageviews)
    ]


def test_healthy_anchor_from_invoices():
    """Ten paid invoices, flat usage, no overage: nothing to penalise."""
    customer = Customer(id=8, name="Steady", email="ap@steady.com")
    r = health_from_invoices(customer, _invoices(["paid"] * 10, [50_000] * 10))
    assert r.health_score == 100
    assert r.health_label == "excellent"
    assert r.issues == []


def test_failing_anchor_from_invoices():
    """
    4 paid / 3 overdue / 3 open, pageviews 50k -> 20k, 60% of billing is overage.
    Penalties: payment -40, overdue -30, usage drop -12, overage -10.
    """
    customer = Customer(id=9, name="Sinking", email="ap@sinking.com")
    statuses = ["overdue", "open", "overdue", "open", "overdue", "paid", "open", "paid", "paid", "paid"]
    pageviews = [20_000] * 3 + [50_000] * 7
    r = health_from_invoices(customer, _invoices(statuses, pageviews, amount=2000.0, overage=1200.0))

    assert r.paid_count == 4
    assert r.overdue_amount == 6000.0
    assert r.pageviews_trend_pct == -60.0
    assert r.health_score == 8
    assert r.health_label == "critical"
    assert len(r.issues) == 4


# ----- filtering / triage -----

@pytest.fixture()
def population():
    return [
        _health(customer=CustomerOut(id=1, name="Fine", email="a@fine.com")),
        _health(customer=CustomerOut(id=2, name="Meh", email="a@meh.com"), paid_count=7),
        _health(customer=CustomerOut(id=3, name="Bad", email="a@bad.com"),
                paid_count=4, overdue_count=3, overdue_amount=3000.0),
        _health(customer=CustomerOut(id=4, name="Worst", email="a@worst.com"),
                paid_count=2, overdue_count=5, overdue_amount=5000.0,
                avg_pageviews_recent=10_000, overage_total=6000.0),
    ]


def test_population_covers_several_labels(population):
    assert len({r.health_label for r in population}) >= 3


def test_needs_attention_expands_to_worse_labels(population):
    result = rank_health(population, HealthListFilters(health_filter="needs_attention"))
    labels = {c.health_label for c in result.customers}
    assert labels <= {"needs_attention", "at_risk", "critical"}
    assert labels & {"at_risk", "critical"}
    assert result.meta["triage_mode"] is True


def test_strict_filter_disables_expansion(population):
    result = rank_health(
        population,
        HealthListFilters(health_filter="needs_attention", strict_health_filter=True),
    )
    assert all(c.health_label == "needs_attention" for c in result.customers)
    assert result.meta["triage_mode"] is False


def test_distribution_counts_whole_population(population):
    result = rank_health(population, HealthListFilters(health_filter="critical", limit=1))
    assert sum(result.distribution.values()) == len(population)
    assert set(result.distribution) == set(HEALTH_LABELS)
    assert result.returned <= 1


def test_sort_orders(population):
    by_score = rank_health(population, HealthListFilters()).customers
    assert [c.health_score for c in by_score] == sorted(c.health_score for c in by_score)

    by_overdue = rank_health(population, HealthListFilters(sort_by="overdue_amount")).customers
    amounts = [c.overdue_amount for c in by_overdue]
    assert amounts == sorted(amounts, reverse=True)


def test_parse_filters_rejects_unknown_values():
    with pytest.raises(ValidationError):
        parse_filters(sort_by="name")
    with pytest.raises(ValidationError):
        parse_filters(limit=0)


# ----- DB-backed (INTEGRATION) -----

def test_list_health_skips_customers_below_min_invoices(db, make_customer):
    make_customer(name="Has Invoices", email="a@one.com", invoices=[{}] * 6)
    make_customer(name="No Invoices", email="a@two.com")

    result = list_health(BillingReader(db), HealthListFilters(min_invoices=1))
    names = [c.customer.name for c in result.customers]
    assert names == ["Has Invoices"]

    everyone = list_health(BillingReader(db), HealthListFilters(min_invoices=0))
    assert everyone.total_customers == 2
