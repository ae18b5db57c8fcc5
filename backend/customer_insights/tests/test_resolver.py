"""
Identifier resolution against a real session: id, email, exact name, fuzzy
name, ambiguity and the not-found path.
"""

import pytest

from customer_insights.errors import AmbiguousCustomerError, CustomerNotFoundError, ValidationError
from customer_insights.repositories import CustomerRepository
from customer_insights.resolver import resolve, resolve_by_domain


@pytest.fixture()
def repo(db, make_customer):
    make_customer(name="Acme Corp", email="billing@acme.com")
    make_customer(name="Acme Labs", email="finance@acme.com")
    make_customer(name="Globex", email="AP@globex.io")
    return CustomerRepository(db)


def test_numeric_identifier_matches_id(repo):
    first = resolve(repo, "Globex").customer
    resolved = resolve(repo, str(first.id))
    assert resolved.match_type == "id"
    assert resolved.customer.name == "Globex"


def test_email_is_case_insensitive(repo):
    resolved = resolve(repo, "ap@GLOBEX.io")
    assert resolved.match_type == "email"
    assert resolved.customer.name == "Globex"


def test_exact_name_wins_over_substring(repo):
    resolved = resolve(repo, "acme corp")
    assert resolved.match_type == "name"
    assert resolved.customer.email == "billing@acme.com"


def test_fuzzy_single_match(repo):
    resolved = resolve(repo, "glob")
    assert resolved.match_type == "fuzzy"


def test_ambiguous_name_lists_candidates(repo):
    with pytest.raises(AmbiguousCustomerError) as exc:
        resolve(repo, "acme")
    assert {c["name"] for c in exc.value.candidates} == {"Acme Corp", "Acme Labs"}
    assert exc.value.status_code == 422


@pytest.mark.parametrize("identifier", ["99999", "nobody@nowhere.com", "Initech"])
def test_unknown_identifier_raises_not_found(repo, identifier):
    with pytest.raises(CustomerNotFoundError):
        resolve(repo, identifier)


@pytest.mark.parametrize("identifier", ["²", "٣", "99999999999999999999999"])
def test_non_ascii_or_oversized_digits_are_not_found(repo, identifier):
    """Unicode digits fall through to name search; ids beyond BIGINT never hit the DB."""
    with pytest.raises(CustomerNotFoundError):
        resolve(repo, identifier)


@pytest.mark.parametrize("identifier", [None, "", "   "])
def test_blank_identifier_is_invalid(repo, identifier):
    with pytest.raises(ValidationError):
        resolve(repo, identifier)


def test_resolve_by_domain(repo):
    assert {c.name for c in resolve_by_domain(repo, "@acme.com")} == {"Acme Corp", "Acme Labs"}
    with pytest.raises(ValidationError):
        resolve_by_domain(repo, "acme")
