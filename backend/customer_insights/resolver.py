"""
resolver.py
===========
Map an opaque identifier to exactly one customer.

Resolution order:
- ASCII digits       -> primary key                  (match_type "id")
- contains "@"       -> case-insensitive email       (match_type "email")
- anything else      -> exact name, then substring   (match_type "name" / "fuzzy")

Several matches raise `AmbiguousCustomerError` with candidate ids instead of
picking one; no match raises `CustomerNotFoundError`.
"""

from __future__ import annotations

from typing import List, Union

from .errors import AmbiguousCustomerError, CustomerNotFoundError, ValidationError
from .models import Customer
from .repositories import CustomerRepository
from .schemas import CustomerOut, ResolvedCustomer

MAX_CANDIDATES = 10
MAX_CUSTOMER_ID = 2 ** 63 - 1


def _candidates(customers: List[Customer]) -> List[dict]:
    return [
        {"id": c.id, "name": c.name, "email": c.email}
        for c in customers[:MAX_CANDIDATES]
    ]


def _single(identifier: str, matches: List[Customer], match_type: str) -> ResolvedCustomer:
    if len(matches) > 1:
        raise AmbiguousCustomerError(identifier, _candidates(matches))
    return ResolvedCustomer(customer=CustomerOut.model_validate(matches[0]), match_type=match_type)


def resolve(repo: CustomerRepository, identifier: Union[str, int, None]) -> ResolvedCustomer:
    if identifier is None or not str(identifier).strip():
        raise ValidationError("Please provide a customer id (recommended), email or name.")
    raw = str(identifier).strip()

    if raw.isascii() and raw.isdigit():
        customer_id = int(raw)
        customer = repo.get(customer_id) if customer_id <= MAX_CUSTOMER_ID else None
        if customer is None:
            raise CustomerNotFoundError(f"Customer not found for id {raw}.")
        return ResolvedCustomer(customer=CustomerOut.model_validate(customer), match_type="id")

    if "@" in raw:
        matches = repo.find_by_email(raw)
        if not matches:
            raise CustomerNotFoundError(f"Customer not found for email {raw}.")
        return _single(raw, matches, "email")

    exact = repo.find_by_name(raw)
    if exact:
        return _single(raw, exact, "name")

    partial = repo.search_by_name(raw)
    if partial:
        return _single(raw, partial, "fuzzy")

    raise CustomerNotFoundError(f'Customer "{raw}" not found. Try searching by customer id.')


def resolve_by_domain(repo: CustomerRepository, domain: str) -> List[CustomerOut]:
    """All customers whose email belongs to `domain` (accepts "acme.com" or "@acme.com")."""
    cleaned = (domain or "").strip().lower().lstrip("@")
    if not cleaned or "." not in cleaned:
        raise ValidationError("Please provide a valid email domain (e.g. acme.com or @acme.com).")
    return [CustomerOut.model_validate(c) for c in repo.find_by_domain(cleaned)]
