"""Typed failures shared by the resolver, readers and scorers."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class AppError(Exception):
    """Base class for application errors."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": str(self), "status": "error"}


class CustomerNotFoundError(AppError):
    """Raised when an identifier resolves to no customer."""

    def __init__(self, message: str = "Customer not found"):
        super().__init__(message, status_code=404)


class CollaboratorUnavailableError(AppError):
    """Raised when a reader or the snapshot store cannot be reached."""

    def __init__(self, message: str = "Data source unavailable", source: Optional[str] = None):
        super().__init__(message, status_code=503)
        self.source = source

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.source:
            body["source"] = self.source
        return body


class ValidationError(AppError):
    """Raised when input validation fails."""

    def __init__(self, message: str = "Invalid input"):
        super().__init__(message, status_code=422)


class AmbiguousCustomerError(ValidationError):
    """Raised when a free-text identifier matches several customers."""

    def __init__(self, identifier: str, candidates: List[Dict[str, Any]]):
        listing = "; ".join(f"ID {c['id']}: {c['name']} <{c['email']}>" for c in candidates)
        super().__init__(
            f'Ambiguous identifier "{identifier}". Multiple customers found. '
            f"Please use the customer id instead. Candidates: {listing}"
        )
        self.candidates = candidates

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["candidates"] = self.candidates
        return body
