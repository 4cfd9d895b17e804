"""
Domain exceptions for the outreach core.

    OutreachError (base)
    ├── NotFoundError             -> 404
    ├── InvalidStateError         -> 409
    │   └── DuplicateEnrollmentError
    └── InvalidInputError         -> 400 (also a ValueError)
        └── CriteriaValidationError

Batch operations never raise these for per-item failures; they collect the
message into the ``errors`` list of their result dict instead.
"""

from typing import Optional


class OutreachError(Exception):
    """Base class for all domain errors raised by the service layer."""

    def __init__(self, message: str, context: Optional[dict] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class NotFoundError(OutreachError):
    """A referenced entity does not exist in the caller's tenant."""


class InvalidStateError(OutreachError):
    """The operation is not allowed from the entity's current status."""


class DuplicateEnrollmentError(InvalidStateError):
    """The patient already has an active enrollment in this campaign."""


class InvalidInputError(OutreachError, ValueError):
    """A request value is outside its allowed vocabulary or range."""


class CriteriaValidationError(InvalidInputError):
    """Campaign targeting criteria are malformed."""
