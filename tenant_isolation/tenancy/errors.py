"""
Custom exceptions for tenant scoping and isolation failures.
"""

from __future__ import annotations


class TenancyError(Exception):
    """Base class for every isolation failure raised by this package."""


class NoTenantSet(TenancyError):
    """Raised when a scoped read or write needs a tenant but none is active."""

    def __init__(self, message: str = "No tenant is active for this operation", *, model=None):
        super().__init__(message)
        self.message = message
        self.model = model


class TenantValidationError(TenancyError):
    """
    A record failed a tenant-aware validation.

    Carries the offending model and field so callers can report the problem
    (e.g. "not permitted") instead of aborting the unit of work.
    """

    def __init__(self, message: str, *, model=None, field: str | None = None, value=None):
        super().__init__(message)
        self.message = message
        self.model = model
        self.field = field
        self.value = value

    @property
    def model_name(self) -> str | None:
        if self.model is None:
            return None
        return getattr(self.model, "__name__", str(self.model))


class TenantMismatch(TenantValidationError):
    """Raised when a write would set or keep a discriminator of another tenant."""


class NotUnique(TenantValidationError):
    """Raised when a value is already taken inside the tenant's partition."""


class TenantNotFound(TenancyError):
    """Raised when a tenant or resource for that tenant does not exist."""
