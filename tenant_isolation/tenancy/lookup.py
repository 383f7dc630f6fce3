"""
Tenant lookup for the collaborators that activate tenants (request glue,
job runners). A miss returns None, which simply leaves no tenant active.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from tenant_isolation.tenancy.context import without_tenant

logger = logging.getLogger(__name__)


def _looks_numeric(value) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, str) and value.strip().isdigit()


def find_tenant(db: Session, tenant_model, value, *, field: str | None = None):
    """
    Resolve a tenant by primary key, or by ``field`` (default ``slug``).

    Example:
        account = find_tenant(db, Account, "acme")
        with with_tenant(account):
            ...
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if field is None and _looks_numeric(value):
        stmt = select(tenant_model).where(tenant_model.id == int(value))
    else:
        lookup_field = field or "slug"
        if not hasattr(tenant_model, lookup_field):
            raise ValueError(f"{tenant_model.__name__} has no attribute {lookup_field!r}")
        if isinstance(value, str):
            value = value.strip()
        stmt = select(tenant_model).where(getattr(tenant_model, lookup_field) == value)
    with without_tenant():
        tenant = db.execute(stmt).scalars().first()
    if tenant is None:
        logger.info("tenant.lookup_miss", extra={"lookup": str(value), "field": field})
    return tenant
