"""
Process-wide table of tenant-scoped models plus the require-tenant policy.

Both are populated once at startup, before any execution unit issues
scoped operations, and only read afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Union

from sqlalchemy import or_

from tenant_isolation.core.config import settings
from tenant_isolation.tenancy.context import current_tenant, current_tenant_id, tenant_identity

logger = logging.getLogger(__name__)

RequireTenant = Union[bool, Callable[[], bool]]


@dataclass(frozen=True)
class TenantScopeEntry:
    """How one model is tied to its tenant."""

    model: type
    tenant_association: str
    discriminator_field: str
    global_records: bool = False
    tenant_key: str = "id"

    @property
    def model_name(self) -> str:
        return self.model.__name__

    @property
    def column(self):
        return getattr(self.model, self.discriminator_field)

    def active_tenant_id(self):
        """Identity of the active tenant as this model stores it."""
        tenant = current_tenant()
        if tenant is None:
            return None
        if self.tenant_key == settings.TENANT_KEY:
            return current_tenant_id()
        return tenant_identity(tenant, self.tenant_key)

    def identity_of(self, tenant):
        return tenant_identity(tenant, self.tenant_key)

    def criteria(self, tenant_id):
        column = self.column
        if self.global_records:
            return or_(column == tenant_id, column.is_(None))
        return column == tenant_id


_entries: dict[type, TenantScopeEntry] = {}
_require_tenant: Optional[RequireTenant] = None


def _ensure_model_has_field(model, field: str) -> None:
    if not hasattr(model, field):
        name = getattr(model, "__name__", str(model))
        raise ValueError(f"{name} does not define {field} and cannot be tenant-scoped.")


def register(
    model: type,
    tenant_association: str,
    discriminator_field: str | None = None,
    *,
    global_records: bool = False,
    tenant_key: str | None = None,
) -> TenantScopeEntry:
    """
    Mark ``model`` as tenant-scoped.

    Example:
        register(Project, "account")               # discriminator account_id
        register(Invoice, "org", "organization_pk")
        register(Tag, "account", global_records=True)
    """
    if not tenant_association:
        raise ValueError("tenant_association is required")
    field = discriminator_field or f"{tenant_association}{settings.TENANT_DISCRIMINATOR_SUFFIX}"
    _ensure_model_has_field(model, field)
    entry = TenantScopeEntry(
        model=model,
        tenant_association=tenant_association,
        discriminator_field=field,
        global_records=global_records,
        tenant_key=tenant_key or settings.TENANT_KEY,
    )
    existing = _entries.get(model)
    if existing is not None:
        if existing == entry:
            return existing
        raise ValueError(f"{model.__name__} is already tenant-scoped with different options.")
    _entries[model] = entry
    logger.debug(
        "tenant.registered",
        extra={"model": entry.model_name, "field": field, "global_records": global_records},
    )
    return entry


def unregister(model: type) -> None:
    """Drop a registration. Intended for test isolation."""
    _entries.pop(model, None)


def reset_registry() -> None:
    """Forget every registration and the configured policy. Tests only."""
    global _require_tenant
    _entries.clear()
    _require_tenant = None


def entry_for(model: type) -> Optional[TenantScopeEntry]:
    """Return the entry for ``model`` or its nearest registered base class."""
    for cls in getattr(model, "__mro__", (model,)):
        entry = _entries.get(cls)
        if entry is not None:
            return entry
    return None


def entry_for_mapper(mapper) -> Optional[TenantScopeEntry]:
    return entry_for(mapper.class_)


def registered_entries() -> list[TenantScopeEntry]:
    return list(_entries.values())


def is_registered(model: type) -> bool:
    return entry_for(model) is not None


def configure(*, require_tenant: Optional[RequireTenant] = None) -> None:
    """
    Set the process-wide policy for access without an active tenant.

    ``require_tenant`` may be a bool or a zero-argument callable evaluated at
    each unscoped access. ``None`` falls back to ``settings.REQUIRE_TENANT``.
    """
    global _require_tenant
    _require_tenant = require_tenant
    logger.debug(
        "tenant.configured",
        extra={"require_tenant": "dynamic" if callable(require_tenant) else require_tenant},
    )


def tenant_required() -> bool:
    policy = _require_tenant
    if policy is None:
        return settings.REQUIRE_TENANT
    if callable(policy):
        return bool(policy())
    return bool(policy)
