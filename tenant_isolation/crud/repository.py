"""Tenant-scoped repository: per-entity reads, saves and uniqueness checks."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from sqlalchemy import func, inspect as sa_inspect, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tenant_isolation.tenancy.context import is_suppressed
from tenant_isolation.tenancy.errors import TenancyError, TenantNotFound
from tenant_isolation.tenancy.hooks import mutation_guard
from tenant_isolation.tenancy.registry import entry_for
from tenant_isolation.tenancy.scoping import assert_belongs_to_tenant, scope_criteria
from tenant_isolation.tenancy.uniqueness import UniquenessValidator

logger = logging.getLogger(__name__)


class TenantScopedRepository:
    """
    CRUD for one tenant-scoped model.

    Reads are issued as ORM selects so the tenant filter is injected on every
    call. ``get`` is the supported fetch-by-id path: ``Session.get`` answers
    from the identity map without a query, so in a session shared across
    tenants it can return a row loaded earlier under another tenant. Saves
    validate first and raise before the object reaches the session, so a
    rejected record is never persisted and the session stays usable.
    """

    def __init__(
        self,
        db: Session,
        model,
        *,
        validators: Iterable[UniquenessValidator] = (),
    ) -> None:
        entry = entry_for(model)
        if entry is None:
            raise ValueError(f"{model.__name__} is not registered as tenant-scoped.")
        self.db = db
        self.model = model
        self.entry = entry
        self.validators = list(validators)
        self._pk = sa_inspect(model).primary_key

    def _pk_criteria(self, object_id):
        values = object_id if isinstance(object_id, tuple) else (object_id,)
        if len(values) != len(self._pk):
            raise ValueError(f"{self.model.__name__} primary key has {len(self._pk)} column(s)")
        return [col == value for col, value in zip(self._pk, values)]

    def get(self, object_id):
        """Row with this primary key in the active tenant, or None."""
        stmt = select(self.model).where(*self._pk_criteria(object_id))
        return self.db.execute(stmt).scalars().first()

    def get_or_404(self, object_id):
        resource = self.get(object_id)
        if resource is None:
            raise TenantNotFound(f"{self.model.__name__} {object_id!r} not found for tenant")
        return resource

    def list(
        self,
        *criteria,
        order_by=None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list:
        if order_by is None:
            ordering = list(self._pk)
        elif isinstance(order_by, (list, tuple)):
            ordering = list(order_by)
        else:
            ordering = [order_by]
        stmt = select(self.model).where(*criteria).order_by(*ordering)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def count(self, *criteria) -> int:
        stmt = select(func.count()).select_from(self.model).where(*criteria)
        # Aggregates carry no entity column, so pin the partition explicitly.
        tenant_filter = scope_criteria(self.entry)
        if tenant_filter is not None:
            stmt = stmt.where(tenant_filter)
        return int(self.db.execute(stmt).scalar_one())

    def exists(self, *criteria) -> bool:
        stmt = select(self.model).where(*criteria).limit(1)
        return self.db.execute(stmt).first() is not None

    def validate(self, obj) -> list[TenancyError]:
        """Tenant and uniqueness problems for ``obj``; empty when it can be saved."""
        errors: list[TenancyError] = list(mutation_guard.validate(obj, self.db))
        if errors:
            return errors
        for validator in self.validators:
            errors.extend(validator.validate(self.db, obj))
        return errors

    def save(self, obj, *, commit: bool = True):
        errors = self.validate(obj)
        if errors:
            logger.info(
                "tenant.save_rejected",
                extra={
                    "model": self.entry.model_name,
                    "field": getattr(errors[0], "field", None),
                    "error": type(errors[0]).__name__,
                },
            )
            raise errors[0]
        self.db.add(obj)
        try:
            if commit:
                self.db.commit()
                self.db.refresh(obj)
            else:
                self.db.flush()
        except IntegrityError as exc:
            self.db.rollback()
            raise ValueError(f"{self.model.__name__} violates a database constraint.") from exc
        return obj

    def create(self, *, commit: bool = True, **values: Any):
        return self.save(self.model(**values), commit=commit)

    def build_child(self, parent, relationship: str, **values: Any):
        """
        Build a ``self.model`` row through ``parent.<relationship>``.

        The child inherits the parent's discriminator when it is flushed.
        """
        rel = sa_inspect(type(parent)).relationships[relationship]
        if not issubclass(rel.mapper.class_, self.model):
            raise ValueError(f"{relationship} does not lead to {self.model.__name__}")
        child = self.model(**values)
        if rel.uselist:
            getattr(parent, relationship).append(child)
        else:
            setattr(parent, relationship, child)
        return child

    def delete(self, obj, *, commit: bool = True) -> None:
        if not is_suppressed() and self.entry.active_tenant_id() is not None:
            assert_belongs_to_tenant(obj)
        self.db.delete(obj)
        if commit:
            self.db.commit()
        else:
            self.db.flush()
