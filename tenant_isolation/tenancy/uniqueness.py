"""
Uniqueness checks confined to the active tenant's partition.

The existence query is an ordinary ORM select, so ScopeEnforcer adds the
tenant filter (and applies the fail-open/fail-closed policy) exactly as it
does for any other read. When the record already carries a discriminator
value the query is pinned to it as well.
"""

from __future__ import annotations

from typing import Iterable

from sqlalchemy import and_, func, inspect as sa_inspect, not_, select
from sqlalchemy.orm import Session

from tenant_isolation.tenancy.errors import NotUnique
from tenant_isolation.tenancy.registry import entry_for


def _equals(column, value):
    if value is None:
        return column.is_(None)
    return column == value


def _is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


class UniquenessValidator:
    """
    Validates that ``fields`` are unique within the tenant.

    Example:
        unique_name = UniquenessValidator(Project, "name", case_sensitive=False)
        unique_name.check(db, project)       # raises NotUnique
        errors = unique_name.validate(db, project)

    Each field is checked on its own; ``scope`` names extra attributes that
    must also match for a row to count as a duplicate.
    """

    def __init__(
        self,
        model,
        *fields: str,
        scope: Iterable[str] = (),
        case_sensitive: bool = True,
        allow_none: bool = False,
        allow_blank: bool = False,
        message: str | None = None,
    ) -> None:
        if not fields:
            raise ValueError("UniquenessValidator needs at least one field")
        for name in (*fields, *scope):
            if not hasattr(model, name):
                raise ValueError(f"{model.__name__} has no attribute {name!r}")
        self.model = model
        self.fields = tuple(fields)
        self.scope = tuple(scope)
        self.case_sensitive = case_sensitive
        self.allow_none = allow_none
        self.allow_blank = allow_blank
        self.message = message or "has already been taken"

    def _skip(self, value) -> bool:
        if value is None and self.allow_none:
            return True
        return self.allow_blank and _is_blank(value)

    def _criteria(self, obj, field: str):
        column = getattr(self.model, field)
        value = getattr(obj, field)
        if not self.case_sensitive and isinstance(value, str):
            criteria = [func.lower(column) == value.lower()]
        else:
            criteria = [_equals(column, value)]
        for name in self.scope:
            criteria.append(_equals(getattr(self.model, name), getattr(obj, name)))
        entry = entry_for(self.model)
        if entry is not None:
            own_tenant = getattr(obj, entry.discriminator_field)
            if own_tenant is not None:
                criteria.append(entry.column == own_tenant)
        state = sa_inspect(obj)
        if state.identity is not None:
            mapper = state.mapper
            criteria.append(
                not_(and_(*[col == value for col, value in zip(mapper.primary_key, state.identity)]))
            )
        return criteria

    def is_taken(self, db: Session, obj, field: str) -> bool:
        stmt = select(self.model).where(*self._criteria(obj, field)).limit(1)
        with db.no_autoflush:
            return db.execute(stmt).first() is not None

    def validate(self, db: Session, obj) -> list[NotUnique]:
        errors = []
        for field in self.fields:
            value = getattr(obj, field)
            if self._skip(value):
                continue
            if self.is_taken(db, obj, field):
                errors.append(
                    NotUnique(
                        f"{self.model.__name__}.{field} {self.message}",
                        model=self.model,
                        field=field,
                        value=value,
                    )
                )
        return errors

    def check(self, db: Session, obj) -> None:
        errors = self.validate(db, obj)
        if errors:
            raise errors[0]
