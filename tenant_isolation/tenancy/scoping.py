"""
Read-side enforcement: keeps every ORM read of a scoped model inside the
active tenant's partition.

ScopeEnforcer is installed as a ``do_orm_execute`` listener (see hooks.py).
For each SELECT / ORM UPDATE / ORM DELETE, relationship loads included, it
adds ``with_loader_criteria(model, discriminator == tenant_id)`` for the
registered models, which ANDs with the caller's own filters and follows the
entity into joins and subqueries. Statements that assign a discriminator in
bulk (ORM UPDATE ... SET, ORM INSERT) are checked against the active tenant.
"""

from __future__ import annotations

import inspect
import logging
from functools import wraps

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import RelationshipProperty, Session, with_loader_criteria
from sqlalchemy.sql.expression import BindParameter, ClauseElement, Null
from sqlalchemy.sql.util import find_tables

from tenant_isolation.tenancy.context import current_tenant_id, is_suppressed
from tenant_isolation.tenancy.errors import NoTenantSet, TenantNotFound
from tenant_isolation.tenancy.guards import mismatch_error
from tenant_isolation.tenancy.registry import (
    TenantScopeEntry,
    entry_for,
    entry_for_mapper,
    registered_entries,
    tenant_required,
)

logger = logging.getLogger(__name__)

_EXPRESSION = "<sql expression>"


def scope_criteria(entry: TenantScopeEntry):
    """
    Criteria restricting ``entry.model`` to the active tenant.

    Returns None when the read must run unfiltered (suppressed, or no tenant
    under the fail-open policy). Raises NoTenantSet under fail-closed.
    """
    if is_suppressed():
        return None
    tenant_id = entry.active_tenant_id()
    if tenant_id is not None:
        return entry.criteria(tenant_id)
    if tenant_required():
        logger.warning("tenant.no_tenant", extra={"model": entry.model_name})
        raise NoTenantSet(
            f"{entry.model_name} is tenant-scoped and no tenant is active",
            model=entry.model,
        )
    logger.debug("tenant.unscoped_read", extra={"model": entry.model_name})
    return None


def _registered_tables() -> dict:
    tables = {}
    for entry in registered_entries():
        mapper = sa_inspect(entry.model, raiseerr=False)
        for table in getattr(mapper, "tables", ()):
            tables.setdefault(table, entry)
    return tables


def _join_mappers(statement):
    # Joins along a relationship (``.join(Account.projects)``) keep the
    # attribute, not the target table, until compile time.
    for join in getattr(statement, "_setup_joins", ()):
        for element in join[:3]:
            if element is None or isinstance(element, str):
                continue
            insp = sa_inspect(element, raiseerr=False)
            if insp is None:
                continue
            if getattr(insp, "is_attribute", False):
                prop = getattr(insp, "property", None)
                if isinstance(prop, RelationshipProperty):
                    yield prop.mapper
                    yield prop.parent
            elif getattr(insp, "is_mapper", False) or getattr(insp, "is_aliased_class", False):
                yield insp.mapper


def statement_entries(execute_state) -> list[TenantScopeEntry]:
    """
    Registry entries for every scoped model the statement touches.

    Covers the statement's entities plus tables reached only through
    ``select_from``, joins or subqueries.
    """
    found: dict[type, TenantScopeEntry] = {}

    def add(entry):
        if entry is not None:
            found.setdefault(entry.model, entry)

    for mapper in execute_state.all_mappers:
        add(entry_for_mapper(mapper))
    statement = execute_state.statement
    if not getattr(statement, "_is_lambda_element", False):
        tables = _registered_tables()
        for table in find_tables(statement, include_crud=True):
            add(tables.get(table))
        for mapper in _join_mappers(statement):
            add(entry_for_mapper(mapper))
    return list(found.values())


def ensure_tenant_for(entries) -> None:
    """Apply the no-tenant policy to every entry in ``entries``."""
    if is_suppressed():
        return
    for entry in entries:
        if entry.active_tenant_id() is None:
            scope_criteria(entry)


def tenant_loader_options(entries=None) -> list:
    """``with_loader_criteria`` options for the active tenant, one per model."""
    options = []
    if is_suppressed():
        return options
    for entry in entries if entries is not None else registered_entries():
        tenant_id = entry.active_tenant_id()
        if tenant_id is None:
            continue
        options.append(
            with_loader_criteria(entry.model, entry.criteria(tenant_id), include_aliases=True)
        )
    return options


def _assignments(execute_state):
    statement = execute_state.statement
    pairs = list((getattr(statement, "_values", None) or {}).items())
    pairs.extend(getattr(statement, "_ordered_values", None) or ())
    for rows in getattr(statement, "_multi_values", None) or ():
        for row in rows:
            if isinstance(row, dict):
                pairs.extend(row.items())
    params = execute_state.parameters
    for row in params if isinstance(params, (list, tuple)) else [params]:
        if isinstance(row, dict):
            pairs.extend(row.items())
    return pairs


def _assigned_name(key):
    if isinstance(key, str):
        return key
    return getattr(key, "key", None)


def _assigned_value(value):
    if isinstance(value, BindParameter):
        return value.effective_value
    if isinstance(value, Null):
        return None
    if isinstance(value, ClauseElement):
        return _EXPRESSION
    return value


def _discriminator_names(entry: TenantScopeEntry) -> set:
    names = {entry.discriminator_field}
    column = getattr(entry.column, "expression", None)
    for attr in ("key", "name"):
        value = getattr(column, attr, None)
        if isinstance(value, str):
            names.add(value)
    return names


def check_assignments(execute_state, entries) -> None:
    """
    Reject bulk statements that write a discriminator of another tenant.

    ORM UPDATE may only set the active tenant (claiming global rows); with
    no tenant active the discriminator cannot be set at all. ORM INSERT
    values must match the active tenant when there is one.
    """
    if is_suppressed():
        return
    pairs = _assignments(execute_state)
    if not pairs:
        return
    for entry in entries:
        names = _discriminator_names(entry)
        active = entry.active_tenant_id()
        for key, raw in pairs:
            if _assigned_name(key) not in names:
                continue
            value = _assigned_value(raw)
            if active is not None and value == active:
                continue
            if execute_state.is_insert and active is None:
                continue
            raise mismatch_error(entry, value, active, "assigned by bulk statement")


class ScopeEnforcer:
    """
    ``do_orm_execute`` listener injecting the tenant filter.

    Attribute refreshes of already-loaded rows (``is_column_load``) pass
    through; the row was admitted by a scoped load earlier. Relationship
    loads are filtered by the tenant active at traversal time, on top of
    whatever criteria the parent's load propagated.
    """

    def __call__(self, execute_state) -> None:
        if execute_state.is_column_load:
            return
        if not (
            execute_state.is_select
            or execute_state.is_update
            or execute_state.is_delete
            or execute_state.is_insert
        ):
            return
        if is_suppressed():
            return
        entries = statement_entries(execute_state)
        # Fails before any SQL is emitted when the policy is fail-closed.
        ensure_tenant_for(entries)
        if execute_state.is_insert or execute_state.is_update:
            check_assignments(execute_state, entries)
        if execute_state.is_insert:
            return
        statement = execute_state.statement
        if getattr(statement, "_is_lambda_element", False):
            return
        options = tenant_loader_options()
        if options:
            execute_state.statement = statement.options(*options)


def _scope_entry(model) -> TenantScopeEntry:
    entry = entry_for(model)
    if entry is None:
        name = getattr(model, "__name__", str(model))
        raise ValueError(f"{name} is not registered as tenant-scoped.")
    return entry


def scoped_query(db: Session, model, tenant_id=None):
    """
    Return a query constrained to the given tenant (default: the active one).

    Example:
        scoped_query(db, Project, account.id).all()
    """
    entry = _scope_entry(model)
    if tenant_id is None:
        tenant_id = entry.active_tenant_id()
    if tenant_id is None:
        if tenant_required() and not is_suppressed():
            raise NoTenantSet("Tenant context required", model=model)
        return db.query(model)
    return db.query(model).filter(entry.criteria(tenant_id))


def get_tenant_owned_or_404(db: Session, model, tenant_id, object_id):
    """
    Fetch by id + tenant or raise TenantNotFound (404 style).
    """
    resource = scoped_query(db, model, tenant_id).filter(model.id == object_id).first()
    if not resource:
        raise TenantNotFound("Resource not found for tenant")
    return resource


def assert_belongs_to_tenant(resource, tenant_id=None, *, not_found_ok: bool = False):
    """
    Guard that a loaded resource matches the requested (or active) tenant.
    """
    if resource is None:
        if not_found_ok:
            return None
        raise TenantNotFound("Resource not found for tenant")

    entry = _scope_entry(type(resource))
    if tenant_id is None:
        tenant_id = entry.active_tenant_id()
    resource_tenant = getattr(resource, entry.discriminator_field, None)
    if resource_tenant is None and entry.global_records:
        return resource
    if resource_tenant != tenant_id:
        raise TenantNotFound("Resource not found for tenant")
    return resource


def require_active_tenant():
    """Return the active tenant id; NoTenantSet if none and not suppressed."""
    if is_suppressed():
        return current_tenant_id()
    tenant_id = current_tenant_id()
    if tenant_id is None:
        raise NoTenantSet("Tenant context required")
    return tenant_id


def tenant_scoped(handler):
    """
    Decorator that refuses to run ``handler`` without an active tenant.

    Example:
        @tenant_scoped
        def nightly_rollup(db):
            ...
    """
    if inspect.iscoroutinefunction(handler):
        @wraps(handler)
        async def async_wrapper(*args, **kwargs):
            require_active_tenant()
            return await handler(*args, **kwargs)

        return async_wrapper

    @wraps(handler)
    def sync_wrapper(*args, **kwargs):
        require_active_tenant()
        return handler(*args, **kwargs)

    return sync_wrapper
