"""
Write-side enforcement for tenant-scoped models.

MutationGuard runs as a ``before_flush`` listener, so every persistence path
(repository saves, plain ``session.add``, relationship cascades) goes through
it:

* new rows get their discriminator from, in order: an explicit value, the
  tenant association object, a loaded parent that is itself tenant-scoped,
  then the active tenant; any disagreement raises TenantMismatch;
* a persisted row's discriminator cannot change, except when a NULL
  (global) value is claimed by the active tenant.

Inside ``without_tenant`` no check runs.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from itertools import chain

from sqlalchemy import inspect as sa_inspect
from sqlalchemy import select
from sqlalchemy.orm import MANYTOONE, ONETOMANY, Session, object_session
from sqlalchemy.orm.base import NO_VALUE

from tenant_isolation.tenancy.context import is_suppressed, without_tenant
from tenant_isolation.tenancy.errors import NoTenantSet, TenancyError, TenantMismatch
from tenant_isolation.tenancy.registry import TenantScopeEntry, entry_for, tenant_required

logger = logging.getLogger(__name__)


def mismatch_error(entry: TenantScopeEntry, value, expected, source: str) -> TenantMismatch:
    logger.warning(
        "tenant.mismatch",
        extra={
            "model": entry.model_name,
            "field": entry.discriminator_field,
            "value": value,
            "expected": expected,
            "source": source,
        },
    )
    return TenantMismatch(
        f"{entry.model_name}.{entry.discriminator_field}={value!r} does not match "
        f"tenant {expected!r} ({source})",
        model=entry.model,
        field=entry.discriminator_field,
        value=value,
    )


def _loaded(state, key):
    value = state.attrs[key].loaded_value
    if value is NO_VALUE:
        return None
    return value


class _Resolver:
    """Works out discriminator values for pending rows in one flush."""

    def __init__(self, session: Session | None = None) -> None:
        self._resolved: dict[int, object] = {}
        self._visiting: set[int] = set()
        self._owners: dict[int, list] = defaultdict(list)
        if session is not None:
            self._index_collections(chain(session.new, session.dirty))

    def _index_collections(self, objects) -> None:
        # Children appended through a one-directional collection have no
        # loaded many-to-one pointing back; find their parent from this side.
        for parent in objects:
            if entry_for(type(parent)) is None:
                continue
            state = sa_inspect(parent)
            for rel in state.mapper.relationships:
                if rel.direction is not ONETOMANY or entry_for(rel.mapper.class_) is None:
                    continue
                loaded = _loaded(state, rel.key)
                if loaded is None:
                    continue
                for child in (loaded if rel.uselist else [loaded]):
                    self._owners[id(child)].append((parent, rel.key))

    def _parents(self, obj, entry: TenantScopeEntry):
        state = sa_inspect(obj)
        for rel in state.mapper.relationships:
            if rel.direction is not MANYTOONE or rel.key == entry.tenant_association:
                continue
            parent = _loaded(state, rel.key)
            if parent is None or entry_for(type(parent)) is None:
                continue
            yield parent, rel.key
        yield from self._owners.get(id(obj), ())

    def tenant_value(self, obj):
        entry = entry_for(type(obj))
        state = sa_inspect(obj)
        if state.transient or state.pending:
            return self.resolve_new(obj, entry)
        return getattr(obj, entry.discriminator_field)

    def resolve_new(self, obj, entry: TenantScopeEntry):
        key = id(obj)
        if key in self._resolved:
            return self._resolved[key]
        if key in self._visiting:
            return getattr(obj, entry.discriminator_field)
        self._visiting.add(key)
        try:
            value = self._decide(obj, entry)
        finally:
            self._visiting.discard(key)
        self._resolved[key] = value
        return value

    def _candidates(self, obj, entry: TenantScopeEntry) -> list[tuple[object, str]]:
        state = sa_inspect(obj)
        found = []
        explicit = getattr(obj, entry.discriminator_field)
        if explicit is not None:
            found.append((explicit, entry.discriminator_field))
        if entry.tenant_association in state.mapper.relationships:
            tenant = _loaded(state, entry.tenant_association)
            # A tenant row pending in the same flush has no identity yet;
            # the relationship fills the column once it is inserted.
            identity = entry.identity_of(tenant) if tenant is not None else None
            if identity is not None:
                found.append((identity, entry.tenant_association))
        for parent, via in self._parents(obj, entry):
            value = self.tenant_value(parent)
            if value is not None:
                found.append((value, via))
        return found

    def _decide(self, obj, entry: TenantScopeEntry):
        candidates = self._candidates(obj, entry)
        value = candidates[0][0] if candidates else None
        if is_suppressed():
            return value
        for other, source in candidates[1:]:
            if other != value:
                raise mismatch_error(entry, other, value, f"inherited via {source}")
        active = entry.active_tenant_id()
        if value is None:
            if active is not None:
                return active
            if tenant_required():
                raise NoTenantSet(
                    f"Cannot create {entry.model_name} without an active tenant",
                    model=entry.model,
                )
            if entry.global_records:
                # A NULL discriminator would publish the row to every tenant.
                raise NoTenantSet(
                    f"Global {entry.model_name} rows can only be created inside without_tenant",
                    model=entry.model,
                )
            return None
        if active is not None and value != active:
            raise mismatch_error(entry, value, active, f"set via {candidates[0][1]}")
        return value


def _committed_value(session: Session | None, obj, entry: TenantScopeEntry):
    """Discriminator as stored in the database for a persisted row."""
    state = sa_inspect(obj)
    if session is None or state.identity is None:
        return NO_VALUE
    mapper = state.mapper
    stmt = select(entry.column).where(
        *[col == value for col, value in zip(mapper.primary_key, state.identity)]
    )
    with without_tenant(), session.no_autoflush:
        return session.execute(stmt).scalar_one_or_none()


def check_update(session: Session | None, obj, entry: TenantScopeEntry) -> None:
    """Raise TenantMismatch if a persisted row's discriminator is being changed."""
    if is_suppressed():
        return
    history = sa_inspect(obj).attrs[entry.discriminator_field].history
    if not history.added:
        return
    new = history.added[0]
    old = history.deleted[0] if history.deleted else _committed_value(session, obj, entry)
    if old is not NO_VALUE and old == new:
        return
    active = entry.active_tenant_id()
    if old is None and active is not None and new == active:
        return
    raise mismatch_error(entry, new, old if old is not NO_VALUE else active, "discriminator is immutable")


class MutationGuard:
    """``before_flush`` listener enforcing discriminator rules on writes."""

    def __call__(self, session: Session, flush_context, instances) -> None:
        self.before_flush(session)

    def before_flush(self, session: Session) -> None:
        resolver = _Resolver(session)
        for obj in list(session.new):
            entry = entry_for(type(obj))
            if entry is None:
                continue
            value = resolver.resolve_new(obj, entry)
            if getattr(obj, entry.discriminator_field) != value:
                setattr(obj, entry.discriminator_field, value)
        for obj in list(session.dirty):
            entry = entry_for(type(obj))
            if entry is None or not session.is_modified(obj, include_collections=False):
                continue
            check_update(session, obj, entry)

    def validate(self, obj, session: Session | None = None) -> list[TenancyError]:
        """
        Problems that would stop ``obj`` from being saved, without saving it.

        Nothing is assigned. ``session`` (default: the object's own) is used
        to find parents that collect ``obj`` and the stored discriminator.
        """
        entry = entry_for(type(obj))
        if entry is None:
            return []
        session = session or object_session(obj)
        state = sa_inspect(obj)
        try:
            if state.transient or state.pending:
                _Resolver(session).resolve_new(obj, entry)
            else:
                check_update(session, obj, entry)
        except (TenantMismatch, NoTenantSet) as exc:
            return [exc]
        return []
