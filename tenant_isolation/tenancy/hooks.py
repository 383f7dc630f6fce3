"""
Installation of the tenant listeners on SQLAlchemy sessions.

Call ``install_tenant_guards()`` once at startup, after models are
registered and before any execution unit issues scoped operations. By
default the listeners go on the ``Session`` class and so cover every
session; pass a ``sessionmaker`` or a session to limit them.

Installed targets are tracked in a WeakSet. ``event.contains`` is not used
for this: SQLAlchemy keys its listener registry by ``id(target)``, so a new
factory that reuses the id of a collected one would read as installed.
"""

from __future__ import annotations

import logging
import weakref

from sqlalchemy import event
from sqlalchemy.orm import Session

from tenant_isolation.tenancy.guards import MutationGuard
from tenant_isolation.tenancy.scoping import ScopeEnforcer

logger = logging.getLogger(__name__)

scope_enforcer = ScopeEnforcer()
mutation_guard = MutationGuard()

_installed: "weakref.WeakSet" = weakref.WeakSet()


def install_tenant_guards(target=Session) -> None:
    """Attach ScopeEnforcer and MutationGuard to ``target``. Idempotent."""
    if target in _installed:
        return
    event.listen(target, "do_orm_execute", scope_enforcer)
    event.listen(target, "before_flush", mutation_guard)
    _installed.add(target)
    logger.debug("tenant.guards_installed", extra={"target": getattr(target, "__name__", repr(target))})


def uninstall_tenant_guards(target=Session) -> None:
    if target not in _installed:
        return
    event.remove(target, "do_orm_execute", scope_enforcer)
    event.remove(target, "before_flush", mutation_guard)
    _installed.discard(target)


def guards_installed(target=Session) -> bool:
    return target in _installed
