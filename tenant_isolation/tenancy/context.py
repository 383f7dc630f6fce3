"""
Execution-unit-local tenant context.

The active tenant lives in a ContextVar holding an immutable frame. Each
frame records the execution unit (asyncio task, else OS thread) that
created it; a frame seen from any other unit is ignored. Child tasks and
``asyncio.to_thread`` workers copy their parent's context, so without that
check they would silently inherit the parent's tenant. Work started in a
new unit must call ``activate``/``with_tenant`` itself.

Usage:
    activate(account)
    with with_tenant(other_account):
        ...
    with without_tenant():
        ...   # scoping disabled
    clear()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from contextvars import ContextVar
from dataclasses import dataclass, replace
from functools import wraps
from typing import Any, Callable, Optional

from tenant_isolation.core.config import settings
from tenant_isolation.tenancy.constants import CONTEXT_VAR_NAME, DEFAULT_TENANT_ID

logger = logging.getLogger(__name__)

_SCALAR_TYPES = (str, int, bytes)


def tenant_identity(tenant: Any, key: str | None = None) -> Any:
    """
    Return the comparable identity of a tenant.

    Mapped tenant objects expose it on ``key`` (default ``settings.TENANT_KEY``);
    anything else (int, str, UUID, ...) is already the identity.
    """
    if tenant is None:
        return DEFAULT_TENANT_ID
    if isinstance(tenant, _SCALAR_TYPES):
        return tenant
    attr = key or settings.TENANT_KEY
    if hasattr(tenant, attr):
        return getattr(tenant, attr)
    return tenant


@dataclass(frozen=True)
class _Frame:
    owner: int
    tenant: Any = None
    tenant_id: Any = DEFAULT_TENANT_ID
    suppressed: bool = False
    depth: int = 0


@dataclass(frozen=True)
class TenantSnapshot:
    """Immutable copy of one execution unit's tenant state."""

    tenant: Any
    tenant_id: Any
    suppressed: bool
    depth: int

    @property
    def has_tenant(self) -> bool:
        return self.tenant_id is not None


_frame: ContextVar[Optional[_Frame]] = ContextVar(CONTEXT_VAR_NAME, default=None)


def _execution_unit() -> int:
    try:
        task = asyncio.current_task()
    except RuntimeError:
        task = None
    if task is not None:
        return id(task)
    return threading.get_ident()


def _current_frame() -> _Frame:
    owner = _execution_unit()
    frame = _frame.get()
    if frame is None or frame.owner != owner:
        return _Frame(owner=owner)
    return frame


def _checked_identity(tenant: Any) -> Any:
    tenant_id = tenant_identity(tenant)
    if tenant is not None and tenant_id is None:
        raise ValueError(
            f"Tenant {tenant!r} has no identity ({settings.TENANT_KEY} is None); "
            "persist it before activating."
        )
    return tenant_id


def activate(tenant: Any) -> None:
    """
    Make ``tenant`` the active tenant of the calling execution unit.

    Replaces any previous value without nesting; meant for coarse activation
    at the start of a request or job. ``None`` deactivates.
    """
    tenant_id = _checked_identity(tenant)
    frame = _current_frame()
    _frame.set(replace(frame, tenant=tenant, tenant_id=tenant_id))
    logger.debug("tenant.activate", extra={"tenant_id": tenant_id})


def current_tenant() -> Any:
    """Return the active tenant object (or identifier), or None."""
    return _current_frame().tenant


def current_tenant_id() -> Any:
    return _current_frame().tenant_id


def is_suppressed() -> bool:
    """True while inside a ``without_tenant`` scope."""
    return _current_frame().suppressed


def scope_depth() -> int:
    return _current_frame().depth


def snapshot() -> TenantSnapshot:
    frame = _current_frame()
    return TenantSnapshot(
        tenant=frame.tenant,
        tenant_id=frame.tenant_id,
        suppressed=frame.suppressed,
        depth=frame.depth,
    )


def clear() -> None:
    """Reset the calling unit to no tenant, not suppressed, no nesting."""
    _frame.set(_Frame(owner=_execution_unit()))
    logger.debug("tenant.clear", extra={"tenant_id": None, "tenant_suppressed": False})


class TenantScope:
    """
    Bounded change of the tenant state, restored on every exit path.

    Works as ``with``, ``async with`` and as a decorator. The same instance
    can be entered repeatedly; saved frames are kept on an internal stack
    per execution unit.
    """

    def __init__(self, tenant: Any = None, *, suppress: bool = False) -> None:
        self.tenant = tenant
        self.suppress = suppress
        self._tenant_id = DEFAULT_TENANT_ID if suppress else _checked_identity(tenant)
        self._saved: dict[int, list[_Frame]] = {}

    def _push(self) -> None:
        previous = _current_frame()
        if self.suppress:
            entered = replace(previous, suppressed=True, depth=previous.depth + 1)
        else:
            entered = _Frame(
                owner=previous.owner,
                tenant=self.tenant,
                tenant_id=self._tenant_id,
                suppressed=False,
                depth=previous.depth + 1,
            )
        self._saved.setdefault(previous.owner, []).append(previous)
        _frame.set(entered)
        logger.debug(
            "tenant.scope.enter",
            extra={
                "tenant_id": entered.tenant_id,
                "tenant_suppressed": entered.suppressed,
                "depth": entered.depth,
            },
        )

    def _pop(self) -> None:
        owner = _execution_unit()
        stack = self._saved[owner]
        previous = stack.pop()
        if not stack:
            del self._saved[owner]
        _frame.set(previous)
        logger.debug(
            "tenant.scope.exit",
            extra={
                "tenant_id": previous.tenant_id,
                "tenant_suppressed": previous.suppressed,
                "depth": previous.depth,
            },
        )

    def __enter__(self):
        self._push()
        return None if self.suppress else self.tenant

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._pop()
        return False

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return self.__exit__(exc_type, exc, tb)

    def _fresh(self) -> "TenantScope":
        return TenantScope(self.tenant, suppress=self.suppress)

    def __call__(self, func: Callable) -> Callable:
        if inspect.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                async with self._fresh():
                    return await func(*args, **kwargs)

            return async_wrapper

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            with self._fresh():
                return func(*args, **kwargs)

        return sync_wrapper


def _run_in_scope(scope: TenantScope, body: Callable, args, kwargs):
    if inspect.iscoroutinefunction(body):
        async def runner():
            async with scope:
                return await body(*args, **kwargs)

        return runner()
    with scope:
        return body(*args, **kwargs)


def with_tenant(tenant: Any, body: Callable | None = None, *args, **kwargs):
    """
    Run work with ``tenant`` active, restoring the previous state afterwards.

    Without ``body`` returns a TenantScope to use with ``with``/``async with``
    or as a decorator. With ``body`` runs it immediately and returns its
    result (an awaitable when ``body`` is a coroutine function).
    """
    scope = TenantScope(tenant)
    if body is None:
        return scope
    return _run_in_scope(scope, body, args, kwargs)


def without_tenant(body: Callable | None = None, *args, **kwargs):
    """Like ``with_tenant`` but disables tenant checking for the scope."""
    scope = TenantScope(suppress=True)
    if body is None:
        return scope
    return _run_in_scope(scope, body, args, kwargs)
