# Session helpers for hosts (and tests) that let this package own the engine.
# Sessions produced here always carry the tenant listeners.

from __future__ import annotations

from collections.abc import Generator
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from tenant_isolation.core.config import settings
from tenant_isolation.tenancy.hooks import install_tenant_guards

Base = declarative_base()


def build_engine(url: str | None = None) -> Engine:
    return create_engine(url or settings.DATABASE_URL, echo=settings.DB_ECHO, future=True)


def build_session_factory(bind: Engine | str | None = None) -> sessionmaker:
    """sessionmaker bound to ``bind`` with ScopeEnforcer/MutationGuard installed."""
    engine = bind if isinstance(bind, Engine) else build_engine(bind)
    factory = sessionmaker(bind=engine, autoflush=True, future=True)
    install_tenant_guards(factory)
    return factory


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return build_session_factory()


def get_db() -> Generator[Session, None, None]:
    """Yield a session; commit on success, roll back on any error."""
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
