import os

import pytest
from sqlalchemy import create_engine

# Ensure required settings exist before imports.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REQUIRE_TENANT", "false")

from tenant_isolation.core.db import Base, build_session_factory
from tenant_isolation.tenancy.context import clear, without_tenant
from tenant_isolation.tenancy.registry import configure
from tests.models import Account


@pytest.fixture(autouse=True)
def reset_tenancy():
    clear()
    configure(require_tenant=None)
    yield
    clear()
    configure(require_tenant=None)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path}/tenancy.db", future=True)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    factory = build_session_factory(engine)
    with factory() as session:
        yield session


@pytest.fixture
def accounts(db_session):
    acme = Account(name="Acme", slug="acme")
    wayne = Account(name="Wayne", slug="wayne")
    db_session.add_all([acme, wayne])
    db_session.commit()
    return acme, wayne


def add_unscoped(db, *rows):
    """Insert rows as-is, bypassing tenant checks (fixture setup)."""
    with without_tenant():
        db.add_all(rows)
        db.commit()
    return rows
