import pytest

from tenant_isolation.tenancy.lookup import find_tenant
from tenant_isolation.tenancy.registry import configure
from tests.models import Account


def test_find_by_slug_and_id(db_session, accounts):
    acme, wayne = accounts
    assert find_tenant(db_session, Account, "acme") is acme
    assert find_tenant(db_session, Account, " wayne ") is wayne
    assert find_tenant(db_session, Account, wayne.id) is wayne
    assert find_tenant(db_session, Account, str(acme.id)) is acme


def test_find_by_other_field(db_session, accounts):
    acme, _ = accounts
    assert find_tenant(db_session, Account, "Acme", field="name") is acme


def test_miss_returns_none(db_session, accounts):
    assert find_tenant(db_session, Account, "umbrella") is None
    assert find_tenant(db_session, Account, 999) is None
    assert find_tenant(db_session, Account, None) is None
    assert find_tenant(db_session, Account, "   ") is None


def test_lookup_works_when_tenant_required(db_session, accounts):
    configure(require_tenant=True)
    assert find_tenant(db_session, Account, "acme") is accounts[0]


def test_unknown_field(db_session):
    with pytest.raises(ValueError):
        find_tenant(db_session, Account, "acme", field="domain")
