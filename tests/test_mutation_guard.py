import pytest
from sqlalchemy import func, select

from tenant_isolation.tenancy.context import with_tenant, without_tenant
from tenant_isolation.tenancy.errors import NoTenantSet, TenantMismatch
from tenant_isolation.tenancy.hooks import mutation_guard
from tenant_isolation.tenancy.registry import configure
from tests.conftest import add_unscoped
from tests.models import Note, Project, Tag, Task


@pytest.fixture
def tenant_ids(accounts):
    acme, wayne = accounts
    return acme.id, wayne.id


def _count(db, model, *criteria):
    stmt = select(func.count()).select_from(model).where(*criteria)
    with without_tenant():
        return db.execute(stmt).scalar_one()


def test_new_row_takes_active_tenant(db_session, tenant_ids):
    acme_id, _ = tenant_ids
    with with_tenant(acme_id):
        project = Project(name="Alpha")
        db_session.add(project)
        db_session.commit()
        assert project.account_id == acme_id


def test_explicit_matching_value_is_kept(db_session, tenant_ids):
    acme_id, _ = tenant_ids
    with with_tenant(acme_id):
        project = Project(account_id=acme_id, name="Alpha")
        db_session.add(project)
        db_session.commit()
    assert _count(db_session, Project, Project.account_id == acme_id) == 1


def test_other_tenant_value_is_rejected_and_not_persisted(db_session, tenant_ids):
    acme_id, wayne_id = tenant_ids
    with with_tenant(acme_id):
        db_session.add(Project(account_id=wayne_id, name="Intruder"))
        with pytest.raises(TenantMismatch) as exc_info:
            db_session.flush()
    db_session.rollback()
    assert exc_info.value.model is Project
    assert exc_info.value.field == "account_id"
    assert exc_info.value.value == wayne_id
    assert _count(db_session, Project) == 0


def test_no_tenant_fail_closed_rejects_create(db_session, tenant_ids):
    configure(require_tenant=True)
    db_session.add(Project(name="Orphan"))
    with pytest.raises(NoTenantSet):
        db_session.flush()
    db_session.rollback()
    assert _count(db_session, Project) == 0


def test_no_tenant_fail_open_keeps_explicit_value(db_session, tenant_ids):
    _, wayne_id = tenant_ids
    db_session.add(Project(account_id=wayne_id, name="Imported"))
    db_session.commit()
    assert _count(db_session, Project, Project.account_id == wayne_id) == 1


def test_tenant_association_supplies_value(db_session, accounts):
    acme, _ = accounts
    project = Project(account=acme, name="Alpha")
    db_session.add(project)
    db_session.commit()
    assert project.account_id == acme.id


def test_association_of_other_tenant_is_rejected(db_session, accounts):
    acme, wayne = accounts
    acme_id = acme.id
    with with_tenant(acme_id):
        db_session.add(Project(account=wayne, name="Intruder"))
        with pytest.raises(TenantMismatch):
            db_session.flush()
    db_session.rollback()


def test_child_inherits_parent_tenant(db_session, tenant_ids):
    acme_id, _ = tenant_ids
    add_unscoped(db_session, Project(account_id=acme_id, name="Alpha"))
    with with_tenant(acme_id):
        project = db_session.execute(select(Project)).scalar_one()
    task = Task(project=project, title="write docs")
    db_session.add(task)
    db_session.commit()
    assert task.account_id == acme_id


def test_child_with_conflicting_tenant_is_rejected(db_session, tenant_ids):
    acme_id, wayne_id = tenant_ids
    add_unscoped(db_session, Project(account_id=acme_id, name="Alpha"))
    with with_tenant(acme_id):
        project = db_session.execute(select(Project)).scalar_one()
        db_session.add(Task(project=project, account_id=wayne_id, title="cross"))
        with pytest.raises(TenantMismatch):
            db_session.flush()
    db_session.rollback()
    assert _count(db_session, Task) == 0


def test_new_parent_and_child_in_one_flush(db_session, tenant_ids):
    acme_id, _ = tenant_ids
    with with_tenant(acme_id):
        project = Project(name="Alpha")
        project.tasks.append(Task(title="first"))
        db_session.add(project)
        db_session.commit()
    assert _count(db_session, Task, Task.account_id == acme_id) == 1


def test_one_directional_collection_child_inherits_owner(db_session, tenant_ids):
    acme_id, _ = tenant_ids
    add_unscoped(db_session, Project(account_id=acme_id, name="Alpha"))
    with without_tenant():
        project = db_session.execute(select(Project)).scalar_one()
    project.notes.append(Note(body="remember"))
    db_session.commit()
    assert _count(db_session, Note, Note.account_id == acme_id) == 1


def test_suppressed_writes_skip_checks(db_session, tenant_ids):
    acme_id, wayne_id = tenant_ids
    with with_tenant(acme_id):
        with without_tenant():
            db_session.add(Project(account_id=wayne_id, name="Migrated"))
            db_session.commit()
    assert _count(db_session, Project, Project.account_id == wayne_id) == 1


def test_discriminator_cannot_change(db_session, tenant_ids):
    acme_id, wayne_id = tenant_ids
    add_unscoped(db_session, Project(account_id=acme_id, name="Alpha"))
    with with_tenant(acme_id):
        project = db_session.execute(select(Project)).scalar_one()
        project.account_id = wayne_id
        with pytest.raises(TenantMismatch):
            db_session.flush()
    db_session.rollback()
    assert _count(db_session, Project, Project.account_id == acme_id) == 1


def test_discriminator_change_detected_on_expired_row(db_session, tenant_ids):
    acme_id, wayne_id = tenant_ids
    add_unscoped(db_session, Project(account_id=acme_id, name="Alpha"))
    with without_tenant():
        project = db_session.execute(select(Project)).scalar_one()
    db_session.commit()
    # Expired by the commit: the old value is no longer in attribute history.
    project.account_id = wayne_id
    with pytest.raises(TenantMismatch):
        db_session.flush()
    db_session.rollback()
    assert _count(db_session, Project, Project.account_id == acme_id) == 1


def test_other_attributes_can_change(db_session, tenant_ids):
    acme_id, _ = tenant_ids
    add_unscoped(db_session, Project(account_id=acme_id, name="Alpha"))
    with with_tenant(acme_id):
        project = db_session.execute(select(Project)).scalar_one()
        project.name = "Renamed"
        db_session.commit()
    assert _count(db_session, Project, Project.name == "Renamed") == 1


def test_suppressed_discriminator_change_allowed(db_session, tenant_ids):
    acme_id, wayne_id = tenant_ids
    add_unscoped(db_session, Project(account_id=acme_id, name="Alpha"))
    with without_tenant():
        project = db_session.execute(select(Project)).scalar_one()
        project.account_id = wayne_id
        db_session.commit()
    assert _count(db_session, Project, Project.account_id == wayne_id) == 1


def test_global_record_can_be_claimed_by_active_tenant(db_session, tenant_ids):
    acme_id, wayne_id = tenant_ids
    add_unscoped(db_session, Tag(account_id=None, label="shared"))
    with with_tenant(acme_id):
        tag = db_session.execute(select(Tag)).scalar_one()
        tag.account_id = acme_id
        db_session.commit()
    assert _count(db_session, Tag, Tag.account_id == acme_id) == 1

    with with_tenant(acme_id):
        tag = db_session.execute(select(Tag)).scalar_one()
        tag.account_id = wayne_id
        with pytest.raises(TenantMismatch):
            db_session.flush()
    db_session.rollback()


def test_validate_reports_without_raising(db_session, tenant_ids):
    acme_id, wayne_id = tenant_ids
    with with_tenant(acme_id):
        problems = mutation_guard.validate(Project(account_id=wayne_id, name="x"), db_session)
        assert [type(p) for p in problems] == [TenantMismatch]
        assert mutation_guard.validate(Project(name="y"), db_session) == []
    configure(require_tenant=True)
    problems = mutation_guard.validate(Project(name="z"), db_session)
    assert [type(p) for p in problems] == [NoTenantSet]


def test_global_record_needs_suppression(db_session, tenant_ids):
    db_session.add(Tag(label="shared"))
    with pytest.raises(NoTenantSet):
        db_session.flush()
    db_session.rollback()

    with without_tenant():
        db_session.add(Tag(label="shared"))
        db_session.commit()
    assert _count(db_session, Tag, Tag.account_id.is_(None)) == 1
