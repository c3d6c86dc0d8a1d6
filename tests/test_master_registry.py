import pytest

from obatku_core.app.models import MasterStatus, QRCodeMaster
from obatku_core.app.services.code_generator import CodeGenerator
from obatku_core.app.services.code_format import ClassificationKey
from obatku_core.app.services.errors import (
    DuplicateClassification, ClassificationNotFound, InvalidStateTransition, MalformedCode
)
from obatku_core.app.services.master_registry import MasterRegistry


def test_create_and_find(db_session, key, names):
    registry = MasterRegistry(db_session)
    master = registry.create(key, names, created_by="admin")
    db_session.commit()

    found = registry.find(ClassificationKey("1", "F", "111", "B", ""))
    assert found.id == master.id
    assert found.status == MasterStatus.ACTIVE
    assert found.package_type_code == ""
    assert found.package_type_name is None
    assert found.created_by == "admin"


def test_duplicate_key_is_rejected(db_session, key, names):
    registry = MasterRegistry(db_session)
    registry.create(key, names, created_by="admin")
    db_session.commit()

    with pytest.raises(DuplicateClassification):
        registry.create(key, dict(names, producer_name="Other"), created_by="admin")


def test_package_type_makes_a_distinct_entry(db_session, key, names):
    registry = MasterRegistry(db_session)
    registry.create(key, names, created_by="admin")
    bulk = registry.create(key.with_package("B"), dict(names, package_type_name="Box"), created_by="admin")
    db_session.commit()

    assert bulk.package_type_code == "B"
    assert bulk.package_type_name == "Box"
    assert db_session.query(QRCodeMaster).count() == 2


def test_package_code_requires_name(db_session, key, names):
    with pytest.raises(ValueError):
        MasterRegistry(db_session).create(key.with_package("B"), names, created_by="admin")


def test_malformed_key_is_rejected(db_session, names):
    with pytest.raises(MalformedCode):
        MasterRegistry(db_session).create(ClassificationKey("1", "F", "11", "B"), names, created_by="admin")


def test_update_names_and_toggle_status(db_session, key, names):
    registry = MasterRegistry(db_session)
    master = registry.create(key, names, created_by="admin")
    db_session.commit()

    registry.update_names(master.id, {"producer_name": "Kimia Farma"}, updated_by="editor")
    registry.set_active(master.id, False, updated_by="editor")
    db_session.commit()

    master = registry.get(master.id)
    assert master.producer_name == "Kimia Farma"
    assert master.funding_source_name == "APBN"
    assert master.status == MasterStatus.INACTIVE
    assert master.updated_by == "editor"

    registry.set_active(master.id, True, updated_by="editor")
    assert registry.get(master.id).status == MasterStatus.ACTIVE


def test_package_name_needs_package_code(db_session, key, names):
    registry = MasterRegistry(db_session)
    master = registry.create(key, names, created_by="admin")
    with pytest.raises(ValueError):
        registry.update_names(master.id, {"package_type_name": "Box"}, updated_by="editor")


def test_get_missing_master(db_session):
    with pytest.raises(ClassificationNotFound):
        MasterRegistry(db_session).get(999)


def test_delete_only_unreferenced(db_session, key, names):
    registry = MasterRegistry(db_session)
    unused = registry.create(ClassificationKey("2", "I", "222", "C"), names, created_by="admin")
    db_session.commit()

    CodeGenerator(db_session).generate_individual(
        key, "BATCH-001", 1, issued_by="admin", names=names, year=25, month=7
    )
    used = registry.find(key)

    with pytest.raises(InvalidStateTransition):
        registry.delete(used.id)

    registry.delete(unused.id)
    db_session.commit()
    assert registry.find(ClassificationKey("2", "I", "222", "C")) is None
    assert registry.is_referenced(used)


def test_search_filters(db_session, key, names):
    registry = MasterRegistry(db_session)
    registry.create(key, names, created_by="admin")
    other = registry.create(
        ClassificationKey("2", "H", "305", "D"),
        dict(names, active_ingredient_name="Amoxicillin"),
        created_by="admin",
    )
    registry.set_active(other.id, False, updated_by="admin")
    db_session.commit()

    items, total = registry.search(search="amoxi")
    assert total == 1 and items[0].active_ingredient_code == "305"

    items, total = registry.search(medicine_type_code="F")
    assert [m.medicine_type_code for m in items] == ["F"]

    _, total = registry.search(status=MasterStatus.ACTIVE)
    assert total == 1
    assert registry.count_active() == 1

    items, total = registry.search(limit=1)
    assert total == 2 and len(items) == 1


def test_search_rejects_unknown_filter(db_session):
    with pytest.raises(ValueError):
        MasterRegistry(db_session).search(producer_name="Bio")
