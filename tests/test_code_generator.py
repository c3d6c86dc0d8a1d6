import threading
from datetime import datetime

import pytest

from obatku_core.app.models import (
    QRCode, QRCodeMaster, QRCodeSequence, CodeState, SequenceStatus, SequenceType
)
from obatku_core.app.services.code_generator import CodeGenerator
from obatku_core.app.services.errors import (
    ClassificationNotFound, ClassificationInactive, InvalidBulkQuantity
)
from obatku_core.app.services.master_registry import MasterRegistry
from obatku_core.app.services.sequence_allocator import Bucket, SequenceAllocator


def test_generate_individual_worked_example(db_session, key, names):
    result = CodeGenerator(db_session).generate_individual(
        key, "BATCH-001", 3, issued_by="pharmacist", names=names, year=25, month=7
    )

    assert result.success
    assert (result.generated, result.failed) == (3, 0)
    assert [c.code_string for c in result.codes] == [
        "25071F111B0001", "25071F111B0002", "25071F111B0003",
    ]
    for code in result.codes:
        assert code.state == CodeState.GENERATED
        assert code.unit_quantity == 1
        assert code.is_bulk_package is False
        assert code.batch_reference == "BATCH-001"
        assert code.generated_by == "pharmacist"
        assert code.scan_count == 0

    assert MasterRegistry(db_session).find(key) is not None


def test_generated_codes_are_committed(session_factory, db_session, key, names):
    CodeGenerator(db_session).generate_individual(
        key, "BATCH-001", 2, issued_by="pharmacist", names=names, year=25, month=7
    )

    other = session_factory()
    try:
        assert other.query(QRCode).count() == 2
    finally:
        other.close()


def test_year_and_month_default_to_clock(db_session, key, names):
    generator = CodeGenerator(db_session, clock=lambda: datetime(2026, 3, 5, 10, 30))
    result = generator.generate_individual(key, "BATCH-001", 1, issued_by="admin", names=names)
    assert result.codes[0].code_string == "26031F111B0001"


def test_missing_master_without_names(db_session, key):
    with pytest.raises(ClassificationNotFound):
        CodeGenerator(db_session).generate_individual(key, "BATCH-001", 1, issued_by="admin")
    assert db_session.query(QRCodeSequence).count() == 0


def test_inactive_master_blocks_generation(db_session, key, names):
    registry = MasterRegistry(db_session)
    master = registry.create(key, names, created_by="admin")
    registry.set_active(master.id, False, updated_by="admin")
    db_session.commit()

    with pytest.raises(ClassificationInactive):
        CodeGenerator(db_session).generate_individual(key, "BATCH-001", 1, issued_by="admin", names=names)


def test_individual_rejects_package_code(db_session, key, names):
    with pytest.raises(ValueError):
        CodeGenerator(db_session).generate_individual(
            key.with_package("B"), "BATCH-001", 1, issued_by="admin", names=names
        )


@pytest.mark.parametrize("sequence_type,expected", [
    (SequenceType.ALPHA_SUFFIX, ["25071F111B000A", "25071F111B001A"]),
    (SequenceType.ALPHA_PREFIX, ["25071F111BA001", "25071F111BA002"]),
])
def test_alternative_sequence_schemes(db_session, key, names, sequence_type, expected):
    result = CodeGenerator(db_session).generate_individual(
        key, "BATCH-001", 2, issued_by="admin", names=names,
        sequence_type=sequence_type, year=25, month=7,
    )
    assert [c.code_string for c in result.codes] == expected
    assert all(c.sequence_type == sequence_type for c in result.codes)


def test_partial_success_when_bucket_runs_out(db_session, key, names):
    values = Bucket.of(25, 7, key, SequenceType.NUMERIC).row_values()
    db_session.add(QRCodeSequence(current_value=9998, total_issued=9998, status=SequenceStatus.ACTIVE, **values))
    db_session.commit()

    result = CodeGenerator(db_session).generate_individual(
        key, "BATCH-001", 3, issued_by="admin", names=names, year=25, month=7
    )

    assert result.success
    assert (result.generated, result.failed) == (1, 2)
    assert result.codes[0].code_string == "25071F111B9999"
    assert "Failed to generate QR code 2" in result.failures[0]

    counter = db_session.query(QRCodeSequence).one()
    assert counter.status == SequenceStatus.EXHAUSTED
    assert db_session.query(QRCode).count() == 1


def test_concurrent_first_generation_shares_one_master(session_factory, key, names):
    threads_count = 4
    results = []
    errors = []
    lock = threading.Lock()
    start = threading.Barrier(threads_count)

    def worker():
        session = session_factory()
        try:
            generator = CodeGenerator(session, allocator=SequenceAllocator(session, max_retries=50))
            start.wait()
            result = generator.generate_individual(
                key, "BATCH-001", 1, issued_by="admin", names=names, year=25, month=7
            )
            with lock:
                results.extend(c.code_string for c in result.codes)
        except Exception as e:  # collected and asserted below
            session.rollback()
            with lock:
                errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=worker) for _ in range(threads_count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sorted(results) == [f"25071F111B000{i}" for i in range(1, threads_count + 1)]

    session = session_factory()
    try:
        assert session.query(QRCodeMaster).count() == 1
    finally:
        session.close()


def test_lost_master_race_still_checks_status(db_session, key, names, monkeypatch):
    registry = MasterRegistry(db_session)
    master = registry.create(key, names, created_by="other")
    registry.set_active(master.id, False, updated_by="other")
    db_session.commit()

    generator = CodeGenerator(db_session)
    find = generator.registry.find
    calls = {"n": 0}

    def find_missing_once(k):
        calls["n"] += 1
        return None if calls["n"] == 1 else find(k)
    monkeypatch.setattr(generator.registry, "find", find_missing_once)

    with pytest.raises(ClassificationInactive):
        generator.generate_individual(key, "BATCH-001", 1, issued_by="admin", names=names)
    assert db_session.query(QRCodeMaster).count() == 1


# =============================================================================
# BULK
# =============================================================================

def test_generate_bulk_scenario(db_session, key, names):
    result = CodeGenerator(db_session).generate_bulk(
        key, "BATCH-001",
        total_quantity=100, bulk_package_size=20, package_type_code="B",
        issued_by="admin", names=dict(names, package_type_name="Box"), year=25, month=7,
    )

    assert result.generated == 5
    assert [c.code_string for c in result.codes] == [
        f"25071F111B-B000{i}" for i in range(1, 6)
    ]
    for code in result.codes:
        assert code.is_bulk_package is True
        assert code.unit_quantity == 20
        assert code.package_type_code == "B"
        assert code.notes.startswith("Bulk package (20 items per package)")


def test_bulk_indivisible_quantity_consumes_nothing(db_session, key, names):
    generator = CodeGenerator(db_session)
    with pytest.raises(InvalidBulkQuantity):
        generator.generate_bulk(
            key, "BATCH-001",
            total_quantity=100, bulk_package_size=30, package_type_code="B",
            issued_by="admin", names=dict(names, package_type_name="Box"), year=25, month=7,
        )

    assert db_session.query(QRCodeSequence).count() == 0
    assert db_session.query(QRCode).count() == 0
    assert generator.allocator.preview_next(25, 7, key.with_package("B")) == 1


@pytest.mark.parametrize("total,size", [(0, 10), (10, 0), (-20, 10)])
def test_bulk_rejects_non_positive_quantities(db_session, key, names, total, size):
    with pytest.raises(InvalidBulkQuantity):
        CodeGenerator(db_session).generate_bulk(
            key, "BATCH-001", total_quantity=total, bulk_package_size=size,
            package_type_code="B", issued_by="admin", names=names,
        )


def test_bulk_and_individual_buckets_are_separate(db_session, key, names):
    generator = CodeGenerator(db_session)
    generator.generate_individual(key, "BATCH-001", 2, issued_by="admin", names=names, year=25, month=7)
    bulk = generator.generate_bulk(
        key, "BATCH-001", total_quantity=10, bulk_package_size=10, package_type_code="C",
        issued_by="admin", names=dict(names, package_type_name="Carton"), year=25, month=7,
    )
    assert bulk.codes[0].code_string == "25071F111B-C0001"
