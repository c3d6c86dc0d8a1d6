from datetime import datetime, timedelta

import pytest

from obatku_core.app.models import CodeState, ScanPurpose, ScanResult, SequenceType, QRCodeSequence, SequenceStatus
from obatku_core.app.services.code_generator import CodeGenerator
from obatku_core.app.services.code_queries import QRCodeQueryService
from obatku_core.app.services.errors import CodeNotFound, InvalidStateTransition
from obatku_core.app.services.scan_processor import ScanProcessor
from obatku_core.app.services.sequence_allocator import Bucket


@pytest.fixture
def seeded(db_session, key, names, make_stock):
    generator = CodeGenerator(db_session)
    individual = generator.generate_individual(
        key, "BATCH-001", 3, issued_by="admin", names=names, year=25, month=7
    ).codes
    bulk = generator.generate_bulk(
        key, "BATCH-002", total_quantity=20, bulk_package_size=10, package_type_code="B",
        issued_by="admin", names=dict(names, package_type_name="Box"), year=25, month=8,
    ).codes
    make_stock("BATCH-001", available_quantity=10)
    make_stock("BATCH-002", available_quantity=20, unit_size=10)
    return individual, bulk


def test_list_codes_filters(db_session, seeded):
    queries = QRCodeQueryService(db_session)

    _, total = queries.list_codes()
    assert total == 5

    items, total = queries.list_codes(is_bulk_package=True)
    assert total == 2 and all(c.is_bulk_package for c in items)

    _, total = queries.list_codes(batch_reference="BATCH-001", month="07")
    assert total == 3

    items, total = queries.list_codes(limit=2, offset=0)
    assert total == 5 and len(items) == 2


def test_list_codes_by_state(db_session, seeded):
    individual, _ = seeded
    ScanProcessor(db_session).mark_printed(individual[0].id, "printer")

    items, total = QRCodeQueryService(db_session).list_codes(state=CodeState.PRINTED)
    assert total == 1 and items[0].id == individual[0].id


def test_get_codes_for_batch_in_generation_order(db_session, seeded):
    codes = QRCodeQueryService(db_session).get_codes_for_batch("BATCH-002")
    assert [c.code_string for c in codes] == ["25081F111B-B0001", "25081F111B-B0002"]


def test_get_code_and_by_string(db_session, seeded):
    individual, _ = seeded
    queries = QRCodeQueryService(db_session)
    assert queries.get_code(individual[0].id).code_string == "25071F111B0001"
    assert queries.get_by_string("25071F111B0002").id == individual[1].id
    with pytest.raises(CodeNotFound):
        queries.get_code(12345)
    with pytest.raises(CodeNotFound):
        queries.get_by_string("25071F111B0999")


def test_delete_only_unscanned(db_session, seeded):
    individual, _ = seeded
    queries = QRCodeQueryService(db_session)
    ScanProcessor(db_session).scan(individual[0].code_string, ScanPurpose.VERIFICATION, scanned_by="staff")

    with pytest.raises(InvalidStateTransition):
        queries.delete_code(individual[0].id)

    queries.delete_code(individual[1].id)
    db_session.commit()
    with pytest.raises(CodeNotFound):
        queries.get_code(individual[1].id)


def test_scan_history_is_per_batch(db_session, seeded):
    individual, bulk = seeded
    processor = ScanProcessor(db_session)
    processor.scan(individual[0].code_string, ScanPurpose.DISTRIBUTION, scanned_by="staff")
    processor.scan(individual[0].code_string, ScanPurpose.DISTRIBUTION, scanned_by="staff")
    processor.scan(bulk[0].code_string, ScanPurpose.AUDIT, scanned_by="auditor")
    processor.scan("garbage", ScanPurpose.AUDIT, scanned_by="auditor")

    queries = QRCodeQueryService(db_session)
    history = queries.get_scan_history("BATCH-001")
    assert [log.result for log in history] == [ScanResult.ALREADY_USED, ScanResult.SUCCESS]
    assert len(queries.get_scan_history("BATCH-002")) == 1
    assert len(queries.recent_scans(individual[0].id)) == 2


def test_list_scan_logs_filters(db_session, seeded):
    individual, _ = seeded
    processor = ScanProcessor(db_session)
    processor.scan(individual[0].code_string, ScanPurpose.VERIFICATION, scanned_by="alice")
    processor.scan(individual[1].code_string, ScanPurpose.DISTRIBUTION, scanned_by="bob")
    processor.scan("garbage", ScanPurpose.VERIFICATION, scanned_by="bob")

    queries = QRCodeQueryService(db_session)
    _, total = queries.list_scan_logs()
    assert total == 3

    _, total = queries.list_scan_logs(scanned_by="bob")
    assert total == 2

    items, total = queries.list_scan_logs(result=ScanResult.INVALID_FORMAT)
    assert total == 1 and items[0].code_id is None

    _, total = queries.list_scan_logs(purpose=ScanPurpose.VERIFICATION, code_id=individual[0].id)
    assert total == 1

    _, total = queries.list_scan_logs(date_from=datetime.utcnow() + timedelta(days=1))
    assert total == 0


def test_statistics(db_session, seeded):
    individual, _ = seeded
    processor = ScanProcessor(db_session)
    processor.scan(individual[0].code_string, ScanPurpose.DISTRIBUTION, scanned_by="staff")
    processor.scan("garbage", ScanPurpose.VERIFICATION, scanned_by="staff")

    stats = QRCodeQueryService(db_session).statistics()
    assert stats["total_codes"] == 5
    assert stats["individual_codes"] == 3
    assert stats["bulk_codes"] == 2
    assert stats["by_state"]["used"] == 1
    assert stats["by_state"]["generated"] == 4
    assert stats["by_medicine_type"] == {"F": 5}
    assert stats["total_scans"] == 2
    assert stats["scan_success_rate"] == 50.0


def test_health_reports_buckets(db_session, key, names):
    values = Bucket.of(25, 7, key, SequenceType.NUMERIC).row_values()
    db_session.add(QRCodeSequence(current_value=9999, total_issued=9999, status=SequenceStatus.EXHAUSTED, **values))
    db_session.commit()
    CodeGenerator(db_session).generate_individual(
        key, "BATCH-001", 1, issued_by="admin", names=names, year=25, month=8
    )

    health = QRCodeQueryService(db_session).health()
    assert health["status"] == "healthy"
    assert health["active_masters"] == 1
    assert health["active_sequences"] == 1
    assert health["exhausted_sequences"] == 1
    assert len(health["warnings"]) == 1


def test_preview_next_code(db_session, seeded, key):
    queries = QRCodeQueryService(db_session)
    assert queries.preview_next_code(25, 7, key) == "25071F111B0004"
    assert queries.preview_next_code(25, 8, key.with_package("B")) == "25081F111B-B0003"
    assert queries.preview_next_code(25, 9, key, SequenceType.ALPHA_PREFIX) == "25091F111BA001"
