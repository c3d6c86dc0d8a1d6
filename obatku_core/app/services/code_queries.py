"""
QR Code Queries
===============
Read-side operations over generated codes and scan logs: listing, batch
lookups, scan history, statistics and health.
"""

import logging
from datetime import datetime
from typing import Optional, List, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import (
    QRCode, QRCodeScanLog, CodeState, ScanPurpose, ScanResult, SequenceType,
    SequenceStatus,
)
from . import code_format
from .code_format import ClassificationKey
from .errors import CodeNotFound, InvalidStateTransition
from .master_registry import MasterRegistry
from .sequence_allocator import SequenceAllocator

logger = logging.getLogger(__name__)


class QRCodeQueryService:
    """Query operations for QR codes"""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # CODES
    # =========================================================================

    def get_code(self, code_id: int) -> QRCode:
        code = self.db.get(QRCode, code_id)
        if not code:
            raise CodeNotFound(f"QR code {code_id} not found")
        return code

    def get_by_string(self, code_string: str) -> QRCode:
        code = self.db.query(QRCode).filter(QRCode.code_string == code_string).first()
        if not code:
            raise CodeNotFound(f"QR code {code_string} not found")
        return code

    def list_codes(
        self,
        batch_reference: Optional[str] = None,
        is_bulk_package: Optional[bool] = None,
        state: Optional[CodeState] = None,
        year: Optional[str] = None,
        month: Optional[str] = None,
        medicine_type_code: Optional[str] = None,
        generated_by: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[QRCode], int]:
        query = self.db.query(QRCode)

        if batch_reference:
            query = query.filter(QRCode.batch_reference == batch_reference)
        if is_bulk_package is not None:
            query = query.filter(QRCode.is_bulk_package == is_bulk_package)
        if state:
            query = query.filter(QRCode.state == state)
        if year:
            query = query.filter(QRCode.year == year)
        if month:
            query = query.filter(QRCode.month == month)
        if medicine_type_code:
            query = query.filter(QRCode.medicine_type_code == medicine_type_code)
        if generated_by:
            query = query.filter(QRCode.generated_by == generated_by)

        total = query.count()
        items = query.order_by(QRCode.generated_at.desc(), QRCode.id.desc()) \
            .offset(offset).limit(limit).all()
        return items, total

    def get_codes_for_batch(self, batch_reference: str) -> List[QRCode]:
        return self.db.query(QRCode).filter(
            QRCode.batch_reference == batch_reference
        ).order_by(QRCode.id).all()

    def delete_code(self, code_id: int) -> None:
        """Remove a code that was generated by mistake (never scanned)"""
        code = self.get_code(code_id)
        if code.scan_count > 0 or code.scan_logs:
            raise InvalidStateTransition("Cannot delete QR code that has been scanned")
        self.db.delete(code)
        logger.info("Deleted unscanned QR code %s", code.code_string)

    # =========================================================================
    # SCAN LOGS
    # =========================================================================

    def get_scan_history(self, batch_reference: str) -> List[QRCodeScanLog]:
        return self.db.query(QRCodeScanLog).join(
            QRCode, QRCodeScanLog.code_id == QRCode.id
        ).filter(
            QRCode.batch_reference == batch_reference
        ).order_by(QRCodeScanLog.scanned_at.desc(), QRCodeScanLog.id.desc()).all()

    def recent_scans(self, code_id: int, limit: int = 10) -> List[QRCodeScanLog]:
        return self.db.query(QRCodeScanLog).filter(
            QRCodeScanLog.code_id == code_id
        ).order_by(QRCodeScanLog.scanned_at.desc(), QRCodeScanLog.id.desc()).limit(limit).all()

    def list_scan_logs(
        self,
        code_id: Optional[int] = None,
        scanned_by: Optional[str] = None,
        purpose: Optional[ScanPurpose] = None,
        result: Optional[ScanResult] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[QRCodeScanLog], int]:
        query = self.db.query(QRCodeScanLog)

        if code_id:
            query = query.filter(QRCodeScanLog.code_id == code_id)
        if scanned_by:
            query = query.filter(QRCodeScanLog.scanned_by == scanned_by)
        if purpose:
            query = query.filter(QRCodeScanLog.purpose == purpose)
        if result:
            query = query.filter(QRCodeScanLog.result == result)
        if date_from:
            query = query.filter(QRCodeScanLog.scanned_at >= date_from)
        if date_to:
            query = query.filter(QRCodeScanLog.scanned_at <= date_to)

        total = query.count()
        items = query.order_by(QRCodeScanLog.scanned_at.desc(), QRCodeScanLog.id.desc()) \
            .offset(offset).limit(limit).all()
        return items, total

    # =========================================================================
    # REPORTING
    # =========================================================================

    def statistics(self) -> dict:
        total_codes = self.db.query(func.count(QRCode.id)).scalar()
        bulk_codes = self.db.query(func.count(QRCode.id)).filter(QRCode.is_bulk_package.is_(True)).scalar()

        by_state = {state.value: 0 for state in CodeState}
        for state, count in self.db.query(QRCode.state, func.count(QRCode.id)).group_by(QRCode.state):
            by_state[CodeState(state).value] = count

        by_medicine_type = {
            medicine_type: count
            for medicine_type, count in self.db.query(
                QRCode.medicine_type_code, func.count(QRCode.id)
            ).group_by(QRCode.medicine_type_code)
        }

        total_scans = self.db.query(func.count(QRCodeScanLog.id)).scalar()
        successful_scans = self.db.query(func.count(QRCodeScanLog.id)).filter(
            QRCodeScanLog.result == ScanResult.SUCCESS
        ).scalar()

        return {
            "total_codes": total_codes,
            "individual_codes": total_codes - bulk_codes,
            "bulk_codes": bulk_codes,
            "by_state": by_state,
            "by_medicine_type": by_medicine_type,
            "total_scans": total_scans,
            "successful_scans": successful_scans,
            "scan_success_rate": round(successful_scans / total_scans * 100, 2) if total_scans else 0.0,
        }

    def health(self) -> dict:
        buckets = SequenceAllocator(self.db).count_by_status()
        warnings = []
        if buckets[SequenceStatus.EXHAUSTED.value]:
            warnings.append(
                f"{buckets[SequenceStatus.EXHAUSTED.value]} sequence bucket(s) exhausted; "
                "switch sequence type or package type for new codes"
            )
        return {
            "status": "healthy",
            "warnings": warnings,
            "active_masters": MasterRegistry(self.db).count_active(),
            "active_sequences": buckets[SequenceStatus.ACTIVE.value],
            "exhausted_sequences": buckets[SequenceStatus.EXHAUSTED.value],
            "total_codes": self.db.query(func.count(QRCode.id)).scalar(),
            "checked_at": datetime.utcnow(),
        }

    def preview_next_code(
        self,
        year,
        month,
        key: ClassificationKey,
        sequence_type: SequenceType = SequenceType.NUMERIC,
    ) -> Optional[str]:
        """Code string the next reservation would produce, without reserving"""
        value = SequenceAllocator(self.db).preview_next(year, month, key, sequence_type)
        if value is None:
            return None
        return code_format.encode(year, month, key, value, sequence_type, is_bulk_package=key.is_bulk)
