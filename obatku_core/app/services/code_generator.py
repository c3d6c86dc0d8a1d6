"""
QR Code Generator
=================
Mints individual and bulk-package codes for a stock batch.

Each code is reserved, encoded and committed on its own, so a failure part
way through a request never takes back codes that were already issued.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import QRCode, CodeState, MasterStatus, SequenceType
from . import code_format
from .code_format import ClassificationKey
from .errors import (
    SequenceExhausted, InvalidBulkQuantity, ClassificationNotFound,
    ClassificationInactive, ConcurrencyConflict, DuplicateClassification,
)
from .master_registry import MasterRegistry
from .sequence_allocator import SequenceAllocator

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    codes: List[QRCode] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)

    @property
    def generated(self) -> int:
        return len(self.codes)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def success(self) -> bool:
        return self.generated > 0


class CodeGenerator:
    """Orchestrates master lookup, sequence reservation and encoding"""

    def __init__(
        self,
        db: Session,
        allocator: Optional[SequenceAllocator] = None,
        registry: Optional[MasterRegistry] = None,
        clock=datetime.utcnow,
    ):
        self.db = db
        self.allocator = allocator or SequenceAllocator(db, clock=clock)
        self.registry = registry or MasterRegistry(db)
        self.clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def generate_individual(
        self,
        key: ClassificationKey,
        batch_reference: str,
        count: int,
        issued_by: str,
        names: Optional[dict] = None,
        sequence_type: SequenceType = SequenceType.NUMERIC,
        year=None,
        month=None,
        notes: Optional[str] = None,
    ) -> GenerationResult:
        """
        Mint `count` individual codes for a batch.

        A reservation that fails with SequenceExhausted is recorded as a
        failure and generation continues for the remaining units.
        """
        if count < 1:
            raise ValueError("Count must be at least 1")
        if key.package_type_code:
            raise ValueError("Individual codes carry no package type code")

        return self._generate(
            key.validate(), batch_reference, count, issued_by,
            names=names,
            sequence_type=sequence_type,
            year=year,
            month=month,
            unit_quantity=1,
            notes=notes,
        )

    def generate_bulk(
        self,
        key: ClassificationKey,
        batch_reference: str,
        total_quantity: int,
        bulk_package_size: int,
        package_type_code: str,
        issued_by: str,
        names: Optional[dict] = None,
        sequence_type: SequenceType = SequenceType.NUMERIC,
        year=None,
        month=None,
        notes: Optional[str] = None,
    ) -> GenerationResult:
        """
        Mint one bulk code per package of `bulk_package_size` units.

        Raises:
            InvalidBulkQuantity: total_quantity is not an exact multiple of
                bulk_package_size (checked before anything is reserved)
        """
        if bulk_package_size is None or bulk_package_size < 1:
            raise InvalidBulkQuantity("Bulk package size must be at least 1")
        if total_quantity is None or total_quantity < 1:
            raise InvalidBulkQuantity("Total quantity must be at least 1")
        if total_quantity % bulk_package_size != 0:
            raise InvalidBulkQuantity(
                f"Total quantity {total_quantity} is not divisible by "
                f"bulk package size {bulk_package_size}"
            )

        bulk_key = key.with_package(package_type_code).validate()
        package_count = total_quantity // bulk_package_size
        bulk_note = f"Bulk package ({bulk_package_size} items per package)"

        return self._generate(
            bulk_key, batch_reference, package_count, issued_by,
            names=names,
            sequence_type=sequence_type,
            year=year,
            month=month,
            unit_quantity=bulk_package_size,
            notes=f"{bulk_note}. {notes}" if notes else bulk_note,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_active_master(self, key: ClassificationKey, names: Optional[dict], issued_by: str):
        master = self.registry.find(key)
        if master is None:
            if not names:
                raise ClassificationNotFound(
                    f"No QR code master for {key.segment}"
                    + (f"-{key.package_type_code}" if key.package_type_code else "")
                )
            try:
                master = self.registry.create(key, names, created_by=issued_by)
                self.db.commit()
            except (IntegrityError, DuplicateClassification):
                # Another caller registered the key first; use its row
                self.db.rollback()
                master = self.registry.find(key)
                if master is None:
                    raise
                logger.debug("QR master for %s created concurrently (id=%s)", key, master.id)
        if master.status != MasterStatus.ACTIVE:
            raise ClassificationInactive(f"QR code master {master.id} is inactive")
        return master

    def _generate(
        self,
        key: ClassificationKey,
        batch_reference: str,
        count: int,
        issued_by: str,
        names: Optional[dict],
        sequence_type: SequenceType,
        year,
        month,
        unit_quantity: int,
        notes: Optional[str],
    ) -> GenerationResult:
        if not batch_reference:
            raise ValueError("Batch reference is required")

        now = self.clock()
        yy, mm = code_format.period(
            year if year is not None else now.year,
            month if month is not None else now.month,
        )
        sequence_type = SequenceType(sequence_type)
        self._require_active_master(key, names, issued_by)

        result = GenerationResult()
        for i in range(count):
            try:
                value = self.allocator.reserve_next(yy, mm, key, sequence_type)
                code_string = code_format.encode(
                    yy, mm, key, value, sequence_type, is_bulk_package=key.is_bulk
                )
                code = QRCode(
                    code_string=code_string,
                    is_bulk_package=key.is_bulk,
                    year=yy,
                    month=mm,
                    funding_source_code=key.funding_source_code,
                    medicine_type_code=key.medicine_type_code,
                    active_ingredient_code=key.active_ingredient_code,
                    producer_code=key.producer_code,
                    package_type_code=key.stored_package_code,
                    sequence_value=value,
                    sequence_type=sequence_type,
                    batch_reference=batch_reference,
                    unit_quantity=unit_quantity,
                    state=CodeState.GENERATED,
                    scan_count=0,
                    generated_at=self.clock(),
                    generated_by=issued_by,
                    notes=notes,
                )
                self.db.add(code)
                self.db.commit()
                result.codes.append(code)
            except SequenceExhausted as e:
                # Keep the EXHAUSTED status the allocator just wrote
                self.db.commit()
                result.failures.append(f"Failed to generate QR code {i + 1}: {e}")
            except (ConcurrencyConflict, IntegrityError) as e:
                self.db.rollback()
                result.failures.append(f"Failed to generate QR code {i + 1}: {e}")

        if result.failures:
            logger.warning(
                "Generated %s of %s QR codes for batch %s (%s failed)",
                result.generated, count, batch_reference, result.failed,
            )
        else:
            logger.info(
                "Generated %s QR codes for batch %s in %s%s",
                result.generated, batch_reference, yy, mm,
            )
        return result
