"""
Sequence Allocator
==================
Owns the "next sequence value" of every bucket:
(year, month, classification key, sequence type).

Reservation is a compare-and-swap on current_value, retried with bounded
exponential backoff. The counter row is the only source of truth; nothing
is cached in process memory.
"""

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import select, update, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import QRCodeSequence, SequenceStatus, SequenceType
from . import code_format
from .code_format import ClassificationKey
from .errors import SequenceExhausted, ConcurrencyConflict

logger = logging.getLogger(__name__)

MAX_RETRIES = int(os.getenv("QR_RESERVE_MAX_RETRIES", "8"))
BACKOFF_SECONDS = float(os.getenv("QR_RESERVE_BACKOFF_SECONDS", "0.005"))
MAX_BACKOFF_SECONDS = 0.25


@dataclass(frozen=True)
class Bucket:
    year: str
    month: str
    key: ClassificationKey
    sequence_type: SequenceType

    @classmethod
    def of(cls, year, month, key: ClassificationKey, sequence_type) -> "Bucket":
        yy, mm = code_format.period(year, month)
        return cls(yy, mm, key.validate(), SequenceType(sequence_type))

    def criteria(self):
        return (
            QRCodeSequence.year == self.year,
            QRCodeSequence.month == self.month,
            QRCodeSequence.funding_source_code == self.key.funding_source_code,
            QRCodeSequence.medicine_type_code == self.key.medicine_type_code,
            QRCodeSequence.active_ingredient_code == self.key.active_ingredient_code,
            QRCodeSequence.producer_code == self.key.producer_code,
            QRCodeSequence.package_type_code == self.key.stored_package_code,
            QRCodeSequence.sequence_type == self.sequence_type,
        )

    def row_values(self) -> dict:
        return {
            "year": self.year,
            "month": self.month,
            "funding_source_code": self.key.funding_source_code,
            "medicine_type_code": self.key.medicine_type_code,
            "active_ingredient_code": self.key.active_ingredient_code,
            "producer_code": self.key.producer_code,
            "package_type_code": self.key.stored_package_code,
            "sequence_type": self.sequence_type,
        }

    def __str__(self) -> str:
        package = f"-{self.key.package_type_code}" if self.key.package_type_code else ""
        return f"{self.year}{self.month}{self.key.segment}{package}/{self.sequence_type.value}"


class SequenceAllocator:
    """The only writer of qr_code_sequences rows."""

    def __init__(
        self,
        db: Session,
        max_retries: int = MAX_RETRIES,
        backoff_seconds: float = BACKOFF_SECONDS,
        clock=datetime.utcnow,
    ):
        self.db = db
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_counter(self, bucket: Bucket) -> Optional[QRCodeSequence]:
        return self.db.query(QRCodeSequence).filter(*bucket.criteria()).first()

    def preview_next(
        self,
        year: Union[int, str],
        month: Union[int, str],
        key: ClassificationKey,
        sequence_type: SequenceType = SequenceType.NUMERIC,
    ) -> Optional[int]:
        """Value the next reservation would return, or None if exhausted"""
        bucket = Bucket.of(year, month, key, sequence_type)
        counter = self.get_counter(bucket)
        if counter is None:
            return 1
        if counter.status != SequenceStatus.ACTIVE:
            return None
        nxt = code_format.increment(counter.current_value, bucket.sequence_type)
        return nxt if nxt <= code_format.max_value(bucket.sequence_type) else None

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------

    def reserve_next(
        self,
        year: Union[int, str],
        month: Union[int, str],
        key: ClassificationKey,
        sequence_type: SequenceType = SequenceType.NUMERIC,
    ) -> int:
        """
        Reserve the next sequence value of a bucket.

        Raises:
            SequenceExhausted: the bucket has no values left (or was closed)
            ConcurrencyConflict: contention outlasted the retry ceiling
        """
        bucket = Bucket.of(year, month, key, sequence_type)
        counter_id = self._ensure_counter(bucket)
        limit = code_format.max_value(bucket.sequence_type)

        for attempt in range(self.max_retries):
            # Locking read so repeatable-read databases see the latest value
            current, status = self.db.execute(
                select(QRCodeSequence.current_value, QRCodeSequence.status)
                .where(QRCodeSequence.id == counter_id)
                .with_for_update()
            ).one()

            if status != SequenceStatus.ACTIVE:
                raise SequenceExhausted(f"Sequence bucket {bucket} is {SequenceStatus(status).value}")

            nxt = code_format.increment(current, bucket.sequence_type)
            if nxt > limit:
                self._mark_exhausted(counter_id, current)
                logger.warning("Sequence bucket %s exhausted at %s", bucket, limit)
                raise SequenceExhausted(
                    f"Sequence bucket {bucket} exhausted after {limit} values"
                )

            now = self.clock()
            result = self.db.execute(
                update(QRCodeSequence)
                .where(
                    QRCodeSequence.id == counter_id,
                    QRCodeSequence.current_value == current,
                    QRCodeSequence.status == SequenceStatus.ACTIVE,
                )
                .values(
                    current_value=nxt,
                    total_issued=QRCodeSequence.total_issued + 1,
                    last_issued_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return nxt

            logger.debug("Sequence bucket %s changed under us (attempt %s)", bucket, attempt + 1)
            time.sleep(min(self.backoff_seconds * (2 ** attempt), MAX_BACKOFF_SECONDS))

        raise ConcurrencyConflict(
            f"Could not reserve a value in {bucket} after {self.max_retries} attempts"
        )

    def _mark_exhausted(self, counter_id: int, current: int) -> None:
        self.db.execute(
            update(QRCodeSequence)
            .where(
                QRCodeSequence.id == counter_id,
                QRCodeSequence.current_value == current,
                QRCodeSequence.status == SequenceStatus.ACTIVE,
            )
            .values(status=SequenceStatus.EXHAUSTED, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )

    def _ensure_counter(self, bucket: Bucket) -> int:
        """Create the bucket row on first use; concurrent creators are harmless"""
        existing = self.db.execute(
            select(QRCodeSequence.id).where(*bucket.criteria())
        ).scalar_one_or_none()
        if existing is not None:
            return existing

        values = bucket.row_values()
        values.update(
            current_value=0,
            total_issued=0,
            status=SequenceStatus.ACTIVE,
            created_at=self.clock(),
            updated_at=self.clock(),
        )
        created = self._insert_ignore(values)
        if created:
            logger.info("Opened sequence bucket %s", bucket)

        return self.db.execute(
            select(QRCodeSequence.id).where(*bucket.criteria())
        ).scalar_one()

    def _insert_ignore(self, values: dict) -> bool:
        table = QRCodeSequence.__table__
        dialect = self.db.get_bind().dialect.name

        if dialect == "sqlite":
            stmt = sqlite.insert(table).values(**values).on_conflict_do_nothing()
        elif dialect == "postgresql":
            stmt = postgresql.insert(table).values(**values).on_conflict_do_nothing()
        elif dialect in ("mysql", "mariadb"):
            stmt = table.insert().values(**values).prefix_with("IGNORE")
        else:
            savepoint = self.db.begin_nested()
            try:
                self.db.execute(table.insert().values(**values))
                savepoint.commit()
                return True
            except IntegrityError:
                savepoint.rollback()
                return False

        return self.db.execute(stmt).rowcount == 1

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def count_by_status(self) -> dict:
        rows = self.db.query(
            QRCodeSequence.status, func.count(QRCodeSequence.id)
        ).group_by(QRCodeSequence.status).all()
        counts = {status.value: 0 for status in SequenceStatus}
        for status, count in rows:
            counts[SequenceStatus(status).value] = count
        return counts
