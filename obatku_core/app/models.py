"""
Medicine QR Code Tracking - Data Models
=======================================
Tables backing the QR label subsystem for medicine units and packages.

Key Features:
- Classification master data (funding source, medicine type, ingredient, producer)
- Per-bucket sequence counters with exhaustion tracking
- Generated codes with a lifecycle state and optimistic version column
- Append-only scan log
- Medicine stock batches and stock movements consumed by scans
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text, Boolean,
    Enum as SQLEnum, Index, CheckConstraint, UniqueConstraint
)
from sqlalchemy.orm import relationship, validates
from .db import Base


# =============================================================================
# ENUMS
# =============================================================================

class MasterStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class SequenceStatus(str, Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    INACTIVE = "inactive"


class SequenceType(str, Enum):
    """Four character sequence token schemes"""
    NUMERIC = "numeric"            # 0001 .. 9999
    ALPHA_SUFFIX = "alpha_suffix"  # 000A .. 999Z
    ALPHA_PREFIX = "alpha_prefix"  # A001 .. Z999


class CodeState(str, Enum):
    """Lifecycle of a printed label"""
    GENERATED = "generated"
    PRINTED = "printed"
    DISTRIBUTED = "distributed"
    SCANNED = "scanned"
    USED = "used"
    EXPIRED = "expired"
    INVALID = "invalid"


TERMINAL_STATES = frozenset({CodeState.USED, CodeState.EXPIRED, CodeState.INVALID})


class ScanPurpose(str, Enum):
    VERIFICATION = "verification"
    DISTRIBUTION = "distribution"
    INVENTORY_CHECK = "inventory_check"
    TRANSACTION = "transaction"
    AUDIT = "audit"


class ScanResult(str, Enum):
    SUCCESS = "success"
    INVALID_FORMAT = "invalid_format"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    ERROR = "error"


class MovementType(str, Enum):
    INWARD = "inward"
    OUTWARD_SCAN = "outward_scan"
    ADJUSTMENT_PLUS = "adjustment_plus"
    ADJUSTMENT_MINUS = "adjustment_minus"
    REVERSAL = "reversal"


# =============================================================================
# USER & AUDIT
# =============================================================================

class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    username = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    role = Column(String, nullable=False)
    is_active = Column(Boolean, default=True)  # Account status
    created_at = Column(DateTime, default=datetime.utcnow)


class AuditLog(Base):
    """
    General audit log for sensitive changes.
    Separate from scan logs - captures master/status administration.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=False)
    action = Column(String(30), nullable=False)
    # JSON stored as text for SQLite compatibility
    new_values = Column(Text, nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    ip_address = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_audit_entity', 'entity_type', 'entity_id'),
    )


# =============================================================================
# INVENTORY COLLABORATOR
# =============================================================================

class MedicineStock(Base):
    """
    A physical batch of one medicine.

    Codes reference a batch by its batch_number only; stock changes made on
    behalf of scans go through StockMovement rows.
    """
    __tablename__ = "medicine_stocks"

    id = Column(Integer, primary_key=True, index=True)
    batch_number = Column(String(50), unique=True, nullable=False, index=True)
    medicine_name = Column(String(200), nullable=False)
    available_quantity = Column(Integer, nullable=False, default=0)
    unit_size = Column(Integer, nullable=False, default=1)
    unit = Column(String(20), nullable=True)
    expiry_date = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True)  # False when fully consumed
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    movements = relationship("StockMovement", back_populates="stock")

    __table_args__ = (
        CheckConstraint('available_quantity >= 0', name='ck_available_quantity_positive'),
    )

    @validates('available_quantity')
    def validate_available_quantity(self, key, value):
        """Prevent negative stock"""
        if value < 0:
            raise ValueError("Available quantity cannot be negative")
        return value


class StockMovement(Base):
    """Immutable audit row for every change to a MedicineStock"""
    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True, index=True)
    stock_id = Column(Integer, ForeignKey("medicine_stocks.id"), nullable=False)
    movement_type = Column(SQLEnum(MovementType), nullable=False)
    quantity_change = Column(Integer, nullable=False)
    quantity_before = Column(Integer, nullable=False)
    quantity_after = Column(Integer, nullable=False)
    reason = Column(String(200), nullable=True)
    actor = Column(String(100), nullable=True)
    movement_date = Column(DateTime, nullable=False, default=datetime.utcnow)

    stock = relationship("MedicineStock", back_populates="movements")

    __table_args__ = (
        Index('ix_movement_stock_date', 'stock_id', 'movement_date'),
    )


# =============================================================================
# QR CODE MASTER DATA
# =============================================================================

class QRCodeMaster(Base):
    """
    Display names for one classification key.
    Never hard-deleted once a code references the key - deactivate instead.
    """
    __tablename__ = "qr_code_masters"

    id = Column(Integer, primary_key=True, index=True)
    funding_source_code = Column(String(1), nullable=False)
    funding_source_name = Column(String(100), nullable=False)
    medicine_type_code = Column(String(1), nullable=False)
    medicine_type_name = Column(String(100), nullable=False)
    active_ingredient_code = Column(String(3), nullable=False)
    active_ingredient_name = Column(String(200), nullable=False)
    producer_code = Column(String(1), nullable=False)
    producer_name = Column(String(100), nullable=False)
    # Empty string means "no package type" so the unique constraint holds
    package_type_code = Column(String(1), nullable=False, default="")
    package_type_name = Column(String(100), nullable=True)

    status = Column(SQLEnum(MasterStatus), nullable=False, default=MasterStatus.ACTIVE)

    created_by = Column(String(100), nullable=True)
    updated_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            'funding_source_code', 'medicine_type_code', 'active_ingredient_code',
            'producer_code', 'package_type_code', name='uq_qr_master_key'
        ),
    )


class QRCodeSequence(Base):
    """
    Sequence counter for one bucket: (year, month, classification key, type).

    current_value is the ordinal already issued (0 = nothing issued yet).
    Only the sequence allocator writes to this table.
    """
    __tablename__ = "qr_code_sequences"

    id = Column(Integer, primary_key=True, index=True)
    year = Column(String(2), nullable=False)
    month = Column(String(2), nullable=False)
    funding_source_code = Column(String(1), nullable=False)
    medicine_type_code = Column(String(1), nullable=False)
    active_ingredient_code = Column(String(3), nullable=False)
    producer_code = Column(String(1), nullable=False)
    package_type_code = Column(String(1), nullable=False, default="")
    sequence_type = Column(SQLEnum(SequenceType), nullable=False)

    current_value = Column(Integer, nullable=False, default=0)
    total_issued = Column(Integer, nullable=False, default=0)
    status = Column(SQLEnum(SequenceStatus), nullable=False, default=SequenceStatus.ACTIVE)
    last_issued_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            'year', 'month', 'funding_source_code', 'medicine_type_code',
            'active_ingredient_code', 'producer_code', 'package_type_code',
            'sequence_type', name='uq_qr_sequence_bucket'
        ),
        CheckConstraint('current_value >= 0', name='ck_sequence_value_positive'),
    )


# =============================================================================
# GENERATED CODES & SCANS
# =============================================================================

class QRCode(Base):
    """
    One generated label.

    code_string is a pure function of the classification key, year, month,
    sequence value/type and bulk flag; it never changes after generation.
    """
    __tablename__ = "qr_codes"

    id = Column(Integer, primary_key=True, index=True)
    code_string = Column(String(20), unique=True, nullable=False, index=True)
    is_bulk_package = Column(Boolean, nullable=False, default=False)

    year = Column(String(2), nullable=False)
    month = Column(String(2), nullable=False)
    funding_source_code = Column(String(1), nullable=False)
    medicine_type_code = Column(String(1), nullable=False)
    active_ingredient_code = Column(String(3), nullable=False)
    producer_code = Column(String(1), nullable=False)
    package_type_code = Column(String(1), nullable=False, default="")
    sequence_value = Column(Integer, nullable=False)
    sequence_type = Column(SQLEnum(SequenceType), nullable=False)

    # Weak reference into the inventory collaborator (lookup only)
    batch_reference = Column(String(50), nullable=False, index=True)
    # Units represented by one scan: 1 for individual, package size for bulk
    unit_quantity = Column(Integer, nullable=False, default=1)

    state = Column(SQLEnum(CodeState), nullable=False, default=CodeState.GENERATED)

    scan_count = Column(Integer, nullable=False, default=0)
    last_scanned_at = Column(DateTime, nullable=True)
    last_scanned_by = Column(String(100), nullable=True)

    generated_at = Column(DateTime, default=datetime.utcnow)
    generated_by = Column(String(100), nullable=False)
    printed_at = Column(DateTime, nullable=True)
    printed_by = Column(String(100), nullable=True)
    distributed_at = Column(DateTime, nullable=True)
    distributed_by = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    version = Column(Integer, nullable=False)

    scan_logs = relationship(
        "QRCodeScanLog", back_populates="code", order_by="QRCodeScanLog.id"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('ix_qr_code_state', 'state'),
        Index('ix_qr_code_generated_at', 'generated_at'),
        CheckConstraint('unit_quantity > 0', name='ck_unit_quantity_positive'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class QRCodeScanLog(Base):
    """
    Append-only record of one scan attempt.
    Rows are never updated or deleted; code_id is empty when the scanned
    string was malformed or unknown.
    """
    __tablename__ = "qr_code_scan_logs"

    id = Column(Integer, primary_key=True, index=True)
    code_id = Column(Integer, ForeignKey("qr_codes.id"), nullable=True, index=True)
    code_string = Column(String(100), nullable=False)
    scanned_by = Column(String(100), nullable=False)
    scanned_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    purpose = Column(SQLEnum(ScanPurpose), nullable=False)
    result = Column(SQLEnum(ScanResult), nullable=False)
    location = Column(String(200), nullable=True)
    device_info = Column(String(200), nullable=True)
    notes = Column(Text, nullable=True)
    # Stock change applied with this scan (0 for read-only purposes)
    quantity_change = Column(Integer, nullable=False, default=0)

    code = relationship("QRCode", back_populates="scan_logs")

    __table_args__ = (
        Index('ix_scan_log_scanned_at', 'scanned_at'),
        Index('ix_scan_log_purpose_result', 'purpose', 'result'),
    )
