from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field, field_validator

from .models import (
    CodeState, ScanPurpose, ScanResult, SequenceType, MasterStatus
)


def _upper(value):
    return value.strip().upper() if isinstance(value, str) else value


# =============================================================================
# AUTH & USERS
# =============================================================================

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: str = "Viewer"


class UserCreate(BaseModel):
    full_name: str
    email: EmailStr
    username: str
    password: str
    role: str


class UserOut(BaseModel):
    id: int
    full_name: str
    email: EmailStr
    username: str
    role: str
    created_at: datetime

    class Config:
        from_attributes = True


class ChangePasswordIn(BaseModel):
    old_password: str
    new_password: str


# =============================================================================
# MASTER DATA
# =============================================================================

class ClassificationCodes(BaseModel):
    funding_source_code: str = Field(..., description="Single digit")
    medicine_type_code: str = Field(..., description="F, I, H or B")
    active_ingredient_code: str = Field(..., description="Three digits")
    producer_code: str = Field(..., description="Single letter A-Z")

    @field_validator(
        "funding_source_code", "medicine_type_code",
        "active_ingredient_code", "producer_code",
    )
    @classmethod
    def normalise_code(cls, v):
        return _upper(v)


class MasterNames(BaseModel):
    funding_source_name: str
    medicine_type_name: str
    active_ingredient_name: str
    producer_name: str
    package_type_name: Optional[str] = None


class QRMasterCreate(ClassificationCodes, MasterNames):
    package_type_code: Optional[str] = None

    @field_validator("package_type_code")
    @classmethod
    def normalise_package(cls, v):
        return _upper(v) or None


class QRMasterUpdate(BaseModel):
    funding_source_name: Optional[str] = None
    medicine_type_name: Optional[str] = None
    active_ingredient_name: Optional[str] = None
    producer_name: Optional[str] = None
    package_type_name: Optional[str] = None


class QRMasterOut(BaseModel):
    id: int
    funding_source_code: str
    funding_source_name: str
    medicine_type_code: str
    medicine_type_name: str
    active_ingredient_code: str
    active_ingredient_name: str
    producer_code: str
    producer_name: str
    package_type_code: Optional[str] = None
    package_type_name: Optional[str] = None
    status: MasterStatus
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("package_type_code")
    @classmethod
    def empty_as_none(cls, v):
        return v or None

    class Config:
        from_attributes = True


class QRMasterList(BaseModel):
    items: List[QRMasterOut]
    total: int
    limit: int
    offset: int


# =============================================================================
# GENERATION
# =============================================================================

class GenerateRequest(ClassificationCodes):
    batch_reference: str = Field(..., min_length=1, max_length=50)
    quantity: int = Field(..., ge=1, le=1000)
    sequence_type: SequenceType = SequenceType.NUMERIC
    year: Optional[int] = Field(None, ge=0, le=9999)
    month: Optional[int] = Field(None, ge=1, le=12)
    names: Optional[MasterNames] = None  # Auto-create the master when absent
    notes: Optional[str] = None


class BulkGenerateRequest(ClassificationCodes):
    batch_reference: str = Field(..., min_length=1, max_length=50)
    total_quantity: int = Field(..., ge=1)
    bulk_package_size: int = Field(..., ge=1)
    package_type_code: str
    sequence_type: SequenceType = SequenceType.NUMERIC
    year: Optional[int] = Field(None, ge=0, le=9999)
    month: Optional[int] = Field(None, ge=1, le=12)
    names: Optional[MasterNames] = None
    notes: Optional[str] = None

    @field_validator("package_type_code")
    @classmethod
    def normalise_package(cls, v):
        return _upper(v)


class QRCodeOut(BaseModel):
    id: int
    code_string: str
    is_bulk_package: bool
    year: str
    month: str
    funding_source_code: str
    medicine_type_code: str
    active_ingredient_code: str
    producer_code: str
    package_type_code: Optional[str] = None
    sequence_value: int
    sequence_type: SequenceType
    batch_reference: str
    unit_quantity: int
    state: CodeState
    scan_count: int
    last_scanned_at: Optional[datetime] = None
    last_scanned_by: Optional[str] = None
    generated_at: Optional[datetime] = None
    generated_by: str
    printed_at: Optional[datetime] = None
    printed_by: Optional[str] = None
    distributed_at: Optional[datetime] = None
    distributed_by: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("package_type_code")
    @classmethod
    def empty_as_none(cls, v):
        return v or None

    class Config:
        from_attributes = True


class QRCodeList(BaseModel):
    items: List[QRCodeOut]
    total: int
    limit: int
    offset: int


class GenerationResultOut(BaseModel):
    success: bool
    generated: int
    failed: int
    codes: List[QRCodeOut]
    errors: List[str] = []


# =============================================================================
# SCANNING
# =============================================================================

class ScanRequest(BaseModel):
    code_string: str = Field(..., max_length=100)
    purpose: ScanPurpose
    location: Optional[str] = Field(None, max_length=200)
    device_info: Optional[str] = Field(None, max_length=200)
    notes: Optional[str] = None


class ScanLogOut(BaseModel):
    id: int
    code_id: Optional[int] = None
    code_string: str
    scanned_by: str
    scanned_at: datetime
    purpose: ScanPurpose
    result: ScanResult
    location: Optional[str] = None
    device_info: Optional[str] = None
    notes: Optional[str] = None
    quantity_change: int = 0

    class Config:
        from_attributes = True


class ScanLogList(BaseModel):
    items: List[ScanLogOut]
    total: int
    limit: int
    offset: int


class BatchOut(BaseModel):
    batch_reference: str
    available_quantity: int
    unit_size: int
    medicine_name: Optional[str] = None


class ScanResponse(BaseModel):
    success: bool
    result: ScanResult
    message: str
    code: Optional[QRCodeOut] = None
    scan_log: ScanLogOut
    batch: Optional[BatchOut] = None
    quantity_change: int = 0


class ValidateRequest(BaseModel):
    code_string: str


class ValidationOut(BaseModel):
    is_valid: bool
    components: Optional[dict] = None
    errors: List[str] = []
    warnings: List[str] = []


# =============================================================================
# LIFECYCLE
# =============================================================================

class StatusUpdate(BaseModel):
    status: CodeState
    reason: Optional[str] = None


class BulkStatusUpdate(BaseModel):
    code_ids: List[int] = Field(..., min_length=1, max_length=1000)
    status: CodeState
    reason: Optional[str] = None


class QRCodeDetail(QRCodeOut):
    recent_scans: List[ScanLogOut] = []
