"""
QR Code API Router
==================
Label code workflow for medicine units and packages:
- Individual and bulk code generation per stock batch
- Scanning (distribution, verification, inventory check, audit)
- Print / distribution marking and administrative status changes
- Batch lookups, scan history, Excel export and statistics
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from .. import schemas
from ..excel import build_codes_workbook, XLSX_MEDIA_TYPE
from ..models import CodeState, ScanPurpose, ScanResult, SequenceType
from ..security import (
    get_db, require_permission, Permission, SecurityAuditLog
)
from ..services import code_format
from ..services.code_format import ClassificationKey
from ..services.code_generator import CodeGenerator, GenerationResult
from ..services.code_queries import QRCodeQueryService
from ..services.errors import QRCodeError, CodeNotFound
from ..services.scan_processor import ScanProcessor
from .common import http_error

router = APIRouter(prefix="/api/v2/qr-codes", tags=["QR Codes"])


def _key(data: schemas.ClassificationCodes, package_type_code: Optional[str] = None) -> ClassificationKey:
    return ClassificationKey(
        funding_source_code=data.funding_source_code,
        medicine_type_code=data.medicine_type_code,
        active_ingredient_code=data.active_ingredient_code,
        producer_code=data.producer_code,
        package_type_code=package_type_code,
    )


def _generation_out(result: GenerationResult) -> schemas.GenerationResultOut:
    return schemas.GenerationResultOut(
        success=result.success,
        generated=result.generated,
        failed=result.failed,
        codes=[schemas.QRCodeOut.model_validate(code) for code in result.codes],
        errors=result.failures,
    )


# =============================================================================
# GENERATION
# =============================================================================

@router.post("/generate", response_model=schemas.GenerationResultOut, status_code=201)
def generate_codes(
    data: schemas.GenerateRequest,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.QR_GENERATE))
):
    """Generate individual codes for a stock batch."""
    try:
        result = CodeGenerator(db).generate_individual(
            _key(data),
            data.batch_reference,
            data.quantity,
            issued_by=current_user.username,
            names=data.names.model_dump() if data.names else None,
            sequence_type=data.sequence_type,
            year=data.year,
            month=data.month,
            notes=data.notes,
        )
    except QRCodeError as e:
        db.rollback()
        raise http_error(e)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))

    return _generation_out(result)


@router.post("/generate-bulk", response_model=schemas.GenerationResultOut, status_code=201)
def generate_bulk_codes(
    data: schemas.BulkGenerateRequest,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.QR_GENERATE))
):
    """
    Generate one bulk-package code per `bulk_package_size` units.
    total_quantity must be an exact multiple of bulk_package_size.
    """
    try:
        result = CodeGenerator(db).generate_bulk(
            _key(data),
            data.batch_reference,
            total_quantity=data.total_quantity,
            bulk_package_size=data.bulk_package_size,
            package_type_code=data.package_type_code,
            issued_by=current_user.username,
            names=data.names.model_dump() if data.names else None,
            sequence_type=data.sequence_type,
            year=data.year,
            month=data.month,
            notes=data.notes,
        )
    except QRCodeError as e:
        db.rollback()
        raise http_error(e)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))

    return _generation_out(result)


# =============================================================================
# SCANNING & VALIDATION
# =============================================================================

@router.post("/scan", response_model=schemas.ScanResponse)
def scan_code(
    data: schemas.ScanRequest,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.QR_SCAN))
):
    """
    Scan a code. Failed scans are reported in the body (success=false) and
    are logged like successful ones.
    """
    outcome = ScanProcessor(db).scan(
        data.code_string,
        data.purpose,
        scanned_by=current_user.username,
        location=data.location,
        device_info=data.device_info,
        notes=data.notes,
    )
    return schemas.ScanResponse(
        success=outcome.success,
        result=outcome.result,
        message=outcome.message,
        code=schemas.QRCodeOut.model_validate(outcome.code) if outcome.code is not None else None,
        scan_log=schemas.ScanLogOut.model_validate(outcome.scan_log),
        batch=schemas.BatchOut(**outcome.batch.as_dict()) if outcome.batch else None,
        quantity_change=outcome.stock_change.delta if outcome.stock_change else 0,
    )


@router.post("/validate", response_model=schemas.ValidationOut)
def validate_code(
    data: schemas.ValidateRequest,
    current_user=Depends(require_permission(Permission.QR_VIEW))
):
    """Check a code string against the format without looking it up."""
    validation = code_format.validate_format(data.code_string)
    return schemas.ValidationOut(
        is_valid=validation.is_valid,
        components=validation.decoded.components() if validation.decoded else None,
        errors=validation.errors,
        warnings=validation.warnings,
    )


# =============================================================================
# LISTINGS & REPORTS
# =============================================================================

@router.get("/", response_model=schemas.QRCodeList)
def list_codes(
    batch_reference: Optional[str] = None,
    is_bulk_package: Optional[bool] = None,
    state: Optional[CodeState] = None,
    year: Optional[str] = Query(None, pattern=r"^[0-9]{2}$"),
    month: Optional[str] = Query(None, pattern=r"^[0-9]{2}$"),
    medicine_type_code: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.QR_VIEW))
):
    items, total = QRCodeQueryService(db).list_codes(
        batch_reference=batch_reference,
        is_bulk_package=is_bulk_package,
        state=state,
        year=year,
        month=month,
        medicine_type_code=medicine_type_code,
        limit=limit,
        offset=offset,
    )
    return {"items": items, "total": total, "limit": limit, "offset": offset}


@router.get("/scans", response_model=schemas.ScanLogList)
def list_scan_logs(
    code_id: Optional[int] = None,
    scanned_by: Optional[str] = None,
    purpose: Optional[ScanPurpose] = None,
    result: Optional[ScanResult] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.QR_VIEW))
):
    items, total = QRCodeQueryService(db).list_scan_logs(
        code_id=code_id,
        scanned_by=scanned_by,
        purpose=purpose,
        result=result,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return {"items": items, "total": total, "limit": limit, "offset": offset}


@router.get("/statistics")
def get_statistics(
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.QR_VIEW))
):
    return QRCodeQueryService(db).statistics()


@router.get("/health")
def health_check(db: Session = Depends(get_db)):
    return QRCodeQueryService(db).health()


@router.get("/sequences/preview")
def preview_next_code(
    funding_source_code: str,
    medicine_type_code: str,
    active_ingredient_code: str,
    producer_code: str,
    package_type_code: Optional[str] = None,
    sequence_type: SequenceType = SequenceType.NUMERIC,
    year: Optional[int] = Query(None, ge=0, le=9999),
    month: Optional[int] = Query(None, ge=1, le=12),
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.QR_VIEW))
):
    """Next code string of a bucket; nothing is reserved."""
    now = datetime.utcnow()
    key = ClassificationKey(
        funding_source_code.upper(), medicine_type_code.upper(),
        active_ingredient_code, producer_code.upper(),
        package_type_code.upper() if package_type_code else None,
    )
    try:
        next_code = QRCodeQueryService(db).preview_next_code(
            year if year is not None else now.year,
            month if month is not None else now.month,
            key,
            sequence_type,
        )
    except QRCodeError as e:
        raise http_error(e)
    return {
        "next_code": next_code,
        "exhausted": next_code is None,
        "sequence_type": sequence_type.value,
    }


# =============================================================================
# BATCH VIEWS
# =============================================================================

@router.get("/batch/{batch_reference}", response_model=list[schemas.QRCodeOut])
def get_codes_for_batch(
    batch_reference: str,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.QR_VIEW))
):
    return QRCodeQueryService(db).get_codes_for_batch(batch_reference)


@router.get("/batch/{batch_reference}/scans", response_model=list[schemas.ScanLogOut])
def get_scan_history(
    batch_reference: str,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.QR_VIEW))
):
    return QRCodeQueryService(db).get_scan_history(batch_reference)


@router.get("/batch/{batch_reference}/export")
def export_batch_codes(
    batch_reference: str,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.QR_VIEW))
):
    """Download the batch's codes as an Excel sheet for printing."""
    codes = QRCodeQueryService(db).get_codes_for_batch(batch_reference)
    if not codes:
        raise HTTPException(status_code=404, detail=f"No QR codes for batch {batch_reference}")

    buf = build_codes_workbook(batch_reference, codes)
    filename = f"QR-Codes-{batch_reference}.xlsx"
    return StreamingResponse(
        buf,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f"attachment; filename={filename}"}
    )


# =============================================================================
# LIFECYCLE
# =============================================================================

@router.post("/bulk-status")
def bulk_update_status(
    data: schemas.BulkStatusUpdate,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.QR_MANAGE))
):
    outcome = ScanProcessor(db).bulk_update_status(data.code_ids, data.status, current_user.username)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "bulk_status", "qr_code", 0, {
            "status": data.status.value,
            "updated": outcome["updated"],
            "failed": len(outcome["failures"]),
            "reason": data.reason,
        }
    )
    return {
        "success": not outcome["failures"],
        "updated": len(outcome["updated"]),
        "failed": len(outcome["failures"]),
        "failures": outcome["failures"],
    }


@router.get("/{code_id}", response_model=schemas.QRCodeDetail)
def get_code(
    code_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.QR_VIEW))
):
    queries = QRCodeQueryService(db)
    try:
        code = queries.get_code(code_id)
    except CodeNotFound as e:
        raise http_error(e)

    return schemas.QRCodeDetail(
        **schemas.QRCodeOut.model_validate(code).model_dump(),
        recent_scans=[schemas.ScanLogOut.model_validate(log) for log in queries.recent_scans(code_id)],
    )


@router.delete("/{code_id}")
def delete_code(
    code_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.QR_MANAGE))
):
    """Delete a code that has never been scanned."""
    try:
        QRCodeQueryService(db).delete_code(code_id)
        db.commit()
    except QRCodeError as e:
        db.rollback()
        raise http_error(e)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "delete", "qr_code", code_id, {}
    )
    return {"success": True, "message": "QR code deleted"}


def _transition(db: Session, code_id: int, target: CodeState, current_user) -> schemas.QRCodeOut:
    try:
        code = ScanProcessor(db).update_status(code_id, target, current_user.username)
    except QRCodeError as e:
        db.rollback()
        raise http_error(e)
    return schemas.QRCodeOut.model_validate(code)


@router.post("/{code_id}/print", response_model=schemas.QRCodeOut)
def mark_printed(
    code_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.QR_GENERATE))
):
    return _transition(db, code_id, CodeState.PRINTED, current_user)


@router.post("/{code_id}/distribute", response_model=schemas.QRCodeOut)
def mark_distributed(
    code_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.QR_SCAN))
):
    return _transition(db, code_id, CodeState.DISTRIBUTED, current_user)


@router.post("/{code_id}/status", response_model=schemas.QRCodeOut)
def update_status(
    code_id: int,
    data: schemas.StatusUpdate,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.QR_MANAGE))
):
    """Administrative status change through the transition table."""
    out = _transition(db, code_id, data.status, current_user)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "status_change", "qr_code", code_id, {
            "status": data.status.value,
            "reason": data.reason,
        }
    )
    return out
