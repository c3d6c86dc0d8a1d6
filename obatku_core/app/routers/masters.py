"""
QR Code Master API Router
=========================
Classification master data: the display names behind each code segment.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from .. import schemas
from ..models import MasterStatus
from ..security import (
    get_db, require_permission, Permission, SecurityAuditLog
)
from ..services.code_format import ClassificationKey
from ..services.errors import QRCodeError
from ..services.master_registry import MasterRegistry
from .common import http_error

router = APIRouter(prefix="/api/v2/qr-masters", tags=["QR Masters"])


@router.post("/", response_model=schemas.QRMasterOut, status_code=201)
def create_master(
    data: schemas.QRMasterCreate,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.MASTER_MANAGE))
):
    key = ClassificationKey(
        data.funding_source_code, data.medicine_type_code,
        data.active_ingredient_code, data.producer_code, data.package_type_code,
    )
    try:
        master = MasterRegistry(db).create(
            key, data.model_dump(exclude=set(schemas.ClassificationCodes.model_fields)),
            created_by=current_user.username,
        )
        db.commit()
    except QRCodeError as e:
        db.rollback()
        raise http_error(e)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))

    db.refresh(master)
    return master


@router.get("/", response_model=schemas.QRMasterList)
def list_masters(
    search: Optional[str] = None,
    status: Optional[MasterStatus] = None,
    funding_source_code: Optional[str] = None,
    medicine_type_code: Optional[str] = None,
    active_ingredient_code: Optional[str] = None,
    producer_code: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.MASTER_VIEW))
):
    items, total = MasterRegistry(db).search(
        search=search,
        status=status,
        limit=limit,
        offset=offset,
        funding_source_code=funding_source_code,
        medicine_type_code=medicine_type_code,
        active_ingredient_code=active_ingredient_code,
        producer_code=producer_code,
    )
    return {"items": items, "total": total, "limit": limit, "offset": offset}


@router.get("/{master_id}", response_model=schemas.QRMasterOut)
def get_master(
    master_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.MASTER_VIEW))
):
    try:
        return MasterRegistry(db).get(master_id)
    except QRCodeError as e:
        raise http_error(e)


@router.patch("/{master_id}", response_model=schemas.QRMasterOut)
def update_master(
    master_id: int,
    data: schemas.QRMasterUpdate,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.MASTER_MANAGE))
):
    """Rename components; codes are immutable, so only names can change."""
    try:
        master = MasterRegistry(db).update_names(
            master_id, data.model_dump(exclude_none=True), updated_by=current_user.username
        )
        db.commit()
    except QRCodeError as e:
        db.rollback()
        raise http_error(e)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))

    db.refresh(master)
    return master


def _set_active(db: Session, master_id: int, active: bool, current_user):
    try:
        master = MasterRegistry(db).set_active(master_id, active, updated_by=current_user.username)
        db.commit()
    except QRCodeError as e:
        db.rollback()
        raise http_error(e)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "activate" if active else "deactivate",
        "qr_code_master", master_id, {"status": master.status.value}
    )
    db.refresh(master)
    return master


@router.post("/{master_id}/deactivate", response_model=schemas.QRMasterOut)
def deactivate_master(
    master_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.MASTER_MANAGE))
):
    """New codes can no longer be generated for a deactivated master."""
    return _set_active(db, master_id, False, current_user)


@router.post("/{master_id}/activate", response_model=schemas.QRMasterOut)
def activate_master(
    master_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.MASTER_MANAGE))
):
    return _set_active(db, master_id, True, current_user)


@router.delete("/{master_id}")
def delete_master(
    master_id: int,
    db: Session = Depends(get_db),
    current_user=Depends(require_permission(Permission.MASTER_MANAGE))
):
    """Only masters that no code references can be deleted."""
    try:
        MasterRegistry(db).delete(master_id)
        db.commit()
    except QRCodeError as e:
        db.rollback()
        raise http_error(e)

    SecurityAuditLog.log_sensitive_action(
        db, current_user.id, "delete", "qr_code_master", master_id, {}
    )
    return {"success": True, "message": "QR code master deleted"}
