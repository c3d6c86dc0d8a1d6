"""
Master Registry
===============
Maps a classification key to display names and an active flag.
"""

import logging
from datetime import datetime
from typing import Optional, List, Tuple

from sqlalchemy import or_, func
from sqlalchemy.orm import Session

from ..models import QRCodeMaster, QRCode, MasterStatus
from .code_format import ClassificationKey
from .errors import (
    DuplicateClassification, ClassificationNotFound, InvalidStateTransition
)

logger = logging.getLogger(__name__)

CODE_FIELDS = (
    "funding_source_code",
    "medicine_type_code",
    "active_ingredient_code",
    "producer_code",
    "package_type_code",
)

NAME_FIELDS = (
    "funding_source_name",
    "medicine_type_name",
    "active_ingredient_name",
    "producer_name",
    "package_type_name",
)


def _key_criteria(key: ClassificationKey, model=QRCodeMaster):
    return (
        model.funding_source_code == key.funding_source_code,
        model.medicine_type_code == key.medicine_type_code,
        model.active_ingredient_code == key.active_ingredient_code,
        model.producer_code == key.producer_code,
        model.package_type_code == key.stored_package_code,
    )


class MasterRegistry:
    """Create, look up and (de)activate classification master entries"""

    def __init__(self, db: Session):
        self.db = db

    def find(self, key: ClassificationKey) -> Optional[QRCodeMaster]:
        return self.db.query(QRCodeMaster).filter(*_key_criteria(key)).first()

    def get(self, master_id: int) -> QRCodeMaster:
        master = self.db.query(QRCodeMaster).filter(QRCodeMaster.id == master_id).first()
        if not master:
            raise ClassificationNotFound(f"QR code master {master_id} not found")
        return master

    def create(self, key: ClassificationKey, names: dict, created_by: str) -> QRCodeMaster:
        """
        Register a classification key.

        Raises:
            DuplicateClassification: an entry already exists for the key
        """
        key.validate()
        if self.find(key):
            raise DuplicateClassification("QR code master with these codes already exists")
        if key.package_type_code and not names.get("package_type_name"):
            raise ValueError("Package type code and name must be provided together")

        master = QRCodeMaster(
            funding_source_code=key.funding_source_code,
            funding_source_name=names["funding_source_name"],
            medicine_type_code=key.medicine_type_code,
            medicine_type_name=names["medicine_type_name"],
            active_ingredient_code=key.active_ingredient_code,
            active_ingredient_name=names["active_ingredient_name"],
            producer_code=key.producer_code,
            producer_name=names["producer_name"],
            package_type_code=key.stored_package_code,
            package_type_name=names.get("package_type_name") if key.package_type_code else None,
            status=MasterStatus.ACTIVE,
            created_by=created_by,
        )
        self.db.add(master)
        self.db.flush()
        logger.info("Registered QR master %s (id=%s)", key, master.id)
        return master

    def update_names(self, master_id: int, names: dict, updated_by: str) -> QRCodeMaster:
        master = self.get(master_id)
        for name_field in NAME_FIELDS:
            value = names.get(name_field)
            if value is None:
                continue
            if name_field == "package_type_name" and not master.package_type_code:
                raise ValueError("Master has no package type to name")
            setattr(master, name_field, value)
        master.updated_by = updated_by
        master.updated_at = datetime.utcnow()
        return master

    def set_active(self, master_id: int, active: bool, updated_by: str) -> QRCodeMaster:
        master = self.get(master_id)
        master.status = MasterStatus.ACTIVE if active else MasterStatus.INACTIVE
        master.updated_by = updated_by
        master.updated_at = datetime.utcnow()
        logger.info("QR master %s set %s by %s", master_id, master.status.value, updated_by)
        return master

    def is_referenced(self, master: QRCodeMaster) -> bool:
        key = ClassificationKey.from_row(master)
        return self.db.query(
            self.db.query(QRCode.id).filter(*_key_criteria(key, QRCode)).exists()
        ).scalar()

    def delete(self, master_id: int) -> None:
        """Hard delete, allowed only while no code uses the key"""
        master = self.get(master_id)
        if self.is_referenced(master):
            raise InvalidStateTransition(
                "Cannot delete QR code master that is being used; deactivate it instead"
            )
        self.db.delete(master)

    def search(
        self,
        search: Optional[str] = None,
        status: Optional[MasterStatus] = None,
        limit: int = 50,
        offset: int = 0,
        **codes,
    ) -> Tuple[List[QRCodeMaster], int]:
        """
        List masters for the UI.

        Keyword arguments named after code columns (funding_source_code,
        medicine_type_code, ...) filter by exact match.
        """
        query = self.db.query(QRCodeMaster)

        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                QRCodeMaster.funding_source_name.ilike(pattern),
                QRCodeMaster.medicine_type_name.ilike(pattern),
                QRCodeMaster.active_ingredient_name.ilike(pattern),
                QRCodeMaster.producer_name.ilike(pattern),
            ))

        for column, value in codes.items():
            if column not in CODE_FIELDS:
                raise ValueError(f"Unknown filter {column}")
            if value:
                query = query.filter(getattr(QRCodeMaster, column) == value)

        if status:
            query = query.filter(QRCodeMaster.status == status)

        total = query.count()
        items = query.order_by(QRCodeMaster.created_at.desc(), QRCodeMaster.id.desc()) \
            .offset(offset).limit(limit).all()
        return items, total

    def count_active(self) -> int:
        return self.db.query(func.count(QRCodeMaster.id)).filter(
            QRCodeMaster.status == MasterStatus.ACTIVE
        ).scalar()
