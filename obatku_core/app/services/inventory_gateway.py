"""
Inventory Gateway
=================
The inventory side of a scan: read a batch snapshot, adjust its stock.

Scan processing only talks to this contract and never touches stock tables
directly. SqlInventoryGateway is the default implementation; it works in the
caller's session, so a rollback of the scan also undoes the stock change.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..models import MedicineStock, StockMovement, MovementType
from .errors import BatchNotFound, InsufficientStock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchSnapshot:
    batch_reference: str
    available_quantity: int
    unit_size: int
    medicine_name: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "batch_reference": self.batch_reference,
            "available_quantity": self.available_quantity,
            "unit_size": self.unit_size,
            "medicine_name": self.medicine_name,
        }


class InventoryGateway:
    """Contract consumed by the scan processor"""

    # True when adjust_stock writes through the same session as the caller,
    # i.e. rolling back that session also reverts the adjustment.
    transactional = False

    def get_batch(self, batch_reference: str) -> Optional[BatchSnapshot]:
        raise NotImplementedError

    def adjust_stock(self, batch_reference: str, delta: int, reason: str, actor: str) -> BatchSnapshot:
        """
        Apply delta to the batch and return the updated snapshot.

        Raises:
            BatchNotFound: unknown batch reference
            InsufficientStock: delta would take the batch below zero
        """
        raise NotImplementedError


class SqlInventoryGateway(InventoryGateway):
    transactional = True

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _snapshot(stock: MedicineStock) -> BatchSnapshot:
        return BatchSnapshot(
            batch_reference=stock.batch_number,
            available_quantity=stock.available_quantity,
            unit_size=stock.unit_size,
            medicine_name=stock.medicine_name,
        )

    def get_batch(self, batch_reference: str) -> Optional[BatchSnapshot]:
        stock = self.db.query(MedicineStock).filter(
            MedicineStock.batch_number == batch_reference
        ).first()
        return self._snapshot(stock) if stock else None

    def adjust_stock(self, batch_reference: str, delta: int, reason: str, actor: str) -> BatchSnapshot:
        # Lock the batch row for update
        stock = self.db.query(MedicineStock).filter(
            MedicineStock.batch_number == batch_reference
        ).with_for_update().first()

        if not stock:
            raise BatchNotFound(f"Medicine stock batch {batch_reference} not found")

        if delta == 0:
            return self._snapshot(stock)

        quantity_before = stock.available_quantity
        quantity_after = quantity_before + delta

        if quantity_after < 0:
            raise InsufficientStock(
                f"Insufficient stock in batch {batch_reference}. "
                f"Available: {quantity_before}, Requested: {-delta}"
            )

        # Create movement record FIRST (audit trail)
        movement = StockMovement(
            stock_id=stock.id,
            movement_type=MovementType.OUTWARD_SCAN if delta < 0 else MovementType.REVERSAL,
            quantity_change=delta,
            quantity_before=quantity_before,
            quantity_after=quantity_after,
            reason=reason,
            actor=actor,
            movement_date=datetime.utcnow(),
        )
        self.db.add(movement)

        stock.available_quantity = quantity_after
        # Mark inactive if fully consumed
        stock.is_active = quantity_after > 0
        stock.updated_at = datetime.utcnow()

        logger.debug(
            "Batch %s adjusted %+d (%s -> %s): %s",
            batch_reference, delta, quantity_before, quantity_after, reason,
        )
        return self._snapshot(stock)
