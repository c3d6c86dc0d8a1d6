"""
QR Code Scan Processor
======================
Lifecycle state machine for generated codes.

    GENERATED -> PRINTED -> DISTRIBUTED -> SCANNED -> {USED, EXPIRED, INVALID}

Scans are dispatched by purpose through a handler table. Every scan attempt,
whatever its result, appends exactly one QRCodeScanLog row.

A stock-out scan applies the state change, the stock decrement and the log
append as one unit: the optimistic version column on qr_codes rejects a
concurrent winner, and a failure after the inventory adjustment rolls the
whole unit back (with a compensating adjustment when the inventory gateway
does not share our session).
"""

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..models import (
    QRCode, QRCodeScanLog, CodeState, ScanPurpose, ScanResult, TERMINAL_STATES
)
from . import code_format
from .errors import (
    CodeNotFound, InvalidStateTransition, InsufficientStock, BatchNotFound,
    ConcurrencyConflict,
)
from .inventory_gateway import InventoryGateway, SqlInventoryGateway, BatchSnapshot
from .sequence_allocator import MAX_BACKOFF_SECONDS

logger = logging.getLogger(__name__)

MAX_RETRIES = int(os.getenv("QR_SCAN_MAX_RETRIES", "8"))
BACKOFF_SECONDS = float(os.getenv("QR_SCAN_BACKOFF_SECONDS", "0.005"))

NON_TERMINAL_STATES = frozenset(CodeState) - TERMINAL_STATES

# target state -> states it may be entered from
TRANSITIONS = {
    CodeState.PRINTED: frozenset({CodeState.GENERATED}),
    CodeState.DISTRIBUTED: frozenset({CodeState.PRINTED}),
    CodeState.SCANNED: frozenset({CodeState.DISTRIBUTED}),
    CodeState.EXPIRED: NON_TERMINAL_STATES,
    CodeState.INVALID: NON_TERMINAL_STATES,
}

# Result reported when a stock-affecting scan hits a terminal code
TERMINAL_REJECTIONS = {
    CodeState.USED: (ScanResult.ALREADY_USED, "QR code has already been used"),
    CodeState.EXPIRED: (ScanResult.EXPIRED, "QR code has expired"),
    CodeState.INVALID: (ScanResult.ERROR, "QR code has been invalidated"),
}


@dataclass(frozen=True)
class ScanRequest:
    code_string: str
    purpose: ScanPurpose
    scanned_by: str
    location: Optional[str] = None
    device_info: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class StockChange:
    """Inventory side effect applied together with a scan"""
    batch_reference: str
    delta: int
    batch: BatchSnapshot


@dataclass
class ScanOutcome:
    success: bool
    result: ScanResult
    message: str
    scan_log: QRCodeScanLog
    code: Optional[QRCode] = None
    batch: Optional[BatchSnapshot] = None
    stock_change: Optional[StockChange] = None


class ScanProcessor:
    """Scans and explicit lifecycle transitions of QR codes"""

    def __init__(
        self,
        db: Session,
        inventory: Optional[InventoryGateway] = None,
        max_retries: int = MAX_RETRIES,
        backoff_seconds: float = BACKOFF_SECONDS,
        clock=datetime.utcnow,
    ):
        self.db = db
        self.inventory = inventory or SqlInventoryGateway(db)
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.clock = clock

        self.handlers = {
            ScanPurpose.VERIFICATION: self._read_only,
            ScanPurpose.INVENTORY_CHECK: self._read_only,
            ScanPurpose.AUDIT: self._audit,
            ScanPurpose.DISTRIBUTION: self._stock_out,
            ScanPurpose.TRANSACTION: self._stock_out,
        }

    # =========================================================================
    # SCANNING
    # =========================================================================

    def scan(
        self,
        code_string: str,
        purpose: ScanPurpose,
        scanned_by: str,
        location: Optional[str] = None,
        device_info: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ScanOutcome:
        """Process one scan; the outcome is returned, never raised"""
        request = ScanRequest(
            code_string=code_string,
            purpose=ScanPurpose(purpose),
            scanned_by=scanned_by,
            location=location,
            device_info=device_info,
            notes=notes,
        )

        # Malformed strings are logged without looking anything up
        validation = code_format.validate_format(code_string)
        if not validation.is_valid:
            return self._record(request, ScanResult.INVALID_FORMAT, ", ".join(validation.errors))

        for attempt in range(self.max_retries):
            try:
                return self._scan_once(request)
            except StaleDataError:
                self.db.rollback()
                logger.debug("Concurrent update on %s (attempt %s)", code_string, attempt + 1)
                self._backoff(attempt)
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.exception("Scan of %s failed", code_string)
                return self._record(request, ScanResult.ERROR, f"Scan failed: {e}")

        code = self._find(code_string)
        return self._record(
            request, ScanResult.ERROR,
            "QR code is being updated concurrently, please retry",
            code=code,
        )

    def _scan_once(self, request: ScanRequest) -> ScanOutcome:
        code = self._find(request.code_string)
        if code is None:
            return self._record(request, ScanResult.NOT_FOUND, "QR code not found in system")
        return self.handlers[request.purpose](code, request)

    # -------------------------------------------------------------------------
    # Purpose handlers
    # -------------------------------------------------------------------------

    def _read_only(self, code: QRCode, request: ScanRequest) -> ScanOutcome:
        batch = self.inventory.get_batch(code.batch_reference)
        if batch is None:
            return self._record(
                request, ScanResult.ERROR,
                f"Medicine stock batch {code.batch_reference} not found",
                code=code,
            )
        return self._read_only_success(code, request, batch)

    def _audit(self, code: QRCode, request: ScanRequest) -> ScanOutcome:
        # Audit scans are recorded even when the batch cannot be resolved
        batch = self.inventory.get_batch(code.batch_reference)
        return self._read_only_success(code, request, batch)

    def _read_only_success(self, code, request, batch) -> ScanOutcome:
        self._touch(code, request)
        message = "QR code scanned successfully"
        if code.is_terminal:
            message += f" (code is {code.state.value})"
        return self._record(request, ScanResult.SUCCESS, message, code=code, batch=batch)

    def _stock_out(self, code: QRCode, request: ScanRequest) -> ScanOutcome:
        if code.state in TERMINAL_REJECTIONS:
            result, message = TERMINAL_REJECTIONS[code.state]
            return self._record(request, result, message, code=code)

        code_id = code.id
        unit = code.unit_quantity
        batch_reference = code.batch_reference

        batch = self.inventory.get_batch(batch_reference)
        if batch is None:
            return self._record(
                request, ScanResult.ERROR,
                f"Medicine stock batch {batch_reference} not found", code=code,
            )
        if batch.available_quantity < unit:
            return self._record(
                request, ScanResult.ERROR,
                f"Insufficient stock in batch {batch_reference}. "
                f"Available: {batch.available_quantity}, Requested: {unit}",
                code=code, batch=batch,
            )

        code.state = CodeState.USED
        self._touch(code, request)
        applied = False
        try:
            # Raises StaleDataError if another scan moved the code first
            self.db.flush()
            updated = self.inventory.adjust_stock(
                batch_reference, -unit,
                reason=f"QR {request.purpose.value} scan {request.code_string}",
                actor=request.scanned_by,
            )
            applied = True
            scan_log = self._append_log(code, request, ScanResult.SUCCESS, quantity_change=-unit)
            self.db.commit()
        except (InsufficientStock, BatchNotFound) as e:
            self.db.rollback()
            return self._record(request, ScanResult.ERROR, str(e), code=self.db.get(QRCode, code_id))
        except StaleDataError:
            self._rollback_stock_out(applied, batch_reference, unit, request)
            raise
        except SQLAlchemyError as e:
            self._rollback_stock_out(applied, batch_reference, unit, request)
            logger.exception("Stock-out scan of %s rolled back", request.code_string)
            return self._record(
                request, ScanResult.ERROR, f"Scan failed: {e}",
                code=self.db.get(QRCode, code_id),
            )

        logger.info(
            "%s scan of %s by %s: %s unit(s) out of %s",
            request.purpose.value, request.code_string, request.scanned_by, unit, batch_reference,
        )
        return ScanOutcome(
            success=True,
            result=ScanResult.SUCCESS,
            message="QR code scanned successfully",
            scan_log=scan_log,
            code=code,
            batch=updated,
            stock_change=StockChange(batch_reference, -unit, updated),
        )

    def _rollback_stock_out(self, applied: bool, batch_reference: str, unit: int, request: ScanRequest):
        self.db.rollback()
        if applied and not self.inventory.transactional:
            # The gateway committed on its own; give the units back
            self.inventory.adjust_stock(
                batch_reference, unit,
                reason=f"Reversal of failed scan {request.code_string}",
                actor=request.scanned_by,
            )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _find(self, code_string: str) -> Optional[QRCode]:
        return self.db.query(QRCode).filter(QRCode.code_string == code_string).first()

    def _touch(self, code: QRCode, request: ScanRequest) -> None:
        now = self.clock()
        code.scan_count = (code.scan_count or 0) + 1
        code.last_scanned_at = now
        code.last_scanned_by = request.scanned_by
        code.updated_at = now

    def _append_log(self, code, request: ScanRequest, result: ScanResult,
                    quantity_change: int = 0, notes: Optional[str] = None) -> QRCodeScanLog:
        scan_log = QRCodeScanLog(
            code_id=code.id if code is not None else None,
            code_string=request.code_string,
            scanned_by=request.scanned_by,
            scanned_at=self.clock(),
            purpose=request.purpose,
            result=result,
            location=request.location,
            device_info=request.device_info,
            notes=notes or request.notes,
            quantity_change=quantity_change,
        )
        self.db.add(scan_log)
        return scan_log

    def _record(self, request: ScanRequest, result: ScanResult, message: str,
                code: Optional[QRCode] = None, batch: Optional[BatchSnapshot] = None) -> ScanOutcome:
        """Append the log row for a scan without stock effect and commit"""
        notes = request.notes
        if result != ScanResult.SUCCESS:
            notes = f"{notes}. {message}" if notes else message
        scan_log = self._append_log(code, request, result, notes=notes)
        self.db.commit()

        if result == ScanResult.SUCCESS:
            logger.info("%s scan of %s by %s", request.purpose.value, request.code_string, request.scanned_by)
        else:
            logger.warning(
                "%s scan of %r by %s failed: %s (%s)",
                request.purpose.value, request.code_string, request.scanned_by, result.value, message,
            )
        return ScanOutcome(
            success=result == ScanResult.SUCCESS,
            result=result,
            message=message,
            scan_log=scan_log,
            code=code,
            batch=batch,
        )

    def _backoff(self, attempt: int) -> None:
        time.sleep(min(self.backoff_seconds * (2 ** attempt), MAX_BACKOFF_SECONDS))

    # =========================================================================
    # EXPLICIT TRANSITIONS
    # =========================================================================

    def update_status(self, code_id: int, target: CodeState, actor: str) -> QRCode:
        """
        Move a code to `target` through the transition table.

        Raises:
            CodeNotFound: no code with this id
            InvalidStateTransition: target not reachable from the current state
            ConcurrencyConflict: the code kept changing under us
        """
        target = CodeState(target)
        allowed = TRANSITIONS.get(target)

        for attempt in range(self.max_retries):
            code = self.db.get(QRCode, code_id)
            if code is None:
                raise CodeNotFound(f"QR code {code_id} not found")
            if allowed is None or code.state not in allowed:
                raise InvalidStateTransition(
                    f"Cannot change QR code {code.code_string} from "
                    f"{code.state.value} to {target.value}"
                )

            now = self.clock()
            code.state = target
            code.updated_at = now
            if target == CodeState.PRINTED:
                code.printed_at, code.printed_by = now, actor
            elif target == CodeState.DISTRIBUTED:
                code.distributed_at, code.distributed_by = now, actor

            try:
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                self._backoff(attempt)
                continue

            logger.info("QR code %s -> %s by %s", code.code_string, target.value, actor)
            return code

        raise ConcurrencyConflict(f"QR code {code_id} kept changing; status not updated")

    def mark_printed(self, code_id: int, actor: str) -> QRCode:
        return self.update_status(code_id, CodeState.PRINTED, actor)

    def mark_distributed(self, code_id: int, actor: str) -> QRCode:
        return self.update_status(code_id, CodeState.DISTRIBUTED, actor)

    def mark_scanned(self, code_id: int, actor: str) -> QRCode:
        return self.update_status(code_id, CodeState.SCANNED, actor)

    def expire(self, code_id: int, actor: str) -> QRCode:
        return self.update_status(code_id, CodeState.EXPIRED, actor)

    def invalidate(self, code_id: int, actor: str) -> QRCode:
        return self.update_status(code_id, CodeState.INVALID, actor)

    def bulk_update_status(self, code_ids: Iterable[int], target: CodeState, actor: str) -> dict:
        """Apply one transition to many codes; each code succeeds or fails alone"""
        updated: List[int] = []
        failures: List[dict] = []
        for code_id in code_ids:
            try:
                self.update_status(code_id, target, actor)
                updated.append(code_id)
            except (CodeNotFound, InvalidStateTransition, ConcurrencyConflict) as e:
                failures.append({"id": code_id, "error": str(e)})
        return {"updated": updated, "failures": failures}
