"""Exceptions raised by the QR code services."""


class QRCodeError(Exception):
    """Base exception for QR code operations"""
    pass


class MalformedCode(QRCodeError):
    """Raised when a code string or component does not match the grammar"""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = list(errors or [message])


class SequenceExhausted(QRCodeError):
    """Raised when a bucket has issued its last sequence value"""
    pass


class InvalidBulkQuantity(QRCodeError):
    """Raised when the total quantity is not a multiple of the package size"""
    pass


class DuplicateClassification(QRCodeError):
    """Raised when a master entry already exists for a classification key"""
    pass


class ClassificationNotFound(QRCodeError):
    pass


class ClassificationInactive(QRCodeError):
    pass


class CodeNotFound(QRCodeError):
    pass


class BatchNotFound(QRCodeError):
    pass


class InsufficientStock(QRCodeError):
    """Raised when a batch holds less than the quantity requested"""
    pass


class InvalidStateTransition(QRCodeError):
    """Raised when a lifecycle change is not allowed from the current state"""
    pass


class ConcurrencyConflict(QRCodeError):
    """Raised when a contended update still fails after the retry ceiling"""
    pass
