"""Shared helpers for the v2 QR routers."""

from fastapi import HTTPException

from ..services.errors import (
    QRCodeError, MalformedCode, ClassificationNotFound, CodeNotFound,
    BatchNotFound, DuplicateClassification, ConcurrencyConflict,
)

# Anything not listed is a client error (400)
ERROR_STATUS = {
    ClassificationNotFound: 404,
    CodeNotFound: 404,
    BatchNotFound: 404,
    DuplicateClassification: 409,
    ConcurrencyConflict: 503,
}


def http_error(e: QRCodeError) -> HTTPException:
    status_code = next(
        (code for exc_type, code in ERROR_STATUS.items() if isinstance(e, exc_type)),
        400,
    )
    if isinstance(e, MalformedCode):
        return HTTPException(status_code=status_code, detail={"message": str(e), "errors": e.errors})
    return HTTPException(status_code=status_code, detail=str(e))
