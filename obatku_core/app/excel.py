"""Excel export of generated codes for the label printing workflow."""

from io import BytesIO
from typing import Any, Iterable

import pandas as pd

from . import models

EXPORT_COLUMNS = [
    "Code", "Bulk", "Package Type", "Units", "Sequence", "State",
    "Scan Count", "Last Scanned", "Generated At", "Generated By", "Printed At",
]

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _to_native(value: Any):
    if value is None:
        return None
    if hasattr(value, "value"):  # Enum
        return value.value
    return value


def codes_to_frame(codes: Iterable[models.QRCode]) -> pd.DataFrame:
    rows = [
        [
            code.code_string,
            "Yes" if code.is_bulk_package else "No",
            code.package_type_code or None,
            code.unit_quantity,
            _to_native(code.sequence_type),
            _to_native(code.state),
            code.scan_count,
            code.last_scanned_at,
            code.generated_at,
            code.generated_by,
            code.printed_at,
        ]
        for code in codes
    ]
    return pd.DataFrame(rows, columns=EXPORT_COLUMNS)


def build_codes_workbook(batch_reference: str, codes: Iterable[models.QRCode]) -> BytesIO:
    """One sheet per export, named after the batch"""
    frame = codes_to_frame(codes)
    buf = BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        sheet = f"Batch {batch_reference}"[:31]
        frame.to_excel(writer, sheet_name=sheet, index=False)
        worksheet = writer.sheets[sheet]
        worksheet.column_dimensions["A"].width = 20
        worksheet.freeze_panes = "A2"
    buf.seek(0)
    return buf
