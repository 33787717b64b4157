from __future__ import annotations

from datetime import datetime, timezone
from io import BytesIO

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet
from sqlalchemy.orm import Session

from zeitnachweis.services.employees import EmployeeUploadStatus, list_active_employee_status
from zeitnachweis.services.periods import Period
from zeitnachweis.settings import Settings, get_app_timezone

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

STATUS_HEADERS = [
    "Nachname",
    "Vorname",
    "E-Mail",
    "Status",
    "Upload-Zeit",
    "Datei",
]
STATUS_UPLOADED = "Hochgeladen"
STATUS_MISSING = "Fehlt"

HEADER_FILL = PatternFill(fill_type="solid", fgColor="2C3E50")
META_LABEL_FILL = PatternFill(fill_type="solid", fgColor="EAF4F9")
ZEBRA_FILL = PatternFill(fill_type="solid", fgColor="F7FBFE")
MISSING_FILL = PatternFill(fill_type="solid", fgColor="FDE2E4")
UPLOADED_FILL = PatternFill(fill_type="solid", fgColor="E6F4EA")

HEADER_FONT = Font(bold=True, color="FFFFFF")
BOLD_FONT = Font(bold=True, color="0F172A")
TITLE_FONT = Font(bold=True, color="2C3E50", size=14)

THIN_SIDE = Side(style="thin", color="D5E2EC")
THIN_BORDER = Border(left=THIN_SIDE, right=THIN_SIDE, top=THIN_SIDE, bottom=THIN_SIDE)

TITLE_ROW = 1
META_START_ROW = 2
HEADER_ROW = 6


def _to_excel_datetime(value: datetime | None, settings: Settings | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Excel has no timezone support; write local wall-clock time.
    return value.astimezone(get_app_timezone(settings)).replace(tzinfo=None)


def _style_header(ws: Worksheet, row: int) -> None:
    for cell in ws[row]:
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)
        cell.border = THIN_BORDER


def _auto_width(ws: Worksheet) -> None:
    for column_cells in ws.iter_cols(min_row=HEADER_ROW, max_row=ws.max_row, min_col=1, max_col=ws.max_column):
        max_len = 0
        col_letter = get_column_letter(column_cells[0].column)
        for cell in column_cells:
            value = "" if cell.value is None else str(cell.value)
            max_len = max(max_len, len(value))
        ws.column_dimensions[col_letter].width = min(max_len + 2, 45)


def _write_metadata(ws: Worksheet, period: Period, rows: list[EmployeeUploadStatus]) -> None:
    title = ws.cell(row=TITLE_ROW, column=1, value=f"Zeitnachweise {period.label}")
    title.font = TITLE_FONT
    ws.merge_cells(start_row=TITLE_ROW, start_column=1, end_row=TITLE_ROW, end_column=len(STATUS_HEADERS))

    uploaded = sum(1 for item in rows if item.uploaded)
    metadata = (
        ("Mitarbeiter", len(rows)),
        ("Hochgeladen", uploaded),
        ("Ausstehend", len(rows) - uploaded),
    )
    for offset, (label, value) in enumerate(metadata):
        label_cell = ws.cell(row=META_START_ROW + offset, column=1, value=label)
        label_cell.font = BOLD_FONT
        label_cell.fill = META_LABEL_FILL
        label_cell.border = THIN_BORDER
        value_cell = ws.cell(row=META_START_ROW + offset, column=2, value=value)
        value_cell.border = THIN_BORDER
        value_cell.alignment = Alignment(horizontal="center")


def _write_status_rows(ws: Worksheet, rows: list[EmployeeUploadStatus], settings: Settings | None) -> None:
    for col_idx, header in enumerate(STATUS_HEADERS, start=1):
        ws.cell(row=HEADER_ROW, column=col_idx, value=header)
    _style_header(ws, HEADER_ROW)

    for row_idx, item in enumerate(rows, start=HEADER_ROW + 1):
        upload = item.upload
        values = (
            item.employee.lastname,
            item.employee.firstname,
            item.employee.email,
            STATUS_UPLOADED if item.uploaded else STATUS_MISSING,
            _to_excel_datetime(upload.uploaded_at, settings) if upload is not None else None,
            upload.filename if upload is not None else "-",
        )
        row_fill = ZEBRA_FILL if row_idx % 2 == 0 else None
        for col_idx, value in enumerate(values, start=1):
            cell = ws.cell(row=row_idx, column=col_idx, value=value)
            cell.border = THIN_BORDER
            if row_fill is not None:
                cell.fill = row_fill
            if isinstance(value, datetime):
                cell.number_format = "DD.MM.YYYY HH:MM"

        status_cell = ws.cell(row=row_idx, column=4)
        status_cell.fill = UPLOADED_FILL if item.uploaded else MISSING_FILL
        status_cell.font = Font(bold=True, color="166534" if item.uploaded else "9F1239")
        status_cell.alignment = Alignment(horizontal="center")

    last_row = HEADER_ROW + len(rows)
    ws.freeze_panes = f"A{HEADER_ROW + 1}"
    if rows:
        ws.auto_filter.ref = f"A{HEADER_ROW}:{get_column_letter(len(STATUS_HEADERS))}{last_row}"


def build_status_xlsx_bytes(db: Session, *, period: Period, settings: Settings | None = None) -> bytes:
    rows = list_active_employee_status(db, period)
    wb = Workbook()
    ws = wb.active
    ws.title = f"{period.month:02d}-{period.year}"

    _write_metadata(ws, period, rows)
    _write_status_rows(ws, rows, settings)
    _auto_width(ws)

    stream = BytesIO()
    wb.save(stream)
    return stream.getvalue()


def status_export_filename(period: Period) -> str:
    return f"zeitnachweise_{period.year}_{period.month:02d}.xlsx"
