# Overview: Writes delivered codes to downloadable text, Excel, and PDF files.

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from flask import current_app
from openpyxl import Workbook
from openpyxl.styles import Font
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from digicards.time_utils import utc_millis


logger = logging.getLogger(__name__)


FORMAT_TEXT = "text"
FORMAT_EXCEL = "excel"
FORMAT_PDF = "pdf"

EXTENSIONS = {
    FORMAT_TEXT: "txt",
    FORMAT_EXCEL: "xlsx",
    FORMAT_PDF: "pdf",
}

EXCEL_HEADER = ["Product Name", "Serial Number", "PIN"]
EXCEL_SHEET_TITLE = "Serial Numbers"
PDF_TITLE = "Serial Numbers Inventory"

_FILE_PATTERN = re.compile(r"^order-(?P<order_id>\d+)-(?P<ts>\d+)\.(?P<ext>txt|xlsx|pdf)$")


@dataclass(frozen=True)
class ExportRow:
    product_name: str
    serial_number: str
    pin: str | None = None


def _storage_root() -> Path:
    return Path(current_app.config.get("DELIVERY_STORAGE_DIR", "uploads"))


def _public_prefix() -> str:
    return current_app.config.get("DELIVERY_PUBLIC_PREFIX", "/uploads").rstrip("/")


def tenant_dir(tenant_id: int) -> Path:
    return _storage_root() / "digital-cards" / str(tenant_id)


def export_target(tenant_id: int, order_id: int, fmt: str) -> tuple[Path, str]:
    """Filesystem path and public URL for a new export file."""
    directory = tenant_dir(tenant_id)
    directory.mkdir(parents=True, exist_ok=True)
    filename = f"order-{order_id}-{utc_millis()}.{EXTENSIONS[fmt]}"
    return directory / filename, f"{_public_prefix()}/digital-cards/{tenant_id}/{filename}"


def write_text_file(tenant_id: int, order_id: int, rows: list[ExportRow]) -> str:
    path, url = export_target(tenant_id, order_id, FORMAT_TEXT)
    lines = [f"{row.serial_number or ''}\t{row.pin or ''}" for row in rows]
    path.write_text("\n".join(lines), encoding="utf-8")
    return url


def write_excel_file(tenant_id: int, order_id: int, rows: list[ExportRow]) -> str:
    path, url = export_target(tenant_id, order_id, FORMAT_EXCEL)

    wb = Workbook()
    sheet = wb.active
    sheet.title = EXCEL_SHEET_TITLE
    sheet.append(EXCEL_HEADER)
    for cell in sheet[1]:
        cell.font = Font(bold=True)
    for row in rows:
        sheet.append([row.product_name, row.serial_number or "", row.pin or ""])

    sheet.column_dimensions["A"].width = 40
    sheet.column_dimensions["B"].width = 32
    sheet.column_dimensions["C"].width = 24
    wb.save(path)
    return url


def write_pdf_file(tenant_id: int, order_id: int, rows: list[ExportRow]) -> str:
    path, url = export_target(tenant_id, order_id, FORMAT_PDF)

    styles = getSampleStyleSheet()
    doc = SimpleDocTemplate(
        str(path),
        pagesize=A4,
        leftMargin=15 * mm,
        rightMargin=15 * mm,
        topMargin=15 * mm,
        bottomMargin=15 * mm,
        title=PDF_TITLE,
    )

    data = [EXCEL_HEADER] + [
        [row.product_name, row.serial_number or "", row.pin or ""] for row in rows
    ]
    # repeatRows keeps the header on every page when the table splits
    table = Table(data, colWidths=[75 * mm, 60 * mm, 45 * mm], repeatRows=1)
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1f2937")),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#f3f4f6")]),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
    ]))

    doc.build([
        Paragraph(PDF_TITLE, styles["Title"]),
        Paragraph(f"Order {order_id}", styles["Normal"]),
        Spacer(1, 6 * mm),
        table,
    ])
    return url


_WRITERS = {
    FORMAT_TEXT: write_text_file,
    FORMAT_EXCEL: write_excel_file,
    FORMAT_PDF: write_pdf_file,
}


def generate_exports(tenant_id: int, order_id: int, rows: list[ExportRow], formats) -> dict[str, str]:
    """
    Write one file per requested format.

    Best-effort: a failing format is logged and left out of the result; the
    other formats are still written.
    """
    files = {}
    for fmt in formats:
        writer = _WRITERS.get(fmt)
        if writer is None:
            continue
        try:
            files[fmt] = writer(tenant_id, order_id, rows)
        except (OSError, ValueError):
            logger.exception("Failed to generate %s export for order %s", fmt, order_id)
    return files


def list_exports(tenant_id: int, order_id: int) -> list[dict]:
    """Previously generated exports for an order, newest first."""
    directory = tenant_dir(tenant_id)
    if not directory.is_dir():
        return []

    found = []
    for path in directory.iterdir():
        match = _FILE_PATTERN.match(path.name)
        if not match or int(match.group("order_id")) != order_id:
            continue
        fmt = next(k for k, v in EXTENSIONS.items() if v == match.group("ext"))
        found.append({
            "format": fmt,
            "url": f"{_public_prefix()}/digital-cards/{tenant_id}/{path.name}",
            "created_ms": int(match.group("ts")),
        })
    found.sort(key=lambda f: f["created_ms"], reverse=True)
    return found
