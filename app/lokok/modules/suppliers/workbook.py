from __future__ import annotations

import io
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font
from openpyxl.worksheet.worksheet import Worksheet

from app.lokok.countries import COUNTRY_SHEETS
from app.lokok.modules.suppliers.records import PRIORITY_FIELD, STATUS_FIELD

STANDARD_HEADERS = [
    "Name",
    "Website",
    "CATEGORÍA",
    "Account Request Status",
    "DATE",
    "Responsable",
    STATUS_FIELD,
    "Description/Notes",
    "Contact Name",
    "Contact Phone",
    "E-Mail",
    "Address",
    "User",
    "PASSWORD",
    "LLAMAR",
    PRIORITY_FIELD,
    "Comments",
    "Country",
    "Created_By_User_ID",
    "Created_By_User_Name",
    "Created_At",
]

# Upload column aliases: canonical header -> accepted header texts (lowercase).
HEADER_MAPPINGS = {
    "Name": ["name", "company name", "company", "empresa", "distributor"],
    "Website": ["website", "url", "site", "web"],
    "CATEGORÍA": ["categoría", "categoria", "category"],
    "Account Request Status": ["account request status", "account status"],
    "DATE": ["date", "fecha", "data"],
    "Responsable": ["responsable", "responsible", "manager", "buyer"],
    STATUS_FIELD: [STATUS_FIELD.lower(), "status"],
    "Description/Notes": ["description/notes", "description", "notes"],
    "Contact Name": ["contact name", "contact"],
    "Contact Phone": ["contact phone", "phone", "telephone"],
    "E-Mail": ["e-mail", "email", "mail"],
    "Address": ["address", "dirección", "direccion"],
    "User": ["user", "username", "login"],
    "PASSWORD": ["password"],
    "LLAMAR": ["llamar", "call"],
    PRIORITY_FIELD: [PRIORITY_FIELD.lower(), "prio", "priority"],
    "Comments": ["comments", "comentarios"],
    "Country": ["country", "país", "pais"],
}

TEMPLATE_EXAMPLE = {
    "Name": "Example Distributor Inc.",
    "Website": "https://www.example.com",
    "CATEGORÍA": "Electronics",
    "Account Request Status": "Pending",
    "DATE": "2024-01-15",
    "Responsable": "John Doe",
    STATUS_FIELD: "PENDING APPROVAL",
    "Description/Notes": "Authorized distributor",
    "Contact Name": "Jane Smith",
    "Contact Phone": "+1 555 0100",
    "E-Mail": "sales@example.com",
    "Address": "123 Main St, Springfield",
    "User": "",
    "PASSWORD": "",
    "LLAMAR": "",
    PRIORITY_FIELD: "3",
    "Comments": "",
}


@dataclass
class SheetData:
    name: str
    headers: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)


def _header_texts(ws: Worksheet) -> list[str]:
    if ws.max_row < 1:
        return []
    return [str(c.value).strip() if c.value is not None else "" for c in ws[1]]


def _sheet_rows(ws: Worksheet, headers: list[str]) -> list[dict[str, Any]]:
    rows = []
    for values in ws.iter_rows(min_row=2, values_only=True):
        if not any(v not in (None, "") for v in values):
            continue
        row = {}
        for h, v in zip(headers, values):
            if h:
                row[h] = v
        rows.append(row)
    return rows


def read_sheets(path: str | Path) -> dict[str, SheetData]:
    wb = load_workbook(path, data_only=True)
    try:
        out: dict[str, SheetData] = {}
        for ws in wb.worksheets:
            headers = _header_texts(ws)
            out[ws.title] = SheetData(name=ws.title, headers=headers, rows=_sheet_rows(ws, headers))
        return out
    finally:
        wb.close()


def merged_headers(base: list[str], rows: list[dict[str, Any]]) -> list[str]:
    headers = [h for h in base if h]
    for row in rows:
        for k in row:
            if k and k not in headers:
                headers.append(k)
    return headers


def _fill_sheet(ws: Worksheet, headers: list[str], rows: list[dict[str, Any]]) -> None:
    ws.append(headers)
    for c in ws[1]:
        c.font = Font(bold=True)
    for row in rows:
        ws.append([row.get(h) for h in headers])


def ensure_country_sheets(wb: Workbook) -> list[str]:
    """Create any missing per-country sheet with the standard header row."""
    created = []
    for code in ("US", "CA", "MX", "CN"):
        name = COUNTRY_SHEETS[code]
        if name in wb.sheetnames:
            continue
        if code == "US" and any("lokok" in n.lower() for n in wb.sheetnames):
            continue
        ws = wb.create_sheet(title=name)
        _fill_sheet(ws, STANDARD_HEADERS, [])
        created.append(name)
    return created


def write_sheet(path: str | Path, sheet: SheetData) -> None:
    """Rewrite one sheet in place, keeping the other sheets of the workbook."""
    p = Path(path)
    if p.exists():
        wb = load_workbook(p)
    else:
        wb = Workbook()
        wb.remove(wb.active)
    try:
        headers = merged_headers(sheet.headers or STANDARD_HEADERS, sheet.rows)
        if sheet.name in wb.sheetnames:
            idx = wb.sheetnames.index(sheet.name)
            wb.remove(wb[sheet.name])
            ws = wb.create_sheet(title=sheet.name, index=idx)
        else:
            ws = wb.create_sheet(title=sheet.name)
        _fill_sheet(ws, headers, sheet.rows)
        ensure_country_sheets(wb)
        p.parent.mkdir(parents=True, exist_ok=True)
        wb.save(p)
    finally:
        wb.close()


def _to_bytes(wb: Workbook) -> bytes:
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def build_template() -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Suppliers"
    headers = list(TEMPLATE_EXAMPLE.keys())
    _fill_sheet(ws, headers, [TEMPLATE_EXAMPLE])
    for i, h in enumerate(headers, start=1):
        ws.column_dimensions[ws.cell(row=1, column=i).column_letter].width = max(14, min(len(h) + 4, 40))
    return _to_bytes(wb)


def build_export(rows: list[dict[str, Any]], sheet_title: str = "Export") -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_title[:31]
    clean = [{k: v for k, v in r.items() if not k.startswith("_")} for r in rows]
    _fill_sheet(ws, merged_headers(STANDARD_HEADERS, clean), clean)
    return _to_bytes(wb)


def parse_upload(stream: IO[bytes]) -> list[tuple[int, dict[str, Any]]]:
    """
    Read the first sheet of an uploaded workbook.
    Returns (sheet row number, record) pairs with headers mapped to the
    standard column names; unknown columns are kept as-is.
    """
    wb = load_workbook(stream, data_only=True, read_only=True)
    try:
        ws = wb.worksheets[0]
        rows = ws.iter_rows(values_only=True)
        header_row = next(rows, None)
        if not header_row:
            return []
        columns: list[str | None] = []
        for h in header_row:
            if h is None or not str(h).strip():
                columns.append(None)
                continue
            text = str(h).strip()
            canonical = next((k for k, opts in HEADER_MAPPINGS.items() if text.lower() in opts), text)
            columns.append(canonical)
        out = []
        for offset, values in enumerate(rows, start=2):
            if not any(v not in (None, "") for v in values):
                continue
            record: dict[str, Any] = {}
            for col, v in zip(columns, values):
                if col and v not in (None, "") and col not in record:
                    record[col] = v.strip() if isinstance(v, str) else v
            out.append((offset, record))
        return out
    finally:
        wb.close()
