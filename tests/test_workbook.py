import io
from pathlib import Path

from openpyxl import Workbook, load_workbook

from app.lokok.modules.suppliers.records import PRIORITY_FIELD, STATUS_FIELD
from app.lokok.modules.suppliers.workbook import (
    SheetData,
    build_export,
    build_template,
    parse_upload,
    read_sheets,
    write_sheet,
)


def _upload(rows) -> io.BytesIO:
    wb = Workbook()
    ws = wb.active
    for r in rows:
        ws.append(r)
    buf = io.BytesIO()
    wb.save(buf)
    buf.seek(0)
    return buf


def test_parse_upload_maps_header_aliases():
    buf = _upload(
        [
            ["Company Name", "Category", "email", "Status", "Priority", "Extra Column", None],
            ["  Acme  ", "Toys", "a@acme.com", "BUYING", 2, "x", None],
            [None, None, None, None, None, None, None],
            ["Beta", "", None, None, None, None, None],
        ]
    )
    rows = parse_upload(buf)
    assert rows == [
        (2, {"Name": "Acme", "CATEGORÍA": "Toys", "E-Mail": "a@acme.com", STATUS_FIELD: "BUYING", PRIORITY_FIELD: 2, "Extra Column": "x"}),
        (4, {"Name": "Beta"}),
    ]


def test_parse_upload_empty_sheet():
    assert parse_upload(_upload([])) == []


def test_write_sheet_keeps_other_sheets_and_adds_country_sheets(tmp_path: Path):
    path = tmp_path / "book.xlsx"
    wb = Workbook()
    wb.active.title = "Notes"
    wb.active.append(["keep me"])
    wb.save(path)

    write_sheet(path, SheetData(name="Wholesale LOKOK", headers=["Name"], rows=[{"Name": "Acme", "Website": "acme.com"}]))
    sheets = read_sheets(path)
    assert "Notes" in sheets
    assert {"Wholesale CANADA", "Wholesale MEXICO", "Wholesale CHINA"} <= set(sheets)
    us = sheets["Wholesale LOKOK"]
    assert us.headers == ["Name", "Website"]
    assert us.rows == [{"Name": "Acme", "Website": "acme.com"}]


def test_template_has_example_row():
    ws = load_workbook(io.BytesIO(build_template())).active
    headers = [c.value for c in ws[1]]
    assert headers[:3] == ["Name", "Website", "CATEGORÍA"]
    assert ws.cell(row=2, column=1).value == "Example Distributor Inc."


def test_export_drops_transport_keys():
    data = build_export([{"Name": "Acme", "_id": "US:1", "_countryCode": "US", "Custom": 1}], "Wholesale LOKOK")
    ws = load_workbook(io.BytesIO(data)).active
    headers = [c.value for c in ws[1]]
    assert ws.title == "Wholesale LOKOK"
    assert "_id" not in headers
    assert headers[-1] == "Custom"
    assert ws.cell(row=2, column=1).value == "Acme"
