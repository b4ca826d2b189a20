import io
import json
from pathlib import Path

from openpyxl import Workbook, load_workbook

from app.lokok.db import session_scope
from app.lokok.models import AuditEvent
from app.lokok.modules.suppliers.records import PRIORITY_FIELD
from app.lokok.modules.suppliers.store import JsonbSupplierStore


def _records(app, country=None):
    with session_scope(app) as s:
        return {r.data["Name"]: r for r in JsonbSupplierStore(s).list_records(country)}


def _actions(app):
    with session_scope(app) as s:
        return [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id.asc()).all()]


def _xlsx(rows) -> io.BytesIO:
    wb = Workbook()
    ws = wb.active
    for r in rows:
        ws.append(r)
    buf = io.BytesIO()
    wb.save(buf)
    buf.seek(0)
    return buf


def test_api_search_query_and_flags(client, login):
    login("maria@lokok.com")
    r = client.get("/api/search?query=a&type=name")
    body = r.get_json()
    assert body["success"] is True
    by_name = {row["Name"]: row for row in body["results"]}
    assert set(by_name) == {"Acme", "Beta"}
    assert by_name["Acme"]["_can_edit"] is True
    assert by_name["Acme"]["_is_responsible"] is True
    # US is one of Maria's countries
    assert by_name["Beta"]["_can_edit"] is True
    assert body["categoryList"] == ["Tools", "Toys"]


def test_api_search_without_terms_is_empty_but_submitted_lists_all(client, login):
    login()
    assert client.get("/api/search").get_json()["count"] == 0
    assert client.get("/api/search?submitted=1").get_json()["count"] == 2
    assert client.get("/api/search?listAll=1&category=tools").get_json()["count"] == 1
    assert client.get("/api/search?q=todos&sortBy=category&sortDirection=desc").get_json()["results"][0]["Name"] == "Acme"


def test_search_page_renders(client, login):
    login()
    r = client.get("/search?submitted=1")
    assert r.status_code == 200
    assert b"Acme" in r.data and b"Beta" in r.data
    r = client.get("/search?query=zzz")
    assert b"No records found." in r.data


def test_new_record_form_and_create(client, login, csrf, app):
    login("maria@lokok.com")
    assert client.get("/records/new").status_code == 200
    r = client.post(
        "/records/new",
        data={"csrf_token": csrf, "name": "Delta", "categoria": "Toys", "website": "delta.com", "country": "MX"},
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert b"Record saved." in r.data
    delta = _records(app, "MX")["Delta"]
    assert delta.data["Created_By_User_Name"] == "Maria"
    assert "supplier.create" in _actions(app)


def test_new_record_validation(client, login, csrf, app):
    login()
    r = client.post("/records/new", data={"csrf_token": csrf, "name": "", "categoria": ""}, follow_redirects=True)
    assert b"Name is required." in r.data
    assert b"CATEGOR" in r.data
    assert len(_records(app)) == 3


def test_new_record_country_not_allowed(client, login, csrf, app):
    login("maria@lokok.com")
    r = client.post("/records/new", data={"csrf_token": csrf, "name": "X", "categoria": "Y", "country": "CA"}, follow_redirects=True)
    assert b"do not have access" in r.data
    assert "X" not in _records(app)


def test_operator_cannot_create(client, login):
    login("olga@lokok.com")
    assert client.get("/records/new").status_code == 403


def test_priority_details_then_high_priority_record_goes_to_approval(client, login, csrf, app):
    login("maria@lokok.com")
    r = client.post(
        "/records/priority-details",
        data={"csrf_token": csrf, "whoWillCall": "Hubert", "needApproval": "yes"},
    )
    assert r.status_code == 302
    with client.session_transaction() as sess:
        assert sess["priority_details"]["needApproval"] == "yes"

    r = client.post(
        "/records/new",
        data={"csrf_token": csrf, "name": "Omega", "categoria": "Toys", "prioridade": "1"},
        follow_redirects=True,
    )
    assert b"Record saved and sent for approval." in r.data
    with client.session_transaction() as sess:
        assert "priority_details" not in sess
    omega = _records(app, "US")["Omega"]
    assert omega.data[PRIORITY_FIELD] == "1"
    assert omega.data["Priority: Who will call"] == "Hubert"
    items = json.loads(Path(app.config["APPROVALS_JSON_PATH"]).read_text(encoding="utf-8"))
    assert items[0]["reason"] == "High Priority (1)"


def test_edit_page_and_api_edit(client, login, csrf, app):
    login("maria@lokok.com")
    acme = _records(app)["Acme"]
    assert client.get(f"/records/{acme.id}/edit").status_code == 200

    r = client.post(
        "/api/records/edit",
        json={"oldRecord": acme.as_dict(), "changes": {"Comments": "called twice"}, "rowId": acme.id, "country": "US"},
        headers={"X-CSRF-Token": csrf},
    )
    assert r.status_code == 200
    assert r.get_json() == {"success": True, "message": "Record updated", "updated": 1}
    assert _records(app)["Acme"].data["Comments"] == "called twice"
    assert "supplier.edit" in _actions(app)


def test_edit_unknown_record(client, login, csrf):
    login()
    r = client.post(
        "/api/records/edit",
        json={"oldRecord": {"Name": "Nobody", "Country": "USA"}, "changes": {"Comments": "x"}},
        headers={"X-CSRF-Token": csrf},
    )
    assert r.status_code == 404


def test_edit_missing_payload(client, login, csrf):
    login()
    r = client.post("/api/records/edit", json={}, headers={"X-CSRF-Token": csrf})
    assert r.status_code == 400


def test_edit_forbidden_for_other_country(client, login, csrf, app):
    # Maria works in US/MX; a CA record owned by someone else is out of reach
    with session_scope(app) as s:
        rec = JsonbSupplierStore(s).insert({"Name": "Canuck", "CATEGORÍA": "Toys", "Responsable": "Pedro"}, "CA")
    login("maria@lokok.com")
    r = client.post(
        "/api/records/edit",
        json={"oldRecord": rec.as_dict(), "changes": {"Comments": "x"}, "rowId": rec.id, "country": "CA"},
        headers={"X-CSRF-Token": csrf},
    )
    assert r.status_code == 403


def test_delete_by_website_stays_in_request_country(client, login, csrf, app):
    with session_scope(app) as s:
        JsonbSupplierStore(s).insert({"Name": "North", "Website": "north.ca", "CATEGORÍA": "Toys", "Responsable": "Pedro"}, "CA")
    login("maria@lokok.com")
    r = client.post(
        "/api/records/delete",
        json={"record": {"Website": "https://north.ca"}, "country": "US"},
        headers={"X-CSRF-Token": csrf},
    )
    assert r.status_code == 404
    assert "North" in _records(app, "CA")


def test_api_delete(client, login, csrf, app):
    login()
    beta = _records(app)["Beta"]
    r = client.post("/api/records/delete", json={"rowId": beta.id, "record": {"_id": beta.id}}, headers={"X-CSRF-Token": csrf})
    assert r.get_json() == {"success": True, "message": "Record deleted", "deleted": 1}
    assert "Beta" not in _records(app)


def test_operator_cannot_delete(client, login, csrf, app):
    login("olga@lokok.com")
    beta = _records(app)["Beta"]
    r = client.post("/api/records/delete", json={"rowId": beta.id}, headers={"X-CSRF-Token": csrf})
    assert r.status_code == 403


def test_bulk_upload(client, login, csrf, app):
    login()
    buf = _xlsx(
        [
            ["Name", "Website", "Category"],
            ["Acme Updated", "https://www.acme.com", "Toys"],
            ["Zeta", "zeta.com", "Games"],
            ["", "", ""],
            ["No category", "", ""],
        ]
    )
    r = client.post(
        "/records/bulk-upload",
        data={"csrf_token": csrf, "country": "US", "excelFile": (buf, "suppliers.xlsx")},
        content_type="multipart/form-data",
    )
    body = r.get_json()
    assert r.status_code == 200
    assert body["recordsAdded"] == 1
    assert body["recordsUpdated"] == 1
    assert body["warnings"] == ["Row 5: Name and CATEGORÍA are required"]
    names = set(_records(app, "US"))
    assert {"Acme Updated", "Zeta", "Beta"} <= names


def test_bulk_upload_rejects_bad_files(client, login, csrf):
    login()
    r = client.post("/records/bulk-upload", data={"csrf_token": csrf}, content_type="multipart/form-data")
    assert r.get_json()["message"] == "No file uploaded"

    r = client.post(
        "/records/bulk-upload",
        data={"csrf_token": csrf, "excelFile": (io.BytesIO(b"a,b"), "data.csv")},
        content_type="multipart/form-data",
    )
    assert r.get_json()["message"] == "Only .xlsx files are accepted"

    r = client.post(
        "/records/bulk-upload",
        data={"csrf_token": csrf, "excelFile": (io.BytesIO(b"not a zip"), "fake.xlsx")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400
    assert "Could not read" in r.get_json()["message"]


def test_template_download(client, login):
    login("olga@lokok.com")
    r = client.get("/records/template")
    assert r.status_code == 200
    assert "lokok-template.xlsx" in r.headers["Content-Disposition"]
    ws = load_workbook(io.BytesIO(r.data)).active
    assert ws.cell(row=1, column=1).value == "Name"


def test_export_excel_admin_only(client, login, app):
    login()
    r = client.get("/admin/export-excel?country=US")
    assert r.status_code == 200
    assert "lokok-export-US-" in r.headers["Content-Disposition"]
    ws = load_workbook(io.BytesIO(r.data)).active
    names = [row[0] for row in ws.iter_rows(min_row=2, values_only=True)]
    assert sorted(names) == ["Acme", "Beta"]
    assert "supplier.export" in _actions(app)


def test_export_excel_forbidden_for_manager(client, login):
    login("maria@lokok.com")
    assert client.get("/admin/export-excel").status_code == 403


def test_dedupe(client, login, csrf, app):
    with session_scope(app) as s:
        JsonbSupplierStore(s).insert({"Name": "Acme again", "Website": "http://acme.com/", "CATEGORÍA": "Toys", "Created_At": "2030-01-01T00:00:00"}, "US")
    login()
    r = client.post("/admin/dedupe", headers={"X-CSRF-Token": csrf})
    assert r.get_json() == {"success": True, "total": 4, "deleted": 1, "kept": 3}
    names = set(_records(app))
    assert "Acme again" in names and "Acme" not in names
