import json
from datetime import datetime
from pathlib import Path

import pytest
from openpyxl import Workbook
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from app.lokok.models import Base
from app.lokok.modules.suppliers.store import JsonbSupplierStore, StoredRecord
from app.lokok.modules.users.repository import DbUserRepository, UserRecord
from app.lokok.storage import LocalStorage, StorageError
from scripts import backup_db, dedupe_suppliers, init_db, permissions_report


@pytest.fixture()
def session():
    engine = create_engine("sqlite://", future=True)
    Base.metadata.create_all(bind=engine)
    with Session(engine) as s:
        yield s
    engine.dispose()


def _workbook(path: Path) -> Path:
    wb = Workbook()
    ws = wb.active
    ws.title = "Wholesale LOKOK"
    ws.append(["Name", "Website", "CATEGORÍA", "Created_At"])
    ws.append(["Acme", "acme.com", "Toys", "2024-01-01T09:00:00"])
    ws.append(["Acme newer", "www.acme.com", "Toys", "2024-06-01T09:00:00"])
    ws.append(["Beta", "beta.com", "Tools", "2024-02-01T09:00:00"])
    wb.save(path)
    return path


def test_seed_admin_is_idempotent(session, monkeypatch):
    monkeypatch.setenv("ADMIN_EMAIL", "Boss@lokok.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "first")
    init_db.seed_admin(session, {"USER_BACKEND": "db"})
    monkeypatch.setenv("ADMIN_PASSWORD", "second")
    init_db.seed_admin(session, {"USER_BACKEND": "db"})

    repo = DbUserRepository(session)
    assert len(repo.list()) == 1
    assert repo.verify_password("boss@lokok.com", "first").role == "admin"


def test_seed_suppliers_imports_and_dedupes(session, tmp_path, monkeypatch):
    monkeypatch.delenv("ALLOW_RESEED", raising=False)
    monkeypatch.delenv("SKIP_DEDUP", raising=False)
    config = {"GOOGLE_DRIVE_FILE_ID": "", "EXCEL_PATH": str(_workbook(tmp_path / "book.xlsx"))}

    assert init_db.seed_suppliers(session, config) == {"inserted": 3, "updated": 0, "skipped": False}
    names = sorted(r.data["Name"] for r in JsonbSupplierStore(session).list_records())
    assert names == ["Acme newer", "Beta"]

    # second run leaves the table alone
    assert init_db.seed_suppliers(session, config)["skipped"] is True


def test_seed_suppliers_reseed_upserts(session, tmp_path, monkeypatch):
    monkeypatch.setenv("ALLOW_RESEED", "1")
    monkeypatch.setenv("SKIP_DEDUP", "1")
    config = {"GOOGLE_DRIVE_FILE_ID": "", "EXCEL_PATH": str(_workbook(tmp_path / "book.xlsx"))}
    JsonbSupplierStore(session).insert({"Name": "Beta old", "Website": "beta.com"}, "US")

    result = init_db.seed_suppliers(session, config)
    assert result["updated"] == 2  # Beta, then Acme newer onto Acme
    assert result["inserted"] == 1
    assert len(JsonbSupplierStore(session).list_records()) == 2


def test_seed_suppliers_without_workbook(session, tmp_path):
    config = {"GOOGLE_DRIVE_FILE_ID": "", "EXCEL_PATH": str(tmp_path / "missing.xlsx")}
    assert init_db.seed_suppliers(session, config)["skipped"] is True


def test_backup_snapshot_and_write(session, tmp_path):
    DbUserRepository(session).create(email="a@lokok.com", password="pw", role="admin", name="A")
    JsonbSupplierStore(session).insert({"Name": "Acme"}, "US")
    config = {"APPROVALS_JSON_PATH": str(tmp_path / "approvals.json")}

    snapshot = backup_db.build_snapshot(session, config)
    assert [u["email"] for u in snapshot["users"]] == ["a@lokok.com"]
    assert snapshot["suppliers_json"][0]["data"]["Name"] == "Acme"
    assert snapshot["approvals"] == []

    storage = LocalStorage(root=tmp_path / "storage")
    key = backup_db.write_backup(storage, snapshot, now=datetime(2025, 1, 2, 3, 4, 5))
    assert key == "backups/lokok-20250102-030405.json"
    assert storage.list_keys("backups/") == [key]
    saved = json.loads((tmp_path / "storage" / key).read_text(encoding="utf-8"))
    assert saved["users"][0]["email"] == "a@lokok.com"


def test_local_storage_rejects_parent_paths(tmp_path):
    with pytest.raises(StorageError):
        LocalStorage(root=tmp_path).put_bytes("../escape.txt", b"x")


def test_permissions_report_summary():
    users = [
        UserRecord(id="1", email="admin@lokok.com", role="admin", name="Admin", allowed_countries=["US", "CA", "MX"]),
        UserRecord(id="2", email="maria@lokok.com", role="manager", name="Maria", allowed_countries=["MX"]),
        UserRecord(id="3", email="op@lokok.com", role="operator", name="Olga"),
    ]
    records = [
        StoredRecord("US:1", "US", {"Name": "A", "Responsable": "Maria"}),
        StoredRecord("US:2", "US", {"Name": "B", "Responsable": "Pedro"}),
        StoredRecord("MX:1", "MX", {"Name": "C", "Responsable": "Pedro"}),
    ]
    rows = {r["email"]: r for r in permissions_report.summarize(users, records)}
    assert rows["admin@lokok.com"]["editable"] == 3
    assert rows["maria@lokok.com"]["editable"] == 2
    assert rows["maria@lokok.com"]["countries"] == "MX"
    assert rows["op@lokok.com"]["deletable"] == 0


def test_dedupe_plan_does_not_delete(session, capsys):
    store = JsonbSupplierStore(session)
    store.insert({"Name": "Acme", "Website": "acme.com", "Created_At": "2024-01-01T00:00:00"}, "US")
    store.insert({"Name": "Acme 2", "Website": "acme.com", "Created_At": "2024-02-01T00:00:00"}, "US")

    result = dedupe_suppliers.plan(store)
    dedupe_suppliers.report(store, result)
    assert result.deleted == 1
    assert len(store.list_records()) == 2
    assert "Acme" in capsys.readouterr().out
