"""
Create tables (local dev) and seed the admin account and the suppliers_json table.

Seeding is idempotent:
- the admin user is created only when missing (an existing password is never overwritten)
- suppliers_json is filled from the workbook only when it is empty, or always
  when ALLOW_RESEED=1 (then rows are upserted, so re-runs don't duplicate)
- deduplication runs afterwards unless SKIP_DEDUP=1

Usage:
  python scripts/init_db.py            # create_all + seed
  python scripts/init_db.py --seed-only
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv
from sqlalchemy.orm import Session

from app.lokok.config import load_config
from app.lokok.models import Base
from app.lokok.modules.suppliers.models import SupplierJson
from app.lokok.modules.suppliers.store import ExcelSupplierStore, JsonbSupplierStore, SupplierStoreError
from app.lokok.modules.suppliers.drive import SpreadsheetUnavailable, source_from_config
from app.lokok.modules.users.repository import user_repository_from_config
from scripts._db_utils import create_script_engine, database_url as resolve_database_url, env_flag, script_session


def seed_admin(s: Session, config: dict) -> None:
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@lokok.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    admin_name = (os.environ.get("ADMIN_NAME") or "Admin").strip()

    repo = user_repository_from_config(config, s)
    if repo.get_by_email(admin_email):
        print(f"Admin user exists: {admin_email}")
        return
    repo.create(email=admin_email, password=admin_password, role="admin", name=admin_name, created_by="init_db")
    print(f"Admin user created: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def seed_suppliers(s: Session, config: dict) -> dict:
    """Copy workbook rows into suppliers_json. Returns counts for the log line."""
    existing = s.query(SupplierJson).count()
    reseed = env_flag("ALLOW_RESEED")
    if existing and not reseed:
        print(f"suppliers_json has {existing} rows; skipping seed (set ALLOW_RESEED=1 to re-import).")
        return {"inserted": 0, "updated": 0, "skipped": True}

    try:
        records = ExcelSupplierStore(source_from_config(config)).list_records()
    except (SupplierStoreError, SpreadsheetUnavailable) as e:
        print(f"No workbook to seed from: {e}")
        return {"inserted": 0, "updated": 0, "skipped": True}

    store = JsonbSupplierStore(s)
    inserted = updated = 0
    for r in records:
        if existing:
            result = store.upsert(r.data, country_hint=r.country)
            inserted += int(result.inserted)
            updated += int(result.updated)
        else:
            store.insert(r.data, r.country)
            inserted += 1
    print(f"Seeded suppliers_json: {inserted} inserted, {updated} updated.")

    if not env_flag("SKIP_DEDUP"):
        d = store.deduplicate()
        print(f"Deduplication: total={d.total} deleted={d.deleted} kept={d.kept}")
    return {"inserted": inserted, "updated": updated, "skipped": False}


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the admin user and suppliers_json in an idempotent way.
    """
    load_dotenv()
    config = load_config()
    db_url = resolve_database_url(database_url)
    with script_session(db_url) as s:
        seed_admin(s, config)
        if config.get("SUPPLIER_BACKEND") == "jsonb":
            seed_suppliers(s, config)
    print("Initialized database (seed_only).")


def create_tables(db_url: str) -> None:
    engine = create_script_engine(db_url)
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        engine.dispose()
    print("Tables created (create_all).")


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Create tables and seed LOKOK data.")
    parser.add_argument("--seed-only", action="store_true", help="Skip create_all (tables come from alembic).")
    args = parser.parse_args()

    db_url = resolve_database_url()
    if not args.seed_only:
        create_tables(db_url)
    seed_only(database_url=db_url)


if __name__ == "__main__":
    main()
