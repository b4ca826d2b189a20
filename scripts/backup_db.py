#!/usr/bin/env python
"""
Snapshot users, suppliers_json and the approvals file into backup storage.

Writes one JSON document per run under backups/ in the configured Storage
(STORAGE_BACKEND=local -> <DATA_DIR>/storage, s3 -> the S3 bucket).
Password hashes are included so a restore keeps logins working; treat the
backup location accordingly.

Usage:
    python scripts/backup_db.py
    python scripts/backup_db.py --list
"""
from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv
from sqlalchemy.orm import Session

from app.lokok.config import load_config
from app.lokok.models import User
from app.lokok.modules.approvals.store import approval_store_from_config
from app.lokok.modules.suppliers.models import SupplierJson
from app.lokok.storage import Storage, storage_from_config
from scripts._db_utils import database_url, script_session

BACKUP_PREFIX = "backups/"


def build_snapshot(s: Session, config: dict) -> dict:
    users = [
        {
            "id": u.id,
            "email": u.email,
            "name": u.name,
            "role": u.role,
            "allowedCountries": u.allowed_countries,
            "isActive": u.is_active,
            "createdBy": u.created_by,
            "createdAt": u.created_at,
            "password": u.password_hash,
        }
        for u in s.query(User).order_by(User.id.asc()).all()
    ]
    suppliers = [
        {
            "id": r.id,
            "country": r.country,
            "data": r.data,
            "createdByUserId": r.created_by_user_id,
            "createdByUserName": r.created_by_user_name,
            "createdAt": r.created_at,
            "updatedAt": r.updated_at,
        }
        for r in s.query(SupplierJson).order_by(SupplierJson.id.asc()).all()
    ]
    return {
        "createdAt": datetime.utcnow().isoformat(),
        "users": users,
        "suppliers_json": suppliers,
        "approvals": approval_store_from_config(config).all(),
    }


def write_backup(storage: Storage, snapshot: dict, now: datetime | None = None) -> str:
    now = now or datetime.utcnow()
    key = f"{BACKUP_PREFIX}lokok-{now:%Y%m%d-%H%M%S}.json"
    data = json.dumps(snapshot, ensure_ascii=False, indent=2, default=str).encode("utf-8")
    storage.put_bytes(key, data, content_type="application/json")
    return key


def main() -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Back up LOKOK data to storage.")
    parser.add_argument("--list", action="store_true", help="List existing backups instead of writing one.")
    args = parser.parse_args()

    config = load_config()
    storage = storage_from_config(config)
    if args.list:
        for key in storage.list_keys(BACKUP_PREFIX):
            print(key)
        return

    with script_session(database_url()) as s:
        snapshot = build_snapshot(s, config)
    key = write_backup(storage, snapshot)
    print(f"Backup written: {key} ({len(snapshot['users'])} users, {len(snapshot['suppliers_json'])} suppliers)")


if __name__ == "__main__":
    main()
