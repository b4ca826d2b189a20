#!/usr/bin/env python
"""
Per-user permission report: how many supplier records each user can edit/delete.

Useful after changing someone's role or allowed countries, or when a manager
reports that the edit button is missing.

Usage:
    python scripts/permissions_report.py
    python scripts/permissions_report.py --email maria@example.com
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

from app.lokok.config import load_config
from app.lokok.modules.suppliers.permissions import resolve_permissions
from app.lokok.modules.suppliers.store import StoredRecord, supplier_store_from_config
from app.lokok.modules.users.repository import UserRecord, user_repository_from_config
from scripts._db_utils import database_url, script_session


def summarize(users: list[UserRecord], records: list[StoredRecord]) -> list[dict]:
    rows = []
    for u in users:
        editable = deletable = 0
        for r in records:
            p = resolve_permissions(u, r.data, r.country)
            editable += int(p.can_edit)
            deletable += int(p.can_delete)
        rows.append(
            {
                "email": u.email,
                "role": u.role,
                "countries": ",".join(u.allowed_countries),
                "total": len(records),
                "editable": editable,
                "deletable": deletable,
            }
        )
    return rows


def print_table(rows: list[dict]) -> None:
    print(f"{'email':<36} {'role':<9} {'countries':<10} {'edit':>6} {'delete':>6} {'total':>6}")
    for r in rows:
        print(f"{r['email']:<36} {r['role']:<9} {r['countries']:<10} {r['editable']:>6} {r['deletable']:>6} {r['total']:>6}")


def main() -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Report editable/deletable record counts per user.")
    parser.add_argument("--email", help="Only this user.")
    args = parser.parse_args()

    config = load_config()
    with script_session(database_url()) as s:
        users = user_repository_from_config(config, s).list()
        if args.email:
            users = [u for u in users if u.email == args.email.strip().lower()]
            if not users:
                print(f"No user with email {args.email}")
                sys.exit(1)
        s_for_store = s if config.get("SUPPLIER_BACKEND") == "jsonb" else None
        records = supplier_store_from_config(config, s_for_store).list_records()
        print_table(summarize(users, records))


if __name__ == "__main__":
    main()
