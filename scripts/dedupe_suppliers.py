#!/usr/bin/env python
"""
Supplier deduplication.

Groups records by dedup key (website, else email, else name+country) and
keeps the newest record of each group.

Usage:
    # Show what would be deleted
    python scripts/dedupe_suppliers.py --dry-run

    # Delete duplicates
    python scripts/dedupe_suppliers.py --apply

Environment:
    SUPPLIER_BACKEND: excel (workbook) or jsonb (suppliers_json table)
    DATABASE_URL: needed for the jsonb backend
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
from app.lokok.modules.suppliers.dedup import DedupEntry, DedupResult, plan_deduplication
from app.lokok.modules.suppliers.records import get_name
from app.lokok.modules.suppliers.store import SupplierStore, supplier_store_from_config
from scripts._db_utils import database_url, script_session


def plan(store: SupplierStore) -> DedupResult:
    records = store.list_records()
    return plan_deduplication(DedupEntry(id=r.id, data=r.data, country=r.country, created_at=r.created_at) for r in records)


def report(store: SupplierStore, result: DedupResult) -> None:
    print(f"Records: {result.total}  keep: {result.kept}  delete: {result.deleted}")
    doomed = set(result.delete_ids)
    for r in store.list_records():
        if r.id in doomed:
            print(f"  - {r.id} [{r.country}] {get_name(r.data) or '(no name)'}")


def run(apply: bool) -> DedupResult:
    config = load_config()

    def _go(store: SupplierStore) -> DedupResult:
        if not apply:
            result = plan(store)
            report(store, result)
            print("Dry run; nothing deleted. Re-run with --apply.")
            return result
        result = store.deduplicate()
        print(f"Deleted {result.deleted} duplicate(s); {result.kept} kept of {result.total}.")
        return result

    if config.get("SUPPLIER_BACKEND") == "jsonb":
        with script_session(database_url()) as s:
            return _go(supplier_store_from_config(config, s))
    return _go(supplier_store_from_config(config))


def main() -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Remove duplicate supplier records.")
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--dry-run", action="store_true", help="List duplicates without deleting.")
    mode.add_argument("--apply", action="store_true", help="Delete duplicates.")
    args = parser.parse_args()
    run(apply=args.apply)


if __name__ == "__main__":
    main()
