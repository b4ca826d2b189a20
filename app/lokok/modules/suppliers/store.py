"""
Supplier storage port.

Two implementations share one interface:

- ExcelSupplierStore: a workbook with one sheet per country (openpyxl)
- JsonbSupplierStore: the `suppliers_json` table (SQLAlchemy)

`supplier_store_from_config()` picks one from SUPPLIER_BACKEND. Lookups that
find nothing raise RecordNotFound; storage failures raise SupplierStoreError.
"""
from __future__ import annotations

import logging
import zipfile
from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy.exc import SQLAlchemyError

from app.lokok.countries import country_from_sheet_name, sheet_name_for_country, storage_country
from app.lokok.modules.suppliers.dedup import DedupEntry, DedupResult, plan_deduplication
from app.lokok.modules.suppliers.drive import SpreadsheetSource, SpreadsheetUnavailable, source_from_config
from app.lokok.modules.suppliers.matching import Candidate, MatchResult, find_matches, find_upsert_target, same_supplier
from app.lokok.modules.suppliers.records import get_country, record_created_at, unwrap
from app.lokok.modules.suppliers.workbook import STANDARD_HEADERS, SheetData, read_sheets, write_sheet

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.lokok.modules.users.repository import UserRecord

logger = logging.getLogger(__name__)


class SupplierStoreError(RuntimeError):
    pass


class RecordNotFound(SupplierStoreError):
    pass


@dataclass
class StoredRecord:
    id: str
    country: str | None
    data: dict
    created_at: datetime | None = None

    def as_dict(self) -> dict:
        d = dict(self.data)
        d["_id"] = self.id
        d["_countryCode"] = self.country
        return d


@dataclass(frozen=True)
class UpsertResult:
    inserted: bool
    updated: bool
    id: str

    def as_dict(self) -> dict:
        return {"inserted": self.inserted, "updated": self.updated, "id": self.id}


def _clean(record: dict) -> dict:
    """Drop transport-only keys (_id, _countryCode, ...) before persisting."""
    return {k: v for k, v in unwrap(record).items() if not str(k).startswith("_")}


def _jsonable(record: dict) -> dict:
    """JSON-safe copy: dates become ISO strings."""
    out = {}
    for k, v in record.items():
        if isinstance(v, (datetime, date)):
            v = v.isoformat()
        out[k] = v
    return out


def stamp_new_record(record: dict, country: str | None, user: "UserRecord | None") -> dict:
    data = _clean(record)
    if country and not data.get("Country"):
        data["Country"] = country
    if user is not None:
        data.setdefault("Created_By_User_ID", user.id)
        data.setdefault("Created_By_User_Name", user.name)
    data.setdefault("Created_At", datetime.utcnow().isoformat())
    return data


class SupplierStore:
    backend = ""

    def list_records(self, country: str | None = None) -> list[StoredRecord]:
        raise NotImplementedError

    def get(self, row_id: str) -> StoredRecord | None:
        return next((r for r in self.list_records() if r.id == str(row_id)), None)

    def insert(self, record: dict, country: str | None, user: "UserRecord | None" = None) -> StoredRecord:
        raise NotImplementedError

    def resolve(self, old_record: dict, country_hint: str | None = None, row_id: Any = None) -> list[StoredRecord]:
        """Stored rows an update or delete with the same arguments would change."""
        raise NotImplementedError

    def update(self, old_record: dict, new_record: dict, country_hint: str | None = None, row_id: Any = None) -> int:
        raise NotImplementedError

    def delete(self, old_record: dict, country_hint: str | None = None, row_id: Any = None) -> int:
        raise NotImplementedError

    def upsert_target(self, record: dict, country_hint: str | None = None) -> StoredRecord | None:
        """The row upsert() would overwrite, or None when it would insert."""
        raise NotImplementedError

    def upsert(self, record: dict, country_hint: str | None = None, user: "UserRecord | None" = None) -> UpsertResult:
        raise NotImplementedError

    def deduplicate(self) -> DedupResult:
        raise NotImplementedError

    @staticmethod
    def _require(match: MatchResult, old_record: dict) -> MatchResult:
        if not match:
            name = unwrap(old_record).get("Name") or unwrap(old_record).get("Website") or "?"
            raise RecordNotFound(f"No stored record matches '{name}'")
        return match


class ExcelSupplierStore(SupplierStore):
    backend = "excel"

    def __init__(self, source: SpreadsheetSource):
        self.source = source

    def _load(self) -> dict[str, SheetData]:
        try:
            return read_sheets(self.source.path())
        except SpreadsheetUnavailable as e:
            raise SupplierStoreError(str(e)) from e
        except (OSError, zipfile.BadZipFile, InvalidFileException, KeyError) as e:
            logger.exception("Cannot read supplier workbook")
            raise SupplierStoreError(f"Cannot read supplier workbook: {e}") from e

    def _save(self, sheet: SheetData) -> None:
        try:
            write_sheet(self.source.writable_path(), sheet)
        except (OSError, zipfile.BadZipFile, InvalidFileException, SpreadsheetUnavailable) as e:
            logger.exception("Cannot write supplier workbook")
            raise SupplierStoreError(f"Cannot write supplier workbook: {e}") from e

    @staticmethod
    def _country_sheets(sheets: dict[str, SheetData]) -> dict[str, SheetData]:
        """Country code -> sheet. The first sheet found for a country wins."""
        out: dict[str, SheetData] = {}
        for name, sheet in sheets.items():
            code = country_from_sheet_name(name)
            if code and code not in out:
                out[code] = sheet
        return out

    @staticmethod
    def _records(code: str, sheet: SheetData) -> list[StoredRecord]:
        return [
            StoredRecord(id=f"{code}:{i}", country=code, data=row, created_at=record_created_at(row))
            for i, row in enumerate(sheet.rows, start=1)
        ]

    @staticmethod
    def _index(row_id: str) -> tuple[str, int]:
        code, _, n = row_id.partition(":")
        return code, int(n) - 1

    def list_records(self, country: str | None = None) -> list[StoredRecord]:
        sheets = self._country_sheets(self._load())
        out: list[StoredRecord] = []
        for code, sheet in sheets.items():
            if country and code != country:
                continue
            out.extend(self._records(code, sheet))
        return out

    def _sheet_for(self, sheets: dict[str, SheetData], code: str) -> SheetData:
        by_country = self._country_sheets(sheets)
        if code in by_country:
            return by_country[code]
        return SheetData(name=sheet_name_for_country(code), headers=list(STANDARD_HEADERS), rows=[])

    def _scope(self, sheets: dict[str, SheetData], country_hint: str | None) -> dict[str, SheetData]:
        by_country = self._country_sheets(sheets)
        code = storage_country(country_hint)
        if code:
            return {code: by_country[code]} if code in by_country else {}
        return by_country

    def _candidates(self, scope: dict[str, SheetData]) -> list[Candidate]:
        return [
            Candidate(id=r.id, data=r.data, country=r.country)
            for code, sheet in scope.items()
            for r in self._records(code, sheet)
        ]

    def _trusted_row_id(self, scope: dict[str, SheetData], old_record: dict, row_id: Any) -> str | None:
        """
        Row ids are sheet positions and shift when a row above is deleted.
        Keep the id only while the row at that position is still the supplier
        the caller saw; otherwise matching falls back to the record fields.
        """
        if row_id in (None, ""):
            return None
        try:
            code, idx = self._index(str(row_id))
        except ValueError:
            return None
        sheet = scope.get(code)
        if sheet is None or not 0 <= idx < len(sheet.rows):
            return None
        if not same_supplier(old_record, sheet.rows[idx]):
            logger.info("Ignoring stale row id %s", row_id)
            return None
        return str(row_id)

    def _match(self, scope: dict[str, SheetData], old_record: dict, country_hint: str | None, row_id: Any) -> MatchResult:
        match = find_matches(
            old_record,
            self._candidates(scope),
            country_hint=country_hint,
            row_id=self._trusted_row_id(scope, old_record, row_id),
        )
        return self._require(match, old_record)

    def resolve(self, old_record, country_hint=None, row_id=None) -> list[StoredRecord]:
        scope = self._scope(self._load(), country_hint)
        match = self._match(scope, old_record, country_hint, row_id)
        by_id = {r.id: r for code, sheet in scope.items() for r in self._records(code, sheet)}
        return [by_id[i] for i in match.ids]

    def insert(self, record, country, user=None) -> StoredRecord:
        code = storage_country(country) or get_country(record) or "US"
        sheets = self._load()
        sheet = self._sheet_for(sheets, code)
        data = stamp_new_record(record, code, user)
        sheet.rows.append(data)
        self._save(sheet)
        return StoredRecord(id=f"{code}:{len(sheet.rows)}", country=code, data=data, created_at=record_created_at(data))

    def update(self, old_record, new_record, country_hint=None, row_id=None) -> int:
        scope = self._scope(self._load(), country_hint)
        match = self._match(scope, old_record, country_hint, row_id)
        changes = _clean(new_record)
        touched: dict[str, SheetData] = {}
        for rid in match.ids:
            code, idx = self._index(rid)
            sheet = scope[code]
            sheet.rows[idx] = {**sheet.rows[idx], **changes}
            touched[code] = sheet
        for sheet in touched.values():
            self._save(sheet)
        return len(match.ids)

    def delete(self, old_record, country_hint=None, row_id=None) -> int:
        scope = self._scope(self._load(), country_hint)
        match = self._match(scope, old_record, country_hint, row_id)
        doomed: dict[str, set[int]] = {}
        for rid in match.ids:
            code, idx = self._index(rid)
            doomed.setdefault(code, set()).add(idx)
        for code, idxs in doomed.items():
            sheet = scope[code]
            sheet.rows = [row for i, row in enumerate(sheet.rows) if i not in idxs]
            self._save(sheet)
        return len(match.ids)

    def _upsert_scope(self, record: dict, country_hint: str | None) -> tuple[str, SheetData, MatchResult]:
        code = storage_country(country_hint) or get_country(record) or "US"
        sheet = self._sheet_for(self._load(), code)
        rows = self._records(code, sheet)
        target = find_upsert_target(record, [Candidate(r.id, r.data, r.country) for r in rows], country_hint=code)
        return code, sheet, target

    def upsert_target(self, record, country_hint=None) -> StoredRecord | None:
        code, sheet, target = self._upsert_scope(record, country_hint)
        if not target:
            return None
        return next(r for r in self._records(code, sheet) if r.id == target.ids[0])

    def upsert(self, record, country_hint=None, user=None) -> UpsertResult:
        code, sheet, target = self._upsert_scope(record, country_hint)
        if target:
            rid = target.ids[0]
            _, idx = self._index(rid)
            sheet.rows[idx] = {**sheet.rows[idx], **_clean(record)}
            self._save(sheet)
            return UpsertResult(inserted=False, updated=True, id=rid)
        sheet.rows.append(stamp_new_record(record, code, user))
        self._save(sheet)
        return UpsertResult(inserted=True, updated=False, id=f"{code}:{len(sheet.rows)}")

    def deduplicate(self) -> DedupResult:
        sheets = self._load()
        scope = self._country_sheets(sheets)
        entries = [
            DedupEntry(id=r.id, data=r.data, country=r.country, created_at=r.created_at)
            for code, sheet in scope.items()
            for r in self._records(code, sheet)
        ]
        result = plan_deduplication(entries)
        doomed: dict[str, set[int]] = {}
        for rid in result.delete_ids:
            code, idx = self._index(rid)
            doomed.setdefault(code, set()).add(idx)
        for code, idxs in doomed.items():
            sheet = scope[code]
            sheet.rows = [row for i, row in enumerate(sheet.rows) if i not in idxs]
            self._save(sheet)
        return result


class JsonbSupplierStore(SupplierStore):
    """
    Rows of `suppliers_json`. Changes are flushed, not committed; the caller's
    session owns the transaction (routes commit, scripts use session_scope).
    """

    backend = "jsonb"

    def __init__(self, s: "Session"):
        self.s = s

    @staticmethod
    def _to_record(row) -> StoredRecord:
        return StoredRecord(id=str(row.id), country=row.country, data=dict(row.data or {}), created_at=row.created_at)

    def _rows(self, country: str | None = None):
        from app.lokok.modules.suppliers.models import SupplierJson

        try:
            q = self.s.query(SupplierJson)
            if country:
                q = q.filter(SupplierJson.country == country)
            return q.order_by(SupplierJson.id.asc()).all()
        except SQLAlchemyError as e:
            logger.exception("suppliers_json query failed")
            raise SupplierStoreError(f"Database error: {e}") from e

    def _flush(self) -> None:
        try:
            self.s.flush()
        except SQLAlchemyError as e:
            logger.exception("suppliers_json flush failed")
            raise SupplierStoreError(f"Database error: {e}") from e

    def list_records(self, country: str | None = None) -> list[StoredRecord]:
        return [self._to_record(r) for r in self._rows(country)]

    def get(self, row_id: str) -> StoredRecord | None:
        from app.lokok.modules.suppliers.models import SupplierJson

        try:
            row = self.s.get(SupplierJson, int(row_id))
        except (TypeError, ValueError):
            return None
        return self._to_record(row) if row else None

    def _new_row(self, data: dict, code: str | None, user: "UserRecord | None"):
        from app.lokok.modules.suppliers.models import SupplierJson

        now = datetime.utcnow()
        row = SupplierJson(
            country=code,
            data=_jsonable(data),
            created_by_user_id=str(user.id) if user else (str(data.get("Created_By_User_ID") or "") or None),
            created_by_user_name=user.name if user else (data.get("Created_By_User_Name") or None),
            created_at=record_created_at(data) or now,
            updated_at=now,
        )
        self.s.add(row)
        return row

    def insert(self, record, country, user=None) -> StoredRecord:
        code = storage_country(country) or get_country(record)
        row = self._new_row(stamp_new_record(record, code, user), code, user)
        self._flush()
        return self._to_record(row)

    def _match(self, old_record, country_hint, row_id):
        rows = self._rows(storage_country(country_hint))
        by_id = {str(r.id): r for r in rows}
        match = find_matches(
            old_record,
            [Candidate(str(r.id), dict(r.data or {}), r.country) for r in rows],
            country_hint=country_hint,
            row_id=row_id,
        )
        self._require(match, old_record)
        return [by_id[i] for i in match.ids]

    def resolve(self, old_record, country_hint=None, row_id=None) -> list[StoredRecord]:
        return [self._to_record(r) for r in self._match(old_record, country_hint, row_id)]

    def update(self, old_record, new_record, country_hint=None, row_id=None) -> int:
        targets = self._match(old_record, country_hint, row_id)
        changes = _jsonable(_clean(new_record))
        now = datetime.utcnow()
        for row in targets:
            # reassign so the JSON column is marked dirty
            row.data = {**(row.data or {}), **changes}
            row.country = storage_country(changes.get("Country")) or row.country
            row.updated_at = now
        self._flush()
        return len(targets)

    def delete(self, old_record, country_hint=None, row_id=None) -> int:
        targets = self._match(old_record, country_hint, row_id)
        for row in targets:
            self.s.delete(row)
        self._flush()
        return len(targets)

    def _upsert_row(self, record: dict, code: str | None):
        rows = self._rows(code)
        target = find_upsert_target(
            record,
            [Candidate(str(r.id), dict(r.data or {}), r.country) for r in rows],
            country_hint=code,
        )
        return next(r for r in rows if str(r.id) == target.ids[0]) if target else None

    def upsert_target(self, record, country_hint=None) -> StoredRecord | None:
        row = self._upsert_row(record, storage_country(country_hint) or get_country(record))
        return self._to_record(row) if row is not None else None

    def upsert(self, record, country_hint=None, user=None) -> UpsertResult:
        code = storage_country(country_hint) or get_country(record)
        row = self._upsert_row(record, code)
        if row is not None:
            row.data = {**(row.data or {}), **_jsonable(_clean(record))}
            row.country = code or row.country
            row.updated_at = datetime.utcnow()
            self._flush()
            return UpsertResult(inserted=False, updated=True, id=str(row.id))
        row = self._new_row(stamp_new_record(record, code, user), code, user)
        self._flush()
        return UpsertResult(inserted=True, updated=False, id=str(row.id))

    def deduplicate(self) -> DedupResult:
        rows = self._rows()
        result = plan_deduplication(
            DedupEntry(id=str(r.id), data=dict(r.data or {}), country=r.country, created_at=r.created_at) for r in rows
        )
        doomed = set(result.delete_ids)
        for r in rows:
            if str(r.id) in doomed:
                self.s.delete(r)
        self._flush()
        return result


def supplier_store_from_config(config: dict, s: "Session | None" = None) -> SupplierStore:
    backend = (config.get("SUPPLIER_BACKEND") or "excel").strip().lower()
    if backend == "jsonb":
        if s is None:
            raise SupplierStoreError("SUPPLIER_BACKEND=jsonb needs a database session")
        return JsonbSupplierStore(s)
    if backend != "excel":
        raise SupplierStoreError(f"Unknown SUPPLIER_BACKEND: {backend}")
    return ExcelSupplierStore(source_from_config(config))
