from __future__ import annotations

import unicodedata
from collections import Counter, defaultdict
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.lokok.audit import record_event
from app.lokok.modules.approvals import service as approvals
from app.lokok.modules.suppliers.permissions import (
    MANAGER_FIELDS,
    is_responsible,
    normalize_role,
    resolve_permissions,
)
from app.lokok.modules.suppliers.records import (
    ACCOUNT_STATUS_FIELDS,
    CATEGORY_FIELDS,
    PRIORITY_FIELD,
    STATUS_FIELD,
    STATUS_FIELDS,
    as_text,
    first_value,
    get_name,
    get_website,
    parse_record_date,
)
from app.lokok.modules.suppliers.store import RecordNotFound, StoredRecord, SupplierStore

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.lokok.modules.approvals.store import ApprovalStore
    from app.lokok.modules.users.repository import UserRecord


class PermissionDenied(Exception):
    pass


# form field -> column
FORM_FIELDS = {
    "name": "Name",
    "website": "Website",
    "categoria": "CATEGORÍA",
    "accountStatus": "Account Request Status",
    "date": "DATE",
    "responsable": "Responsable",
    "status": STATUS_FIELD,
    "description": "Description/Notes",
    "contactName": "Contact Name",
    "phone": "Contact Phone",
    "email": "E-Mail",
    "address": "Address",
    "user": "User",
    "password": "PASSWORD",
    "llamar": "LLAMAR",
    "prioridade": PRIORITY_FIELD,
    "comments": "Comments",
}

# priority details form field -> column
PRIORITY_DETAIL_FIELDS = {
    "monthlyRevenueSku": "Priority: Monthly Revenue / SKU quantity",
    "avgFbaSellers": "Priority: Average FBA Sellers",
    "avgSellers": "Priority: Average Sellers",
    "amazonInStockRate": "Priority: Amazon In Stock Rate",
    "additionalInfo": "Priority: Additional Information",
    "whoWillCall": "Priority: Who will call",
    "callDate": "Priority: Call Date",
    "result": "Priority: Result",
    "followUpTask": "Priority: Follow-up Task",
    "needApproval": "Priority: Need Approval",
}

# Columns an edit may change; identity/creator columns are fixed at creation.
EDITABLE_COLUMNS = frozenset(FORM_FIELDS.values()) | frozenset(PRIORITY_DETAIL_FIELDS.values())

ALL_QUERIES = {"all", "todos", "tudo", "*"}
NAME_ALIASES = {"nacho": ["ignacio"]}
SEARCH_TYPES = ("name", "website", "categoria", "manager", "all")
SORT_FIELDS = {
    "accountStatus": ACCOUNT_STATUS_FIELDS,
    "status": STATUS_FIELDS,
    "buyer": MANAGER_FIELDS[:3],
    "category": CATEGORY_FIELDS,
}
UNSPECIFIED = "Not specified"
UNKNOWN_MONTH = "unknown"
STATS_YEARS = (2020, 2030)
UPLOAD_MAX_BYTES = 10 * 1024 * 1024


def normalize_text(value: Any) -> str:
    """Lowercase, strip accents, collapse whitespace (search comparisons)."""
    s = unicodedata.normalize("NFD", as_text(value).lower())
    s = "".join(ch for ch in s if unicodedata.category(ch) != "Mn")
    return " ".join(s.split())


def parse_priority_details(form: dict) -> dict:
    details = {k: (form.get(k) or "").strip() for k in PRIORITY_DETAIL_FIELDS}
    details["needApproval"] = details["needApproval"].lower() or "no"
    return details


def build_record_from_form(
    form: dict,
    user: "UserRecord",
    country: str,
    priority_details: dict | None = None,
) -> dict:
    record: dict[str, Any] = {col: (form.get(key) or "").strip() for key, col in FORM_FIELDS.items()}
    record["Country"] = country
    record["Created_By_User_ID"] = user.id
    record["Created_By_User_Name"] = user.name
    record["Created_At"] = datetime.utcnow().isoformat()
    if priority_details:
        for key, col in PRIORITY_DETAIL_FIELDS.items():
            record[col] = priority_details.get(key) or ("no" if key == "needApproval" else "")
    return record


def validate_record_payload(record: dict) -> list[str]:
    errors = []
    if not get_name(record):
        errors.append("Name is required.")
    if not first_value(record, CATEGORY_FIELDS):
        errors.append("CATEGORÍA is required.")
    return errors


def needs_approval(record: dict, priority_details: dict | None = None) -> bool:
    return approvals.approval_reason(record, priority_details) is not None


def _audit_entity(record: dict) -> str:
    return get_name(record) or get_website(record) or "?"


def add_record(
    s: "Session",
    store: SupplierStore,
    approval_store: "ApprovalStore",
    form: dict,
    user: "UserRecord",
    country: str,
    priority_details: dict | None = None,
) -> tuple[StoredRecord, dict | None]:
    """Save a new supplier; queue it for approval when it is high priority."""
    if normalize_role(user.role) not in ("admin", "manager"):
        raise PermissionDenied("Only managers and admins can add records.")
    record = build_record_from_form(form, user, country, priority_details)
    stored = store.insert(record, country, user)

    item = None
    reason = approvals.approval_reason(record, priority_details)
    if reason:
        item = approvals.enqueue(approval_store, record, user, reason, country=country)

    record_event(
        s,
        actor=user,
        action="supplier.create",
        entity_type="Supplier",
        entity_id=stored.id,
        metadata={"name": _audit_entity(record), "country": country, "approval": item["id"] if item else None},
    )
    return stored, item


def _check_targets(store: SupplierStore, user: "UserRecord", old_record: dict, country: str | None, row_id: Any, action: str):
    """Every stored row the change would hit must be one the user may change."""
    for target in store.resolve(old_record, country_hint=country, row_id=row_id):
        perms = resolve_permissions(user, target.data, target.country or country)
        allowed = perms.can_edit if action == "edit" else perms.can_delete
        if not allowed:
            raise PermissionDenied(f"You are not allowed to {action} this record.")


def edit_record(
    s: "Session",
    store: SupplierStore,
    user: "UserRecord",
    old_record: dict,
    changes: dict,
    *,
    country: str | None = None,
    row_id: Any = None,
    reason: str | None = None,
) -> int:
    _check_targets(store, user, old_record, country, row_id, "edit")
    updates = {k: v for k, v in changes.items() if k in EDITABLE_COLUMNS}
    diff = {
        k: {"old": as_text(old_record.get(k)), "new": as_text(v)}
        for k, v in updates.items()
        if as_text(old_record.get(k)) != as_text(v)
    }
    updates["Updated_At"] = datetime.utcnow().isoformat()
    updates["Updated_By_User_ID"] = user.id
    updates["Updated_By_User_Name"] = user.name
    count = store.update(old_record, updates, country_hint=country, row_id=row_id)

    record_event(
        s,
        actor=user,
        action="supplier.edit",
        entity_type="Supplier",
        entity_id=str(row_id) if row_id else _audit_entity(old_record),
        reason=reason,
        metadata={"name": _audit_entity(old_record), "changes": diff, "rows": count},
    )
    return count


def delete_record(
    s: "Session",
    store: SupplierStore,
    user: "UserRecord",
    old_record: dict,
    *,
    country: str | None = None,
    row_id: Any = None,
) -> int:
    _check_targets(store, user, old_record, country, row_id, "delete")
    count = store.delete(old_record, country_hint=country, row_id=row_id)
    record_event(
        s,
        actor=user,
        action="supplier.delete",
        entity_type="Supplier",
        entity_id=str(row_id) if row_id else _audit_entity(old_record),
        metadata={"name": _audit_entity(old_record), "country": country, "rows": count},
    )
    return count


def bulk_upload(
    s: "Session",
    store: SupplierStore,
    rows: list[tuple[int, dict]],
    user: "UserRecord",
    country: str,
    filename: str | None = None,
) -> dict:
    added = 0
    updated = 0
    warnings: list[str] = []
    for row_number, record in rows:
        if not get_name(record) or not first_value(record, CATEGORY_FIELDS):
            warnings.append(f"Row {row_number}: Name and CATEGORÍA are required")
            continue
        record = dict(record)
        record["Country"] = country
        target = store.upsert_target(record, country_hint=country)
        if target is not None and not resolve_permissions(user, target.data, target.country or country).can_edit:
            warnings.append(f"Row {row_number}: not allowed to update '{get_name(target.data) or get_name(record)}'")
            continue
        result = store.upsert(record, country_hint=country, user=user)
        if result.inserted:
            added += 1
        else:
            updated += 1

    record_event(
        s,
        actor=user,
        action="supplier.bulk_upload",
        entity_type="Supplier",
        entity_id=filename,
        metadata={"country": country, "added": added, "updated": updated, "warnings": len(warnings)},
    )
    message = f"{added} record(s) added, {updated} updated."
    if warnings:
        message += f" {len(warnings)} row(s) skipped."
    return {
        "success": added + updated > 0 or not warnings,
        "recordsAdded": added,
        "recordsUpdated": updated,
        "warnings": warnings,
        "message": message,
    }


def _unique_values(records: list[dict], fields: tuple[str, ...]) -> list[str]:
    seen: dict[str, str] = {}
    for r in records:
        v = first_value(r, fields)
        if v:
            seen.setdefault(normalize_text(v), v)
    return sorted(seen.values(), key=str.lower)


def _query_terms(q: str) -> list[str]:
    return [q, *NAME_ALIASES.get(q, [])]


def _matches_query(record: dict, q: str, search_type: str) -> bool:
    name = normalize_text(get_name(record))
    web = normalize_text(get_website(record))
    cat = normalize_text(first_value(record, CATEGORY_FIELDS))
    mgr = normalize_text(first_value(record, MANAGER_FIELDS[:3]))
    terms = _query_terms(q)
    if search_type == "name":
        return q in name
    if search_type == "website":
        return q in web
    if search_type == "categoria":
        return q in cat
    if search_type == "manager":
        return any(t in mgr for t in terms if mgr)
    return (q in name) or (q in web) or (q in cat) or any(t in mgr for t in terms if mgr)


def _matches_filters(record: dict, filters: dict) -> bool:
    buyer = normalize_text(filters.get("buyer"))
    if buyer:
        mgr = normalize_text(first_value(record, MANAGER_FIELDS[:3]))
        if not mgr or not any(t in mgr for t in _query_terms(buyer)):
            return False
    category = normalize_text(filters.get("category"))
    if category and category not in normalize_text(first_value(record, CATEGORY_FIELDS)):
        return False
    account = normalize_text(filters.get("accountStatus"))
    if account and normalize_text(first_value(record, ACCOUNT_STATUS_FIELDS)) != account:
        return False
    status = normalize_text(filters.get("status"))
    if status and normalize_text(first_value(record, STATUS_FIELDS)) != status:
        return False
    return True


def search_records(
    records: list[StoredRecord],
    user: "UserRecord",
    *,
    query: str = "",
    search_type: str = "all",
    filters: dict | None = None,
    sort_by: str = "",
    sort_direction: str = "asc",
    list_all: bool = False,
) -> dict:
    """
    Free-text search plus dropdown filters over one country's records.

    "all", "todos", "tudo" and "*" list everything. With both a query and
    filters the result is their intersection; `list_all` ignores the query
    but keeps the filters, as do the list-everything queries. No query and
    no filters finds nothing. Every result carries `_is_responsible` and the
    caller's edit/delete flags.
    """
    filters = {k: v for k, v in (filters or {}).items() if as_text(v)}
    search_type = search_type if search_type in SEARCH_TYPES else "all"
    q = normalize_text(query)

    rows = []
    for r in records:
        d = r.as_dict()
        perms = resolve_permissions(user, r.data, r.country)
        d["_is_responsible"] = is_responsible(user, r.data)
        d["_can_edit"] = perms.can_edit
        d["_can_delete"] = perms.can_delete
        rows.append(d)

    if list_all or q in ALL_QUERIES:
        results = [d for d in rows if _matches_filters(d, filters)]
    elif q:
        results = [d for d in rows if _matches_query(d, q, search_type) and _matches_filters(d, filters)]
    elif filters:
        results = [d for d in rows if _matches_filters(d, filters)]
    else:
        results = []

    if sort_by in SORT_FIELDS:
        fields = SORT_FIELDS[sort_by]
        results = sorted(
            results,
            key=lambda d: normalize_text(first_value(d, fields)),
            reverse=(sort_direction or "").lower() == "desc",
        )

    datas = [r.data for r in records]
    return {
        "results": results,
        "count": len(results),
        "managersList": _unique_values(datas, MANAGER_FIELDS[:3]),
        "accountStatusList": _unique_values(datas, ACCOUNT_STATUS_FIELDS),
        "categoryList": _unique_values(datas, CATEGORY_FIELDS),
        "statusList": _unique_values(datas, STATUS_FIELDS),
    }


def visible_for_dashboard(records: list[StoredRecord], user: "UserRecord") -> list[StoredRecord]:
    """Admins see every record; others see the ones they are responsible for."""
    if normalize_role(user.role) == "admin":
        return records
    name = (user.name or "").strip().lower()
    if not name:
        return []
    return [r for r in records if name in as_text(r.data.get("Responsable")).lower()]


def month_key(value: Any) -> str:
    d = parse_record_date(value)
    if d is None or not (STATS_YEARS[0] <= d.year <= STATS_YEARS[1]):
        return UNKNOWN_MONTH
    return f"{d.year:04d}-{d.month:02d}"


def dashboard_stats(records: list[StoredRecord], top_month: str | None = None) -> dict:
    category_stats: Counter[str] = Counter()
    responsible_stats: Counter[str] = Counter()
    monthly_stats: Counter[str] = Counter()
    monthly_responsibles: dict[str, Counter[str]] = defaultdict(Counter)

    for r in records:
        category_stats[first_value(r.data, CATEGORY_FIELDS) or UNSPECIFIED] += 1
        responsible = as_text(r.data.get("Responsable")) or UNSPECIFIED
        responsible_stats[responsible] += 1
        key = month_key(r.data.get("DATE"))
        monthly_stats[key] += 1
        monthly_responsibles[key][responsible] += 1

    months = sorted((k for k in monthly_stats if k != UNKNOWN_MONTH), reverse=True)
    selected = top_month if top_month in months else (months[0] if months else "")
    top_managers = monthly_responsibles[selected].most_common(5) if selected else []
    return {
        "totalRecords": len(records),
        "categoryStats": dict(category_stats),
        "responsibleStats": dict(responsible_stats),
        "monthlyStats": dict(monthly_stats),
        "topMonthOptions": months,
        "selectedTopMonth": selected,
        "topManagers": top_managers,
    }


def sort_monthly(monthly_stats: dict, order: str = "period_desc", start: str = "", end: str = "") -> list[tuple[str, int]]:
    entries = list(monthly_stats.items())
    if start or end:
        entries = [
            (k, v)
            for k, v in entries
            if k != UNKNOWN_MONTH and (not start or k >= start) and (not end or k <= end)
        ]
    if order == "period_asc":
        entries.sort(key=lambda e: e[0])
    elif order == "count_asc":
        entries.sort(key=lambda e: e[1])
    elif order == "count_desc":
        entries.sort(key=lambda e: e[1], reverse=True)
    else:
        entries.sort(key=lambda e: e[0], reverse=True)
    return entries


def find_record(store: SupplierStore, row_id: str) -> StoredRecord:
    r = store.get(row_id)
    if r is None:
        raise RecordNotFound(f"Record {row_id} not found")
    return r
