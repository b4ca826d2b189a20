from __future__ import annotations

import io
import zipfile
from datetime import date, datetime, time, timedelta

from flask import Blueprint, current_app, flash, g, jsonify, redirect, render_template, request, send_file, session, url_for
from openpyxl.utils.exceptions import InvalidFileException
from werkzeug.utils import secure_filename

from app.lokok.audit import record_event
from app.lokok.auth import current_country
from app.lokok.countries import COUNTRY_LABELS, SUPPORTED_COUNTRIES, normalize_country
from app.lokok.db import db_session
from app.lokok.modules.approvals import service as approvals
from app.lokok.modules.approvals.store import ApprovalStore, approval_store_from_config
from app.lokok.modules.suppliers.permissions import normalize_role
from app.lokok.modules.suppliers.service import (
    UPLOAD_MAX_BYTES,
    PermissionDenied,
    add_record,
    build_record_from_form,
    bulk_upload,
    dashboard_stats,
    delete_record,
    edit_record,
    find_record,
    parse_priority_details,
    search_records,
    sort_monthly,
    validate_record_payload,
    visible_for_dashboard,
)
from app.lokok.modules.suppliers.store import (
    RecordNotFound,
    SupplierStore,
    SupplierStoreError,
    supplier_store_from_config,
)
from app.lokok.modules.suppliers.workbook import build_export, build_template, parse_upload
from app.lokok.modules.users.repository import UserRecord
from app.lokok.rbac import require_login, require_role

bp = Blueprint("suppliers", __name__)

PRIORITY_SESSION_KEY = "priority_details"


def _current_user() -> UserRecord:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _store() -> SupplierStore:
    s = db_session() if current_app.config.get("SUPPLIER_BACKEND") == "jsonb" else None
    return supplier_store_from_config(current_app.config, s)


def _approvals() -> ApprovalStore:
    return approval_store_from_config(current_app.config)


def _parse_date(value: str) -> date | None:
    value = (value or "").strip()
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return None


def _json_error(message: str, status: int):
    return jsonify({"success": False, "message": message}), status


def _request_country(u: UserRecord, raw) -> str | None:
    """Country named by the request, if the user may work in it. Falls back to the session country."""
    if not raw:
        return current_country(u)
    code = normalize_country(raw)
    if not code:
        return None
    if normalize_role(u.role) == "admin" or code in u.allowed_countries:
        return code
    return None


def _load_records(country: str):
    try:
        return _store().list_records(country)
    except SupplierStoreError as e:
        current_app.logger.exception("Cannot load suppliers (country=%s)", country)
        flash(f"Could not load supplier data: {e}", "danger")
        return []


# ---------- Country ----------
@bp.post("/switch-country")
@require_login
def switch_country():
    u = _current_user()
    code = normalize_country(request.form.get("country") or request.args.get("country"))
    if not code or code not in u.allowed_countries:
        flash("You do not have access to that country.", "danger")
    else:
        session["selected_country"] = code
        flash(f"Now working in {COUNTRY_LABELS.get(code, code)}.", "success")
    return redirect(url_for("suppliers.dashboard"))


# ---------- Dashboard ----------
@bp.get("/dashboard")
@require_login
def dashboard():
    u = _current_user()
    country = current_country(u)
    records = visible_for_dashboard(_load_records(country), u)
    stats = dashboard_stats(records, top_month=(request.args.get("topMonth") or "").strip() or None)

    monthly_sort = (request.args.get("monthlySort") or "period_desc").strip()
    monthly_start = (request.args.get("monthlyStart") or "").strip()
    monthly_end = (request.args.get("monthlyEnd") or "").strip()
    monthly = sort_monthly(stats["monthlyStats"], monthly_sort, monthly_start, monthly_end)

    recent_start = _parse_date(request.args.get("recentStart") or "")
    recent_end = _parse_date(request.args.get("recentEnd") or "")
    recent = [r for r in records if r.created_at]
    if recent_start:
        recent = [r for r in recent if r.created_at >= datetime.combine(recent_start, time.min)]
    if recent_end:
        # inclusive end-date (treat as whole day)
        recent = [r for r in recent if r.created_at < datetime.combine(recent_end + timedelta(days=1), time.min)]
    recent.sort(key=lambda r: r.created_at, reverse=True)

    role = normalize_role(u.role)
    astore = _approvals()
    pending = approvals.pending_approvals(astore) if role == "admin" else []
    tasks = approvals.operator_tasks(astore) if role in ("admin", "operator") else []
    my_rejected = approvals.rejected_for(astore, u)

    return render_template(
        "dashboard.html",
        country=country,
        stats=stats,
        monthly=monthly,
        monthly_sort=monthly_sort,
        monthly_start=monthly_start,
        monthly_end=monthly_end,
        recent=recent[:10],
        recent_start=(request.args.get("recentStart") or "").strip(),
        recent_end=(request.args.get("recentEnd") or "").strip(),
        pending=pending,
        tasks=tasks,
        my_rejected=my_rejected,
    )


# ---------- Search ----------
def _search_payload(u: UserRecord) -> dict:
    args = request.args
    country = current_country(u)
    records = _load_records(country)
    query = (args.get("query") or args.get("q") or "").strip()
    filters = {
        "accountStatus": (args.get("accountStatus") or "").strip(),
        "buyer": (args.get("buyer") or "").strip(),
        "category": (args.get("category") or "").strip(),
        "status": (args.get("status") or "").strip(),
    }
    list_all = args.get("listAll") == "1" or args.get("list") == "all"
    # an empty submitted form means "show everything"
    if args.get("submitted") == "1" and not query and not any(filters.values()):
        list_all = True
    payload = search_records(
        records,
        u,
        query=query,
        search_type=(args.get("type") or "all").strip(),
        filters=filters,
        sort_by=(args.get("sortBy") or "").strip(),
        sort_direction=(args.get("sortDirection") or "asc").strip(),
        list_all=list_all,
    )
    payload.update({"query": query, "filters": filters, "country": country})
    return payload


@bp.get("/search")
@require_login
def search():
    u = _current_user()
    payload = _search_payload(u)
    if (request.args.get("query") or request.args.get("submitted")) and not payload["results"]:
        flash("No records found.", "info")
    return render_template("search.html", **payload)


@bp.get("/api/search")
@require_login
def api_search():
    u = _current_user()
    payload = _search_payload(u)
    return jsonify({"success": True, **payload})


# ---------- New record ----------
@bp.get("/records/new")
@require_role("admin", "manager")
def records_new_get():
    return render_template(
        "records/new.html",
        country=current_country(),
        priority_details=session.get(PRIORITY_SESSION_KEY) or {},
    )


@bp.post("/records/new")
@require_role("admin", "manager")
def records_new_post():
    s = db_session()
    u = _current_user()
    country = _request_country(u, request.form.get("country"))
    if not country:
        flash("You do not have access to that country.", "danger")
        return redirect(url_for("suppliers.records_new_get"))

    priority_details = session.get(PRIORITY_SESSION_KEY)
    errors = validate_record_payload(build_record_from_form(request.form, u, country))
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("suppliers.records_new_get"))

    try:
        stored, item = add_record(s, _store(), _approvals(), request.form, u, country, priority_details)
        s.commit()
    except PermissionDenied as e:
        flash(str(e), "danger")
        return redirect(url_for("suppliers.dashboard"))
    except SupplierStoreError as e:
        s.rollback()
        current_app.logger.exception("Add record failed")
        flash(f"Could not save the record: {e}", "danger")
        return redirect(url_for("suppliers.records_new_get"))

    session.pop(PRIORITY_SESSION_KEY, None)
    if item:
        flash("Record saved and sent for approval.", "success")
    else:
        flash("Record saved.", "success")
    return redirect(url_for("suppliers.dashboard"))


@bp.get("/records/priority-details")
@require_role("admin", "manager")
def priority_details_get():
    return render_template("records/priority_details.html", details=session.get(PRIORITY_SESSION_KEY) or {})


@bp.post("/records/priority-details")
@require_role("admin", "manager")
def priority_details_post():
    session[PRIORITY_SESSION_KEY] = parse_priority_details(request.form)
    flash("Priority details saved. Complete the record to submit.", "success")
    return redirect(url_for("suppliers.records_new_get"))


# ---------- Edit / delete ----------
def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@bp.get("/records/<path:row_id>/edit")
@require_role("admin", "manager")
def records_edit_get(row_id: str):
    try:
        record = find_record(_store(), row_id)
    except RecordNotFound:
        flash("Record not found.", "danger")
        return redirect(url_for("suppliers.search"))
    except SupplierStoreError as e:
        flash(f"Could not load the record: {e}", "danger")
        return redirect(url_for("suppliers.search"))
    return render_template("records/edit.html", record=record)


@bp.post("/api/records/edit")
@require_role("admin", "manager")
def api_records_edit():
    s = db_session()
    u = _current_user()
    body = _json_body()
    old_record = body.get("oldRecord") or body.get("record") or {}
    changes = body.get("changes") or body.get("newRecord") or {}
    row_id = body.get("rowId") or old_record.get("_id")
    if not isinstance(old_record, dict) or not isinstance(changes, dict) or not (old_record or row_id):
        return _json_error("oldRecord and changes are required", 400)
    country = _request_country(u, body.get("country") or old_record.get("_countryCode"))
    if not country:
        return _json_error("You do not have access to that country", 403)

    try:
        count = edit_record(s, _store(), u, old_record, changes, country=country, row_id=row_id, reason=body.get("reason"))
        s.commit()
    except PermissionDenied as e:
        return _json_error(str(e), 403)
    except RecordNotFound:
        s.rollback()
        return _json_error("Record not found", 404)
    except SupplierStoreError as e:
        s.rollback()
        current_app.logger.exception("Edit record failed (request_id=%s)", getattr(g, "request_id", None))
        return _json_error(f"Could not save changes: {e}", 500)
    return jsonify({"success": True, "message": "Record updated", "updated": count})


@bp.post("/api/records/delete")
@require_role("admin", "manager")
def api_records_delete():
    s = db_session()
    u = _current_user()
    body = _json_body()
    record = body.get("record") or body.get("oldRecord") or {}
    row_id = body.get("rowId") or (record.get("_id") if isinstance(record, dict) else None)
    if not isinstance(record, dict) or not (record or row_id):
        return _json_error("record is required", 400)
    country = _request_country(u, body.get("country") or record.get("_countryCode"))
    if not country:
        return _json_error("You do not have access to that country", 403)

    try:
        count = delete_record(s, _store(), u, record, country=country, row_id=row_id)
        s.commit()
    except PermissionDenied as e:
        return _json_error(str(e), 403)
    except RecordNotFound:
        s.rollback()
        return _json_error("Record not found", 404)
    except SupplierStoreError as e:
        s.rollback()
        current_app.logger.exception("Delete record failed (request_id=%s)", getattr(g, "request_id", None))
        return _json_error(f"Could not delete the record: {e}", 500)
    return jsonify({"success": True, "message": "Record deleted", "deleted": count})


# ---------- Bulk upload ----------
@bp.get("/records/bulk-upload")
@require_role("admin", "manager")
def bulk_upload_get():
    return render_template("records/bulk_upload.html", country=current_country())


@bp.post("/records/bulk-upload")
@require_role("admin", "manager")
def bulk_upload_post():
    s = db_session()
    u = _current_user()
    f = request.files.get("excelFile")
    if not f or not f.filename:
        return _json_error("No file uploaded", 400)
    filename = secure_filename(f.filename)
    if not filename.lower().endswith(".xlsx"):
        return _json_error("Only .xlsx files are accepted", 400)
    data = f.read()
    if len(data) > UPLOAD_MAX_BYTES:
        return _json_error("File too large. Maximum size is 10MB.", 400)

    country = _request_country(u, request.form.get("country"))
    if not country:
        return _json_error("You do not have access to that country", 403)

    try:
        rows = parse_upload(io.BytesIO(data))
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError) as e:
        current_app.logger.warning("Unreadable upload %s: %s", filename, e)
        return _json_error("Could not read the spreadsheet. Use the template.", 400)
    if not rows:
        return _json_error("The spreadsheet has no data rows", 400)

    try:
        result = bulk_upload(s, _store(), rows, u, country, filename=filename)
        s.commit()
    except SupplierStoreError as e:
        s.rollback()
        current_app.logger.exception("Bulk upload failed (%s)", filename)
        return _json_error(f"Upload failed: {e}", 500)
    return jsonify(result), (200 if result["success"] else 400)


@bp.get("/records/template")
@require_login
def download_template():
    return send_file(
        io.BytesIO(build_template()),
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        as_attachment=True,
        download_name="lokok-template.xlsx",
        max_age=0,
    )


# ---------- Admin ----------
@bp.get("/admin/export-excel")
@require_role("admin")
def export_excel():
    s = db_session()
    u = _current_user()
    code = normalize_country(request.args.get("country")) or current_country(u)
    if code not in SUPPORTED_COUNTRIES:
        flash("Unknown country.", "danger")
        return redirect(url_for("suppliers.dashboard"))
    try:
        rows = [r.data for r in _store().list_records(code)]
    except SupplierStoreError as e:
        current_app.logger.exception("Export failed (country=%s)", code)
        flash(f"Export failed: {e}", "danger")
        return redirect(url_for("suppliers.dashboard"))

    data = build_export(rows, sheet_title=COUNTRY_LABELS.get(code, code))
    record_event(s, actor=u, action="supplier.export", entity_type="Supplier", entity_id=code, metadata={"rows": len(rows)})
    s.commit()
    filename = f"lokok-export-{code}-{date.today():%Y%m%d}.xlsx"
    return send_file(
        io.BytesIO(data),
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        as_attachment=True,
        download_name=filename,
        max_age=0,
    )


@bp.post("/admin/dedupe")
@require_role("admin")
def dedupe():
    s = db_session()
    u = _current_user()
    try:
        result = _store().deduplicate()
        record_event(s, actor=u, action="supplier.dedupe", entity_type="Supplier", metadata=result.as_dict())
        s.commit()
    except SupplierStoreError as e:
        s.rollback()
        current_app.logger.exception("Deduplication failed")
        return _json_error(f"Deduplication failed: {e}", 500)
    return jsonify({"success": True, **result.as_dict()})
