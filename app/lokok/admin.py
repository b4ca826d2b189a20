import csv
import io
import os
from datetime import date, datetime, time, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, send_file, url_for

from app.lokok.db import db_session
from app.lokok.models import AuditEvent
from app.lokok.modules.users.repository import UserRecord
from app.lokok.rbac import require_role

bp = Blueprint("admin", __name__)

LOG_LIMIT = 1000
LOG_TYPES = ("all", "access", "activity")
CSV_HEADER = ["Date/Time", "Type", "User", "Action", "Details", "IP"]


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def _current_user() -> UserRecord:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def log_type(action: str | None) -> str:
    """Login/logout events are "access"; everything else is "activity"."""
    return "access" if (action or "").startswith("auth.") else "activity"


@bp.get("/")
@require_role("admin")
def index():
    from sqlalchemy import text

    s = db_session()
    status = {
        "env": (current_app.config.get("ENV") or "development").strip().lower(),
        "db_connected": False,
        "db_error": None,
        "supplier_backend": current_app.config.get("SUPPLIER_BACKEND"),
        "user_backend": current_app.config.get("USER_BACKEND"),
        "spreadsheet_remote": bool(current_app.config.get("GOOGLE_DRIVE_FILE_ID")),
        "storage_backend": None,
        "storage_configured": False,
        "storage_error": None,
    }

    # DB connectivity (lightweight)
    try:
        s.execute(text("SELECT 1"))
        status["db_connected"] = True
    except Exception as e:
        status["db_error"] = str(e)

    # Storage config (no network calls)
    storage_backend = os.environ.get("STORAGE_BACKEND", "local").strip().lower()
    status["storage_backend"] = storage_backend or "local"
    if storage_backend == "s3":
        missing = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not os.environ.get(k)]
        status["storage_configured"] = not missing
        if missing:
            status["storage_error"] = f"Missing: {', '.join(missing)}"
    else:
        status["storage_configured"] = True

    return render_template("admin/index.html", system_status=status)


@bp.get("/logs")
@require_role("admin")
def logs():
    """
    Activity log (last 1000 events) with filters:
    - logType: all / access (login, logout) / activity (everything else)
    - userFilter (email or user id, contains)
    - startDate / endDate (YYYY-MM-DD, end date inclusive)
    `?format=csv` (or `?export=csv`) downloads the filtered rows.
    """
    s = db_session()
    kind = (request.args.get("logType") or "all").strip().lower()
    if kind not in LOG_TYPES:
        kind = "all"
    user_filter = (request.args.get("userFilter") or "").strip()
    start = _parse_date(request.args.get("startDate") or "")
    end = _parse_date(request.args.get("endDate") or "")

    if (request.args.get("startDate") or "").strip() and not start:
        flash("startDate must be YYYY-MM-DD", "danger")
    if (request.args.get("endDate") or "").strip() and not end:
        flash("endDate must be YYYY-MM-DD", "danger")

    q = s.query(AuditEvent)
    if kind == "access":
        q = q.filter(AuditEvent.action.like("auth.%"))
    elif kind == "activity":
        q = q.filter(~AuditEvent.action.like("auth.%"))
    if user_filter:
        like = f"%{user_filter.lower()}%"
        q = q.filter((AuditEvent.actor_user_email.like(like)) | (AuditEvent.actor_user_id.like(like)))
    if start:
        q = q.filter(AuditEvent.created_at >= datetime.combine(start, time.min))
    if end:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(end + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(LOG_LIMIT).all()

    if "csv" in (request.args.get("format"), request.args.get("export")):
        out = io.StringIO()
        w = csv.writer(out)
        w.writerow(CSV_HEADER)
        for e in events:
            w.writerow(
                [
                    e.created_at.strftime("%Y-%m-%d %H:%M:%S") if e.created_at else "",
                    log_type(e.action),
                    e.actor_user_email or e.actor_user_id or "",
                    e.action,
                    e.metadata_json or e.reason or "",
                    e.client_ip or "",
                ]
            )
        return send_file(
            io.BytesIO(out.getvalue().encode("utf-8")),
            mimetype="text/csv",
            as_attachment=True,
            download_name="logs_sistema.csv",
            max_age=0,
        )

    return render_template(
        "admin/logs.html",
        events=events,
        log_type=log_type,
        kind=kind,
        user_filter=user_filter,
        start_date=(request.args.get("startDate") or "").strip(),
        end_date=(request.args.get("endDate") or "").strip(),
    )


@bp.get("/login")
def login_redirect():
    return redirect(url_for("auth.login_get"))
