import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, flash, g, jsonify, redirect, render_template, request, session, url_for
from sqlalchemy import inspect as sa_inspect

from app.lokok.admin import bp as admin_bp
from app.lokok.auth import bp as auth_bp, current_country, load_current_user
from app.lokok.config import load_config
from app.lokok.countries import COUNTRY_LABELS
from app.lokok.db import init_db, teardown_db_session
from app.lokok.modules.approvals.admin import bp as approvals_bp
from app.lokok.modules.suppliers.admin import bp as suppliers_bp
from app.lokok.modules.users.admin import bp as users_bp
from app.lokok.routes import bp as routes_bp
from app.lokok.security import ensure_csrf_token, validate_csrf


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_user() -> dict:
        from app.lokok.rbac import user_has_role

        user = getattr(g, "current_user", None)

        def has_role(*roles: str) -> bool:
            return user_has_role(user, *roles)

        return {
            "current_user": user,
            "current_country": current_country(user) if user else None,
            "country_labels": COUNTRY_LABELS,
            "has_role": has_role,
        }

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # login/logout carry their own checks
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                if request.path.startswith("/api/") or request.is_json:
                    return jsonify({"success": False, "message": "CSRF token missing or invalid."}), 400
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    if app.config.get("SUPPLIER_BACKEND") not in ("excel", "jsonb"):
        raise RuntimeError(f"SUPPLIER_BACKEND must be 'excel' or 'jsonb', got {app.config.get('SUPPLIER_BACKEND')!r}.")
    if app.config.get("USER_BACKEND") not in ("db", "json"):
        raise RuntimeError(f"USER_BACKEND must be 'db' or 'json', got {app.config.get('USER_BACKEND')!r}.")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(suppliers_bp)
    app.register_blueprint(approvals_bp)
    app.register_blueprint(users_bp)

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    # Migration health: detect drift between code expectations and DB schema.
    app.config.setdefault("_schema_health_ok", True)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> None:
        missing: list[str] = []
        try:
            insp = sa_inspect(app.extensions["sqlalchemy_engine"])
            for table in ("users", "audit_events", "suppliers_json"):
                if not insp.has_table(table):
                    missing.append(f"{table} (table)")
            if insp.has_table("audit_events"):
                cols = {c["name"] for c in insp.get_columns("audit_events")}
                if "client_ip" not in cols:
                    missing.append("audit_events.client_ip")
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)

        if missing:
            app.config["_schema_health_missing"] = missing
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))
        app.config["_schema_health_ok"] = not missing

    _run_schema_health_check()

    @app.before_request
    def _schema_health_guardrail():
        if app.config.get("_schema_health_ok"):
            return None
        if request.path.startswith("/admin") and getattr(g, "current_user", None):
            return render_template("errors/schema_out_of_date.html", missing=app.config.get("_schema_health_missing") or []), 500
        return None

    def _wants_json() -> bool:
        return request.path.startswith("/api/") or request.is_json

    @app.errorhandler(500)
    def _err_500(e):
        # Ensure stack trace shows in the platform logs.
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        if _wants_json():
            return jsonify({"success": False, "message": "Internal server error"}), 500
        return render_template("errors/500.html"), 500

    @app.errorhandler(404)
    def _err_404(e):
        if _wants_json():
            return jsonify({"success": False, "message": "Not found"}), 404
        return render_template("errors/404.html"), 404

    @app.errorhandler(403)
    def _err_403(e):
        missing = getattr(g, "missing_role", None)
        if missing:
            app.logger.warning("Forbidden: missing_role=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_role=missing), 403

    @app.errorhandler(413)
    def _err_413(e):
        if _wants_json() or request.path.endswith("/bulk-upload"):
            return jsonify({"success": False, "message": "File too large. Maximum size is 10MB."}), 413
        flash("File too large. Maximum size is 10MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("suppliers.dashboard")), 302

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
