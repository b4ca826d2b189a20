from __future__ import annotations

import json

from flask import Blueprint, g, jsonify, render_template, request

from app.lokok.audit import record_event
from app.lokok.auth import users_repo
from app.lokok.countries import SUPPORTED_COUNTRIES
from app.lokok.db import db_session
from app.lokok.modules.suppliers.permissions import ROLES
from app.lokok.modules.users.repository import DuplicateEmail, UserRecord, UserRepositoryError
from app.lokok.rbac import require_role

bp = Blueprint("users", __name__)


def _current_user() -> UserRecord:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload() -> dict:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def parse_allowed_countries(raw) -> list[str] | None:
    """Accepts a list, a JSON array string or a comma-separated string."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, list):
        return [str(c) for c in raw]
    text = str(raw).strip()
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [str(c) for c in parsed]
    return [c.strip() for c in text.split(",") if c.strip()]


def _error(message: str, status: int = 400):
    return jsonify({"success": False, "message": message}), status


@bp.get("/users")
@require_role("admin")
def users_list():
    users = users_repo().list()
    return render_template("users/list.html", users=users, roles=ROLES, countries=SUPPORTED_COUNTRIES)


@bp.get("/api/users")
@require_role("admin")
def api_users_list():
    return jsonify({"success": True, "users": [u.public_dict() for u in users_repo().list()]})


@bp.post("/api/users")
@require_role("admin")
def api_users_create():
    s = db_session()
    admin = _current_user()
    data = _payload()
    name = (data.get("name") or "").strip()
    email = (data.get("email") or "").strip()
    password = data.get("password") or ""
    role = (data.get("role") or "").strip()
    if not (name and email and password and role):
        return _error("Name, email, password and role are required")

    try:
        user = users_repo().create(
            email=email,
            password=password,
            role=role,
            name=name,
            allowed_countries=parse_allowed_countries(data.get("allowedCountries")),
            created_by=admin.id,
        )
    except DuplicateEmail:
        return _error("Email is already in use")
    record_event(s, actor=admin, action="user.create", entity_type="User", entity_id=user.id, metadata={"email": user.email, "role": user.role})
    s.commit()
    return jsonify({"success": True, "message": "User created", "user": user.public_dict()}), 201


@bp.put("/api/users/<user_id>")
@require_role("admin")
def api_users_update(user_id: str):
    s = db_session()
    admin = _current_user()
    data = _payload()
    name = (data.get("name") or "").strip()
    email = (data.get("email") or "").strip()
    role = (data.get("role") or "").strip()
    if not (name and email and role):
        return _error("Name, email and role are required")

    changes: dict = {"name": name, "email": email, "role": role}
    countries = parse_allowed_countries(data.get("allowedCountries"))
    if countries is not None:
        changes["allowed_countries"] = countries
    if data.get("password"):
        changes["password"] = data["password"]
    if "isActive" in data:
        changes["is_active"] = data["isActive"] not in (False, "false", "0", 0)

    try:
        user = users_repo().update(user_id, changes)
    except DuplicateEmail:
        return _error("This email is already in use by another user")
    except UserRepositoryError:
        return _error("User not found", 404)
    record_event(
        s,
        actor=admin,
        action="user.update",
        entity_type="User",
        entity_id=user.id,
        metadata={k: v for k, v in changes.items() if k != "password"},
    )
    s.commit()
    return jsonify({"success": True, "message": "User updated", "user": user.public_dict()})


@bp.delete("/api/users/<user_id>")
@require_role("admin")
def api_users_delete(user_id: str):
    s = db_session()
    admin = _current_user()
    if str(user_id) == str(admin.id):
        return _error("You cannot delete your own account")
    if not users_repo().delete(user_id):
        return _error("User not found", 404)
    record_event(s, actor=admin, action="user.delete", entity_type="User", entity_id=str(user_id))
    s.commit()
    return jsonify({"success": True, "message": "User deleted"})
