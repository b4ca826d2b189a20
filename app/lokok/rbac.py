from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, jsonify, redirect, request, url_for

from app.lokok.modules.suppliers.permissions import normalize_role
from app.lokok.modules.users.repository import UserRecord


def user_has_role(user: UserRecord | None, *roles: str) -> bool:
    if not user or not user.is_active:
        return False
    return normalize_role(user.role) in roles


def _wants_json() -> bool:
    return request.path.startswith("/api/") or request.is_json


def _login_redirect():
    if _wants_json():
        return jsonify({"success": False, "message": "Not authenticated"}), 401
    nxt = request.full_path or request.path
    # Avoid trailing '?' from full_path when there is no query string.
    if nxt.endswith("?"):
        nxt = nxt[:-1]
    return redirect(url_for("auth.login_get", next=nxt))


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: UserRecord | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return _login_redirect()
        return fn(*args, **kwargs)

    return wrapped


def require_role(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: UserRecord | None = getattr(g, "current_user", None)
            # Unauthenticated → redirect to login
            if not user or not user.is_active:
                return _login_redirect()
            # Authenticated but wrong role → 403
            if not user_has_role(user, *roles):
                g.missing_role = "/".join(roles)
                if _wants_json():
                    return jsonify({"success": False, "message": "Access denied"}), 403
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
