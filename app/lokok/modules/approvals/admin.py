from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, url_for

from app.lokok.audit import record_event
from app.lokok.db import db_session
from app.lokok.modules.approvals import service
from app.lokok.modules.approvals.store import ApprovalNotFound, ApprovalStore, approval_store_from_config
from app.lokok.modules.users.repository import UserRecord
from app.lokok.rbac import require_role

bp = Blueprint("approvals", __name__)


def _current_user() -> UserRecord:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _store() -> ApprovalStore:
    return approval_store_from_config(current_app.config)


def _payload() -> dict:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


@bp.get("/approvals")
@require_role("admin")
def approvals_list():
    store = _store()
    return render_template(
        "approvals/list.html",
        pending=service.pending_approvals(store),
        tasks=service.operator_tasks(store),
    )


@bp.post("/approve/<item_id>")
@require_role("admin")
def approve(item_id: str):
    s = db_session()
    u = _current_user()
    data = _payload()
    try:
        item = service.approve(_store(), item_id, u, data.get("whoWillCall"), data.get("callDate"))
    except ApprovalNotFound:
        return jsonify({"success": False, "message": "Approval item not found"}), 404
    except service.ApprovalStateError as e:
        return jsonify({"success": False, "message": str(e)}), 409
    record_event(
        s,
        actor=u,
        action="approval.approve",
        entity_type="Approval",
        entity_id=item_id,
        metadata={"operator": item["operatorAssigned"], "callDate": item["callDate"]},
    )
    s.commit()
    return jsonify({"success": True, "message": f"Approved; assigned to {item['operatorAssigned']}"})


@bp.post("/reject/<item_id>")
@require_role("admin")
def reject(item_id: str):
    s = db_session()
    u = _current_user()
    data = _payload()
    try:
        service.reject(_store(), item_id, u, data.get("reason"))
    except ApprovalNotFound:
        return jsonify({"success": False, "message": "Approval item not found"}), 404
    except service.ApprovalStateError as e:
        return jsonify({"success": False, "message": str(e)}), 409
    record_event(s, actor=u, action="approval.reject", entity_type="Approval", entity_id=item_id, reason=data.get("reason"))
    s.commit()
    return jsonify({"success": True, "message": "Rejected"})


@bp.get("/operator-task/<item_id>")
@require_role("admin", "operator")
def operator_task_get(item_id: str):
    try:
        item = _store().get(item_id)
    except ApprovalNotFound:
        abort(404)
    return render_template("approvals/operator_task.html", item=item, fields=service.OPERATOR_FIELDS)


@bp.post("/operator-task/<item_id>")
@require_role("admin", "operator")
def operator_task_post(item_id: str):
    s = db_session()
    u = _current_user()
    try:
        item = service.save_operator_task(_store(), item_id, request.form, u)
    except ApprovalNotFound:
        abort(404)
    except service.ApprovalStateError as e:
        flash(str(e), "danger")
        return redirect(url_for("approvals.operator_task_get", item_id=item_id))
    record_event(
        s,
        actor=u,
        action="approval.operator_update",
        entity_type="Approval",
        entity_id=item_id,
        metadata={"result": item["operatorDetails"].get("result")},
    )
    s.commit()
    flash("Operator details saved.", "success")
    return redirect(url_for("suppliers.dashboard"))


@bp.get("/supplier-history/<item_id>")
@require_role("admin", "manager")
def supplier_history(item_id: str):
    u = _current_user()
    try:
        item = _store().get(item_id)
    except ApprovalNotFound:
        abort(404)
    if not service.can_view_history(u, item):
        g.missing_role = "author or responsible manager"
        abort(403)
    return render_template("approvals/history.html", item=item)
