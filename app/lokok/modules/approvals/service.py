from __future__ import annotations

import time
from datetime import datetime
from typing import TYPE_CHECKING

from app.lokok.modules.approvals.store import ApprovalStore
from app.lokok.modules.suppliers.permissions import normalize_role
from app.lokok.modules.suppliers.records import PRIORITY_FIELD, as_text

if TYPE_CHECKING:
    from app.lokok.modules.users.repository import UserRecord

STATUS_PENDING = "pending_approval"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"

REASON_HIGH_PRIORITY = "High Priority (1)"
REASON_MANUAL = "Manual Approval Request"

DEFAULT_CALLER = "Hubert"

OPERATOR_FIELDS = (
    "contactName",
    "phoneNumber",
    "responsibleBuyer",
    "responsibleCaller",
    "dateCalled",
    "result",
    "followUp",
    "whoDoYouTalk",
    "comments",
)


class ApprovalStateError(ValueError):
    pass


def _now() -> str:
    return datetime.utcnow().isoformat()


def _who(user: "UserRecord") -> dict:
    return {"id": user.id, "name": user.name}


def approval_reason(record: dict, priority_details: dict | None) -> str | None:
    """Reason a new record needs approval, or None when it doesn't."""
    if as_text(record.get(PRIORITY_FIELD)) == "1":
        return REASON_HIGH_PRIORITY
    if priority_details and str(priority_details.get("needApproval") or "").strip().lower() == "yes":
        return REASON_MANUAL
    return None


def enqueue(store: ApprovalStore, distributor: dict, user: "UserRecord", reason: str, country: str | None = None) -> dict:
    item = {
        # millisecond timestamp ids, as older approval files use
        "id": str(int(time.time() * 1000)),
        "status": STATUS_PENDING,
        "distributor": distributor,
        "country": country,
        "createdBy": {"id": user.id, "name": user.name, "email": user.email},
        "createdAt": _now(),
        "reason": reason,
        "history": [{"type": "created", "by": _who(user), "reason": reason, "timestamp": _now()}],
    }
    while True:
        try:
            store.get(item["id"])
        except KeyError:
            break
        item["id"] = str(int(item["id"]) + 1)
    return store.add(item)


def approve(
    store: ApprovalStore,
    item_id: str,
    admin: "UserRecord",
    who_will_call: str | None = None,
    call_date: str | None = None,
) -> dict:
    item = store.get(item_id)
    if item.get("status") != STATUS_PENDING:
        raise ApprovalStateError(f"Item {item_id} is {item.get('status')}, not pending approval")
    item["status"] = STATUS_APPROVED
    item["approvedAt"] = _now()
    item["approvedBy"] = _who(admin)
    item["operatorTaskPending"] = True
    item["operatorAssigned"] = (who_will_call or "").strip() or DEFAULT_CALLER
    item["callDate"] = call_date or None
    item.setdefault("history", []).append(
        {
            "type": "approved",
            "by": _who(admin),
            "operatorAssigned": item["operatorAssigned"],
            "callDate": item["callDate"],
            "timestamp": _now(),
        }
    )
    return store.replace(item)


def reject(store: ApprovalStore, item_id: str, admin: "UserRecord", reason: str | None = None) -> dict:
    item = store.get(item_id)
    if item.get("status") != STATUS_PENDING:
        raise ApprovalStateError(f"Item {item_id} is {item.get('status')}, not pending approval")
    item["status"] = STATUS_REJECTED
    item["rejectedAt"] = _now()
    item["rejectedBy"] = _who(admin)
    item["rejectionReason"] = (reason or "").strip()
    item["operatorTaskPending"] = False
    item.setdefault("history", []).append(
        {"type": "rejected", "by": _who(admin), "reason": item["rejectionReason"], "timestamp": _now()}
    )
    return store.replace(item)


def save_operator_task(store: ApprovalStore, item_id: str, form: dict, user: "UserRecord") -> dict:
    item = store.get(item_id)
    if item.get("status") != STATUS_APPROVED:
        raise ApprovalStateError(f"Item {item_id} has not been approved")
    details = {f: (form.get(f) or "").strip() for f in OPERATOR_FIELDS}
    details["responsibleCaller"] = details["responsibleCaller"] or user.name
    details["updatedAt"] = _now()
    details["updatedBy"] = _who(user)
    item["operatorTaskPending"] = False
    item["operatorDetails"] = details
    item.setdefault("history", []).append({"type": "operator_update", "data": details, "timestamp": _now()})
    return store.replace(item)


def pending_approvals(store: ApprovalStore) -> list[dict]:
    return [i for i in store.all() if i.get("status") == STATUS_PENDING]


def operator_tasks(store: ApprovalStore) -> list[dict]:
    return [i for i in store.all() if i.get("status") == STATUS_APPROVED and i.get("operatorTaskPending") is True]


def rejected_for(store: ApprovalStore, user: "UserRecord") -> list[dict]:
    return [
        i
        for i in store.all()
        if i.get("status") == STATUS_REJECTED and str((i.get("createdBy") or {}).get("id")) == str(user.id)
    ]


def can_view_history(user: "UserRecord | None", item: dict) -> bool:
    """Admins, or managers who created the item or are its Responsable."""
    if user is None:
        return False
    role = normalize_role(user.role)
    if role == "admin":
        return True
    if role != "manager":
        return False
    is_author = str((item.get("createdBy") or {}).get("id")) == str(user.id)
    responsible = as_text((item.get("distributor") or {}).get("Responsable")).lower()
    is_responsible = bool(responsible and user.name and responsible == user.name.strip().lower())
    return is_author or is_responsible
