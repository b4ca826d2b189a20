"""
Per-record edit/delete permissions.

Admins can change anything. Managers can change a record when any of these hold:

- the responsible-person field is blank, or mentions them (email, full name,
  or any name token of three or more letters)
- the record's country is one of their allowed countries
- they created it

Operators and plain users never edit or delete records.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from app.lokok.modules.suppliers.records import as_text, get_country, unwrap

if TYPE_CHECKING:
    from app.lokok.modules.users.repository import UserRecord


MANAGER_FIELDS = (
    "Responsable",
    "Manager",
    "Buyer",
    "Responsable Buyer",
    "Responsible Buyer",
    "Buyer Responsable",
    "Buyer Responsible",
    "Assigned",
    "Assigned To",
    "Assigned_To",
    "AssignedTo",
    "Purchase Manager",
    "Purchasing Manager",
    "Purchasing Buyer",
    "Buyer Manager",
)
CREATOR_FIELDS = ("Created_By_User_Name", "Created_By_User_Email")

ROLE_ALIASES = {
    "gerente": "manager",
    "administrador": "admin",
    "operador": "operator",
}
ROLES = ("admin", "manager", "operator", "user")


def normalize_role(value: object) -> str:
    r = str(value or "").strip().lower()
    r = ROLE_ALIASES.get(r, r)
    return r if r in ROLES else "user"


@dataclass(frozen=True)
class RecordPermissions:
    can_edit: bool
    can_delete: bool


def manager_value(record: dict | None) -> str:
    """
    Text naming whoever is responsible for the record.
    First non-blank manager-like column wins; otherwise every candidate
    (creator columns included) joined with " | ".
    """
    r = unwrap(record)
    for f in MANAGER_FIELDS:
        v = as_text(r.get(f))
        if v:
            return v
    parts = [as_text(r.get(f)) for f in MANAGER_FIELDS + CREATOR_FIELDS]
    return " | ".join(p for p in parts if p)


def mentions_user(text: str, user: "UserRecord") -> bool:
    hay = (text or "").lower()
    if not hay:
        return False
    email = (user.email or "").strip().lower()
    if email and email in hay:
        return True
    name = (user.name or "").strip().lower()
    if name and name in hay:
        return True
    return any(len(tok) >= 3 and tok in hay for tok in name.split())


def is_creator(record: dict | None, user: "UserRecord") -> bool:
    r = unwrap(record)
    creator_id = as_text(r.get("Created_By_User_ID"))
    if creator_id and creator_id == str(user.id):
        return True
    creator_name = as_text(r.get("Created_By_User_Name")).lower()
    name = (user.name or "").strip().lower()
    if creator_name and name and name in creator_name:
        return True
    creator_email = as_text(r.get("Created_By_User_Email")).lower()
    email = (user.email or "").strip().lower()
    return bool(creator_email and email and creator_email == email)


def _manager_allowed(user: "UserRecord", record: dict | None, country: str | None) -> bool:
    responsible = manager_value(record)
    if not responsible or mentions_user(responsible, user):
        return True
    code = get_country(record) or country
    if code and code in (user.allowed_countries or []):
        return True
    return is_creator(record, user)


def resolve_permissions(user: "UserRecord | None", record: dict | None, country: str | None = None) -> RecordPermissions:
    """
    Inactive accounts get nothing, admins included. They cannot log in, so
    this only matters for scripts such as the permissions report.
    """
    if user is None or not user.is_active:
        return RecordPermissions(False, False)
    role = normalize_role(user.role)
    if role == "admin":
        return RecordPermissions(True, True)
    if role == "manager":
        allowed = _manager_allowed(user, record, country)
        return RecordPermissions(allowed, allowed)
    return RecordPermissions(False, False)


def can_edit(user: "UserRecord | None", record: dict | None, country: str | None = None) -> bool:
    return resolve_permissions(user, record, country).can_edit


def can_delete(user: "UserRecord | None", record: dict | None, country: str | None = None) -> bool:
    return resolve_permissions(user, record, country).can_delete


def is_responsible(user: "UserRecord | None", record: dict | None) -> bool:
    """Used to flag search results the user is responsible for."""
    if user is None:
        return False
    return mentions_user(manager_value(record), user)
