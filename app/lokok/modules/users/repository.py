"""
User storage.

Routes and services talk to a UserRepository and never to the storage behind
it. Two implementations exist: the `users` table (default) and a JSON file
kept for deployments that still run off data/users.json.
"""
from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import bcrypt
from werkzeug.security import check_password_hash, generate_password_hash

from app.lokok.countries import default_allowed_countries, normalize_allowed_countries
from app.lokok.modules.suppliers.permissions import normalize_role

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# bcrypt hashes from older users.json files and users rows; rehashed on first good login.
LEGACY_HASH_PREFIXES = ("$2a$", "$2b$", "$2y$")


class UserRepositoryError(RuntimeError):
    pass


class DuplicateEmail(UserRepositoryError):
    pass


@dataclass
class UserRecord:
    id: str
    email: str
    role: str
    name: str
    allowed_countries: list[str] = field(default_factory=list)
    is_active: bool = True
    created_by: str | None = None
    created_at: datetime | None = None
    password_hash: str = field(default="", repr=False)

    def public_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "name": self.name,
            "allowedCountries": list(self.allowed_countries),
            "isActive": self.is_active,
            "createdBy": self.created_by,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def _clean_countries(role: str, countries) -> list[str]:
    cleaned = normalize_allowed_countries(countries)
    return cleaned or default_allowed_countries(role)


class UserRepository:
    def get(self, user_id: str) -> UserRecord | None:
        raise NotImplementedError

    def get_by_email(self, email: str) -> UserRecord | None:
        raise NotImplementedError

    def list(self) -> list[UserRecord]:
        raise NotImplementedError

    def create(
        self,
        *,
        email: str,
        password: str,
        role: str,
        name: str,
        allowed_countries: list[str] | None = None,
        created_by: str | None = None,
    ) -> UserRecord:
        raise NotImplementedError

    def update(self, user_id: str, changes: dict) -> UserRecord:
        raise NotImplementedError

    def delete(self, user_id: str) -> bool:
        raise NotImplementedError

    def verify_password(self, email: str, password: str) -> UserRecord | None:
        user = self.get_by_email(email)
        if not user or not user.is_active or not user.password_hash:
            return None
        if user.password_hash.startswith(LEGACY_HASH_PREFIXES):
            return self._verify_legacy(user, password)
        try:
            ok = check_password_hash(user.password_hash, password)
        except ValueError:
            # Hash from an unsupported scheme; the user needs a password reset.
            logger.warning("Unsupported password hash for user %s", user.id)
            return None
        return user if ok else None

    def _verify_legacy(self, user: UserRecord, password: str) -> UserRecord | None:
        try:
            ok = bcrypt.checkpw(password.encode("utf-8"), user.password_hash.encode("utf-8"))
        except ValueError:
            logger.warning("Malformed bcrypt hash for user %s", user.id)
            return None
        if not ok:
            return None
        logger.info("Rehashing legacy bcrypt password for user %s", user.id)
        return self.update(user.id, {"password": password})


class DbUserRepository(UserRepository):
    """Backed by the `users` table. The caller's session owns the transaction."""

    def __init__(self, s: "Session"):
        self.s = s

    @staticmethod
    def _to_record(u) -> UserRecord:
        return UserRecord(
            id=str(u.id),
            email=u.email,
            role=normalize_role(u.role),
            name=u.name or "",
            allowed_countries=_clean_countries(u.role, u.allowed_countries),
            is_active=bool(u.is_active),
            created_by=u.created_by,
            created_at=u.created_at,
            password_hash=u.password_hash,
        )

    def _row(self, user_id: str):
        from app.lokok.models import User

        try:
            pk = int(user_id)
        except (TypeError, ValueError):
            return None
        return self.s.get(User, pk)

    def get(self, user_id: str) -> UserRecord | None:
        u = self._row(user_id)
        return self._to_record(u) if u else None

    def get_by_email(self, email: str) -> UserRecord | None:
        from app.lokok.models import User

        e = (email or "").strip().lower()
        u = self.s.query(User).filter(User.email == e).one_or_none()
        return self._to_record(u) if u else None

    def list(self) -> list[UserRecord]:
        from app.lokok.models import User

        return [self._to_record(u) for u in self.s.query(User).order_by(User.id.asc()).all()]

    def create(self, *, email, password, role, name, allowed_countries=None, created_by=None) -> UserRecord:
        from app.lokok.models import User

        e = (email or "").strip().lower()
        if self.get_by_email(e):
            raise DuplicateEmail(f"Email already registered: {e}")
        r = normalize_role(role)
        now = datetime.utcnow()
        u = User(
            email=e,
            password_hash=generate_password_hash(password),
            role=r,
            name=(name or "").strip(),
            allowed_countries=_clean_countries(r, allowed_countries),
            is_active=True,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        self.s.add(u)
        self.s.flush()
        return self._to_record(u)

    def update(self, user_id: str, changes: dict) -> UserRecord:
        from app.lokok.models import User

        u = self._row(user_id)
        if not u:
            raise UserRepositoryError(f"User not found: {user_id}")
        if "email" in changes:
            e = (changes["email"] or "").strip().lower()
            clash = self.s.query(User).filter(User.email == e, User.id != u.id).one_or_none()
            if clash:
                raise DuplicateEmail(f"Email already registered: {e}")
            u.email = e
        if "name" in changes:
            u.name = (changes["name"] or "").strip()
        if "role" in changes:
            u.role = normalize_role(changes["role"])
        if "allowed_countries" in changes:
            u.allowed_countries = _clean_countries(u.role, changes["allowed_countries"])
        if "is_active" in changes:
            u.is_active = bool(changes["is_active"])
        if changes.get("password"):
            u.password_hash = generate_password_hash(changes["password"])
        u.updated_at = datetime.utcnow()
        self.s.flush()
        return self._to_record(u)

    def delete(self, user_id: str) -> bool:
        u = self._row(user_id)
        if not u:
            return False
        self.s.delete(u)
        self.s.flush()
        return True


class JsonUserRepository(UserRepository):
    """
    Users kept in a JSON file (list of objects, camelCase keys).
    Loaded on construction, written back after each change.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._users: list[UserRecord] = self._load()

    def _load(self) -> list[UserRecord]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        except (OSError, json.JSONDecodeError) as e:
            raise UserRepositoryError(f"Cannot read users file {self.path}: {e}") from e
        users = []
        for item in raw if isinstance(raw, list) else []:
            role = normalize_role(item.get("role"))
            created_at = item.get("createdAt")
            users.append(
                UserRecord(
                    id=str(item.get("id")),
                    email=(item.get("email") or "").strip().lower(),
                    role=role,
                    name=item.get("name") or "",
                    allowed_countries=_clean_countries(role, item.get("allowedCountries")),
                    is_active=item.get("isActive", True) is not False,
                    created_by=item.get("createdBy"),
                    created_at=datetime.fromisoformat(created_at.replace("Z", "")) if created_at else None,
                    password_hash=item.get("password") or "",
                )
            )
        return users

    def _save(self) -> None:
        payload = []
        for u in self._users:
            d = u.public_dict()
            d["password"] = u.password_hash
            payload.append(d)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, self.path)

    def get(self, user_id: str) -> UserRecord | None:
        return next((u for u in self._users if u.id == str(user_id)), None)

    def get_by_email(self, email: str) -> UserRecord | None:
        e = (email or "").strip().lower()
        return next((u for u in self._users if u.email == e), None)

    def list(self) -> list[UserRecord]:
        return list(self._users)

    def create(self, *, email, password, role, name, allowed_countries=None, created_by=None) -> UserRecord:
        e = (email or "").strip().lower()
        if self.get_by_email(e):
            raise DuplicateEmail(f"Email already registered: {e}")
        r = normalize_role(role)
        u = UserRecord(
            id=uuid.uuid4().hex,
            email=e,
            role=r,
            name=(name or "").strip(),
            allowed_countries=_clean_countries(r, allowed_countries),
            created_by=created_by,
            created_at=datetime.utcnow(),
            password_hash=generate_password_hash(password),
        )
        self._users.append(u)
        self._save()
        return u

    def update(self, user_id: str, changes: dict) -> UserRecord:
        u = self.get(user_id)
        if not u:
            raise UserRepositoryError(f"User not found: {user_id}")
        if "email" in changes:
            e = (changes["email"] or "").strip().lower()
            if any(o.email == e and o.id != u.id for o in self._users):
                raise DuplicateEmail(f"Email already registered: {e}")
            u.email = e
        if "name" in changes:
            u.name = (changes["name"] or "").strip()
        if "role" in changes:
            u.role = normalize_role(changes["role"])
        if "allowed_countries" in changes:
            u.allowed_countries = _clean_countries(u.role, changes["allowed_countries"])
        if "is_active" in changes:
            u.is_active = bool(changes["is_active"])
        if changes.get("password"):
            u.password_hash = generate_password_hash(changes["password"])
        self._save()
        return u

    def delete(self, user_id: str) -> bool:
        before = len(self._users)
        self._users = [u for u in self._users if u.id != str(user_id)]
        if len(self._users) == before:
            return False
        self._save()
        return True


def user_repository_from_config(config: dict, s: "Session | None" = None) -> UserRepository:
    backend = (config.get("USER_BACKEND") or "db").strip().lower()
    if backend == "json":
        return JsonUserRepository(config.get("USERS_JSON_PATH") or "data/users.json")
    if s is None:
        raise UserRepositoryError("USER_BACKEND=db needs a database session")
    return DbUserRepository(s)
