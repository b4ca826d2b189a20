import json
from pathlib import Path

import bcrypt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.lokok.models import Base, User
from app.lokok.modules.users.repository import (
    DbUserRepository,
    DuplicateEmail,
    JsonUserRepository,
    UserRepositoryError,
    user_repository_from_config,
)


@pytest.fixture()
def db_repo():
    engine = create_engine("sqlite://", future=True)
    Base.metadata.create_all(bind=engine)
    with Session(engine) as s:
        yield DbUserRepository(s)
    engine.dispose()


@pytest.fixture()
def json_repo(tmp_path: Path):
    return JsonUserRepository(tmp_path / "users.json")


@pytest.fixture(params=["db", "json"])
def repo(request):
    return request.getfixturevalue(f"{request.param}_repo")


def test_create_normalizes_and_defaults(repo):
    u = repo.create(email=" Maria@LOKOK.com ", password="pw123456", role="Gerente", name=" Maria ")
    assert u.email == "maria@lokok.com"
    assert u.role == "manager"
    assert u.name == "Maria"
    assert u.allowed_countries == ["US"]
    assert u.is_active
    assert repo.get(u.id).email == "maria@lokok.com"
    assert repo.get_by_email("MARIA@lokok.com").id == u.id


def test_admin_defaults_to_all_countries(repo):
    u = repo.create(email="root@lokok.com", password="pw", role="admin", name="Root")
    assert u.allowed_countries == ["US", "CA", "MX"]


def test_duplicate_email_rejected(repo):
    repo.create(email="a@lokok.com", password="pw", role="user", name="A")
    with pytest.raises(DuplicateEmail):
        repo.create(email="A@lokok.com", password="pw", role="user", name="A2")


def test_update_fields_and_password(repo):
    u = repo.create(email="a@lokok.com", password="old", role="user", name="A")
    repo.create(email="b@lokok.com", password="pw", role="user", name="B")

    updated = repo.update(u.id, {"name": "Alice", "role": "manager", "allowed_countries": ["Mexico", "China"], "password": "new"})
    assert updated.name == "Alice"
    assert updated.role == "manager"
    assert updated.allowed_countries == ["MX"]
    assert repo.verify_password("a@lokok.com", "new") is not None
    assert repo.verify_password("a@lokok.com", "old") is None

    with pytest.raises(DuplicateEmail):
        repo.update(u.id, {"email": "b@lokok.com"})
    with pytest.raises(UserRepositoryError):
        repo.update("404404", {"name": "x"})


def test_blank_password_leaves_hash(repo):
    u = repo.create(email="a@lokok.com", password="keep", role="user", name="A")
    repo.update(u.id, {"password": ""})
    assert repo.verify_password("a@lokok.com", "keep")


def test_inactive_user_cannot_log_in(repo):
    u = repo.create(email="a@lokok.com", password="pw", role="user", name="A")
    repo.update(u.id, {"is_active": False})
    assert repo.verify_password("a@lokok.com", "pw") is None


def test_delete(repo):
    u = repo.create(email="a@lokok.com", password="pw", role="user", name="A")
    assert repo.delete(u.id) is True
    assert repo.delete(u.id) is False
    assert repo.list() == []


def test_public_dict_hides_password(repo):
    u = repo.create(email="a@lokok.com", password="pw", role="operator", name="A", created_by="1")
    d = u.public_dict()
    assert "password" not in d and "password_hash" not in d
    assert d["allowedCountries"] == ["US"]
    assert d["createdBy"] == "1"


def test_json_repo_reads_existing_file(tmp_path: Path):
    path = tmp_path / "users.json"
    path.write_text(
        json.dumps(
            [
                {
                    "id": 1,
                    "email": "Old@Lokok.com",
                    "password": generate_password_hash("pw"),
                    "role": "administrador",
                    "name": "Old Admin",
                    "createdAt": "2024-01-01T00:00:00.000Z",
                },
                {"id": 2, "email": "legacy@lokok.com", "password": "$2b$10$abcdefghijklmnopqrstuv", "role": "user", "name": "L"},
            ]
        ),
        encoding="utf-8",
    )
    repo = JsonUserRepository(path)
    admin = repo.get("1")
    assert admin.role == "admin"
    assert admin.email == "old@lokok.com"
    assert admin.allowed_countries == ["US", "CA", "MX"]
    assert repo.verify_password("old@lokok.com", "pw").id == "1"
    # truncated bcrypt hash
    assert repo.verify_password("legacy@lokok.com", "anything") is None


def test_json_repo_persists(tmp_path: Path):
    path = tmp_path / "users.json"
    JsonUserRepository(path).create(email="x@lokok.com", password="pw", role="manager", name="X", allowed_countries=["CA"])
    saved = json.loads(path.read_text(encoding="utf-8"))
    assert saved[0]["email"] == "x@lokok.com"
    assert saved[0]["allowedCountries"] == ["CA"]
    assert saved[0]["password"].startswith(("scrypt:", "pbkdf2:"))
    assert JsonUserRepository(path).get_by_email("x@lokok.com").role == "manager"


def test_json_repo_bad_file(tmp_path: Path):
    path = tmp_path / "users.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(UserRepositoryError):
        JsonUserRepository(path)


def test_repository_from_config(tmp_path: Path):
    repo = user_repository_from_config({"USER_BACKEND": "json", "USERS_JSON_PATH": str(tmp_path / "u.json")})
    assert isinstance(repo, JsonUserRepository)
    with pytest.raises(UserRepositoryError):
        user_repository_from_config({"USER_BACKEND": "db"})


def _bcrypt_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=4)).decode("utf-8")


def test_json_repo_accepts_and_rehashes_bcrypt(tmp_path: Path):
    path = tmp_path / "users.json"
    path.write_text(
        json.dumps([{"id": 7, "email": "pedro@lokok.com", "password": _bcrypt_hash("s3cret"), "role": "manager", "name": "Pedro"}]),
        encoding="utf-8",
    )
    repo = JsonUserRepository(path)
    assert repo.verify_password("pedro@lokok.com", "wrong") is None
    assert repo.get("7").password_hash.startswith("$2b$")

    assert repo.verify_password("pedro@lokok.com", "s3cret").id == "7"
    saved = json.loads(path.read_text(encoding="utf-8"))
    assert saved[0]["password"].startswith(("scrypt:", "pbkdf2:"))
    assert JsonUserRepository(path).verify_password("pedro@lokok.com", "s3cret").id == "7"


def test_db_repo_accepts_and_rehashes_bcrypt(db_repo):
    u = db_repo.create(email="ana@lokok.com", password="x", role="manager", name="Ana")
    row = db_repo.s.get(User, int(u.id))
    row.password_hash = _bcrypt_hash("s3cret")
    db_repo.s.flush()

    assert db_repo.verify_password("ana@lokok.com", "x") is None
    assert db_repo.verify_password("ana@lokok.com", "s3cret").id == u.id
    assert not row.password_hash.startswith("$2")
    assert db_repo.verify_password("ana@lokok.com", "s3cret").id == u.id
