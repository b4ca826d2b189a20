import pytest
from sqlalchemy import create_engine

from app.lokok import auth
from app.lokok.db import session_scope
from app.lokok.models import Base
from app.lokok.modules.suppliers.store import JsonbSupplierStore
from app.lokok.modules.users.repository import DbUserRepository

CSRF = "test-csrf-token"


@pytest.fixture(autouse=True)
def _reset_login_rate_limit():
    auth._login_attempts.clear()
    yield
    auth._login_attempts.clear()


@pytest.fixture()
def app(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path/'test.db'}"
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("SUPPLIER_BACKEND", "jsonb")
    monkeypatch.setenv("USER_BACKEND", "db")
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("APPROVALS_JSON_PATH", str(tmp_path / "approvals.json"))
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in ("GOOGLE_DRIVE_FILE_ID", "EXCEL_PATH", "USERS_JSON_PATH"):
        monkeypatch.delenv(k, raising=False)

    # tables first, so the startup schema check sees them
    engine = create_engine(db_url)
    Base.metadata.create_all(bind=engine)
    engine.dispose()

    from app.lokok import create_app

    app = create_app()
    app.config["TESTING"] = True

    with session_scope(app) as s:
        users = DbUserRepository(s)
        users.create(email="admin@lokok.com", password="pw", role="admin", name="Admin")
        users.create(email="maria@lokok.com", password="pw", role="manager", name="Maria", allowed_countries=["US", "MX"])
        users.create(email="olga@lokok.com", password="pw", role="operator", name="Olga")

        store = JsonbSupplierStore(s)
        store.insert(
            {"Name": "Acme", "Website": "acme.com", "CATEGORÍA": "Toys", "Responsable": "Maria", "DATE": "2024-03-02"},
            "US",
        )
        store.insert(
            {"Name": "Beta", "Website": "beta.io", "CATEGORÍA": "Tools", "Responsable": "Pedro", "DATE": "2024-04-10"},
            "US",
        )
        store.insert({"Name": "Gamma", "Website": "gamma.mx", "CATEGORÍA": "Food", "Responsable": "Pedro"}, "MX")
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def csrf():
    return CSRF


@pytest.fixture()
def login(client):
    """Log in through the form, then pin the session CSRF token to a known value."""

    def _login(email="admin@lokok.com", password="pw"):
        r = client.post("/auth/login", data={"email": email, "password": password})
        with client.session_transaction() as sess:
            sess["csrf_token"] = CSRF
        return r

    return _login
