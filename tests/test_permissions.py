from app.lokok.modules.suppliers.permissions import (
    is_responsible,
    manager_value,
    normalize_role,
    resolve_permissions,
)
from app.lokok.modules.users.repository import UserRecord


def _user(role="manager", name="Maria Lopez", email="maria@lokok.com", countries=None, id="7", active=True):
    return UserRecord(
        id=id,
        email=email,
        role=role,
        name=name,
        allowed_countries=countries if countries is not None else ["US"],
        is_active=active,
    )


def test_normalize_role():
    assert normalize_role("Gerente") == "manager"
    assert normalize_role("administrador") == "admin"
    assert normalize_role("OPERATOR") == "operator"
    assert normalize_role("superuser") == "user"
    assert normalize_role(None) == "user"


def test_admin_can_do_everything():
    p = resolve_permissions(_user(role="admin"), {"Responsable": "Someone else", "Country": "Canada"})
    assert p.can_edit and p.can_delete


def test_operator_and_user_cannot_edit():
    rec = {"Responsable": ""}
    for role in ("operator", "user"):
        p = resolve_permissions(_user(role=role), rec)
        assert not p.can_edit and not p.can_delete


def test_inactive_or_missing_user_cannot_edit():
    assert not resolve_permissions(None, {}).can_edit
    assert not resolve_permissions(_user(role="admin", active=False), {}).can_edit


def test_manager_blank_responsible_allows():
    assert resolve_permissions(_user(countries=["CA"]), {"Name": "X", "Country": "Mexico"}).can_edit


def test_manager_mentioned_by_token_or_email():
    u = _user(countries=["CA"])
    assert resolve_permissions(u, {"Responsable": "LOPEZ / Pedro", "Country": "Mexico"}).can_edit
    assert resolve_permissions(u, {"Buyer": "maria@lokok.com", "Country": "Mexico"}).can_edit


def test_short_name_tokens_do_not_count():
    u = _user(name="Al Li", email="al@lokok.com", countries=["CA"])
    rec = {"Responsable": "Alice Lima", "Country": "Mexico"}
    assert not resolve_permissions(u, rec).can_edit


def test_manager_allowed_by_country():
    u = _user(countries=["MX"])
    rec = {"Responsable": "Pedro", "Country": "México"}
    assert resolve_permissions(u, rec).can_edit
    assert not resolve_permissions(u, {"Responsable": "Pedro", "Country": "Canada"}).can_edit


def test_country_falls_back_to_sheet_country():
    u = _user(countries=["CA"])
    assert resolve_permissions(u, {"Responsable": "Pedro"}, "CA").can_delete


def test_manager_allowed_as_creator():
    u = _user(countries=["CA"])
    assert resolve_permissions(u, {"Responsable": "Pedro", "Country": "USA", "Created_By_User_ID": "7"}).can_edit
    assert resolve_permissions(
        u, {"Responsable": "Pedro", "Country": "USA", "Created_By_User_Email": "MARIA@lokok.com"}
    ).can_edit


def test_manager_value_falls_back_to_creator_columns():
    assert manager_value({"Manager": "", "Buyer": "Ana"}) == "Ana"
    assert manager_value({"Created_By_User_Name": "Ana", "Created_By_User_Email": "ana@x.com"}) == "Ana | ana@x.com"


def test_is_responsible():
    u = _user()
    assert is_responsible(u, {"Responsable": "maria lopez"})
    assert not is_responsible(u, {"Responsable": ""})
    assert not is_responsible(None, {"Responsable": "maria"})
