"""
Field access and normalization for supplier records.

Supplier records are plain dicts keyed by spreadsheet column names. Column
names drift between sheets and import sources, so every lookup goes through
an ordered list of aliases.
"""
from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from typing import Any

from app.lokok.countries import storage_country

NAME_FIELDS = ("Name", "Company Name", "COMPANY", "Empresa", "Distributor")
WEBSITE_FIELDS = ("Website", "WEBSITE", "URL", "Site")
EMAIL_FIELDS = ("E-Mail", "Email", "EMAIL")
COUNTRY_FIELDS = ("Country", "COUNTRY", "País", "PAIS")
CREATED_FIELDS = ("Created_At", "Created At", "DATE", "Date")
CATEGORY_FIELDS = ("CATEGORÍA", "Category", "CATEGORY", "Categoria")
ACCOUNT_STATUS_FIELDS = ("Account Request Status", "Account Status")
STATUS_FIELD = "STATUS (PENDING APPROVAL, BUYING, CHECKING, NOT COMPETITIVE, NOT INTERESTING, RED FLAG)"
STATUS_FIELDS = (STATUS_FIELD, "STATUS", "Status")
PRIORITY_FIELD = "PRIO (1 - TOP, 5 - bajo)"

EXCEL_EPOCH = datetime(1899, 12, 30)

_DATE_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%d/%m/%Y, %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y",
    "%m/%d/%Y",
)

_SCHEME_OR_WWW = re.compile(r"^(?:https?://|www\.)+")
_PORT_SUFFIX = re.compile(r"(?::\d+)+$")


def unwrap(record: dict | None) -> dict:
    """Records from the approval store arrive as {"distributor": {...}}."""
    if not record:
        return {}
    inner = record.get("distributor")
    if isinstance(inner, dict):
        return inner
    return record


def as_text(value: Any) -> str:
    """Stable text form of a cell value (dates as ISO, integral floats without .0)."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def first_value(record: dict | None, fields: tuple[str, ...]) -> str:
    r = unwrap(record)
    for f in fields:
        v = as_text(r.get(f))
        if v:
            return v
    return ""


def get_name(record: dict | None) -> str:
    return first_value(record, NAME_FIELDS)


def get_website(record: dict | None) -> str:
    return first_value(record, WEBSITE_FIELDS)


def get_email(record: dict | None) -> str:
    return first_value(record, EMAIL_FIELDS)


def get_category(record: dict | None) -> str:
    return first_value(record, CATEGORY_FIELDS)


def get_country(record: dict | None) -> str | None:
    """Country code stored in the record itself (CN kept for legacy rows)."""
    r = unwrap(record)
    return storage_country(first_value(r, COUNTRY_FIELDS)) or storage_country(r.get("_countryCode"))


def created_candidates(record: dict | None) -> list[str]:
    r = unwrap(record)
    out: list[str] = []
    for f in CREATED_FIELDS:
        v = as_text(r.get(f))
        if v and v not in out:
            out.append(v)
    return out


def normalize_website(value: Any) -> str | None:
    """
    Normalize a website for identity comparison.

    Lowercases, strips the scheme and any leading "www.", drops a port on the
    host and trailing slashes. Idempotent:

        >>> normalize_website("HTTPS://WWW.Example.com:8080/")
        'example.com'
        >>> normalize_website("example.com/shop/")
        'example.com/shop'
    """
    s = as_text(value).lower()
    if not s:
        return None
    s = _SCHEME_OR_WWW.sub("", s)
    s = s.rstrip("/")
    host, sep, rest = s.partition("/")
    host = _PORT_SUFFIX.sub("", host)
    s = (host + sep + rest).rstrip("/")
    return s or None


def normalize_email(value: Any) -> str | None:
    s = as_text(value).lower()
    return s or None


def dedup_key(record: dict | None, country: str | None = None, row_id: Any = None) -> str:
    """
    Key used to group likely duplicates.

    Priority: normalized website (``w:``) > lowercased email (``e:``) >
    lowercased name plus country (``n:``). Records with none of these get
    ``id:<row_id>`` and are never grouped with anything else.
    """
    website = normalize_website(get_website(record))
    if website:
        return f"w:{website}"
    email = normalize_email(get_email(record))
    if email:
        return f"e:{email}"
    name = get_name(record).lower()
    if name:
        raw_country = first_value(record, COUNTRY_FIELDS)
        code = storage_country(country) or get_country(record)
        return f"n:{name}|{(code or raw_country).lower()}"
    return f"id:{row_id}"


def parse_record_date(value: Any) -> datetime | None:
    """Parse DATE/Created_At values: datetimes, Excel serials and common string formats."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        try:
            return EXCEL_EPOCH + timedelta(days=float(value))
        except OverflowError:
            return None
    s = str(value).strip()
    if not s:
        return None
    if re.fullmatch(r"\d+(\.\d+)?", s):
        return parse_record_date(float(s))
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(s).replace(tzinfo=None)
    except ValueError:
        return None


def record_created_at(record: dict | None) -> datetime | None:
    r = unwrap(record)
    for f in CREATED_FIELDS:
        parsed = parse_record_date(r.get(f))
        if parsed:
            return parsed
    return None
