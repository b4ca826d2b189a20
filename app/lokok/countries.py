"""
Country codes used across the app.

Records carry free-text country values ("USA", "United States", "México").
Everything that compares countries goes through these helpers so that the
sheet layout, user permissions and matching agree on one code per country.
"""
from __future__ import annotations

from collections.abc import Iterable

SUPPORTED_COUNTRIES = ("US", "CA", "MX")

# CN still has a sheet in older workbooks; it is never an allowed country.
LEGACY_COUNTRIES = ("CN",)

COUNTRY_ALIASES: dict[str, frozenset[str]] = {
    "US": frozenset({"US", "USA", "U.S.", "U.S.A.", "UNITED STATES", "UNITED STATES OF AMERICA", "ESTADOS UNIDOS", "EUA"}),
    "CA": frozenset({"CA", "CAN", "CANADA", "CANADÁ"}),
    "MX": frozenset({"MX", "MEX", "MEXICO", "MÉXICO"}),
    "CN": frozenset({"CN", "CHN", "CHINA"}),
}

COUNTRY_SHEETS = {
    "US": "Wholesale LOKOK",
    "CA": "Wholesale CANADA",
    "MX": "Wholesale MEXICO",
    "CN": "Wholesale CHINA",
}

COUNTRY_LABELS = {
    "US": "United States",
    "CA": "Canada",
    "MX": "Mexico",
    "CN": "China",
}


def _lookup(value: object, codes: Iterable[str]) -> str | None:
    raw = str(value or "").strip().upper()
    if not raw:
        return None
    for code in codes:
        if raw in COUNTRY_ALIASES[code]:
            return code
    if "UNITED STATES" in raw and "US" in codes:
        return "US"
    return None


def normalize_country(value: object) -> str | None:
    """Canonical US/CA/MX code for a free-text country, or None."""
    return _lookup(value, SUPPORTED_COUNTRIES)


def storage_country(value: object) -> str | None:
    """Like normalize_country() but keeps CN so legacy CHINA rows stay tagged."""
    return _lookup(value, SUPPORTED_COUNTRIES + LEGACY_COUNTRIES)


def country_aliases(code: str | None) -> frozenset[str]:
    if not code:
        return frozenset()
    return COUNTRY_ALIASES.get(code.upper(), frozenset({code.upper()}))


def normalize_allowed_countries(values: Iterable[object] | None) -> list[str]:
    out: list[str] = []
    for v in values or []:
        code = normalize_country(v)
        if code and code not in out:
            out.append(code)
    return out


def default_allowed_countries(role: str | None) -> list[str]:
    if (role or "").strip().lower() == "admin":
        return list(SUPPORTED_COUNTRIES)
    return ["US"]


def sheet_name_for_country(code: str | None) -> str:
    return COUNTRY_SHEETS.get((code or "US").upper(), COUNTRY_SHEETS["US"])


def country_from_sheet_name(name: str | None) -> str | None:
    n = (name or "").strip().lower()
    if not n:
        return None
    if "lokok" in n or "usa" in n or "united states" in n or n.endswith("_us"):
        return "US"
    if "canada" in n or n.endswith("_ca"):
        return "CA"
    if "mexico" in n or "méxico" in n or n.endswith("_mx"):
        return "MX"
    if "china" in n or n.endswith("_cn"):
        return "CN"
    return None
