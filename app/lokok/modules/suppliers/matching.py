"""
Record identity matching.

Supplier rows have no identifier that survives a round trip through the
workbook, so edits and deletes locate their target by comparing the record the
user saw ("old record") against what is stored now. Rules are tried in order:

1. row id (when the caller still has it; a workbook position only counts
   while the row there is still the same supplier)
2. creation timestamp (Created_At / Created At / DATE / Date)
3. normalized website
4. email
5. name + country (country compared through its aliases)

The first rule that matches at least one row wins. Every row it matched is
returned; callers apply the change to all of them.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from app.lokok.countries import country_aliases, storage_country
from app.lokok.modules.suppliers.records import (
    COUNTRY_FIELDS,
    created_candidates,
    first_value,
    get_country,
    get_email,
    get_name,
    get_website,
    normalize_email,
    normalize_website,
)

logger = logging.getLogger(__name__)

RULE_ID = "id"
RULE_CREATED = "created_at"
RULE_WEBSITE = "website"
RULE_EMAIL = "email"
RULE_NAME_COUNTRY = "name_country"


@dataclass(frozen=True)
class Candidate:
    """A stored row as seen by the matcher."""

    id: str
    data: dict
    country: str | None = None


@dataclass(frozen=True)
class MatchResult:
    rule: str | None = None
    ids: tuple[str, ...] = field(default_factory=tuple)

    def __bool__(self) -> bool:
        return bool(self.ids)

    @property
    def ambiguous(self) -> bool:
        return len(self.ids) > 1


def _row_country(c: Candidate) -> str | None:
    return storage_country(c.country) or get_country(c.data)


def _country_matches(wanted: str | None, wanted_raw: str, c: Candidate) -> bool:
    if wanted:
        aliases = country_aliases(wanted)
        row_code = _row_country(c)
        if row_code:
            return row_code == wanted
        raw = first_value(c.data, COUNTRY_FIELDS).upper()
        return raw in aliases
    # Unrecognized country text: compare verbatim.
    return first_value(c.data, COUNTRY_FIELDS).lower() == wanted_raw.lower()


def _by_created(old: dict, rows: list[Candidate]) -> list[str]:
    wanted = set(created_candidates(old))
    if not wanted:
        return []
    return [c.id for c in rows if wanted.intersection(created_candidates(c.data))]


def _by_website(old: dict, rows: list[Candidate]) -> list[str]:
    wanted = normalize_website(get_website(old))
    if not wanted:
        return []
    return [c.id for c in rows if normalize_website(get_website(c.data)) == wanted]


def _by_email(old: dict, rows: list[Candidate]) -> list[str]:
    wanted = normalize_email(get_email(old))
    if not wanted:
        return []
    return [c.id for c in rows if normalize_email(get_email(c.data)) == wanted]


def _by_name_country(old: dict, rows: list[Candidate], country_hint: str | None) -> list[str]:
    name = get_name(old).lower()
    raw_country = first_value(old, COUNTRY_FIELDS) or (country_hint or "")
    if not name or not raw_country:
        return []
    wanted = storage_country(country_hint) or storage_country(raw_country)
    return [
        c.id
        for c in rows
        if get_name(c.data).lower() == name and _country_matches(wanted, raw_country, c)
    ]


def find_matches(
    old_record: dict,
    rows: Iterable[Candidate],
    *,
    country_hint: str | None = None,
    row_id: Any = None,
) -> MatchResult:
    rows = list(rows)
    if row_id is not None and str(row_id).strip():
        rid = str(row_id).strip()
        ids = [c.id for c in rows if c.id == rid]
        if ids:
            return MatchResult(RULE_ID, tuple(ids))

    rules = (
        (RULE_CREATED, lambda: _by_created(old_record, rows)),
        (RULE_WEBSITE, lambda: _by_website(old_record, rows)),
        (RULE_EMAIL, lambda: _by_email(old_record, rows)),
        (RULE_NAME_COUNTRY, lambda: _by_name_country(old_record, rows, country_hint)),
    )
    for rule, fn in rules:
        ids = fn()
        if ids:
            result = MatchResult(rule, tuple(ids))
            if result.ambiguous:
                logger.warning("Record match by %s hit %d rows: %s", rule, len(ids), ", ".join(ids))
            return result
    return MatchResult()


def same_supplier(old_record: dict, data: dict) -> bool:
    """
    True when `data` still holds the supplier `old_record` was read from,
    judged by the first of website, email and name that `old_record` carries.
    """
    for getter, norm in (
        (get_website, normalize_website),
        (get_email, normalize_email),
        (get_name, lambda v: v.strip().lower()),
    ):
        wanted = norm(getter(old_record))
        if wanted:
            return norm(getter(data)) == wanted
    return False


def find_upsert_target(record: dict, rows: Iterable[Candidate], *, country_hint: str | None = None) -> MatchResult:
    """Upsert identity: website, then email, then name + country (no timestamp rule)."""
    rows = list(rows)
    for rule, ids in (
        (RULE_WEBSITE, _by_website(record, rows)),
        (RULE_EMAIL, _by_email(record, rows)),
        (RULE_NAME_COUNTRY, _by_name_country(record, rows, country_hint)),
    ):
        if ids:
            return MatchResult(rule, tuple(ids[:1]))
    return MatchResult()
