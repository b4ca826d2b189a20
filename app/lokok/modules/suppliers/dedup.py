from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from app.lokok.modules.suppliers.records import dedup_key


@dataclass(frozen=True)
class DedupEntry:
    id: str
    data: dict
    country: str | None
    created_at: datetime | None


@dataclass
class DedupResult:
    total: int = 0
    deleted: int = 0
    kept: int = 0
    delete_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {"total": self.total, "deleted": self.deleted, "kept": self.kept}


def plan_deduplication(entries: Iterable[DedupEntry]) -> DedupResult:
    """
    Group entries by dedup key and keep the newest of each group.

    An entry replaces the current keeper only when its creation time is
    strictly later; entries without a parseable timestamp never displace one
    that has it, and among equals the first seen stays.
    """
    keepers: dict[str, DedupEntry] = {}
    doomed: list[str] = []
    total = 0
    for e in entries:
        total += 1
        key = dedup_key(e.data, country=e.country, row_id=e.id)
        current = keepers.get(key)
        if current is None:
            keepers[key] = e
            continue
        if e.created_at and (current.created_at is None or e.created_at > current.created_at):
            doomed.append(current.id)
            keepers[key] = e
        else:
            doomed.append(e.id)
    return DedupResult(total=total, deleted=len(doomed), kept=len(keepers), delete_ids=doomed)
