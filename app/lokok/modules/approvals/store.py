from __future__ import annotations

import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


class ApprovalNotFound(KeyError):
    pass


class ApprovalStoreError(RuntimeError):
    pass


class ApprovalStore:
    """Approval items in a local JSON file (a list of objects)."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _load(self) -> list[dict]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        except (OSError, json.JSONDecodeError) as e:
            logger.exception("Cannot read approvals file %s", self.path)
            raise ApprovalStoreError(f"Cannot read approvals file: {e}") from e
        return raw if isinstance(raw, list) else []

    def _save(self, items: list[dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(items, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
        os.replace(tmp, self.path)

    def all(self) -> list[dict]:
        return self._load()

    def get(self, item_id: str) -> dict:
        for item in self._load():
            if str(item.get("id")) == str(item_id):
                return item
        raise ApprovalNotFound(item_id)

    def add(self, item: dict) -> dict:
        items = self._load()
        items.append(item)
        self._save(items)
        return item

    def replace(self, item: dict) -> dict:
        items = self._load()
        for i, existing in enumerate(items):
            if str(existing.get("id")) == str(item.get("id")):
                items[i] = item
                self._save(items)
                return item
        raise ApprovalNotFound(item.get("id"))


def approval_store_from_config(config: dict) -> ApprovalStore:
    return ApprovalStore(config.get("APPROVALS_JSON_PATH") or "data/approvals.json")
