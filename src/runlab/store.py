"""
store.py  –  Key-indexed JSON-file store
========================================
Persistence collaborator for workouts (keyed by ``id``) and routes (keyed
by ``filename``). The whole store lives in memory and is rewritten on every
write through a temp file + ``os.replace``, so a bulk write either lands
completely or not at all.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Optional

log = logging.getLogger("runlab.store")


class JsonStore:
    def __init__(self, path: str | os.PathLike, key: str) -> None:
        self.path = Path(path)
        self.key = key
        self._records: dict[str, dict] = self._load()

    def _load(self) -> dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as fh:
                rows = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("Cannot read store %s (%s) – starting empty.", self.path, exc)
            return {}
        return {str(r[self.key]): r for r in rows}

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(list(self._records.values()), fh, separators=(",", ":"))
        os.replace(tmp, self.path)

    def __len__(self) -> int:
        return len(self._records)

    # ── reads ────────────────────────────────────────────────────────────────

    def get(self, key: str) -> Optional[dict]:
        return self._records.get(str(key))

    def get_all(self) -> list[dict]:
        return list(self._records.values())

    def get_all_by_field(self, field: str, value: Any) -> list[dict]:
        return [r for r in self._records.values() if r.get(field) == value]

    # ── writes ───────────────────────────────────────────────────────────────

    def bulk_put(self, records: Iterable[dict]) -> int:
        records = list(records)
        for r in records:
            if self.key not in r:
                raise ValueError(f"record without key field {self.key!r}")
        for r in records:
            self._records[str(r[self.key])] = r
        self._save()
        return len(records)

    def put(self, record: dict) -> None:
        self.bulk_put([record])

    def delete(self, key: str) -> bool:
        removed = self._records.pop(str(key), None) is not None
        if removed:
            self._save()
        return removed

    def replace_where(self, field: str, value: Any, records: Iterable[dict]) -> int:
        """Drop every record with ``field == value``, then insert `records`."""
        records = list(records)
        for r in records:
            if self.key not in r:
                raise ValueError(f"record without key field {self.key!r}")
        stale = [k for k, r in self._records.items() if r.get(field) == value]
        for k in stale:
            del self._records[k]
        for r in records:
            self._records[str(r[self.key])] = r
        self._save()
        log.debug("%s: replaced %d records where %s=%r with %d", self.path.name,
                  len(stale), field, value, len(records))
        return len(records)

    def clear(self) -> None:
        self._records.clear()
        self._save()
