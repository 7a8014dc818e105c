"""Row store interface used by the request router.

A row store persists one collection. Rows are flat mappings addressed by the
collection's id field. The router depends only on :class:`RowStore`; the
concrete adapters live in :mod:`backend.sqlite_store`,
:mod:`backend.sheets_store` and :class:`MemoryRowStore` below.

Tabular adapters (memory, Google Sheets) derive from :class:`TableRowStore`,
which implements every primitive as a read-modify-write of the whole table
under a per-store lock.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional

from core.entities import CollectionSpec, new_record_id
from core.timestamps import TimestampLike, later_of, now_iso, parse_timestamp

logger = logging.getLogger(__name__)


class RowStoreError(RuntimeError):
    """Base error raised by row store adapters."""


class RecordNotFoundError(RowStoreError):
    """Raised when an update or delete targets an unknown id."""


class DuplicateRecordError(RowStoreError):
    """Raised when an append reuses an id that already exists."""


class RowStore(ABC):
    """Persistence primitives for a single collection."""

    def __init__(self, spec: CollectionSpec) -> None:
        self.spec = spec

    @property
    def id_field(self) -> str:
        return self.spec.id_field

    def ensure(self) -> None:
        """Create whatever backing structure the adapter needs."""

    @abstractmethod
    def scan(self, since: TimestampLike = None) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def get_by_key(self, record_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def append(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def update_by_key(self, record_id: str, patch: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def delete_by_key(self, record_id: str) -> None:
        ...

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------
    def filter_since(self, rows: Iterable[Dict[str, Any]], since: TimestampLike) -> List[Dict[str, Any]]:
        """Return the rows whose freshness timestamp is strictly newer than ``since``."""

        threshold = parse_timestamp(since)
        if threshold is None:
            return list(rows)
        fresh: List[Dict[str, Any]] = []
        for row in rows:
            stamp = self.spec.freshness(row)
            if stamp is not None and stamp > threshold:
                fresh.append(row)
        return fresh

    def prepare_new_row(self, record: Mapping[str, Any], existing_ids: Iterable[str]) -> Dict[str, Any]:
        row = dict(record)
        record_id = str(row.get(self.id_field) or "").strip() or new_record_id()
        if record_id in set(existing_ids):
            raise DuplicateRecordError(f"{self.spec.name} {record_id} already exists")
        stamp = now_iso()
        row[self.id_field] = record_id
        if not row.get("created_date"):
            row["created_date"] = stamp
        row["last_updated"] = later_of(row.get("last_updated"), stamp)
        return row

    def apply_patch(self, current: Mapping[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
        changes = {key: value for key, value in patch.items() if key not in (self.id_field, "created_date")}
        updated = {**current, **changes}
        updated["last_updated"] = later_of(current.get("last_updated"), now_iso())
        return updated


class TableRowStore(RowStore):
    """Implement the primitives over a whole-table load/store pair."""

    def __init__(self, spec: CollectionSpec) -> None:
        super().__init__(spec)
        self._lock = threading.RLock()

    @abstractmethod
    def _load(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def _store(self, rows: List[Dict[str, Any]]) -> None:
        ...

    def scan(self, since: TimestampLike = None) -> List[Dict[str, Any]]:
        with self._lock:
            return self.filter_since(self._load(), since)

    def get_by_key(self, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for row in self._load():
                if row.get(self.id_field) == record_id:
                    return row
        return None

    def append(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        with self._lock:
            rows = self._load()
            row = self.prepare_new_row(record, (str(item.get(self.id_field)) for item in rows))
            rows.append(row)
            self._store(rows)
        logger.info("Appended %s %s", self.spec.name, row[self.id_field])
        return row

    def update_by_key(self, record_id: str, patch: Mapping[str, Any]) -> Dict[str, Any]:
        with self._lock:
            rows = self._load()
            for index, row in enumerate(rows):
                if row.get(self.id_field) == record_id:
                    rows[index] = self.apply_patch(row, patch)
                    self._store(rows)
                    return rows[index]
        raise RecordNotFoundError(f"{self.spec.name} {record_id} not found")

    def delete_by_key(self, record_id: str) -> None:
        with self._lock:
            rows = self._load()
            remaining = [row for row in rows if row.get(self.id_field) != record_id]
            if len(remaining) == len(rows):
                raise RecordNotFoundError(f"{self.spec.name} {record_id} not found")
            self._store(remaining)
        logger.info("Deleted %s %s", self.spec.name, record_id)


class MemoryRowStore(TableRowStore):
    """Process-local adapter, used for tests and throwaway deployments."""

    def __init__(self, spec: CollectionSpec, rows: Optional[Iterable[Mapping[str, Any]]] = None) -> None:
        super().__init__(spec)
        self._rows: List[Dict[str, Any]] = [dict(row) for row in rows or ()]

    def _load(self) -> List[Dict[str, Any]]:
        return [dict(row) for row in self._rows]

    def _store(self, rows: List[Dict[str, Any]]) -> None:
        self._rows = [dict(row) for row in rows]


__all__ = [
    "DuplicateRecordError",
    "MemoryRowStore",
    "RecordNotFoundError",
    "RowStore",
    "RowStoreError",
    "TableRowStore",
]
