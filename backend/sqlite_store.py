"""SQLite-backed row store adapter."""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

from core.entities import CollectionSpec
from core.timestamps import TimestampLike

from backend.row_store import RecordNotFoundError, RowStore

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    collection TEXT NOT NULL,
    record_id TEXT NOT NULL,
    last_updated TEXT,
    payload TEXT NOT NULL,
    UNIQUE (collection, record_id)
)
"""

_SCHEMA_LOCK = threading.Lock()
_READY: set = set()


class SqliteRowStore(RowStore):
    """Store each collection's rows as JSON payloads in a shared ``records`` table."""

    def __init__(self, spec: CollectionSpec, path: Path) -> None:
        super().__init__(spec)
        self._path = Path(path).resolve()
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def ensure(self) -> None:
        key = str(self._path)
        if key in _READY:
            return
        with _SCHEMA_LOCK:
            if key in _READY:
                return
            self._path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self._path)
            try:
                conn.execute(_SCHEMA)
                conn.execute("CREATE INDEX IF NOT EXISTS idx_records_collection ON records(collection)")
                conn.commit()
            finally:
                conn.close()
            _READY.add(key)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        self.ensure()
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _decode(row: sqlite3.Row) -> Dict[str, Any]:
        return json.loads(row["payload"])

    def _insert(self, conn: sqlite3.Connection, row: Mapping[str, Any]) -> None:
        conn.execute(
            "INSERT INTO records (collection, record_id, last_updated, payload) VALUES (?, ?, ?, ?)",
            (
                self.spec.name,
                row[self.id_field],
                row.get("last_updated"),
                json.dumps(dict(row), ensure_ascii=False),
            ),
        )

    # ------------------------------------------------------------------
    # RowStore API
    # ------------------------------------------------------------------
    def scan(self, since: TimestampLike = None) -> List[Dict[str, Any]]:
        with self._transaction() as conn:
            cursor = conn.execute(
                "SELECT payload FROM records WHERE collection = ? ORDER BY seq",
                (self.spec.name,),
            )
            rows = [self._decode(row) for row in cursor.fetchall()]
        return self.filter_since(rows, since)

    def get_by_key(self, record_id: str) -> Optional[Dict[str, Any]]:
        with self._transaction() as conn:
            cursor = conn.execute(
                "SELECT payload FROM records WHERE collection = ? AND record_id = ?",
                (self.spec.name, record_id),
            )
            row = cursor.fetchone()
        return self._decode(row) if row else None

    def append(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        with self._lock, self._transaction() as conn:
            candidate = str(record.get(self.id_field) or "").strip()
            existing = []
            if candidate:
                cursor = conn.execute(
                    "SELECT record_id FROM records WHERE collection = ? AND record_id = ?",
                    (self.spec.name, candidate),
                )
                existing = [item["record_id"] for item in cursor.fetchall()]
            row = self.prepare_new_row(record, existing)
            self._insert(conn, row)
        logger.info("Appended %s %s", self.spec.name, row[self.id_field])
        return row

    def update_by_key(self, record_id: str, patch: Mapping[str, Any]) -> Dict[str, Any]:
        with self._lock, self._transaction() as conn:
            cursor = conn.execute(
                "SELECT payload FROM records WHERE collection = ? AND record_id = ?",
                (self.spec.name, record_id),
            )
            current = cursor.fetchone()
            if current is None:
                raise RecordNotFoundError(f"{self.spec.name} {record_id} not found")
            updated = self.apply_patch(self._decode(current), patch)
            conn.execute(
                "UPDATE records SET last_updated = ?, payload = ? WHERE collection = ? AND record_id = ?",
                (
                    updated.get("last_updated"),
                    json.dumps(updated, ensure_ascii=False),
                    self.spec.name,
                    record_id,
                ),
            )
        return updated

    def delete_by_key(self, record_id: str) -> None:
        with self._lock, self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM records WHERE collection = ? AND record_id = ?",
                (self.spec.name, record_id),
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(f"{self.spec.name} {record_id} not found")
        logger.info("Deleted %s %s", self.spec.name, record_id)


__all__ = ["SqliteRowStore"]
