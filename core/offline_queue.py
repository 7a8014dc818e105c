"""JSON lines based outbox of remote mutations that could not be delivered."""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from core import app_paths
from core.timestamps import now_iso

logger = logging.getLogger(__name__)

OP_CREATE = "create"
OP_UPDATE = "update"
OP_DELETE = "delete"
_OPERATIONS = (OP_CREATE, OP_UPDATE, OP_DELETE)

Entry = Dict[str, Any]


class OutboxQueue:
    """Persist pending create/update/delete calls until the backend accepts them.

    Entries are coalesced per record as they are queued: an update folds into a
    pending create or update for the same id, and a delete of a record whose
    create never left the device cancels both. Entries a drain is currently
    delivering are never rewritten; mutations for those records are appended
    behind them instead.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or app_paths.data_path("outbox.jsonl")
        self._lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._in_flight: Set[Tuple[Any, Any]] = set()
        if self._path.parent and not self._path.parent.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # File helpers (callers hold the lock)
    # ------------------------------------------------------------------
    def _read(self) -> List[Entry]:
        if not self._path.exists():
            return []
        with self._path.open("r", encoding="utf-8") as handle:
            lines = handle.readlines()
        entries: List[Entry] = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable outbox line")
                continue
            if isinstance(payload, dict) and payload.get("op") in _OPERATIONS:
                entries.append(payload)
        return entries

    def _write(self, entries: List[Entry]) -> None:
        if not entries:
            try:
                self._path.unlink()
            except FileNotFoundError:
                pass
            return
        with self._path.open("w", encoding="utf-8") as handle:
            for entry in entries:
                handle.write(json.dumps(entry, ensure_ascii=False))
                handle.write("\n")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def enqueue(
        self,
        op: str,
        collection: str,
        record_id: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if op not in _OPERATIONS:
            raise ValueError(f"Unsupported outbox operation: {op}")

        with self._lock:
            entries = self._read()
            same = [
                entry
                for entry in entries
                if entry.get("collection") == collection and entry.get("record_id") == record_id
            ]
            if (collection, record_id) in self._in_flight:
                entries.append(self._entry(op, collection, record_id, payload))
                self._write(entries)
                return
            pending_create = next((entry for entry in same if entry["op"] == OP_CREATE), None)

            if op == OP_DELETE:
                entries = [entry for entry in entries if entry not in same]
                if pending_create is None:
                    entries.append(self._entry(op, collection, record_id, None))
            elif op == OP_UPDATE and same:
                target = pending_create or next(
                    (entry for entry in reversed(same) if entry["op"] == OP_UPDATE), None
                )
                if target is None:
                    # A delete is already pending; the update is moot.
                    return
                merged = dict(target.get("payload") or {})
                merged.update(dict(payload or {}))
                target["payload"] = merged
            else:
                entries.append(self._entry(op, collection, record_id, payload))
            self._write(entries)

    @staticmethod
    def _entry(op: str, collection: str, record_id: str, payload: Optional[Mapping[str, Any]]) -> Entry:
        return {
            "op": op,
            "collection": collection,
            "record_id": record_id,
            "payload": dict(payload) if payload is not None else None,
            "queued_at": now_iso(),
        }

    def entries(self) -> List[Entry]:
        with self._lock:
            return self._read()

    def __len__(self) -> int:
        return len(self.entries())

    def pending_ids(self, collection: str, op: str = OP_DELETE) -> Set[str]:
        return {
            str(entry.get("record_id"))
            for entry in self.entries()
            if entry.get("collection") == collection and entry.get("op") == op
        }

    def drain(self, handler: Callable[[Mapping[str, Any]], None]) -> int:
        """Replay queued entries invoking ``handler`` for each payload.

        ``handler`` raising keeps the entry (and every later entry for the same
        record, so mutations are never applied out of order) for the next
        drain. The handler runs without the queue lock held, so mutations can
        be queued while a replay is talking to the backend. Returns the number
        of delivered entries.
        """

        with self._drain_lock:
            with self._lock:
                snapshot = self._read()
                if not snapshot:
                    return 0
                self._in_flight = {(entry.get("collection"), entry.get("record_id")) for entry in snapshot}

            delivered: List[Entry] = []
            blocked: Set[Tuple[Any, Any]] = set()
            try:
                for entry in snapshot:
                    key = (entry.get("collection"), entry.get("record_id"))
                    if key in blocked:
                        continue
                    try:
                        handler(entry)
                    except Exception as exc:
                        logger.info("Outbox entry %s %s kept for retry: %s", entry["op"], key, exc)
                        blocked.add(key)
                    else:
                        delivered.append(entry)
            finally:
                with self._lock:
                    remaining = self._read()
                    for entry in delivered:
                        if entry in remaining:
                            remaining.remove(entry)
                    self._write(remaining)
                    self._in_flight = set()
        return len(delivered)

    def pending_payloads(self, collection: str) -> Dict[str, Dict[str, Any]]:
        """Return the queued create/update fields per record id of ``collection``."""

        payloads: Dict[str, Dict[str, Any]] = {}
        for entry in self.entries():
            if entry.get("collection") != collection:
                continue
            record_id = str(entry.get("record_id"))
            if entry.get("op") == OP_DELETE:
                payloads.pop(record_id, None)
                continue
            payloads.setdefault(record_id, {}).update(entry.get("payload") or {})
        return payloads

    def clear(self) -> None:
        with self._lock:
            self._write([])


__all__ = ["OP_CREATE", "OP_DELETE", "OP_UPDATE", "OutboxQueue"]
