"""Offline-first synchronisation of the local store with the sync backend.

The engine owns the client-side state: the in-memory mirror of every
collection, the connectivity flag and the per-collection sync state. Mutations
are written to the :class:`~core.local_store.LocalStore` first and pushed to
the backend on a best-effort basis; anything that cannot be delivered is
queued in the :class:`~core.offline_queue.OutboxQueue` and replayed before the
next pull. Pulls merge the remote collection into the local copy with
:func:`~core.merge.merge_records`.

No public operation raises for remote failures. Callers receive an
:class:`OperationResult` or :class:`SyncResult` carrying an
:class:`~core.errors.ErrorKind` and a message suitable for a notification.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from core.api_client import ApiClient, RetryPolicy
from core.entities import (
    COLLECTIONS,
    CollectionSpec,
    get_collection,
    new_record_id,
    validate_record,
    vehicle_label,
)
from core.errors import (
    ConflictError,
    ErrorKind,
    NotFoundError,
    SyncError,
    TransportError,
    ValidationError,
)
from core.local_store import LocalStore
from core.merge import merge_records, remove_record
from core.offline_queue import OP_CREATE, OP_DELETE, OP_UPDATE, OutboxQueue
from core.timestamps import epoch_ms, later_of, now_iso

logger = logging.getLogger(__name__)


class CollectionState(Enum):
    IDLE = "idle"
    PULLING = "pulling"
    MERGING = "merging"
    PERSISTED = "persisted"
    FAILED = "failed"


StateCallback = Callable[[str, CollectionState], None]


def _same_id(value: Any, record_id: str) -> bool:
    # The backend stores ids as text; older local copies may hold numbers.
    return value is not None and str(value) == str(record_id)


@dataclass
class OperationResult:
    """Outcome of a create/update/delete call.

    ``ok`` reports whether the local write happened. ``degraded`` is set when
    the backend has not (yet) accepted the change; ``message`` then explains
    what the user should be told.
    """

    ok: bool
    record: Optional[Dict[str, Any]] = None
    degraded: bool = False
    error_kind: Optional[ErrorKind] = None
    message: str = ""

    @classmethod
    def failure(cls, error: SyncError) -> "OperationResult":
        return cls(ok=False, error_kind=error.kind, message=error.message)


@dataclass
class CollectionSyncResult:
    name: str
    ok: bool
    skipped: bool = False
    pulled: int = 0
    total: int = 0
    error_kind: Optional[ErrorKind] = None
    message: str = ""


@dataclass
class SyncResult:
    ok: bool
    skipped: bool = False
    reason: str = ""
    replayed: int = 0
    collections: Dict[str, CollectionSyncResult] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.ok

    @property
    def failed(self) -> List[str]:
        return [name for name, result in self.collections.items() if not result.ok and not result.skipped]


class SyncEngine:
    """Coordinate optimistic local writes, outbox replay and pull/merge passes."""

    def __init__(
        self,
        store: LocalStore,
        client: ApiClient,
        *,
        outbox: Optional[OutboxQueue] = None,
        online: bool = True,
        incremental_pull: bool = False,
        collections: Sequence[CollectionSpec] = COLLECTIONS,
        state_callback: Optional[StateCallback] = None,
    ) -> None:
        self._store = store
        self._client = client
        self._outbox = outbox or OutboxQueue(store.directory / "outbox.jsonl")
        self._online = online
        self._incremental = incremental_pull
        self._collections: Tuple[CollectionSpec, ...] = tuple(collections)
        self._state_callback = state_callback
        self._guards: Dict[str, threading.Lock] = {spec.name: threading.Lock() for spec in self._collections}
        self._write_locks: Dict[str, threading.RLock] = {
            spec.name: threading.RLock() for spec in self._collections
        }
        self._states: Dict[str, CollectionState] = {
            spec.name: CollectionState.IDLE for spec in self._collections
        }
        self._last_outcome: Dict[str, Optional[CollectionState]] = {
            spec.name: None for spec in self._collections
        }
        self._cache: Dict[str, List[Dict[str, Any]]] = {}
        self.reload()

    # ------------------------------------------------------------------
    # State and configuration
    # ------------------------------------------------------------------
    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online != self._online:
            logger.info("Connectivity changed: %s", "online" if online else "offline")
        self._online = online

    @property
    def is_configured(self) -> bool:
        return self._client.is_configured

    @property
    def backend_url(self) -> Optional[str]:
        return self._client.base_url

    def set_backend_url(self, url: Optional[str]) -> None:
        self._store.set_backend_url(url)
        self._client.reset_base_url()

    @property
    def last_sync(self) -> Optional[int]:
        return self._store.get_last_sync()

    def seconds_since_last_sync(self) -> Optional[float]:
        last = self.last_sync
        if last is None:
            return None
        return max(0.0, (epoch_ms() - last) / 1000.0)

    def state(self, name: str) -> CollectionState:
        return self._states[get_collection(name).name]

    def last_outcome(self, name: str) -> Optional[CollectionState]:
        return self._last_outcome[get_collection(name).name]

    def pending_mutations(self) -> List[Dict[str, Any]]:
        return self._outbox.entries()

    def reload(self) -> None:
        """Refresh the in-memory mirror from the local store."""

        for spec in self._collections:
            self._cache[spec.name] = self._store.get_records(spec.storage_key)

    def get_collection(self, name: str) -> List[Dict[str, Any]]:
        spec = self._spec(name)
        return [dict(item) for item in self._cache.get(spec.name, [])]

    def find(self, name: str, record_id: str) -> Optional[Dict[str, Any]]:
        spec = self._spec(name)
        for item in self._cache.get(spec.name, []):
            if _same_id(item.get(spec.id_field), record_id):
                return dict(item)
        return None

    def vehicle_label(self, vehicle_id: Optional[str]) -> str:
        return vehicle_label(self._cache.get("vehicles", []), vehicle_id)

    def _spec(self, name: str) -> CollectionSpec:
        spec = get_collection(name)
        if spec.name not in self._guards:
            raise KeyError(f"Collection {name!r} is not managed by this engine")
        return spec

    def _set_state(self, spec: CollectionSpec, state: CollectionState) -> None:
        self._states[spec.name] = state
        if state in (CollectionState.PERSISTED, CollectionState.FAILED):
            self._last_outcome[spec.name] = state
        if self._state_callback:
            try:
                self._state_callback(spec.name, state)
            except Exception:  # pragma: no cover - UI callback guard
                logger.debug("Sync state callback failed", exc_info=True)

    def _save(self, spec: CollectionSpec, records: List[Dict[str, Any]]) -> None:
        self._store.set_records(spec.storage_key, records)
        self._cache[spec.name] = [dict(item) for item in records]

    # ------------------------------------------------------------------
    # Pull / merge
    # ------------------------------------------------------------------
    def sync_all(self) -> SyncResult:
        """Replay pending mutations then pull and merge every collection."""

        if not self._online:
            logger.info("Skipping sync - offline")
            return SyncResult(ok=False, skipped=True, reason="offline")
        if not self._client.is_configured:
            logger.info("Skipping sync - backend URL not configured")
            return SyncResult(ok=False, skipped=True, reason="not configured")

        logger.info("Starting data synchronisation")
        replayed = self.flush_outbox()
        results: Dict[str, CollectionSyncResult] = {}
        for spec in self._collections:
            results[spec.name] = self.sync_collection(spec.name)

        ok = all(result.ok or result.skipped for result in results.values())
        if ok:
            self._store.set_last_sync(epoch_ms())
            logger.info("Data synchronisation completed")
        else:
            logger.warning(
                "Data synchronisation finished with failures: %s",
                ", ".join(name for name, result in results.items() if not result.ok and not result.skipped),
            )
        return SyncResult(ok=ok, replayed=replayed, collections=results)

    def sync_collection(self, name: str) -> CollectionSyncResult:
        """Pull ``name`` from the backend and merge it into the local store.

        A second call for the same collection while one is running returns a
        skipped result immediately instead of issuing another pull.
        """

        spec = self._spec(name)
        guard = self._guards[spec.name]
        if not guard.acquire(blocking=False):
            logger.info("Sync of %s already in progress", spec.name)
            return CollectionSyncResult(name=spec.name, ok=False, skipped=True, message="already in progress")
        try:
            return self._sync_collection(spec)
        finally:
            self._set_state(spec, CollectionState.IDLE)
            guard.release()

    def _sync_collection(self, spec: CollectionSpec) -> CollectionSyncResult:
        self._set_state(spec, CollectionState.PULLING)
        since = self._store.get_last_sync() if self._incremental else None
        try:
            envelope = self._client.call(spec.resource, "GET", since=since)
            remote = self._rows_from(envelope, spec)
        except SyncError as exc:
            logger.error("Failed to sync %s: %s", spec.name, exc)
            self._set_state(spec, CollectionState.FAILED)
            return CollectionSyncResult(name=spec.name, ok=False, error_kind=exc.kind, message=str(exc))

        self._set_state(spec, CollectionState.MERGING)
        with self._write_locks[spec.name]:
            local = self._store.get_records(spec.storage_key)
            merged = merge_records(
                local,
                remote,
                spec.id_field,
                exclude_ids=self._outbox.pending_ids(spec.name, OP_DELETE),
            )
            merged = self._reapply_pending(spec, merged)
            self._save(spec, merged)
        self._set_state(spec, CollectionState.PERSISTED)
        logger.info("Synced %s %s from backend (%s local)", len(remote), spec.name, len(merged))
        return CollectionSyncResult(name=spec.name, ok=True, pulled=len(remote), total=len(merged))

    def _reapply_pending(self, spec: CollectionSpec, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Lay queued create/update payloads back over freshly merged records.

        A pull can return a row older than an edit still waiting in the
        outbox; the queued fields stay authoritative until they are delivered.
        """

        pending = self._outbox.pending_payloads(spec.name)
        if not pending:
            return records
        result: List[Dict[str, Any]] = []
        for item in records:
            payload = pending.get(str(item.get(spec.id_field)))
            result.append({**item, **payload} if payload else item)
        return result

    @staticmethod
    def _rows_from(envelope: Mapping[str, Any], spec: CollectionSpec) -> List[Dict[str, Any]]:
        data = envelope.get("data")
        if isinstance(data, Mapping) and isinstance(data.get(spec.resource), list):
            data = data[spec.resource]
        if not isinstance(data, list):
            raise TransportError(f"Malformed {spec.resource} payload from backend", action=spec.resource)
        return [dict(item) for item in data if isinstance(item, Mapping)]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def create_entity(self, name: str, data: Mapping[str, Any]) -> OperationResult:
        spec = self._spec(name)
        try:
            record = validate_record(spec, data)
        except ValidationError as exc:
            return OperationResult.failure(exc)

        with self._write_locks[spec.name]:
            records = self._store.get_records(spec.storage_key)
            record_id = str(record.get(spec.id_field) or "").strip() or new_record_id()
            if any(_same_id(item.get(spec.id_field), record_id) for item in records):
                return OperationResult.failure(ConflictError(f"{spec.name} {record_id} already exists"))
            stamp = now_iso()
            record[spec.id_field] = record_id
            record["created_date"] = stamp
            record["last_updated"] = stamp
            records.append(record)
            self._save(spec, records)

        delivered, error, remote = self._push(OP_CREATE, spec, record_id, record)
        if remote:
            record = self._apply_remote(spec, record_id, remote) or record
        return self._mutation_result(record, delivered, error, "saved")

    def update_entity(self, name: str, record_id: str, data: Mapping[str, Any]) -> OperationResult:
        spec = self._spec(name)
        record_id = str(record_id)
        try:
            patch = validate_record(spec, data, partial=True)
        except ValidationError as exc:
            return OperationResult.failure(exc)
        patch.pop(spec.id_field, None)
        patch.pop("created_date", None)

        with self._write_locks[spec.name]:
            records = self._store.get_records(spec.storage_key)
            position = next(
                (index for index, item in enumerate(records) if _same_id(item.get(spec.id_field), record_id)),
                None,
            )
            if position is None:
                return OperationResult.failure(NotFoundError(f"{spec.name} {record_id} not found"))
            current = records[position]
            patch["last_updated"] = later_of(current.get("last_updated"), now_iso())
            updated = {**current, **patch}
            records[position] = updated
            self._save(spec, records)

        delivered, error, remote = self._push(OP_UPDATE, spec, record_id, patch)
        if remote:
            updated = self._apply_remote(spec, record_id, remote) or updated
        return self._mutation_result(updated, delivered, error, "updated")

    def delete_entity(self, name: str, record_id: str) -> OperationResult:
        spec = self._spec(name)
        record_id = str(record_id)
        with self._write_locks[spec.name]:
            records = self._store.get_records(spec.storage_key)
            existing = next((item for item in records if _same_id(item.get(spec.id_field), record_id)), None)
            if existing is None:
                return OperationResult.failure(NotFoundError(f"{spec.name} {record_id} not found"))
            self._save(spec, remove_record(records, spec.id_field, record_id))

        delivered, error, _ = self._push(OP_DELETE, spec, record_id, None)
        return self._mutation_result(existing, delivered, error, "deleted")

    @staticmethod
    def _mutation_result(
        record: Dict[str, Any],
        delivered: bool,
        error: Optional[SyncError],
        verb: str,
    ) -> OperationResult:
        if delivered:
            return OperationResult(ok=True, record=record)
        if error is None:
            message = f"Working offline - record {verb} locally and queued for sync"
        elif error.kind in (ErrorKind.VALIDATION, ErrorKind.NOT_FOUND):
            message = f"Record {verb} locally but the backend rejected it: {error.message}"
        else:
            message = f"Record {verb} locally; backend sync failed and will be retried"
        return OperationResult(
            ok=True,
            record=record,
            degraded=True,
            error_kind=error.kind if error else None,
            message=message,
        )

    def _apply_remote(self, spec: CollectionSpec, record_id: str, remote: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        if not _same_id(remote.get(spec.id_field), record_id):
            return None
        with self._write_locks[spec.name]:
            records = self._store.get_records(spec.storage_key)
            merged = merge_records(records, [remote], spec.id_field)
            self._save(spec, merged)
        for item in merged:
            if _same_id(item.get(spec.id_field), record_id):
                return item
        return None

    # ------------------------------------------------------------------
    # Remote delivery
    # ------------------------------------------------------------------
    def _send(
        self,
        op: str,
        spec: CollectionSpec,
        record_id: str,
        payload: Optional[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        if op == OP_CREATE:
            return self._client.call(spec.resource, "POST", payload)
        if op == OP_UPDATE:
            return self._client.call(spec.resource, "PUT", payload, record_id=record_id)
        return self._client.call(spec.resource, "DELETE", record_id=record_id)

    @staticmethod
    def _already_applied(op: str, error: SyncError) -> bool:
        return (op == OP_CREATE and isinstance(error, ConflictError)) or (
            op == OP_DELETE and isinstance(error, NotFoundError)
        )

    def _push(
        self,
        op: str,
        spec: CollectionSpec,
        record_id: str,
        payload: Optional[Mapping[str, Any]],
    ) -> Tuple[bool, Optional[SyncError], Optional[Dict[str, Any]]]:
        """Deliver one mutation, queueing it when the backend cannot take it now."""

        queued_for_record = any(
            entry.get("collection") == spec.name and entry.get("record_id") == record_id
            for entry in self._outbox.entries()
        )
        if not self._online or not self._client.is_configured or queued_for_record:
            self._outbox.enqueue(op, spec.name, record_id, payload)
            return False, None, None

        try:
            envelope = self._send(op, spec, record_id, payload)
        except SyncError as exc:
            if self._already_applied(op, exc):
                logger.info("Backend already applied %s of %s %s", op, spec.name, record_id)
                return True, None, None
            if exc.kind in (ErrorKind.VALIDATION, ErrorKind.NOT_FOUND):
                logger.warning("Backend rejected %s of %s %s: %s", op, spec.name, record_id, exc)
                return False, exc, None
            logger.warning("Queueing %s of %s %s after failure: %s", op, spec.name, record_id, exc)
            self._outbox.enqueue(op, spec.name, record_id, payload)
            return False, exc, None

        data = envelope.get("data")
        return True, None, dict(data) if isinstance(data, Mapping) else None

    def flush_outbox(self) -> int:
        """Replay queued mutations; returns how many reached the backend."""

        if not self._online or not self._client.is_configured:
            return 0

        def _deliver(entry: Mapping[str, Any]) -> None:
            op = str(entry.get("op"))
            spec = get_collection(str(entry.get("collection")))
            record_id = str(entry.get("record_id"))
            try:
                self._send(op, spec, record_id, entry.get("payload"))
            except SyncError as exc:
                if self._already_applied(op, exc):
                    return
                if exc.kind in (ErrorKind.VALIDATION, ErrorKind.NOT_FOUND):
                    logger.warning("Dropping queued %s of %s %s: %s", op, spec.name, record_id, exc)
                    return
                raise

        sent = self._outbox.drain(_deliver)
        if sent:
            logger.info("Replayed %s queued mutation(s)", sent)
        return sent


def build_engine(settings, *, store: Optional[LocalStore] = None, session=None) -> SyncEngine:
    """Construct a :class:`SyncEngine` from :class:`settings.ClientSettings`."""

    store = store or LocalStore(settings.resolved_store_dir(), prefix=settings.storage_prefix)

    def _url() -> Optional[str]:
        return store.get_backend_url() or settings.backend_url or None

    client = ApiClient(
        _url,
        timeout=settings.timeout_seconds,
        retry=RetryPolicy(attempts=settings.retry_attempts, base_delay=settings.retry_delay_seconds),
        session=session,
    )
    return SyncEngine(
        store,
        client,
        outbox=OutboxQueue(Path(store.directory) / "outbox.jsonl"),
        incremental_pull=settings.incremental_pull,
    )


__all__ = [
    "CollectionState",
    "CollectionSyncResult",
    "OperationResult",
    "SyncEngine",
    "SyncResult",
    "build_engine",
]
