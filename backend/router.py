"""Transport-independent request router for the backend.

:meth:`Router.route` takes ``(method, resource_path, query_params, body)`` and
returns a :class:`RouteResponse`. The Flask adapter in :mod:`backend.web` is a
thin shell around it, so the routing rules can be exercised without a server.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from core.entities import COLLECTIONS, CollectionSpec, find_collection, validate_record
from core.errors import ValidationError
from core.timestamps import epoch_ms, format_iso, utc_now

from backend.blob_store import BlobStore, UploadError, parse_upload
from backend.row_store import DuplicateRecordError, RecordNotFoundError, RowStore

logger = logging.getLogger(__name__)

CORS_HEADERS: Mapping[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024


@dataclass
class RouteResponse:
    status: int
    body: Optional[Dict[str, Any]]
    headers: Dict[str, str] = field(default_factory=lambda: dict(CORS_HEADERS))


class RouteError(Exception):
    """Raised inside handlers to produce an error envelope with ``status``."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


def ok(data: Any, status: int = 200) -> RouteResponse:
    return RouteResponse(status=status, body={"status": "ok", "data": data})


def error(status: int, message: str) -> RouteResponse:
    return RouteResponse(status=status, body={"status": "error", "message": message})


def split_resource(resource_path: str) -> Tuple[str, Optional[str]]:
    """Return ``(resource, record_id)`` for ``"vehicles/abc"`` style paths."""

    parts = [part for part in (resource_path or "").strip().split("/") if part]
    if not parts:
        return "", None
    return parts[0].lower(), (parts[1] if len(parts) > 1 else None)


class Router:
    """Dispatch requests to the per-collection row stores."""

    def __init__(
        self,
        stores: Mapping[str, RowStore],
        *,
        blobs: Optional[BlobStore] = None,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
    ) -> None:
        self._stores = dict(stores)
        self._blobs = blobs
        self._max_upload_bytes = max_upload_bytes
        self._special: Dict[str, Callable[[str, Mapping[str, Any], Any], RouteResponse]] = {
            "sync": self._handle_sync,
            "upload": self._handle_upload,
            "install": self._handle_install,
        }

    @property
    def stores(self) -> Dict[str, RowStore]:
        return dict(self._stores)

    def _collections(self) -> List[Tuple[CollectionSpec, RowStore]]:
        return [(spec, self._stores[spec.name]) for spec in COLLECTIONS if spec.name in self._stores]

    def route(
        self,
        method: str,
        resource_path: str,
        query_params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
    ) -> RouteResponse:
        method = (method or "GET").upper()
        params = dict(query_params or {})
        if method == "OPTIONS":
            return RouteResponse(status=204, body=None)

        path = resource_path or str(params.get("action") or "")
        resource, record_id = split_resource(path)
        record_id = record_id or (str(params["id"]) if params.get("id") else None)

        try:
            handler = self._special.get(resource)
            if handler is not None:
                return handler(method, params, body)
            spec = find_collection(resource)
            if spec is None or spec.name not in self._stores:
                raise RouteError(404, f"Unknown resource: {resource or '(none)'}")
            return self._handle_collection(method, spec, self._stores[spec.name], record_id, params, body)
        except RouteError as exc:
            return error(exc.status, exc.message)
        except ValidationError as exc:
            return error(400, exc.message)
        except RecordNotFoundError as exc:
            return error(404, str(exc))
        except DuplicateRecordError as exc:
            return error(409, str(exc))
        except Exception as exc:
            logger.exception("Unhandled error for %s %s", method, path)
            return error(500, f"Internal error: {exc}")

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------
    def _handle_collection(
        self,
        method: str,
        spec: CollectionSpec,
        store: RowStore,
        record_id: Optional[str],
        params: Mapping[str, Any],
        body: Any,
    ) -> RouteResponse:
        if method == "GET":
            if record_id:
                row = store.get_by_key(record_id)
                if row is None:
                    raise RecordNotFoundError(f"{spec.name} {record_id} not found")
                return ok(row)
            return ok(store.scan(params.get("since")))

        if method == "POST":
            record = validate_record(spec, self._require_body(body))
            if record_id and not record.get(spec.id_field):
                record[spec.id_field] = record_id
            return ok(store.append(record), status=201)

        if method == "PUT":
            if not record_id:
                raise RouteError(400, "Record id is required")
            patch = validate_record(spec, self._require_body(body), partial=True)
            return ok(store.update_by_key(record_id, patch))

        if method == "DELETE":
            if not record_id:
                raise RouteError(400, "Record id is required")
            store.delete_by_key(record_id)
            return ok({spec.id_field: record_id})

        raise RouteError(405, f"Method {method} not allowed for {spec.name}")

    @staticmethod
    def _require_body(body: Any) -> Mapping[str, Any]:
        if not isinstance(body, Mapping) or not body:
            raise RouteError(400, "Request body is required")
        return body

    # ------------------------------------------------------------------
    # Special actions
    # ------------------------------------------------------------------
    def _handle_sync(self, method: str, params: Mapping[str, Any], body: Any) -> RouteResponse:
        if method != "GET":
            raise RouteError(405, f"Method {method} not allowed for sync")
        since = params.get("since")
        payload: Dict[str, Any] = {spec.name: store.scan(since) for spec, store in self._collections()}
        now = utc_now()
        payload["timestamp"] = epoch_ms(now)
        payload["server_time"] = format_iso(now)
        return ok(payload)

    def _handle_upload(self, method: str, params: Mapping[str, Any], body: Any) -> RouteResponse:
        if method != "POST":
            raise RouteError(405, f"Method {method} not allowed for upload")
        if self._blobs is None:
            raise RouteError(501, "File uploads are not configured")
        try:
            upload = parse_upload(self._require_body(body), max_bytes=self._max_upload_bytes)
        except UploadError as exc:
            raise RouteError(400, str(exc)) from None
        url = self._blobs.put(upload)
        return ok({"url": url})

    def _handle_install(self, method: str, params: Mapping[str, Any], body: Any) -> RouteResponse:
        if method not in ("GET", "POST"):
            raise RouteError(405, f"Method {method} not allowed for install")
        installed = []
        for spec, store in self._collections():
            store.ensure()
            installed.append({"name": spec.name, "sheet": spec.sheet_title, "columns": spec.field_names})
        logger.info("Installed %d collections", len(installed))
        return ok({"collections": installed})


__all__ = [
    "CORS_HEADERS",
    "RouteError",
    "RouteResponse",
    "Router",
    "error",
    "ok",
    "split_resource",
]
