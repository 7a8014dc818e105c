"""Flask adapter exposing :class:`backend.router.Router` over HTTP."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

from flask import Flask, Response, abort, jsonify, request, send_from_directory

from core.entities import COLLECTIONS
from settings import BackendSettings

from backend.blob_store import BlobStore, DriveBlobStore, LocalBlobStore, safe_name
from backend.google_credentials import DRIVE_SCOPES, build_service
from backend.row_store import MemoryRowStore, RowStore
from backend.router import Router, RouteResponse
from backend.sheets_client import GoogleSheetsClient
from backend.sheets_store import SheetsRowStore
from backend.sqlite_store import SqliteRowStore

logger = logging.getLogger(__name__)

METHODS = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]


def build_stores(settings: BackendSettings) -> Dict[str, RowStore]:
    """Create one row store per collection for the configured backend."""

    if settings.store == "memory":
        return {spec.name: MemoryRowStore(spec) for spec in COLLECTIONS}
    if settings.store == "sheets":
        client = GoogleSheetsClient(settings.spreadsheet_id, settings.resolved_credential_path())
        return {spec.name: SheetsRowStore(spec, client) for spec in COLLECTIONS}
    path = settings.resolved_sqlite_path()
    return {spec.name: SqliteRowStore(spec, path) for spec in COLLECTIONS}


def build_blob_store(settings: BackendSettings) -> BlobStore:
    if settings.blob_backend == "drive":
        service = build_service("drive", "v3", settings.resolved_credential_path(), DRIVE_SCOPES)
        return DriveBlobStore(service, root_folder_id=settings.drive_folder_id or None)
    return LocalBlobStore(settings.resolved_blob_dir(), public_base_url=settings.public_base_url)


def build_router(settings: BackendSettings) -> Router:
    logger.info("Building router with %s store and %s blobs", settings.store, settings.blob_backend)
    return Router(
        build_stores(settings),
        blobs=build_blob_store(settings),
        max_upload_bytes=settings.max_upload_bytes,
    )


def _to_flask(result: RouteResponse) -> Response:
    if result.body is None:
        response = Response(status=result.status)
    else:
        response = jsonify(result.body)
        response.status_code = result.status
    for key, value in result.headers.items():
        response.headers[key] = value
    return response


def create_app(router: Router, *, blob_dir: Optional[Path] = None) -> Flask:
    """Return a Flask app that forwards every API request to ``router``."""

    app = Flask(__name__)
    app.config["ROUTER"] = router

    def _dispatch(resource: str = "") -> Response:
        body = request.get_json(silent=True) if request.method in ("POST", "PUT") else None
        result = router.route(request.method, resource, request.args.to_dict(), body)
        logger.debug("%s /%s -> %s", request.method, resource, result.status)
        return _to_flask(result)

    app.add_url_rule("/", "index", _dispatch, methods=METHODS)
    app.add_url_rule("/<path:resource>", "resource", _dispatch, methods=METHODS)

    if blob_dir is not None:
        root = Path(blob_dir).resolve()

        @app.route("/files/<folder>/<name>", methods=["GET"])
        def serve_file(folder: str, name: str) -> Response:
            if safe_name(folder, fallback="") != folder or safe_name(name, fallback="") != name:
                abort(404)
            response = send_from_directory(root / folder, name)
            response.headers["Access-Control-Allow-Origin"] = "*"
            return response

    return app


def create_app_from_settings(settings: BackendSettings) -> Flask:
    router = build_router(settings)
    blob_dir = settings.resolved_blob_dir() if settings.blob_backend == "local" else None
    return create_app(router, blob_dir=blob_dir)


__all__ = [
    "build_blob_store",
    "build_router",
    "build_stores",
    "create_app",
    "create_app_from_settings",
]
