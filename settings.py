"""Configuration helpers for the sync client and the backend."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

from core import app_paths

logger = logging.getLogger(__name__)

CLIENT_SETTINGS_FILENAME = "client_settings.json"
BACKEND_SETTINGS_FILENAME = "backend_settings.json"

DEFAULT_SYNC_INTERVAL_SECONDS = 600
DEFAULT_STALE_AFTER_SECONDS = 300
DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024

STORE_BACKENDS = ("memory", "sqlite", "sheets")
BLOB_BACKENDS = ("local", "drive")

_T = TypeVar("_T")


@dataclass
class ClientSettings:
    backend_url: str = ""
    timeout_seconds: float = 30.0
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0
    sync_interval_seconds: int = DEFAULT_SYNC_INTERVAL_SECONDS
    stale_after_seconds: int = DEFAULT_STALE_AFTER_SECONDS
    incremental_pull: bool = False
    storage_prefix: str = "vm_app_"
    store_dir: str = ""

    def resolved_store_dir(self) -> Path:
        if self.store_dir:
            return Path(self.store_dir).expanduser()
        return app_paths.STORE_DIR

    def to_json(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class BackendSettings:
    store: str = "sqlite"
    sqlite_path: str = ""
    spreadsheet_id: str = ""
    credential_path: str = ""
    blob_backend: str = "local"
    blob_dir: str = ""
    drive_folder_id: str = ""
    public_base_url: str = ""
    host: str = "127.0.0.1"
    port: int = 8080
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES

    def resolved_sqlite_path(self) -> Path:
        if self.sqlite_path:
            return Path(self.sqlite_path).expanduser()
        return app_paths.data_path("backend.db")

    def resolved_blob_dir(self) -> Path:
        if self.blob_dir:
            return Path(self.blob_dir).expanduser()
        return app_paths.BLOBS_DIR

    def resolved_credential_path(self) -> Path:
        if self.credential_path:
            return Path(self.credential_path).expanduser()
        return app_paths.credentials_path("service_account.json")

    def to_json(self) -> Dict[str, object]:
        return asdict(self)


def _from_mapping(cls: Type[_T], data: Mapping[str, Any]) -> _T:
    known = {item.name: item for item in fields(cls)}  # type: ignore[arg-type]
    kwargs: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            logger.debug("Ignoring unknown setting %s", key)
            continue
        default = known[key].default
        try:
            if isinstance(default, bool):
                kwargs[key] = value if isinstance(value, bool) else str(value).lower() in {"1", "true", "yes"}
            elif isinstance(default, int):
                kwargs[key] = int(value)
            elif isinstance(default, float):
                kwargs[key] = float(value)
            else:
                kwargs[key] = "" if value is None else str(value)
        except (TypeError, ValueError):
            logger.warning("Invalid value for setting %s: %r", key, value)
    return cls(**kwargs)


def _read_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError):
        logger.error("Failed to read settings from %s", path, exc_info=True)
        return {}
    return data if isinstance(data, dict) else {}


def _write_json(path: Path, payload: Mapping[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(dict(payload), handle, indent=2, ensure_ascii=False)


def client_settings_path() -> Path:
    return app_paths.data_path(CLIENT_SETTINGS_FILENAME)


def backend_settings_path() -> Path:
    return app_paths.data_path(BACKEND_SETTINGS_FILENAME)


def load_client_settings(path: Optional[Path] = None) -> ClientSettings:
    target = path or client_settings_path()
    data = _read_json(target)
    if not target.exists():
        _write_json(target, ClientSettings().to_json())
    settings = _from_mapping(ClientSettings, data)
    env_url = os.getenv("VMS_BACKEND_URL")
    if env_url:
        settings.backend_url = env_url.strip()
    return settings


def save_client_settings(settings: ClientSettings, path: Optional[Path] = None) -> None:
    _write_json(path or client_settings_path(), settings.to_json())


def load_backend_settings(path: Optional[Path] = None) -> BackendSettings:
    target = path or backend_settings_path()
    data = _read_json(target)
    if not target.exists():
        _write_json(target, BackendSettings().to_json())
    settings = _from_mapping(BackendSettings, data)

    overrides = {
        "store": os.getenv("VMS_STORE"),
        "spreadsheet_id": os.getenv("VMS_SPREADSHEET_ID"),
        "credential_path": os.getenv("VMS_CREDENTIALS_PATH"),
        "drive_folder_id": os.getenv("VMS_DRIVE_FOLDER_ID"),
    }
    for key, value in overrides.items():
        if value:
            setattr(settings, key, value.strip())

    if settings.store not in STORE_BACKENDS:
        logger.warning("Unknown store backend %r, falling back to sqlite", settings.store)
        settings.store = "sqlite"
    if settings.blob_backend not in BLOB_BACKENDS:
        logger.warning("Unknown blob backend %r, falling back to local", settings.blob_backend)
        settings.blob_backend = "local"
    return settings


def save_backend_settings(settings: BackendSettings, path: Optional[Path] = None) -> None:
    _write_json(path or backend_settings_path(), settings.to_json())


__all__ = [
    "BLOB_BACKENDS",
    "BackendSettings",
    "ClientSettings",
    "DEFAULT_MAX_UPLOAD_BYTES",
    "DEFAULT_STALE_AFTER_SECONDS",
    "DEFAULT_SYNC_INTERVAL_SECONDS",
    "STORE_BACKENDS",
    "backend_settings_path",
    "client_settings_path",
    "load_backend_settings",
    "load_client_settings",
    "save_backend_settings",
    "save_client_settings",
]
