"""JSON file backed key/value store holding the client's working copy."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, List, Optional

from core import app_paths

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "vm_app_"

BACKEND_URL_KEY = "backendUrl"
LAST_SYNC_KEY = "lastSync"


class LocalStore:
    """Persist one JSON document per key, namespaced with ``prefix``.

    Reads of missing or corrupt keys return ``None`` (the record list is then
    treated as empty by callers) and writes are atomic so a crash mid-write
    never leaves a truncated collection behind.
    """

    def __init__(self, directory: Optional[Path] = None, *, prefix: str = DEFAULT_PREFIX) -> None:
        self._directory = Path(directory) if directory else app_paths.STORE_DIR
        self._prefix = prefix
        self._lock = threading.RLock()
        self._directory.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._directory

    def _path_for(self, key: str) -> Path:
        return self._directory / f"{self._prefix}{key}.json"

    def get(self, key: str, default: Any = None) -> Any:
        path = self._path_for(key)
        with self._lock:
            if not path.exists():
                return default
            try:
                with path.open("r", encoding="utf-8") as handle:
                    return json.load(handle)
            except (OSError, json.JSONDecodeError):
                logger.error("Failed to read %s from local store", key, exc_info=True)
                return default

    def set(self, key: str, value: Any) -> None:
        path = self._path_for(key)
        payload = json.dumps(value, ensure_ascii=False, indent=2)
        with self._lock:
            fd, temp_name = tempfile.mkstemp(prefix=".tmp-", dir=str(self._directory))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(temp_name, path)
            except BaseException:
                try:
                    os.unlink(temp_name)
                except FileNotFoundError:
                    pass
                raise

    def remove(self, key: str) -> bool:
        with self._lock:
            try:
                self._path_for(key).unlink()
            except FileNotFoundError:
                return False
        return True

    def keys(self) -> List[str]:
        names: List[str] = []
        for path in sorted(self._directory.glob(f"{self._prefix}*.json")):
            names.append(path.stem[len(self._prefix):])
        return names

    def clear(self) -> None:
        """Remove every key owned by this store's prefix."""

        with self._lock:
            for key in self.keys():
                self.remove(key)

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------
    def get_records(self, key: str) -> List[dict]:
        value = self.get(key)
        if not isinstance(value, list):
            return []
        return [dict(item) for item in value if isinstance(item, dict)]

    def set_records(self, key: str, records: List[dict]) -> None:
        self.set(key, list(records))

    def get_backend_url(self) -> Optional[str]:
        value = self.get(BACKEND_URL_KEY)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    def set_backend_url(self, url: Optional[str]) -> None:
        if url and url.strip():
            self.set(BACKEND_URL_KEY, url.strip())
        else:
            self.remove(BACKEND_URL_KEY)

    def get_last_sync(self) -> Optional[int]:
        value = self.get(LAST_SYNC_KEY)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
        return None

    def set_last_sync(self, value: int) -> None:
        self.set(LAST_SYNC_KEY, int(value))


__all__ = ["BACKEND_URL_KEY", "DEFAULT_PREFIX", "LAST_SYNC_KEY", "LocalStore"]
