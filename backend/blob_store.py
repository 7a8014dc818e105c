"""Storage targets for uploaded files (vehicle photos and receipt images)."""
from __future__ import annotations

import base64
import binascii
import io
import logging
import re
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from googleapiclient.http import MediaIoBaseUpload
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
DEFAULT_FOLDER = "uploads"

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class UploadError(ValueError):
    """Raised when an upload payload is malformed or not acceptable."""


@dataclass
class Upload:
    filename: str
    mime_type: str
    content: bytes
    folder: str = DEFAULT_FOLDER


def safe_name(value: str, *, fallback: str) -> str:
    cleaned = _UNSAFE.sub("_", (value or "").strip()).strip("._")
    return cleaned or fallback


def parse_upload(payload: Mapping[str, Any], *, max_bytes: int) -> Upload:
    """Validate an upload request body and decode its base64 content."""

    if not isinstance(payload, Mapping):
        raise UploadError("Upload body must be an object")
    data = payload.get("data")
    if not isinstance(data, str) or not data.strip():
        raise UploadError("data is required")
    # Accept data URLs as produced by FileReader.readAsDataURL.
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        content = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise UploadError("data is not valid base64") from None
    if not content:
        raise UploadError("data is empty")
    if len(content) > max_bytes:
        raise UploadError(f"File exceeds the {max_bytes} byte upload limit")

    mime_type = str(payload.get("mimeType") or "application/octet-stream")
    if mime_type.startswith("image/"):
        try:
            with Image.open(io.BytesIO(content)) as image:
                image.verify()
        except (UnidentifiedImageError, OSError, SyntaxError):
            raise UploadError("data is not a readable image") from None

    filename = safe_name(str(payload.get("filename") or ""), fallback="upload")
    folder = safe_name(str(payload.get("folder") or ""), fallback=DEFAULT_FOLDER)
    return Upload(filename=filename, mime_type=mime_type, content=content, folder=folder)


class BlobStore(ABC):
    """Persist uploaded bytes and return a URL that serves them."""

    @abstractmethod
    def put(self, upload: Upload) -> str:
        ...


class LocalBlobStore(BlobStore):
    """Write uploads below ``root``; the web app serves them from ``/files``."""

    def __init__(self, root: Path, *, public_base_url: str = "") -> None:
        self.root = Path(root)
        self._public_base_url = public_base_url.rstrip("/")

    def path_for(self, folder: str, name: str) -> Path:
        return self.root / safe_name(folder, fallback=DEFAULT_FOLDER) / safe_name(name, fallback="upload")

    def put(self, upload: Upload) -> str:
        name = f"{uuid.uuid4().hex[:8]}_{upload.filename}"
        target = self.path_for(upload.folder, name)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(upload.content)
        logger.info("Stored upload %s (%d bytes)", target, len(upload.content))
        return f"{self._public_base_url}/files/{upload.folder}/{name}"


class DriveBlobStore(BlobStore):
    """Upload files to Google Drive and share them with anyone holding the link."""

    def __init__(self, service, *, root_folder_id: Optional[str] = None, root_name: str = "VehicleMaintenance") -> None:
        self._service = service
        self._root_folder_id = root_folder_id
        self._root_name = root_name
        self._folders: Dict[str, str] = {}
        self._lock = threading.Lock()

    def ensure_folder(self, name: str, parent_id: Optional[str] = None) -> str:
        """Ensure that a folder with the given name exists and return its ID."""

        parent_ref = parent_id or "root"
        escaped_name = name.replace("'", "\\'")
        query = " and ".join(
            [
                f"mimeType = '{FOLDER_MIME_TYPE}'",
                "trashed = false",
                f"name = '{escaped_name}'",
                f"'{parent_ref}' in parents",
            ]
        )
        response = self._service.files().list(q=query, spaces="drive", fields="files(id, name)").execute()
        files = response.get("files", [])
        if files:
            return files[0]["id"]

        metadata = {"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_ref]}
        created = self._service.files().create(body=metadata, fields="id").execute()
        logger.info("Created Drive folder %s", name)
        return created["id"]

    def _folder_id(self, folder: str) -> str:
        with self._lock:
            if folder not in self._folders:
                root_id = self._root_folder_id or self.ensure_folder(self._root_name)
                self._root_folder_id = root_id
                self._folders[folder] = self.ensure_folder(folder, parent_id=root_id)
            return self._folders[folder]

    def put(self, upload: Upload) -> str:
        media = MediaIoBaseUpload(io.BytesIO(upload.content), mimetype=upload.mime_type, resumable=False)
        metadata = {"name": upload.filename, "parents": [self._folder_id(upload.folder)]}
        created = (
            self._service.files()
            .create(body=metadata, media_body=media, fields="id, webViewLink")
            .execute()
        )
        file_id = created["id"]
        self._service.permissions().create(
            fileId=file_id,
            body={"type": "anyone", "role": "reader"},
        ).execute()
        logger.info("Uploaded %s to Drive as %s", upload.filename, file_id)
        return created.get("webViewLink") or f"https://drive.google.com/uc?id={file_id}"


__all__ = [
    "BlobStore",
    "DEFAULT_FOLDER",
    "DriveBlobStore",
    "LocalBlobStore",
    "Upload",
    "UploadError",
    "parse_upload",
    "safe_name",
]
