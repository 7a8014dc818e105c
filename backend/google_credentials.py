"""Service account credential loading shared by the Sheets and Drive adapters."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, Mapping, Sequence

from google.oauth2 import service_account
from googleapiclient.discovery import build

logger = logging.getLogger(__name__)

__all__ = [
    "CredentialsFileInvalidError",
    "DRIVE_SCOPES",
    "REQUIRED_FIELDS",
    "SHEETS_SCOPES",
    "build_service",
    "load_service_account_data",
]

SHEETS_SCOPES: Sequence[str] = ("https://www.googleapis.com/auth/spreadsheets",)
DRIVE_SCOPES: Sequence[str] = ("https://www.googleapis.com/auth/drive",)


class CredentialsFileInvalidError(Exception):
    """Raised when a service account JSON file is missing required data."""


REQUIRED_FIELDS: Iterable[str] = (
    "type",
    "project_id",
    "private_key_id",
    "private_key",
    "client_email",
    "token_uri",
)


def _normalise_private_key(key: str) -> str:
    key = key.replace("\r\n", "\n").replace("\r", "\n")
    key = key.replace("\\n", "\n")
    if not key.endswith("\n"):
        key += "\n"
    return key


def _load_json(path: Path) -> Mapping[str, object]:
    try:
        with path.open("r", encoding="utf-8-sig") as handle:
            raw = handle.read()
    except OSError as exc:
        raise CredentialsFileInvalidError(f"Could not read credentials file: {exc}") from exc

    payload_text = raw.lstrip("\ufeff").strip()
    if not payload_text:
        raise CredentialsFileInvalidError("Service account JSON is empty.")

    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError as exc:
        raise CredentialsFileInvalidError(f"JSON parse error: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise CredentialsFileInvalidError("Service account JSON must be an object.")
    return payload


def _validate_payload(payload: Mapping[str, object]) -> Dict[str, object]:
    data: Dict[str, object] = dict(payload)
    missing: list[str] = []

    for field in REQUIRED_FIELDS:
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            missing.append(field)

    if data.get("type") != "service_account":
        missing.append("type")

    if missing:
        ordered = ", ".join(sorted(dict.fromkeys(missing)))
        raise CredentialsFileInvalidError(f"JSON missing fields: {ordered}")

    data["private_key"] = _normalise_private_key(str(data["private_key"]))
    return data


def load_service_account_data(path: Path) -> Dict[str, object]:
    """Return validated service account data without modifying ``path``."""

    return _validate_payload(_load_json(Path(path)))


def build_service(api: str, version: str, credential_path: Path, scopes: Sequence[str]):
    """Return an authorised ``googleapiclient`` resource for ``api``."""

    payload = load_service_account_data(credential_path)
    credentials = service_account.Credentials.from_service_account_info(payload, scopes=list(scopes))
    logger.info("Building %s %s client for %s", api, version, payload.get("client_email"))
    return build(api, version, credentials=credentials, cache_discovery=False)
