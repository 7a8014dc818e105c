from __future__ import annotations

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import settings


def test_client_settings_defaults_are_written(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("VMS_BACKEND_URL", raising=False)
    path = tmp_path / "client.json"

    loaded = settings.load_client_settings(path)

    assert loaded.sync_interval_seconds == 600
    assert loaded.stale_after_seconds == 300
    assert loaded.retry_attempts == 3
    assert json.loads(path.read_text(encoding="utf-8"))["timeout_seconds"] == 30.0


def test_client_settings_coerce_types_and_honour_env(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "client.json"
    path.write_text(
        json.dumps({"retry_attempts": "5", "incremental_pull": "true", "unknown": 1, "timeout_seconds": "oops"}),
        encoding="utf-8",
    )
    monkeypatch.setenv("VMS_BACKEND_URL", " https://env.example/exec ")

    loaded = settings.load_client_settings(path)

    assert loaded.retry_attempts == 5
    assert loaded.incremental_pull is True
    assert loaded.timeout_seconds == 30.0
    assert loaded.backend_url == "https://env.example/exec"


def test_client_settings_round_trip(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("VMS_BACKEND_URL", raising=False)
    path = tmp_path / "client.json"
    original = settings.ClientSettings(backend_url="https://saved.example", store_dir=str(tmp_path / "s"))

    settings.save_client_settings(original, path)

    loaded = settings.load_client_settings(path)
    assert loaded == original
    assert loaded.resolved_store_dir() == tmp_path / "s"


def test_backend_settings_env_overrides_and_validation(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "backend.json"
    path.write_text(json.dumps({"store": "mongo", "blob_backend": "s3", "port": "9090"}), encoding="utf-8")
    monkeypatch.delenv("VMS_STORE", raising=False)
    monkeypatch.setenv("VMS_SPREADSHEET_ID", "sheet-123")

    loaded = settings.load_backend_settings(path)

    assert loaded.store == "sqlite"
    assert loaded.blob_backend == "local"
    assert loaded.port == 9090
    assert loaded.spreadsheet_id == "sheet-123"
    assert loaded.max_upload_bytes == 5 * 1024 * 1024

    monkeypatch.setenv("VMS_STORE", "sheets")
    assert settings.load_backend_settings(path).store == "sheets"
