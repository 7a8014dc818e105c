from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import requests

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from backend.row_store import MemoryRowStore  # noqa: E402
from backend.router import Router  # noqa: E402
from core.api_client import ApiClient, RetryPolicy  # noqa: E402
from core.entities import COLLECTIONS  # noqa: E402
from core.local_store import LocalStore  # noqa: E402
from core.offline_queue import OutboxQueue  # noqa: E402
from core.sync_engine import SyncEngine  # noqa: E402

BACKEND_URL = "https://backend.example.test/exec"


class FakeResponse:
    def __init__(self, status_code: int, body: Any = None, *, text: Optional[str] = None) -> None:
        self.status_code = status_code
        self.reason = "OK" if status_code < 400 else "Error"
        self._body = body
        self._text = text

    def json(self) -> Any:
        if self._text is not None:
            raise ValueError("No JSON object could be decoded")
        return self._body


class RouterSession:
    """``requests.Session`` stand-in that answers from an in-process router."""

    def __init__(self, router: Router) -> None:
        self.router = router
        self.calls: List[Dict[str, Any]] = []
        self.fail_with: Optional[Exception] = None

    def request(self, method: str, url: str, params=None, timeout=None, json=None):
        self.calls.append({"method": method, "url": url, "params": dict(params or {}), "json": json})
        if self.fail_with is not None:
            raise self.fail_with
        params = dict(params or {})
        action = params.pop("action", "")
        result = self.router.route(method, action, params, json)
        return FakeResponse(result.status, result.body)

    def close(self) -> None:
        pass


@pytest.fixture
def memory_stores() -> Dict[str, MemoryRowStore]:
    return {spec.name: MemoryRowStore(spec) for spec in COLLECTIONS}


@pytest.fixture
def router(memory_stores) -> Router:
    return Router(memory_stores)


@pytest.fixture
def router_session(router) -> RouterSession:
    return RouterSession(router)


@pytest.fixture
def make_engine(tmp_path):
    """Return a factory building an engine over ``session`` in ``tmp_path``."""

    def _factory(session, *, url: Optional[str] = BACKEND_URL, subdir: str = "client", **kwargs) -> SyncEngine:
        store = LocalStore(tmp_path / subdir)
        client = ApiClient(
            url,
            retry=RetryPolicy(attempts=3, base_delay=0.0),
            session=session,
            sleep=lambda _delay: None,
        )
        return SyncEngine(store, client, outbox=OutboxQueue(tmp_path / subdir / "outbox.jsonl"), **kwargs)

    return _factory


@pytest.fixture
def connection_error() -> Exception:
    return requests.ConnectionError("network unreachable")
