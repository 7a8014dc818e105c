from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, List

import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.api_client import ApiClient, RetryPolicy
from core.errors import (
    ApplicationError,
    ConfigurationError,
    ConflictError,
    ErrorKind,
    NotFoundError,
    TransportError,
    ValidationError,
)
from conftest import BACKEND_URL, FakeResponse


class _ScriptedSession:
    """Replay a fixed list of responses (or exceptions) in order."""

    def __init__(self, *outcomes: Any) -> None:
        self._outcomes = list(outcomes)
        self.calls: List[dict] = []

    def request(self, method, url, params=None, timeout=None, json=None):
        self.calls.append({"method": method, "url": url, "params": params, "timeout": timeout, "json": json})
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        pass


def _client(session, url=BACKEND_URL):
    delays: List[float] = []
    client = ApiClient(url, retry=RetryPolicy(attempts=3, base_delay=1.0), session=session, sleep=delays.append)
    return client, delays


def test_get_returns_envelope_and_sends_action_and_since() -> None:
    session = _ScriptedSession(FakeResponse(200, {"status": "ok", "data": [{"vehicle_id": "v1"}]}))
    client, delays = _client(session)

    envelope = client.call("vehicles", "GET", since=1700000000000)

    assert envelope["data"] == [{"vehicle_id": "v1"}]
    assert session.calls[0]["params"] == {"action": "vehicles", "since": 1700000000000}
    assert session.calls[0]["json"] is None
    assert session.calls[0]["timeout"] == 30.0
    assert delays == []


def test_put_targets_record_path_and_sends_json_body() -> None:
    session = _ScriptedSession(FakeResponse(200, {"status": "ok", "data": {"log_id": "m1"}}))
    client, _ = _client(session)

    client.call("maintenance", "PUT", {"cost": 10.0}, record_id="m1")

    call = session.calls[0]
    assert call["method"] == "PUT"
    assert call["params"] == {"action": "maintenance/m1"}
    assert call["json"] == {"cost": 10.0}


def test_raw_list_body_is_wrapped_in_envelope() -> None:
    session = _ScriptedSession(FakeResponse(200, [{"receipt_id": "r1"}]))
    client, _ = _client(session)

    assert client.call("receipts") == {"status": "ok", "data": [{"receipt_id": "r1"}]}


def test_missing_url_raises_configuration_error_without_network() -> None:
    session = _ScriptedSession(FakeResponse(200, {"status": "ok", "data": []}))
    client, _ = _client(session, url=None)

    with pytest.raises(ConfigurationError) as excinfo:
        client.call("vehicles")

    assert excinfo.value.kind is ErrorKind.CONFIGURATION
    assert session.calls == []


def test_transport_failures_retry_three_times_with_linear_backoff() -> None:
    session = _ScriptedSession(requests.ConnectionError("boom"))
    client, delays = _client(session)

    with pytest.raises(TransportError) as excinfo:
        client.call("vehicles")

    assert len(session.calls) == 3
    assert delays == [1.0, 2.0]
    assert excinfo.value.attempts == 3
    assert excinfo.value.action == "vehicles"
    assert "attempts=3" in str(excinfo.value)


def test_retry_recovers_after_transient_failure() -> None:
    session = _ScriptedSession(
        requests.Timeout("slow"),
        FakeResponse(200, {"status": "ok", "data": []}),
    )
    client, delays = _client(session)

    assert client.call("reminders")["data"] == []
    assert len(session.calls) == 2
    assert delays == [1.0]


def test_server_error_status_is_transport_error() -> None:
    session = _ScriptedSession(FakeResponse(502, None, text="<html>bad gateway</html>"))
    client, _ = _client(session)

    with pytest.raises(TransportError) as excinfo:
        client.call("vehicles")

    assert excinfo.value.status_code == 502
    assert len(session.calls) == 3


def test_unparsable_success_body_is_transport_error() -> None:
    session = _ScriptedSession(FakeResponse(200, None, text="not json"))
    client, _ = _client(session)

    with pytest.raises(TransportError):
        client.call("vehicles")


def test_error_envelope_is_retried_for_get() -> None:
    session = _ScriptedSession(FakeResponse(200, {"status": "error", "message": "Sheet locked"}))
    client, delays = _client(session)

    with pytest.raises(ApplicationError) as excinfo:
        client.call("vehicles")

    assert excinfo.value.message == "Sheet locked"
    assert len(session.calls) == 3
    assert delays == [1.0, 2.0]


def test_error_envelope_is_not_retried_for_post() -> None:
    session = _ScriptedSession(FakeResponse(200, {"status": "error", "message": "Sheet locked"}))
    client, delays = _client(session)

    with pytest.raises(ApplicationError) as excinfo:
        client.call("vehicles", "POST", {"make": "Honda"})

    assert len(session.calls) == 1
    assert delays == []
    assert excinfo.value.attempts == 1


@pytest.mark.parametrize(
    "status, error_type",
    [(400, ValidationError), (404, NotFoundError), (409, ConflictError)],
)
def test_client_errors_are_typed_and_not_retried(status, error_type) -> None:
    session = _ScriptedSession(FakeResponse(status, {"status": "error", "message": "nope"}))
    client, delays = _client(session)

    with pytest.raises(error_type) as excinfo:
        client.call("vehicles", "DELETE", record_id="v1")

    assert excinfo.value.message == "nope"
    assert excinfo.value.status_code == status
    assert len(session.calls) == 1
    assert delays == []


def test_url_provider_is_cached_until_reset() -> None:
    urls = iter(["https://one.example", "https://two.example"])
    client = ApiClient(lambda: next(urls), session=_ScriptedSession(FakeResponse(200, [])))

    assert client.base_url == "https://one.example"
    assert client.base_url == "https://one.example"
    client.reset_base_url()
    assert client.base_url == "https://two.example"


def test_retry_policy_schedule() -> None:
    assert RetryPolicy(attempts=3, base_delay=1.0).schedule() == [1.0, 2.0]
    assert RetryPolicy(attempts=1, base_delay=1.0).schedule() == []
