from __future__ import annotations

import sys
import threading
from pathlib import Path

import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.errors import ErrorKind
from core.sync_engine import CollectionState
from conftest import FakeResponse, RouterSession

VEHICLE = {"make": "Honda", "model": "Civic", "year": "2019", "current_mileage": "42,000"}


def _gets(session: RouterSession, action: str) -> list:
    return [call for call in session.calls if call["method"] == "GET" and call["params"]["action"] == action]


def test_online_create_reaches_backend(make_engine, router_session, memory_stores) -> None:
    engine = make_engine(router_session)

    result = engine.create_entity("vehicles", VEHICLE)

    assert result.ok and not result.degraded
    record_id = result.record["vehicle_id"]
    assert result.record["current_mileage"] == 42000
    assert result.record["year"] == 2019
    remote = memory_stores["vehicles"].get_by_key(record_id)
    assert remote is not None and remote["make"] == "Honda"
    assert engine.find("vehicles", record_id)["created_date"]


def test_offline_create_is_local_only_and_queued(make_engine, router_session, memory_stores) -> None:
    engine = make_engine(router_session, online=False)

    result = engine.create_entity("vehicles", VEHICLE)

    assert result.ok and result.degraded
    assert result.error_kind is None
    assert "Working offline" in result.message
    assert router_session.calls == []
    assert len(engine.get_collection("vehicles")) == 1
    assert [entry["op"] for entry in engine.pending_mutations()] == ["create"]

    engine.set_online(True)
    sync = engine.sync_all()

    assert sync.ok and sync.replayed == 1
    assert engine.pending_mutations() == []
    assert memory_stores["vehicles"].get_by_key(result.record["vehicle_id"]) is not None
    assert len(engine.get_collection("vehicles")) == 1


def test_validation_failure_makes_no_call(make_engine, router_session) -> None:
    engine = make_engine(router_session)

    result = engine.create_entity("vehicles", {"make": "Honda"})

    assert not result.ok
    assert result.error_kind is ErrorKind.VALIDATION
    assert router_session.calls == []
    assert engine.get_collection("vehicles") == []


def test_sync_all_pulls_every_collection_and_records_last_sync(make_engine, router_session, memory_stores) -> None:
    memory_stores["vehicles"].append({"vehicle_id": "v1", "make": "Ford", "model": "F-150", "year": 2020})
    memory_stores["maintenance"].append(
        {"log_id": "m1", "vehicle_id": "v1", "maintenance_type": "oil_change", "service_date": "2024-03-01"}
    )
    engine = make_engine(router_session)
    assert engine.last_sync is None

    result = engine.sync_all()

    assert result.ok
    assert list(result.collections) == ["vehicles", "maintenance", "receipts", "reminders"]
    assert result.collections["vehicles"].pulled == 1
    assert engine.find("maintenance", "m1")["vehicle_id"] == "v1"
    assert engine.vehicle_label("v1") == "2020 Ford F-150"
    assert engine.last_sync is not None
    assert engine.last_outcome("vehicles") is CollectionState.PERSISTED
    assert engine.state("vehicles") is CollectionState.IDLE


def test_sync_is_skipped_without_backend_url(make_engine, router_session) -> None:
    engine = make_engine(router_session, url=None)

    result = engine.sync_all()

    assert result.skipped and result.reason == "not configured"
    assert not result
    assert router_session.calls == []


def test_sync_is_skipped_while_offline(make_engine, router_session) -> None:
    engine = make_engine(router_session, online=False)

    result = engine.sync_all()

    assert result.skipped and result.reason == "offline"
    assert router_session.calls == []


def test_pull_failure_leaves_local_store_untouched(make_engine, router_session) -> None:
    engine = make_engine(router_session)
    engine.create_entity("vehicles", VEHICLE)
    before = engine.get_collection("vehicles")
    router_session.fail_with = requests.ConnectionError("offline")

    result = engine.sync_collection("vehicles")

    assert not result.ok
    assert result.error_kind is ErrorKind.TRANSPORT
    assert engine.get_collection("vehicles") == before
    assert engine.last_outcome("vehicles") is CollectionState.FAILED
    assert engine.state("vehicles") is CollectionState.IDLE
    assert len(_gets(router_session, "vehicles")) == 3


def test_failed_pass_does_not_update_last_sync(make_engine, router_session) -> None:
    engine = make_engine(router_session)
    router_session.fail_with = requests.ConnectionError("offline")

    result = engine.sync_all()

    assert not result.ok
    assert result.failed == ["vehicles", "maintenance", "receipts", "reminders"]
    assert engine.last_sync is None


def test_concurrent_sync_of_same_collection_issues_one_pull(make_engine, router) -> None:
    entered = threading.Event()
    release = threading.Event()

    class _BlockingSession(RouterSession):
        def request(self, method, url, params=None, timeout=None, json=None):
            entered.set()
            release.wait(timeout=5)
            return super().request(method, url, params=params, timeout=timeout, json=json)

    session = _BlockingSession(router)
    engine = make_engine(session)
    results = []
    worker = threading.Thread(target=lambda: results.append(engine.sync_collection("vehicles")))
    worker.start()
    assert entered.wait(timeout=5)

    second = engine.sync_collection("vehicles")
    release.set()
    worker.join(timeout=5)

    assert second.skipped and not second.ok
    assert results[0].ok
    assert len(_gets(session, "vehicles")) == 1


def test_pending_delete_is_not_resurrected_by_pull(make_engine, router_session, memory_stores) -> None:
    engine = make_engine(router_session)
    created = engine.create_entity("vehicles", VEHICLE)
    record_id = created.record["vehicle_id"]

    engine.set_online(False)
    deleted = engine.delete_entity("vehicles", record_id)
    assert deleted.ok and deleted.degraded
    engine.set_online(True)

    # Pull without replaying the outbox: the backend still has the record.
    engine.sync_collection("vehicles")
    assert engine.find("vehicles", record_id) is None

    engine.sync_all()
    assert memory_stores["vehicles"].get_by_key(record_id) is None
    assert engine.find("vehicles", record_id) is None
    assert engine.pending_mutations() == []


def test_delete_of_unsynced_create_cancels_both(make_engine, router_session) -> None:
    engine = make_engine(router_session, online=False)
    created = engine.create_entity("vehicles", VEHICLE)

    engine.delete_entity("vehicles", created.record["vehicle_id"])

    assert engine.pending_mutations() == []
    assert engine.get_collection("vehicles") == []


def test_update_merges_patch_and_reaches_backend(make_engine, router_session, memory_stores) -> None:
    engine = make_engine(router_session)
    record_id = engine.create_entity("vehicles", VEHICLE).record["vehicle_id"]

    result = engine.update_entity("vehicles", record_id, {"current_mileage": 43500, "vehicle_id": "hijack"})

    assert result.ok and not result.degraded
    assert result.record["vehicle_id"] == record_id
    assert result.record["current_mileage"] == 43500
    assert memory_stores["vehicles"].get_by_key(record_id)["current_mileage"] == 43500


def test_update_of_unknown_remote_record_is_not_queued(make_engine, router_session) -> None:
    engine = make_engine(router_session, online=False)
    record_id = engine.create_entity("vehicles", VEHICLE).record["vehicle_id"]
    engine._outbox.clear()
    engine.set_online(True)

    result = engine.update_entity("vehicles", record_id, {"color": "Red"})

    assert result.ok and result.degraded
    assert result.error_kind is ErrorKind.NOT_FOUND
    assert engine.find("vehicles", record_id)["color"] == "Red"
    assert engine.pending_mutations() == []


def test_transport_failure_on_create_queues_mutation(make_engine, router_session, memory_stores) -> None:
    engine = make_engine(router_session)
    router_session.fail_with = requests.ConnectionError("down")

    result = engine.create_entity("receipts", {"vehicle_id": "v1", "receipt_date": "2024-01-02", "amount": "19.99"})

    assert result.ok and result.degraded
    assert result.error_kind is ErrorKind.TRANSPORT
    assert len(engine.pending_mutations()) == 1

    router_session.fail_with = None
    assert engine.flush_outbox() == 1
    assert memory_stores["receipts"].scan()[0]["amount"] == 19.99


def test_replayed_create_already_on_backend_counts_as_delivered(make_engine, router_session, memory_stores) -> None:
    engine = make_engine(router_session, online=False)
    created = engine.create_entity("vehicles", VEHICLE)
    memory_stores["vehicles"].append(dict(created.record))
    engine.set_online(True)

    assert engine.flush_outbox() == 1
    assert engine.pending_mutations() == []
    assert len(memory_stores["vehicles"].scan()) == 1


def test_mutations_on_maintenance_and_receipts_are_supported(make_engine, router_session, memory_stores) -> None:
    engine = make_engine(router_session)
    log = engine.create_entity(
        "maintenance",
        {"vehicle_id": "v1", "maintenance_type": "oil_change", "service_date": "2024-05-01", "cost": "49.95"},
    ).record

    assert engine.update_entity("maintenance", log["log_id"], {"cost": 55}).ok
    assert memory_stores["maintenance"].get_by_key(log["log_id"])["cost"] == 55.0
    assert engine.delete_entity("maintenance", log["log_id"]).ok
    assert memory_stores["maintenance"].scan() == []


def test_incremental_pull_sends_last_sync(make_engine, router_session) -> None:
    engine = make_engine(router_session, incremental_pull=True)
    engine.sync_all()
    last = engine.last_sync

    engine.sync_collection("vehicles")

    assert _gets(router_session, "vehicles")[-1]["params"]["since"] == last


def test_malformed_pull_payload_is_transport_failure(make_engine) -> None:
    class _Session:
        calls = []

        def request(self, method, url, params=None, timeout=None, json=None):
            return FakeResponse(200, {"status": "ok", "data": "nonsense"})

        def close(self):
            pass

    engine = make_engine(_Session())

    result = engine.sync_collection("reminders")

    assert not result.ok
    assert result.error_kind is ErrorKind.TRANSPORT


def test_set_backend_url_persists_and_resets_client(make_engine, router_session) -> None:
    engine = make_engine(router_session, url=lambda: None)
    assert not engine.is_configured

    engine.set_backend_url("https://elsewhere.example/exec")

    assert engine._store.get_backend_url() == "https://elsewhere.example/exec"


def test_numeric_client_id_is_stored_as_text(make_engine, router_session, memory_stores) -> None:
    engine = make_engine(router_session)

    created = engine.create_entity("vehicles", {**VEHICLE, "vehicle_id": 7})
    engine.sync_all()

    assert created.record["vehicle_id"] == "7"
    assert [item["vehicle_id"] for item in engine.get_collection("vehicles")] == ["7"]
    assert memory_stores["vehicles"].get_by_key("7") is not None
    assert engine.update_entity("vehicles", 7, {"color": "Silver"}).ok
    assert engine.find("vehicles", "7")["color"] == "Silver"
    assert engine.delete_entity("vehicles", 7).ok
    assert engine.get_collection("vehicles") == []


def test_queued_update_survives_pull_of_stale_remote_row(make_engine, router_session, memory_stores) -> None:
    engine = make_engine(router_session)
    record_id = engine.create_entity("vehicles", VEHICLE).record["vehicle_id"]
    engine.set_online(False)
    engine.update_entity("vehicles", record_id, {"color": "Red"})
    memory_stores["vehicles"].update_by_key(record_id, {"color": "Blue", "notes": "detailed"})
    engine.set_online(True)

    # Pull without replaying the outbox: the remote row predates the edit.
    result = engine.sync_collection("vehicles")

    assert result.ok
    local = engine.find("vehicles", record_id)
    assert local["color"] == "Red"
    assert local["notes"] == "detailed"

    engine.sync_all()
    assert memory_stores["vehicles"].get_by_key(record_id)["color"] == "Red"
    assert engine.find("vehicles", record_id)["color"] == "Red"
