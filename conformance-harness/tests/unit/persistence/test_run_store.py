from __future__ import annotations

import json
from pathlib import Path

import pytest

from conformance_harness.engine import run_sequence
from conformance_harness.models import WAIT, ClientConfig, RequestResponse, RunInstance
from conformance_harness.persistence import JsonRunStore, MemoryRunStore

from harness_fakes import FakeClient, OneFailingCheck, RedirectingSequence, json_response


def _populated_instance() -> RunInstance:
    instance = RunInstance.create(
        "https://fhir.example.org/r4/",
        client=ClientConfig(client_id="app", scopes="launch/patient openid"),
        variables={"client_id": "app"},
    )
    instance.variables.lock(["client_id"])
    run_sequence(OneFailingCheck, instance, FakeClient())
    run_sequence(RedirectingSequence, instance, FakeClient())
    instance.add_resource_reference("Patient", "123")
    return instance


def test_memory_store_keeps_independent_copies() -> None:
    store = MemoryRunStore()
    instance = RunInstance.create("https://fhir.example.org")
    store.save(instance)

    instance.variables.set("token", "changed-after-save")
    loaded = store.load(instance.id)
    assert loaded is not None
    assert loaded.variables.get("token") is None
    assert loaded is not store.load(instance.id)
    assert store.load("missing") is None
    assert store.ids() == [instance.id]


def test_json_store_round_trips_a_run(tmp_path: Path) -> None:
    store = JsonRunStore(tmp_path / "runs")
    assert store.ids() == []
    instance = _populated_instance()
    store.save(instance)

    loaded = store.load(instance.id)
    assert loaded is not None
    assert loaded.to_dict() == instance.to_dict()
    assert loaded.url == "https://fhir.example.org/r4"
    assert loaded.client.client_id == "app"
    assert loaded.variables.locked == frozenset({"client_id"})
    assert loaded.patient_id == "123"

    waiting = loaded.waiting_on_sequence()
    assert waiting is not None
    assert waiting.result == WAIT
    assert waiting.wait_at_endpoint == "redirect"
    assert waiting.required_passed == 1
    assert store.ids() == [instance.id]
    assert not list((tmp_path / "runs").glob("*.tmp"))


def test_json_store_writes_canonical_json(tmp_path: Path) -> None:
    store = JsonRunStore(tmp_path)
    instance = RunInstance.create("https://fhir.example.org")
    store.save(instance)
    text = store.path_for(instance.id).read_text(encoding="utf-8")
    assert text.endswith("\n")
    assert json.loads(text)["id"] == instance.id
    assert ": " not in text


def test_request_responses_survive_persistence(tmp_path: Path) -> None:
    from harness_fakes import ClientBackedSequence

    instance = RunInstance.create("https://fhir.example.org")
    client = FakeClient({("GET", "metadata"): json_response({"ok": True})})
    run_sequence(ClientBackedSequence, instance, client)
    store = JsonRunStore(tmp_path)
    store.save(instance)

    loaded = store.load(instance.id)
    assert loaded is not None
    exchanges = loaded.sequence_results[0].test_results[0].request_responses
    assert len(exchanges) == 1
    assert isinstance(exchanges[0], RequestResponse)
    assert exchanges[0].status == 200
    assert json.loads(exchanges[0].response_body or "") == {"ok": True}


def test_json_store_rejects_unsafe_ids(tmp_path: Path) -> None:
    store = JsonRunStore(tmp_path)
    assert store.path_for("../../etc/passwd") == tmp_path / "etcpasswd.json"
    with pytest.raises(ValueError, match=r"invalid instance id"):
        store.path_for("../..")
    assert store.load("nothing-here") is None
