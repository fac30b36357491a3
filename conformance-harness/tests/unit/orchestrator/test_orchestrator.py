from __future__ import annotations

import json

import pytest

from conformance_harness.errors import (
    ConfigurationError,
    InvalidStateError,
    LockedVariableError,
    RunInProgressError,
    UnknownInstanceError,
)
from conformance_harness.graph import build_test_set
from conformance_harness.models import CANCEL, ERROR, FAIL, PASS, SKIP, WAIT, RunInstance
from conformance_harness.orchestrator import Orchestrator
from conformance_harness.persistence import MemoryRunStore
from conformance_harness.reporting import NOT_RUN
from conformance_harness.sequences import SequenceRegistry

from harness_fakes import TEST_SEQUENCES, FakeClient, TickClock, json_response

TEST_SET_SPEC = {
    "groups": [
        {"name": "Auth", "lock_variables": ["client_id"], "sequences": ["Redirecting", "DefinesX"]},
        {"name": "Data", "sequences": ["RequiresX", "OneFailing", "ClientBacked"]},
        {"name": "All", "run_all": True, "sequences": ["OneFailing", "ClientBacked"]},
        {"name": "Flow", "sequences": ["Redirecting", "OneFailing", "ClientBacked"]},
        {"name": "Resilient", "run_all": True, "sequences": ["BrokenPrecondition", "DefinesX"]},
        {"name": "Retry", "run_skipped": True, "sequences": ["RequiresX"]},
        {
            "name": "Defaults",
            "sequences": [{"sequence": "RequiresX", "variable_defaults": {"x": "42"}}],
        },
    ]
}


class _Harness:
    def __init__(self, **kwargs) -> None:
        self.clients: list[FakeClient] = []
        self.test_set = build_test_set(TEST_SET_SPEC, SequenceRegistry(TEST_SEQUENCES))
        self.store = MemoryRunStore()
        self.orch = Orchestrator(
            self.test_set, self.store, self._client, clock=TickClock(), **kwargs
        )

    def _client(self, instance: RunInstance) -> FakeClient:
        client = FakeClient({("GET", "metadata"): json_response({"resourceType": "CapabilityStatement"})})
        self.clients.append(client)
        return client


def test_create_and_load_instances() -> None:
    h = _Harness(disable_tls_tests=True)
    instance = h.orch.create_instance("https://fhir.example.org/", variables={"client_id": "app"})
    loaded = h.orch.load(instance.id)
    assert loaded.url == "https://fhir.example.org"
    assert loaded.variables.get("client_id") == "app"
    assert loaded.variables.get("disable_tls_tests") == "true"

    with pytest.raises(UnknownInstanceError, match=r"unknown run instance: missing"):
        h.orch.load("missing")
    with pytest.raises(ConfigurationError, match=r"unknown test case"):
        h.orch.run_test_cases(instance.id, ["nope"])
    with pytest.raises(ConfigurationError, match=r"unknown test group"):
        h.orch.run_group(instance.id, "Nope")


def test_wait_then_resume_continues_the_queue() -> None:
    h = _Harness()
    instance_id = h.orch.create_instance("https://fhir.example.org").id

    outcome = h.orch.run_group(instance_id, "Auth")
    assert outcome.waiting is not None
    assert outcome.waiting.result == WAIT
    assert outcome.redirect_to_url == "https://auth.example.org/authorize?state=abc"
    assert list(outcome.remaining) == ["default_Auth_DefinesX"]
    assert h.clients[-1].closed is True

    stored = h.orch.load(instance_id)
    assert stored.waiting_on_sequence() is not None
    assert "client_id" in stored.variables.locked
    with pytest.raises(LockedVariableError):
        h.orch.update_variables(instance_id, {"client_id": "other"})
    with pytest.raises(InvalidStateError, match=r"waiting on Redirecting"):
        h.orch.run_test_cases(instance_id, ["default_Data_OneFailing"])

    resumed = h.orch.resume(
        instance_id,
        "redirect",
        {"state": "abc", "code": "c0de"},
        callback_url="https://harness.example.org/redirect?state=abc&code=c0de",
    )
    assert [(r.test_case_id, r.result) for r in resumed.results] == [
        ("default_Auth_Redirecting", PASS),
        ("default_Auth_DefinesX", PASS),
    ]
    assert resumed.waiting is None
    assert list(resumed.remaining) == []

    stored = h.orch.load(instance_id)
    assert stored.variables.get("code") == "c0de"
    assert stored.variables.get("x") == "42"
    assert stored.variables.locked == frozenset()
    inbound = stored.latest_result("Redirecting").test_results[1].request_responses[-1]
    assert inbound.direction == "inbound"
    assert inbound.url == "https://harness.example.org/redirect?state=abc&code=c0de"
    assert json.loads(inbound.request_body or "") == {"code": "c0de", "state": "abc"}

    h.orch.update_variables(instance_id, {"client_id": "other"})
    assert h.orch.load(instance_id).variables.get("client_id") == "other"


def test_resume_and_cancel_require_a_waiting_sequence() -> None:
    h = _Harness()
    instance_id = h.orch.create_instance("https://fhir.example.org").id
    with pytest.raises(InvalidStateError, match=r"not waiting"):
        h.orch.resume(instance_id, "redirect", {})
    with pytest.raises(InvalidStateError, match=r"not waiting"):
        h.orch.cancel(instance_id)


def test_resume_at_the_wrong_endpoint_is_rejected() -> None:
    h = _Harness()
    instance_id = h.orch.create_instance("https://fhir.example.org").id
    h.orch.run_group(instance_id, "Auth")
    with pytest.raises(InvalidStateError, match=r"waits at 'redirect'"):
        h.orch.resume(instance_id, "launch", {})
    assert h.orch.load(instance_id).waiting_on_sequence() is not None


def test_cancel_releases_the_run() -> None:
    h = _Harness()
    instance_id = h.orch.create_instance("https://fhir.example.org").id
    h.orch.run_group(instance_id, "Auth")

    cancelled = h.orch.cancel(instance_id)
    assert cancelled.result == CANCEL

    stored = h.orch.load(instance_id)
    assert stored.waiting_on_sequence() is None
    assert stored.variables.locked == frozenset()

    report = h.orch.report(instance_id)
    assert report["groups"]["Auth"]["result"] == FAIL
    assert report["groups"]["Auth"]["test_cases"]["default_Auth_DefinesX"] == NOT_RUN
    assert report["verdict"] == FAIL


def test_blocked_cases_are_skipped_with_the_missing_variable() -> None:
    h = _Harness()
    instance_id = h.orch.create_instance("https://fhir.example.org").id
    outcome = h.orch.run_test_cases(instance_id, ["default_Data_RequiresX"])

    (result,) = outcome.results
    assert result.result == SKIP
    assert result.message == "Missing required variable(s): 'x' (defined by Defines X)"
    assert h.orch.load(instance_id).latest_result("RequiresX").result == SKIP


def test_group_stops_after_first_failure_unless_run_all() -> None:
    h = _Harness()
    instance_id = h.orch.create_instance("https://fhir.example.org").id

    stopped = h.orch.run_group(instance_id, "Data")
    assert [r.result for r in stopped.results] == [SKIP, FAIL]
    assert list(stopped.remaining) == ["default_Data_ClientBacked"]

    everything = h.orch.run_group(instance_id, "All")
    assert [r.result for r in everything.results] == [FAIL, PASS]
    assert list(everything.remaining) == []


def test_group_stop_rule_survives_a_resume() -> None:
    h = _Harness()
    instance_id = h.orch.create_instance("https://fhir.example.org").id

    first = h.orch.run_group(instance_id, "Flow")
    assert first.waiting is not None
    assert first.waiting.stop_on_failure is True
    assert first.waiting.to_dict()["stop_on_failure"] is True

    resumed = h.orch.resume(instance_id, "redirect", {"state": "abc", "code": "c"})
    assert [(r.test_case_id, r.result) for r in resumed.results] == [
        ("default_Flow_Redirecting", PASS),
        ("default_Flow_OneFailing", FAIL),
    ]
    assert list(resumed.remaining) == ["default_Flow_ClientBacked"]
    assert h.orch.load(instance_id).latest_result("ClientBacked") is None


def test_failed_resume_stops_a_group_without_run_all() -> None:
    h = _Harness()
    instance_id = h.orch.create_instance("https://fhir.example.org").id
    h.orch.run_group(instance_id, "Flow")

    resumed = h.orch.resume(instance_id, "redirect", {}, fail_message="User denied the request")
    assert [r.result for r in resumed.results] == [FAIL]
    assert list(resumed.remaining) == ["default_Flow_OneFailing", "default_Flow_ClientBacked"]
    assert resumed.waiting is None

    stored = h.orch.load(instance_id)
    assert stored.waiting_on_sequence() is None
    assert stored.latest_result("OneFailing") is None


def test_raising_precondition_does_not_abort_the_queue() -> None:
    h = _Harness()
    instance_id = h.orch.create_instance("https://fhir.example.org").id

    outcome = h.orch.run_group(instance_id, "Resilient")
    assert [(r.test_case_id, r.result) for r in outcome.results] == [
        ("default_Resilient_BrokenPrecondition", ERROR),
        ("default_Resilient_DefinesX", PASS),
    ]
    assert h.orch.load(instance_id).variables.get("x") == "42"


def test_rerun_skipped_cases_only() -> None:
    h = _Harness()
    instance_id = h.orch.create_instance("https://fhir.example.org").id
    first = h.orch.run_group(instance_id, "Retry")
    assert [r.result for r in first.results] == [SKIP]

    h.orch.update_variables(instance_id, {"x": "42"})
    again = h.orch.run_group(instance_id, "Retry", skipped_only=True)
    assert [r.result for r in again.results] == [PASS]

    nothing = h.orch.run_group(instance_id, "Retry", skipped_only=True)
    assert nothing.results == ()

    with pytest.raises(InvalidStateError, match=r"does not allow"):
        h.orch.run_group(instance_id, "Data", skipped_only=True)


def test_variable_defaults_fill_only_undefined_variables() -> None:
    h = _Harness()
    fresh = h.orch.create_instance("https://fhir.example.org").id
    outcome = h.orch.run_group(fresh, "Defaults")
    assert [r.result for r in outcome.results] == [PASS]
    assert h.orch.load(fresh).variables.get("x") == "42"

    preset = h.orch.create_instance("https://fhir.example.org", variables={"x": "7"}).id
    outcome = h.orch.run_group(preset, "Defaults")
    assert [r.result for r in outcome.results] == [FAIL]
    assert h.orch.load(preset).variables.get("x") == "7"


def test_concurrent_execution_on_one_instance_is_refused() -> None:
    h = _Harness()
    instance_id = h.orch.create_instance("https://fhir.example.org").id
    refused: list[str] = []

    def reentrant_factory(instance: RunInstance) -> FakeClient:
        with pytest.raises(RunInProgressError):
            h.orch.run_test_cases(instance.id, ["default_All_ClientBacked"])
        refused.append(instance.id)
        return FakeClient()

    h.orch.client_factory = reentrant_factory
    h.orch.run_test_cases(instance_id, ["default_All_OneFailing"])
    assert refused == [instance_id]

    # The lock is released once the run finishes.
    h.orch.update_variables(instance_id, {"a": "b"})


def test_report_reflects_the_latest_results() -> None:
    h = _Harness()
    instance_id = h.orch.create_instance("https://fhir.example.org").id
    h.orch.run_test_cases(instance_id, ["default_Data_RequiresX"])
    h.orch.update_variables(instance_id, {"x": "42"})
    h.orch.run_test_cases(instance_id, ["default_Data_RequiresX"])

    report = h.orch.report(instance_id)
    assert report["sequences"]["RequiresX"]["result"] == PASS
    assert report["groups"]["Data"]["test_cases"]["default_Data_RequiresX"] == PASS
    assert report["groups"]["Retry"]["result"] == NOT_RUN
