from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conformance_harness.models import (
    FAIL,
    OMIT,
    PASS,
    SKIP,
    TODO,
    WAIT,
    ClientConfig,
    RunInstance,
    SequenceResult,
    TestResult,
    new_id,
)


def _sr(name: str, result: str, minute: int) -> SequenceResult:
    return SequenceResult(
        id=new_id(),
        name=name,
        test_case_id=f"ts_G_{name}",
        test_set_id="ts",
        instance_id="i",
        result=result,
        created_at=datetime(2024, 1, 1, 0, minute, tzinfo=timezone.utc),
    )


def test_result_counts() -> None:
    sr = _sr("S", PASS, 0)
    sr.test_results = [
        TestResult(id="1", check_id="S-01", name="a", result=PASS),
        TestResult(id="2", check_id="S-02", name="b", result=OMIT),
        TestResult(id="3", check_id="S-03", name="c", result=PASS, required=False),
        TestResult(id="4", check_id="S-04", name="d", result=OMIT, required=False),
        TestResult(id="5", check_id="S-05", name="e", result=SKIP),
        TestResult(id="6", check_id="S-06", name="f", result=TODO, required=False),
    ]
    sr.update_result_counts()
    assert sr.counts() == {
        "required_passed": 1,
        "required_total": 3,
        "optional_passed": 1,
        "optional_total": 3,
        "error_count": 0,
        "skip_count": 1,
        "todo_count": 1,
        "required_omitted": 1,
        "optional_omitted": 1,
        "total_omitted": 2,
    }
    assert sr.result_count == 6

    sr.reset_counts()
    assert sr.required_total == 0


def test_duplicate_sequence_result_ids_are_rejected() -> None:
    instance = RunInstance.create("https://x")
    sr = _sr("S", PASS, 0)
    instance.add_sequence_result(sr)
    with pytest.raises(ValueError, match=r"duplicate sequence result id"):
        instance.add_sequence_result(sr)
    assert instance.sequence_result(sr.id) is sr
    assert instance.sequence_result("missing") is None


def test_waiting_on_sequence_looks_at_latest_results_only() -> None:
    instance = RunInstance.create("https://x")
    waiting = _sr("Launch", WAIT, 1)
    instance.add_sequence_result(_sr("Discovery", PASS, 0))
    instance.add_sequence_result(waiting)
    assert instance.waiting_on_sequence() is waiting

    instance.add_sequence_result(_sr("Launch", FAIL, 2))
    assert instance.waiting_on_sequence() is None


def test_resource_references_are_deduplicated() -> None:
    instance = RunInstance.create("https://x", variables={"patient_id": "from-var"})
    assert instance.patient_id == "from-var"
    instance.add_resource_reference("Patient", "1")
    instance.add_resource_reference("Patient", "1")
    instance.add_resource_reference("Encounter", "e1", profile="http://p")
    assert instance.resource_ids("Patient") == ["1"]
    assert instance.patient_id == "1"
    assert instance.resource_references[-1].profile == "http://p"


def test_run_instance_dict_round_trip() -> None:
    instance = RunInstance.create(
        "https://fhir.example.org/",
        fhir_version="stu3",
        client=ClientConfig(client_id="app", client_secret="s", confidential_client=True),
        variables={"token": "t"},
    )
    sr = _sr("S", WAIT, 3)
    sr.wait_at_endpoint = "redirect"
    sr.test_results = [
        TestResult(id="1", check_id="S-01", name="a", result=WAIT, wait_at_endpoint="redirect", index=0)
    ]
    sr.update_result_counts()
    instance.add_sequence_result(sr)

    restored = RunInstance.from_dict(instance.to_dict())
    assert restored.to_dict() == instance.to_dict()
    assert restored.fhir_version == "stu3"
    assert restored.client.confidential_client is True
    assert restored.sequence_results[0].created_at == sr.created_at
    assert restored.sequence_results[0].waiting_test_result().wait_at_endpoint == "redirect"
