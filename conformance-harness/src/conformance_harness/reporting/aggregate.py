from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Mapping

from conformance_harness.graph import TestSet
from conformance_harness.models import (
    CANCEL,
    ERROR,
    FAIL,
    PASS,
    SKIP,
    WAIT,
    RunInstance,
    SequenceResult,
)

NOT_RUN = "not_run"


def _json_dumps_canonical(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _latest_by(instance: RunInstance, key: str) -> Dict[str, SequenceResult]:
    latest: Dict[str, SequenceResult] = {}
    for sr in instance.sequence_results:
        k = getattr(sr, key)
        current = latest.get(k)
        # Later entries win ties: equal created_at keeps the one appended last.
        if current is None or sr.created_at >= current.created_at:
            latest[k] = sr
    return latest


def latest_results(instance: RunInstance) -> Dict[str, SequenceResult]:
    return _latest_by(instance, "name")


def latest_results_by_case(instance: RunInstance) -> Dict[str, SequenceResult]:
    return _latest_by(instance, "test_case_id")


def final_result(instance: RunInstance, test_set: TestSet) -> str:
    latest = latest_results(instance)
    for definition in test_set.required_sequences():
        sr = latest.get(definition.sequence_name)
        if sr is None or sr.result != PASS:
            return FAIL
    return PASS


def sequence_rollup(result: SequenceResult) -> Dict[str, Any]:
    return {
        "id": result.id,
        "name": result.name,
        "test_case_id": result.test_case_id,
        "result": result.result,
        "message": result.message,
        "required": result.required,
        "created_at": result.created_at.isoformat(),
        "counts": result.counts(),
    }


def _new_counts() -> dict[str, int]:
    return {PASS: 0, FAIL: 0, ERROR: 0, SKIP: 0, WAIT: 0, CANCEL: 0, NOT_RUN: 0, "total": 0}


def _group_result(counts: Mapping[str, int]) -> str:
    if counts["total"] == 0:
        return NOT_RUN
    if counts[ERROR]:
        return ERROR
    if counts[FAIL] or counts[CANCEL]:
        return FAIL
    if counts[WAIT]:
        return WAIT
    if counts[SKIP]:
        return SKIP
    return PASS


def group_results(instance: RunInstance, test_set: TestSet) -> Dict[str, Dict[str, Any]]:
    by_case = latest_results_by_case(instance)
    out: Dict[str, Dict[str, Any]] = {}
    for group in test_set.groups:
        counts = _new_counts()
        cases: Dict[str, str] = {}
        for tc in group.test_cases:
            sr = by_case.get(tc.id)
            if sr is None:
                counts[NOT_RUN] += 1
                cases[tc.id] = NOT_RUN
                continue
            counts["total"] += 1
            if sr.result in counts:
                counts[sr.result] += 1
            cases[tc.id] = sr.result
        out[group.id] = {
            "name": group.name,
            "result": _group_result(counts),
            "counts": counts,
            "test_cases": cases,
            "missing_variables": [
                v for v in group.lock_variables if not instance.variables.is_defined(v)
            ],
        }
    return out


def aggregate(instance: RunInstance, test_set: TestSet) -> Dict[str, Any]:
    """Roll the instance's history up into a verdict plus per-sequence/group views.

    Pure: reads the instance, never changes it.
    """
    latest = latest_results(instance)
    return {
        "instance_id": instance.id,
        "test_set_id": test_set.id,
        "verdict": final_result(instance, test_set),
        "sequences": {name: sequence_rollup(latest[name]) for name in sorted(latest)},
        "groups": group_results(instance, test_set),
    }


def write_report(out_path: Path, report: Mapping[str, Any]) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(_json_dumps_canonical(dict(report)) + "\n", encoding="utf-8")
