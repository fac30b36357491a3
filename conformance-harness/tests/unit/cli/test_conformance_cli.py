from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import pytest
import structlog

from conformance_harness.cli import conformance

SAMPLE_MODULE = Path(__file__).resolve().parents[3] / "modules" / "smart_app_launch.yaml"


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    for name in list(os.environ):
        if name.startswith("CONFORMANCE_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("CONFORMANCE_STORE_DIR", str(tmp_path / "runs"))
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def _run_cli(argv: list[str]) -> int:
    return int(conformance.main(argv))


def test_validate_sample_module(capsys) -> None:
    rc = _run_cli(["validate", "--module", str(SAMPLE_MODULE)])
    assert rc == 0
    out = capsys.readouterr().out
    assert out.strip() == "OK: module smart_app_launch (1 test sets, 4 test cases)"


def test_validate_reports_configuration_errors(tmp_path: Path, capsys) -> None:
    bad = tmp_path / "bad.yaml"
    bad.write_text(
        "name: bad\ntest_sets:\n  default:\n    groups:\n      - name: G\n        sequences: [Nope]\n",
        encoding="utf-8",
    )
    rc = _run_cli(["validate", "--module", str(bad)])
    assert rc == 2
    assert "ERROR: unknown sequence: Nope" in capsys.readouterr().err


def test_module_path_is_required(capsys) -> None:
    rc = _run_cli(["validate"])
    assert rc == 2
    assert "no test module given" in capsys.readouterr().err


def test_module_path_from_environment(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.setenv("CONFORMANCE_MODULE_PATH", str(SAMPLE_MODULE))
    assert _run_cli(["validate"]) == 0
    assert capsys.readouterr().out.startswith("OK: module smart_app_launch")


def test_list_text_and_json(capsys) -> None:
    assert _run_cli(["list", "--module", str(SAMPLE_MODULE)]) == 0
    out = capsys.readouterr().out
    assert "StandaloneLaunch: Standalone Launch" in out
    assert "  default_PatientData_EncounterSearch: Encounter date search (optional)" in out

    assert _run_cli(["list", "--module", str(SAMPLE_MODULE), "--json"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["id"] == "default"
    assert [g["id"] for g in data["groups"]] == ["Discovery", "StandaloneLaunch", "PatientData"]


def test_run_then_report(tmp_path: Path, capsys) -> None:
    rc = _run_cli(
        [
            "run",
            "--module",
            str(SAMPLE_MODULE),
            "--url",
            "https://fhir.example.org/r4",
            "--client_id",
            "app",
            "--test_case",
            "default_StandaloneLaunch_StandaloneLaunch",
        ]
    )
    assert rc == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[0].startswith("SKIP")
    assert "default_StandaloneLaunch_StandaloneLaunch" in lines[0]
    assert "Missing required variable(s): 'oauth_authorize_endpoint'" in lines[0]
    assert lines[-1].startswith("instance_id: ")
    instance_id = lines[-1].split(": ", 1)[1]
    assert (tmp_path / "runs" / f"{instance_id}.json").exists()

    out_path = tmp_path / "report.json"
    rc = _run_cli(
        ["report", "--module", str(SAMPLE_MODULE), "--instance_id", instance_id, "--output", str(out_path)]
    )
    assert rc == 1
    report = json.loads(out_path.read_text(encoding="utf-8"))
    assert report["verdict"] == "fail"
    assert report["groups"]["StandaloneLaunch"]["result"] == "skip"
    assert report["groups"]["Discovery"]["result"] == "not_run"

    rc = _run_cli(["resume", "--module", str(SAMPLE_MODULE), "--instance_id", instance_id, "--endpoint", "redirect"])
    assert rc == 1
    assert "is not waiting" in capsys.readouterr().err


def test_run_argument_errors(capsys) -> None:
    assert _run_cli(["run", "--module", str(SAMPLE_MODULE)]) == 2
    assert "--url is required" in capsys.readouterr().err

    rc = _run_cli(["run", "--module", str(SAMPLE_MODULE), "--url", "https://x", "--var", "novalue"])
    assert rc == 2
    assert "expected NAME=VALUE" in capsys.readouterr().err

    rc = _run_cli(["report", "--module", str(SAMPLE_MODULE), "--instance_id", "missing"])
    assert rc == 1
    assert "unknown run instance" in capsys.readouterr().err


def test_cancel_of_unknown_instance_reports_a_plain_message(capsys) -> None:
    rc = _run_cli(["cancel", "--module", str(SAMPLE_MODULE), "--instance_id", "gone"])
    assert rc == 1
    assert "ERROR: unknown run instance: gone" in capsys.readouterr().err.splitlines()


def test_key_errors_from_command_bugs_propagate(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken(args, config) -> int:
        raise KeyError("verdict")

    monkeypatch.setitem(conformance._COMMANDS, "validate", broken)
    with pytest.raises(KeyError, match="verdict"):
        _run_cli(["validate", "--module", str(SAMPLE_MODULE)])
