from __future__ import annotations

import json
from pathlib import Path

import pytest
from jsonschema.exceptions import SchemaError

from conformance_harness.validation import MAX_REPORTED_ERRORS, JsonSchemaValidator

PROFILE = "http://example.org/StructureDefinition/patient"

PATIENT_SCHEMA = {
    "$id": PROFILE,
    "type": "object",
    "required": ["resourceType", "id"],
    "properties": {
        "resourceType": {"const": "Patient"},
        "id": {"type": "string"},
        "gender": {"enum": ["male", "female", "other", "unknown"]},
    },
}


def test_valid_resource_has_no_errors() -> None:
    validator = JsonSchemaValidator({PROFILE: PATIENT_SCHEMA})
    outcome = validator.validate({"resourceType": "Patient", "id": "1", "gender": "male"}, PROFILE)
    assert outcome.ok
    assert outcome.to_dict() == {"errors": [], "warnings": [], "information": []}


def test_errors_carry_the_element_path() -> None:
    validator = JsonSchemaValidator({PROFILE: PATIENT_SCHEMA})
    outcome = validator.validate({"resourceType": "Patient", "gender": "robot"}, PROFILE)
    assert not outcome.ok
    assert any(e.startswith("Patient::") and "'id' is a required property" in e for e in outcome.errors)
    assert any(e.startswith("Patient:gender:") for e in outcome.errors)


def test_reported_errors_are_capped() -> None:
    schema = {"type": "object", "additionalProperties": {"type": "integer"}}
    validator = JsonSchemaValidator({"p": schema})
    resource = {f"k{i:02d}": "x" for i in range(MAX_REPORTED_ERRORS + 5)}
    outcome = validator.validate(resource, "p")
    assert len(outcome.errors) == MAX_REPORTED_ERRORS + 1
    assert outcome.errors[-1] == "... (5 more)"


def test_unknown_profile_and_undeclared_profile_are_advisory() -> None:
    validator = JsonSchemaValidator({PROFILE: PATIENT_SCHEMA})
    unknown = validator.validate({"resourceType": "Patient", "id": "1"}, "http://other")
    assert unknown.ok
    assert "No schema registered" in unknown.warnings[0]

    undeclared = validator.validate(
        {"resourceType": "Patient", "id": "1", "meta": {"profile": ["http://something-else"]}}, PROFILE
    )
    assert undeclared.ok
    assert undeclared.information == (f"Patient does not declare profile {PROFILE} in meta.profile",)


def test_non_object_resource_is_an_error() -> None:
    outcome = JsonSchemaValidator().validate(["not", "a", "resource"], PROFILE)  # type: ignore[arg-type]
    assert outcome.errors == ("resource must be a JSON object",)


def test_from_dir_loads_json_and_yaml(tmp_path: Path) -> None:
    (tmp_path / "patient.json").write_text(json.dumps(PATIENT_SCHEMA), encoding="utf-8")
    (tmp_path / "encounter.yaml").write_text("type: object\nrequired: [status]\n", encoding="utf-8")
    (tmp_path / "README.md").write_text("ignored", encoding="utf-8")

    validator = JsonSchemaValidator.from_dir(tmp_path)
    assert validator.profiles == ["encounter", PROFILE]
    assert not validator.validate({"resourceType": "Encounter"}, "encounter").ok


def test_invalid_schema_is_rejected_on_register() -> None:
    with pytest.raises(SchemaError):
        JsonSchemaValidator({"bad": {"type": 12}})
