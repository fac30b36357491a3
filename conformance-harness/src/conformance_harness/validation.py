from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence

import yaml
from jsonschema import Draft202012Validator

MAX_REPORTED_ERRORS = 20


@dataclass(frozen=True)
class ValidationOutcome:
    errors: Sequence[str] = field(default_factory=tuple)
    warnings: Sequence[str] = field(default_factory=tuple)
    information: Sequence[str] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "information": list(self.information),
        }


class SchemaValidator(Protocol):
    def validate(self, resource: Mapping[str, Any], profile: str) -> ValidationOutcome: ...


def _format_errors(errors: list[Any], *, where: str) -> list[str]:
    msgs: list[str] = []
    for e in errors[:MAX_REPORTED_ERRORS]:
        loc = "/".join([str(p) for p in e.path])
        msgs.append(f"{where}:{loc}: {e.message}")
    if len(errors) > MAX_REPORTED_ERRORS:
        msgs.append(f"... ({len(errors) - MAX_REPORTED_ERRORS} more)")
    return msgs


def _declared_profiles(resource: Mapping[str, Any]) -> list[str]:
    meta = resource.get("meta")
    if not isinstance(meta, Mapping):
        return []
    profiles = meta.get("profile")
    if not isinstance(profiles, list):
        return []
    return [str(p) for p in profiles]


class JsonSchemaValidator:
    """Validate resource payloads against JSON schemas keyed by profile url.

    Stands in for a full profile validation service: structural errors come
    from jsonschema, everything else is advisory.
    """

    def __init__(self, schemas: Optional[Mapping[str, Mapping[str, Any]]] = None) -> None:
        self._validators: Dict[str, Draft202012Validator] = {}
        for profile, schema in dict(schemas or {}).items():
            self.register(profile, schema)

    def register(self, profile: str, schema: Mapping[str, Any]) -> None:
        Draft202012Validator.check_schema(dict(schema))
        self._validators[str(profile)] = Draft202012Validator(dict(schema))

    @property
    def profiles(self) -> list[str]:
        return sorted(self._validators.keys())

    @classmethod
    def from_dir(cls, schema_dir: Path) -> "JsonSchemaValidator":
        """Load every `*.json`/`*.yaml` schema; the profile key is `$id` or the file stem."""
        validator = cls()
        for path in sorted(Path(schema_dir).iterdir()):
            suffix = path.suffix.lower()
            if suffix == ".json":
                schema = json.loads(path.read_text(encoding="utf-8"))
            elif suffix in {".yaml", ".yml"}:
                schema = yaml.safe_load(path.read_text(encoding="utf-8"))
            else:
                continue
            if not isinstance(schema, dict):
                raise ValueError(f"schema must be an object: {path}")
            validator.register(str(schema.get("$id") or path.stem), schema)
        return validator

    def validate(self, resource: Mapping[str, Any], profile: str) -> ValidationOutcome:
        warnings: list[str] = []
        information: list[str] = []

        if not isinstance(resource, Mapping):
            return ValidationOutcome(errors=("resource must be a JSON object",))

        resource_type = resource.get("resourceType")
        where = str(resource_type or "resource")

        validator = self._validators.get(str(profile))
        if validator is None:
            warnings.append(f"No schema registered for profile {profile}; skipped validation")
            return ValidationOutcome(warnings=tuple(warnings))

        errors = sorted(validator.iter_errors(dict(resource)), key=lambda e: list(e.path))
        declared = _declared_profiles(resource)
        if declared and str(profile) not in declared:
            information.append(f"{where} does not declare profile {profile} in meta.profile")

        return ValidationOutcome(
            errors=tuple(_format_errors(errors, where=where)),
            warnings=tuple(warnings),
            information=tuple(information),
        )
