from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Union

import yaml
from jsonschema import Draft202012Validator

from conformance_harness.errors import ConfigurationError, SpecValidationError
from conformance_harness.sequences.base import SequenceDefinition
from conformance_harness.sequences.registry import SequenceRegistry

SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "test_module.schema.json"

MAX_ID_SUFFIX = 99

_NON_ALNUM_RE = re.compile(r"[^0-9a-zA-Z]")


def load_yaml_or_json(path: Path) -> Dict[str, Any]:
    """Load a YAML/JSON file whose top level must be an object."""
    if not path.exists():
        raise FileNotFoundError(path)

    if path.suffix.lower() in {".yaml", ".yml"}:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    elif path.suffix.lower() == ".json":
        data = json.loads(path.read_text(encoding="utf-8"))
    else:
        raise SpecValidationError(f"Unsupported module file extension: {path}")

    if not isinstance(data, dict):
        raise SpecValidationError(f"Top-level module must be an object: {path}")
    return data


def load_schema(schema_path: Path = SCHEMA_PATH) -> Dict[str, Any]:
    schema = json.loads(schema_path.read_text(encoding="utf-8"))
    if not isinstance(schema, dict):
        raise SpecValidationError(f"Schema must be an object: {schema_path}")
    return schema


def _test_set_schema(module_schema: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "$schema": module_schema.get("$schema"),
        "$ref": "#/$defs/test_set",
        "$defs": dict(module_schema.get("$defs") or {}),
    }


def validate_against_schema(
    instance: Mapping[str, Any],
    schema: Mapping[str, Any],
    *,
    where: str,
) -> None:
    validator = Draft202012Validator(dict(schema))
    errors = sorted(validator.iter_errors(dict(instance)), key=lambda e: list(e.path))
    if errors:
        msgs = []
        for e in errors[:20]:
            loc = "/".join([str(p) for p in e.path])
            msgs.append(f"- {where}:{loc}: {e.message}")
        if len(errors) > 20:
            msgs.append(f"... ({len(errors)-20} more)")
        raise SpecValidationError("\n".join(msgs))


@dataclass(frozen=True)
class Tag:
    name: str
    description: str = ""
    url: str = ""


@dataclass(frozen=True)
class TestCase:
    __test__ = False

    id: str
    test_set_id: str
    group_id: str
    sequence: type[SequenceDefinition]
    title_override: Optional[str] = None
    description_override: Optional[str] = None
    variable_defaults: Mapping[str, Any] = field(default_factory=dict, hash=False)

    @property
    def sequence_name(self) -> str:
        return self.sequence.sequence_name

    @property
    def title(self) -> str:
        return self.title_override or self.sequence.title or self.sequence.sequence_name

    @property
    def description(self) -> str:
        return self.description_override or self.sequence.description

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "test_set_id": self.test_set_id,
            "group_id": self.group_id,
            "sequence": self.sequence_name,
            "title": self.title,
            "description": self.description,
            "variable_defaults": dict(self.variable_defaults),
        }


@dataclass(frozen=True)
class TestGroup:
    __test__ = False

    id: str
    name: str
    test_set_id: str
    test_cases: Sequence[TestCase] = ()
    overview: str = ""
    tags: Sequence[Tag] = ()
    run_all: bool = False
    run_skipped: bool = False
    lock_variables: Sequence[str] = ()
    input_instructions: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "overview": self.overview,
            "run_all": self.run_all,
            "run_skipped": self.run_skipped,
            "lock_variables": list(self.lock_variables),
            "input_instructions": self.input_instructions,
            "tags": [{"name": t.name, "description": t.description, "url": t.url} for t in self.tags],
            "test_cases": [tc.to_dict() for tc in self.test_cases],
        }


@dataclass(frozen=True)
class TestSet:
    """Ordered groups of test cases.

    Every query below walks the groups again; nothing is cached.
    """

    __test__ = False

    id: str
    groups: Sequence[TestGroup] = ()
    view: str = "default"

    def test_cases(self) -> list[TestCase]:
        return [tc for group in self.groups for tc in group.test_cases]

    def sequences(self) -> list[type[SequenceDefinition]]:
        out: list[type[SequenceDefinition]] = []
        for tc in self.test_cases():
            if tc.sequence not in out:
                out.append(tc.sequence)
        return out

    def test_case_by_id(self, test_case_id: str) -> Optional[TestCase]:
        for tc in self.test_cases():
            if tc.id == test_case_id:
                return tc
        return None

    def group_by_id(self, group_id: str) -> Optional[TestGroup]:
        for group in self.groups:
            if group.id == group_id:
                return group
        return None

    def group_for(self, test_case: Union[TestCase, str]) -> Optional[TestGroup]:
        if isinstance(test_case, str):
            tc = self.test_case_by_id(test_case)
            if tc is None:
                return None
            test_case = tc
        return self.group_by_id(test_case.group_id)

    def variable_required_by(self, name: str) -> list[type[SequenceDefinition]]:
        return [s for s in self.sequences() if name in (*s.requires, *s.new_requires)]

    def variable_defined_by(self, name: str) -> list[type[SequenceDefinition]]:
        return [s for s in self.sequences() if name in s.defines]

    def required_sequences(self) -> list[type[SequenceDefinition]]:
        return [s for s in self.sequences() if not s.optional]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "view": self.view,
            "groups": [g.to_dict() for g in self.groups],
        }


@dataclass(frozen=True)
class TestModule:
    __test__ = False

    name: str
    test_sets: Mapping[str, TestSet]
    title: str = ""
    description: str = ""
    fhir_version: str = "r4"
    default_test_set: Optional[str] = None

    def test_set(self, test_set_id: Optional[str] = None) -> TestSet:
        key = test_set_id or self.default_test_set or next(iter(self.test_sets))
        test_set = self.test_sets.get(key)
        if test_set is None:
            raise ConfigurationError(f"unknown test set {key!r} in module {self.name}")
        return test_set


def group_id_for(name: str) -> str:
    return _NON_ALNUM_RE.sub("", str(name))


def _disambiguate(raw: str, used: set[str]) -> str:
    if raw not in used:
        return raw
    for i in range(1, MAX_ID_SUFFIX + 1):
        candidate = f"{raw}_{i}"
        if candidate not in used:
            return candidate
    raise ConfigurationError(f"could not generate a unique id for {raw!r}")


def _parse_case_entry(entry: Any) -> Dict[str, Any]:
    if isinstance(entry, str):
        return {"sequence": entry}
    return dict(entry)


def build_test_set(
    spec: Mapping[str, Any],
    registry: SequenceRegistry,
    *,
    test_set_id: Optional[str] = None,
    schema: Optional[Mapping[str, Any]] = None,
) -> TestSet:
    """Build a TestSet from its declarative mapping.

    Raises ConfigurationError (or SpecValidationError) on any problem; a
    partially built set is never returned.
    """
    module_schema = schema if schema is not None else load_schema()
    validate_against_schema(spec, _test_set_schema(module_schema), where="test_set")

    set_id = str(test_set_id or spec.get("id") or "default")
    used_group_ids: set[str] = set()
    used_case_ids: set[str] = set()
    groups: list[TestGroup] = []

    for raw_group in spec.get("groups") or []:
        name = str(raw_group["name"])
        base_group_id = group_id_for(name)
        if not base_group_id:
            raise ConfigurationError(f"group name has no alphanumeric characters: {name!r}")
        group_id = _disambiguate(base_group_id, used_group_ids)
        used_group_ids.add(group_id)

        cases: list[TestCase] = []
        for entry in raw_group.get("sequences") or []:
            case_spec = _parse_case_entry(entry)
            sequence = registry.require(case_spec["sequence"])
            case_id = _disambiguate(
                f"{set_id}_{group_id}_{sequence.sequence_name}", used_case_ids
            )
            used_case_ids.add(case_id)
            cases.append(
                TestCase(
                    id=case_id,
                    test_set_id=set_id,
                    group_id=group_id,
                    sequence=sequence,
                    title_override=case_spec.get("title"),
                    description_override=case_spec.get("description"),
                    variable_defaults=dict(case_spec.get("variable_defaults") or {}),
                )
            )

        groups.append(
            TestGroup(
                id=group_id,
                name=name,
                test_set_id=set_id,
                test_cases=tuple(cases),
                overview=str(raw_group.get("overview") or ""),
                tags=tuple(
                    Tag(
                        name=str(t["name"]),
                        description=str(t.get("description") or ""),
                        url=str(t.get("url") or ""),
                    )
                    for t in raw_group.get("tags") or []
                ),
                run_all=bool(raw_group.get("run_all", False)),
                run_skipped=bool(raw_group.get("run_skipped", False)),
                lock_variables=tuple(raw_group.get("lock_variables") or ()),
                input_instructions=str(raw_group.get("input_instructions") or ""),
            )
        )

    return TestSet(id=set_id, groups=tuple(groups), view=str(spec.get("view") or "default"))


def build_module(data: Mapping[str, Any], registry: SequenceRegistry) -> TestModule:
    module_schema = load_schema()
    validate_against_schema(data, module_schema, where="module")

    test_sets: Dict[str, TestSet] = {}
    for set_id, spec in dict(data["test_sets"]).items():
        test_sets[str(set_id)] = build_test_set(
            spec, registry, test_set_id=str(set_id), schema=module_schema
        )

    default_set = data.get("default_test_set")
    if default_set is not None and default_set not in test_sets:
        raise ConfigurationError(f"default_test_set {default_set!r} is not defined")

    return TestModule(
        name=str(data["name"]),
        title=str(data.get("title") or ""),
        description=str(data.get("description") or ""),
        fhir_version=str(data.get("fhir_version") or "r4"),
        default_test_set=default_set,
        test_sets=test_sets,
    )


def load_module(path: Path, registry: SequenceRegistry) -> TestModule:
    return build_module(load_yaml_or_json(Path(path)), registry)
