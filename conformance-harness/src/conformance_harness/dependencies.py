from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Protocol, Sequence, Tuple

from conformance_harness.graph import TestCase, TestSet
from conformance_harness.sequences.base import SequenceDefinition


class VariableLookup(Protocol):
    def is_defined(self, name: str) -> bool: ...


@dataclass(frozen=True)
class DependencyReport:
    ready: Sequence[TestCase] = field(default_factory=tuple)
    blocked: Sequence[Tuple[TestCase, str]] = field(default_factory=tuple)

    def blocked_ids(self) -> list[str]:
        out: list[str] = []
        for tc, _ in self.blocked:
            if tc.id not in out:
                out.append(tc.id)
        return out

    def missing_for(self, test_case_id: str) -> list[str]:
        return [var for tc, var in self.blocked if tc.id == test_case_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ready": [tc.id for tc in self.ready],
            "blocked": [{"test_case_id": tc.id, "variable": var} for tc, var in self.blocked],
        }


def missing_variables(
    definition: type[SequenceDefinition], variables: VariableLookup
) -> list[str]:
    return [name for name in definition.required_variables() if not variables.is_defined(name)]


def resolve_dependencies(
    test_set: TestSet,
    variables: VariableLookup,
    test_cases: Optional[Iterable[TestCase]] = None,
) -> DependencyReport:
    """Split test cases into ready and blocked against the current variables.

    `blocked` carries one (test case, variable) pair per missing variable.
    """
    ready: list[TestCase] = []
    blocked: list[Tuple[TestCase, str]] = []
    for tc in test_cases if test_cases is not None else test_set.test_cases():
        missing = missing_variables(tc.sequence, variables)
        if missing:
            blocked.extend((tc, name) for name in missing)
        else:
            ready.append(tc)
    return DependencyReport(ready=tuple(ready), blocked=tuple(blocked))


def missing_requirements(
    definition: type[SequenceDefinition],
    variables: VariableLookup,
    test_set: TestSet,
    *,
    recurse: bool = False,
) -> list[Tuple[str, list[type[SequenceDefinition]]]]:
    """List (variable, defining sequences) for each missing requirement.

    With `recurse`, requirements of the defining sequences are followed too,
    so the result names everything that must run first.
    """
    out: list[Tuple[str, list[type[SequenceDefinition]]]] = []
    seen_vars: set[str] = set()
    seen_defs: set[str] = {definition.sequence_name}
    pending: list[type[SequenceDefinition]] = [definition]

    while pending:
        current = pending.pop(0)
        for name in missing_variables(current, variables):
            if name in seen_vars:
                continue
            seen_vars.add(name)
            definers = test_set.variable_defined_by(name)
            out.append((name, definers))
            if not recurse:
                continue
            for d in definers:
                if d.sequence_name not in seen_defs:
                    seen_defs.add(d.sequence_name)
                    pending.append(d)
    return out


def dependency_skip_message(
    missing: Sequence[Tuple[str, Sequence[type[SequenceDefinition]]]],
) -> str:
    parts: list[str] = []
    for name, definers in missing:
        if definers:
            upstream = ", ".join(d.title or d.sequence_name for d in definers)
            parts.append(f"'{name}' (defined by {upstream})")
        else:
            parts.append(f"'{name}' (no sequence in this test set defines it)")
    return "Missing required variable(s): " + "; ".join(parts)
