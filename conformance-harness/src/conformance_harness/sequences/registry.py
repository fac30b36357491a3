from __future__ import annotations

from typing import Dict, Iterable, Iterator, Optional

from conformance_harness.errors import ConfigurationError
from conformance_harness.sequences.base import SequenceDefinition

SequenceType = type[SequenceDefinition]


class SequenceRegistry:
    """Explicit name -> SequenceDefinition mapping, filled at startup."""

    def __init__(self, definitions: Iterable[SequenceType] = ()) -> None:
        self._definitions: Dict[str, SequenceType] = {}
        for definition in definitions:
            self.add(definition)

    def add(self, definition: SequenceType) -> SequenceType:
        if not isinstance(definition, type) or not issubclass(definition, SequenceDefinition):
            raise ConfigurationError(f"not a sequence definition: {definition!r}")
        name = definition.sequence_name
        existing = self._definitions.get(name)
        if existing is not None and existing is not definition:
            raise ConfigurationError(f"duplicate sequence name: {name}")
        self._definitions[name] = definition
        return definition

    def register(self, definition: SequenceType) -> SequenceType:
        """Class decorator form of `add`."""
        return self.add(definition)

    def get(self, name: str) -> Optional[SequenceType]:
        return self._definitions.get(str(name))

    def require(self, name: str) -> SequenceType:
        definition = self.get(name)
        if definition is None:
            raise ConfigurationError(f"unknown sequence: {name}")
        return definition

    def names(self) -> list[str]:
        return sorted(self._definitions.keys())

    def __contains__(self, name: object) -> bool:
        return str(name) in self._definitions

    def __iter__(self) -> Iterator[SequenceType]:
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)
