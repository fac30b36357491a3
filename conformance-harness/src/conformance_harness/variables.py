from __future__ import annotations

from typing import Any, Dict, Iterable, Iterator, Mapping, Optional

from conformance_harness.errors import LockedVariableError


def _nonempty_str(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def _normalize_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class VariableStore:
    """Shared named values of one run instance.

    Sequences never write here directly: they write into a `StagedVariables`
    overlay which the engine commits only when the sequence ends without an
    error outcome. A variable counts as defined only when its value is a
    non-empty string.
    """

    def __init__(
        self,
        values: Optional[Mapping[str, Any]] = None,
        *,
        locked: Iterable[str] = (),
    ) -> None:
        self._values: Dict[str, Optional[str]] = {}
        self._locked: set[str] = {str(n) for n in locked}
        for name, value in dict(values or {}).items():
            self._values[str(name)] = _normalize_value(value)

    def get(self, name: str) -> Optional[str]:
        return self._values.get(str(name))

    def is_defined(self, name: str) -> bool:
        return _nonempty_str(self._values.get(str(name)))

    def set(self, name: str, value: Any) -> None:
        self._values[str(name)] = _normalize_value(value)

    def set_from_user(self, name: str, value: Any) -> None:
        if str(name) in self._locked:
            raise LockedVariableError(str(name))
        self.set(name, value)

    def lock(self, names: Iterable[str]) -> None:
        self._locked.update(str(n) for n in names)

    def unlock(self, names: Optional[Iterable[str]] = None) -> None:
        if names is None:
            self._locked.clear()
            return
        self._locked.difference_update(str(n) for n in names)

    @property
    def locked(self) -> frozenset[str]:
        return frozenset(self._locked)

    def stage(self, changes: Optional[Mapping[str, Any]] = None) -> "StagedVariables":
        return StagedVariables(self, changes)

    def snapshot(self) -> Dict[str, Optional[str]]:
        return dict(self._values)

    def names(self) -> list[str]:
        return sorted(self._values.keys())

    def __contains__(self, name: object) -> bool:
        return str(name) in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __len__(self) -> int:
        return len(self._values)

    def to_dict(self) -> Dict[str, Any]:
        return {"values": self.snapshot(), "locked": sorted(self._locked)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VariableStore":
        values = data.get("values") if isinstance(data.get("values"), Mapping) else {}
        locked = data.get("locked") if isinstance(data.get("locked"), list) else []
        return cls(values, locked=locked)


class StagedVariables:
    """Write overlay used while a single sequence runs.

    Reads fall through to the underlying store; writes stay here until
    `commit()`. `changes` seeds the overlay with writes carried over from an
    earlier, suspended pass.
    """

    def __init__(self, base: VariableStore, changes: Optional[Mapping[str, Any]] = None) -> None:
        self._base = base
        self._changes: Dict[str, Optional[str]] = {
            str(name): _normalize_value(value) for name, value in dict(changes or {}).items()
        }

    def get(self, name: str) -> Optional[str]:
        name = str(name)
        if name in self._changes:
            return self._changes[name]
        return self._base.get(name)

    def is_defined(self, name: str) -> bool:
        return _nonempty_str(self.get(name))

    def set(self, name: str, value: Any) -> None:
        self._changes[str(name)] = _normalize_value(value)

    def changes(self) -> Dict[str, Optional[str]]:
        return dict(self._changes)

    def commit(self, names: Optional[Iterable[str]] = None) -> Dict[str, Optional[str]]:
        """Write staged values through; with `names`, only those are kept."""
        committed = dict(self._changes)
        if names is not None:
            wanted = {str(n) for n in names}
            committed = {k: v for k, v in committed.items() if k in wanted}
        for name, value in committed.items():
            self._base.set(name, value)
        self._changes.clear()
        return committed

    def discard(self) -> None:
        self._changes.clear()
