from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Dict, Optional, Protocol

from conformance_harness.models import RunInstance


class RunStore(Protocol):
    def load(self, instance_id: str) -> Optional[RunInstance]: ...

    def save(self, instance: RunInstance) -> None: ...


def _json_dumps_canonical(obj: object) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class MemoryRunStore:
    """Keeps deep copies so callers never share state with the store."""

    def __init__(self) -> None:
        self._instances: Dict[str, RunInstance] = {}

    def load(self, instance_id: str) -> Optional[RunInstance]:
        instance = self._instances.get(str(instance_id))
        return copy.deepcopy(instance) if instance is not None else None

    def save(self, instance: RunInstance) -> None:
        self._instances[instance.id] = copy.deepcopy(instance)

    def ids(self) -> list[str]:
        return sorted(self._instances.keys())


class JsonRunStore:
    """One canonical JSON file per run instance under `root`.

    Writes go to a sibling `.tmp` file that is then moved into place,
    so a reader sees either the previous or the new state.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def path_for(self, instance_id: str) -> Path:
        safe = "".join(ch for ch in str(instance_id) if ch.isalnum() or ch in "-_")
        if not safe:
            raise ValueError(f"invalid instance id: {instance_id!r}")
        return self.root / f"{safe}.json"

    def load(self, instance_id: str) -> Optional[RunInstance]:
        path = self.path_for(instance_id)
        if not path.exists():
            return None
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"run instance file must hold an object: {path}")
        return RunInstance.from_dict(data)

    def save(self, instance: RunInstance) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(instance.id)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(_json_dumps_canonical(instance.to_dict()) + "\n", encoding="utf-8")
        tmp_path.replace(path)

    def ids(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.stem for p in self.root.glob("*.json"))
