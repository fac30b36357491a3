from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from conformance_harness.errors import ConfigurationError

ENV_PREFIX = "CONFORMANCE_"

LOG_FORMATS = ("console", "json")

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class HarnessConfig:
    log_level: str = "info"
    log_format: str = "console"
    store_dir: str = ".conformance/runs"
    request_timeout_s: float = 30.0
    verify_tls: bool = True
    disable_tls_tests: bool = False
    max_pages: int = 20
    module_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _coerce(name: str, raw: Any, default: Any) -> Any:
    if raw is None:
        return None
    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        s = str(raw).strip().lower()
        if s in _TRUE_VALUES:
            return True
        if s in _FALSE_VALUES:
            return False
        raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")
    if isinstance(default, int):
        try:
            return int(raw)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e
    if isinstance(default, float):
        try:
            return float(raw)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e
    return str(raw)


def _validate(config: HarnessConfig) -> HarnessConfig:
    if config.log_format not in LOG_FORMATS:
        raise ConfigurationError(f"log_format must be one of {LOG_FORMATS}, got {config.log_format!r}")
    if config.log_level.lower() not in LOG_LEVELS:
        raise ConfigurationError(f"log_level must be one of {LOG_LEVELS}, got {config.log_level!r}")
    if config.request_timeout_s <= 0:
        raise ConfigurationError("request_timeout_s must be > 0")
    if config.max_pages < 1:
        raise ConfigurationError("max_pages must be >= 1")
    return config


def load_config(
    path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> HarnessConfig:
    """Defaults, then the YAML file (if any), then `CONFORMANCE_*` variables."""
    raw: Dict[str, Any] = {}
    if path is not None:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"config file must hold a mapping: {path}")
        raw.update(data)

    env = os.environ if environ is None else environ
    known = {f.name: f for f in fields(HarnessConfig)}
    for name in known:
        value = env.get(ENV_PREFIX + name.upper())
        if value is not None and value != "":
            raw[name] = value

    unknown = sorted(set(raw) - set(known))
    if unknown:
        raise ConfigurationError(f"unknown config keys: {unknown}")

    defaults = HarnessConfig()
    kwargs = {name: _coerce(name, value, getattr(defaults, name)) for name, value in raw.items()}
    return _validate(HarnessConfig(**kwargs))
