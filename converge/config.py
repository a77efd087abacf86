"""
Project settings, read from ``converge.yaml`` in the working directory.

Command-line options and CONVERGE_* environment variables (handled by the
CLI) override values from the file.
"""
import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional

import yaml

from converge.errors import ConfigurationError

SETTINGS_FILE = "converge.yaml"


@dataclass
class Settings:
    state_path: str = "converge.state.json"
    lock_timeout: float = 0.0
    parallelism: int = 10
    max_attempts: int = 5
    backoff_base: float = 0.5
    backoff_max: float = 20.0
    provider: str = "memory"
    provider_path: str = ".converge/cloud.json"
    kinds_file: str = "converge_kinds.yaml"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _coerce(name: str, typ: Any, value: Any) -> Any:
    try:
        return typ(value)
    except (TypeError, ValueError):
        raise ConfigurationError([f"setting '{name}': invalid value {value!r}"]) from None


def load_settings(path: Optional[str] = None, **overrides: Any) -> Settings:
    """
    Build Settings from defaults, then the settings file (if present),
    then ``overrides`` whose value is not None.
    """
    path = path or SETTINGS_FILE
    values: Dict[str, Any] = {}

    if os.path.exists(path):
        try:
            with open(path, "r") as fh:
                data = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError([f"cannot read settings file {path}: {exc}"])
        if not isinstance(data, dict):
            raise ConfigurationError([f"{path}: expected a mapping of settings"])
        values.update(data)

    values.update({k: v for k, v in overrides.items() if v is not None})

    known = {f.name: f.type for f in fields(Settings)}
    unknown = sorted(set(values) - set(known))
    if unknown:
        raise ConfigurationError([f"unknown setting '{k}'" for k in unknown])

    problems = []
    coerced = {}
    for name, value in values.items():
        try:
            coerced[name] = _coerce(name, known[name], value)
        except ConfigurationError as exc:
            problems.extend(exc.problems)
    if problems:
        raise ConfigurationError(problems)

    settings = Settings(**coerced)
    if settings.parallelism < 1:
        raise ConfigurationError(["setting 'parallelism' must be at least 1"])
    if settings.max_attempts < 1:
        raise ConfigurationError(["setting 'max_attempts' must be at least 1"])
    return settings
