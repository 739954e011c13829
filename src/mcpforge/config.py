"""Configuration loader for mcpforge.

Settings are layered in this order, later sources winning:

1. Built-in defaults.
2. ``~/.config/mcpforge/config.yml`` (or an override path).
3. Environment variables prefixed with ``MCPFORGE_``.
4. Explicit overrides supplied programmatically (used for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MCPFORGE_BACKUPS__KEEP=50
    export MCPFORGE_VALIDATION__DEEP=true

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The managed document path is derived from ``claude_dir``
and ``profile`` unless ``document`` names it explicitly; switching profiles
only changes that path.
"""
from __future__ import annotations

import os
import re
import sys
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load mcpforge configuration. Install with "
        "`pip install mcpforge` or ensure PyYAML>=6.0 is available."
    ) from exc

from .backups import BackupError, parse_duration

ENV_PREFIX = "MCPFORGE_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
DOCUMENT_NAME = "claude_desktop_config.json"
_PROFILE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


def default_claude_dir(platform: str | None = None) -> Path:
    """Return the directory the desktop client keeps its configuration in."""
    platform = platform or sys.platform
    if platform == "darwin":
        return Path("~/Library/Application Support/Claude").expanduser()
    if platform.startswith("win"):
        return Path("~/AppData/Roaming/Claude").expanduser()
    return Path("~/.config/claude").expanduser()


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage and retention defaults."""

    root: Path
    index: Path
    keep: int = 20
    max_age: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "index": str(self.index),
            "keep": self.keep,
            "max_age": self.max_age,
        }


@dataclass(frozen=True)
class BulkConfig:
    """Defaults for bulk operations."""

    continue_on_error: bool = False
    max_workers: int = 1

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"continue_on_error": self.continue_on_error, "max_workers": self.max_workers}


@dataclass(frozen=True)
class ValidationConfig:
    """Validation defaults."""

    deep: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"deep": self.deep}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for mcpforge."""

    config_file: Path
    claude_dir: Path
    document: Path
    profile: str | None
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    backups: BackupConfig
    bulk: BulkConfig
    validation: ValidationConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "claude_dir": str(self.claude_dir),
            "document": str(self.document),
            "profile": self.profile,
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "backups": self.backups.to_dict(),
            "bulk": self.bulk.to_dict(),
            "validation": self.validation.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/mcpforge/config.yml",
    "claude_dir": None,  # platform specific, see default_claude_dir()
    "document": None,  # derived from claude_dir and profile when absent
    "profile": None,
    "logs_dir": "~/.local/state/mcpforge/logs",
    "runtime_dir": "~/.local/state/mcpforge/run",
    "lock_timeout": 10.0,
    "backups": {
        "root": None,  # <claude_dir>/backups
        "index": None,  # <backups.root>/backups.json
        "keep": 20,
        "max_age": None,
    },
    "bulk": {
        "continue_on_error": False,
        "max_workers": 1,
    },
    "validation": {
        "deep": False,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "backups": {"root", "index", "keep", "max_age"},
    "bulk": {"continue_on_error", "max_workers"},
    "validation": {"deep"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def profile_document(claude_dir: Path, profile: str) -> Path:
    """Return the document path used for *profile*."""
    return claude_dir / f"profile_{profile}.json"


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=10.0)

    profile = raw.get("profile")
    if profile is not None:
        if not isinstance(profile, str) or not _PROFILE_NAME.match(profile):
            raise ConfigError(
                f"Invalid profile name {profile!r}. Use letters, digits, '.', '_' or '-'."
            )

    backups_map = _as_dict(raw.get("backups"), "backups")
    max_age = backups_map.get("max_age")
    if max_age is not None:
        try:
            parse_duration(str(max_age))
        except BackupError as exc:
            raise ConfigError(f"backups.max_age: {exc}") from exc


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    claude_dir_value = raw.get("claude_dir")
    claude_dir = _to_path(claude_dir_value) if claude_dir_value else default_claude_dir()
    profile_value = raw.get("profile")
    profile = str(profile_value) if profile_value else None

    document_value = raw.get("document")
    if document_value:
        document = _to_path(document_value)
    elif profile:
        document = profile_document(claude_dir, profile)
    else:
        document = claude_dir / DOCUMENT_NAME

    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=10.0)

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    root_value = backups_mapping.get("root")
    backups_root = _to_path(root_value) if root_value else claude_dir / "backups"
    index_value = backups_mapping.get("index")
    backups_index = _to_path(index_value) if index_value else backups_root / "backups.json"
    keep = _expect_int(backups_mapping.get("keep"), "backups.keep", default=20)
    if keep < 0:
        raise ConfigError("backups.keep must be non-negative.")
    max_age_value = backups_mapping.get("max_age")
    backups = BackupConfig(
        root=backups_root,
        index=backups_index,
        keep=keep,
        max_age=str(max_age_value) if max_age_value is not None else None,
    )

    bulk_mapping = _as_dict(raw.get("bulk"), "bulk")
    max_workers = _expect_int(bulk_mapping.get("max_workers"), "bulk.max_workers", default=1)
    if max_workers < 1:
        raise ConfigError("bulk.max_workers must be at least 1.")
    bulk = BulkConfig(
        continue_on_error=_expect_bool(
            bulk_mapping.get("continue_on_error"), "bulk.continue_on_error", default=False
        ),
        max_workers=max_workers,
    )

    validation_mapping = _as_dict(raw.get("validation"), "validation")
    validation = ValidationConfig(
        deep=_expect_bool(validation_mapping.get("deep"), "validation.deep", default=False)
    )

    return AppConfig(
        config_file=config_file,
        claude_dir=claude_dir,
        document=document,
        profile=profile,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        backups=backups,
        bulk=bulk,
        validation=validation,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "BulkConfig",
    "ConfigError",
    "ValidationConfig",
    "default_claude_dir",
    "load_config",
    "profile_document",
]
