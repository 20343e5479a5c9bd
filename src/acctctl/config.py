"""Configuration loader for acctctl.

This module centralises the logic for reading tool settings from multiple
sources, later sources winning:

1. Built-in defaults.
2. ``/etc/acctctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``ACCTCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export ACCTCTL_DIRECTORY__COMMAND_TIMEOUT=30
    export ACCTCTL_DIRECTORY__ADMIN_GROUP=wheel

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.

These are settings for the tool itself. The users and groups to manage are
read from declaration files, see :mod:`acctctl.declaration`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load acctctl configuration. Install with "
        "`pip install acctctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "ACCTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class DirectoryConfig:
    """How to reach the local directory service and its helper tools."""

    dscl_bin: str = "dscl"
    sysadminctl_bin: str = "sysadminctl"
    dsmemberutil_bin: str = "dsmemberutil"
    createhomedir_bin: str = "createhomedir"
    id_bin: str = "id"
    cp_bin: str = "cp"
    node: str = "."
    command_timeout: float = 120.0
    admin_group: str = "admin"
    superuser: str = "root"
    managed_attribute: str = "NixDeclarative"
    users_root: str = "/Users"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "dscl_bin": self.dscl_bin,
            "sysadminctl_bin": self.sysadminctl_bin,
            "dsmemberutil_bin": self.dsmemberutil_bin,
            "createhomedir_bin": self.createhomedir_bin,
            "id_bin": self.id_bin,
            "cp_bin": self.cp_bin,
            "node": self.node,
            "command_timeout": self.command_timeout,
            "admin_group": self.admin_group,
            "superuser": self.superuser,
            "managed_attribute": self.managed_attribute,
            "users_root": self.users_root,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for acctctl."""

    config_file: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    profiles_root: Path
    shell_prefix: str
    directory: DirectoryConfig = field(default_factory=DirectoryConfig)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "profiles_root": str(self.profiles_root),
            "shell_prefix": self.shell_prefix,
            "directory": self.directory.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/acctctl/config.yml",
    "logs_dir": "/var/log/acctctl",
    "runtime_dir": "/run/acctctl",
    "lock_timeout": 30.0,
    "profiles_root": "/etc/profiles/per-user",
    "shell_prefix": "/run/current-system/sw/bin",
    "directory": DirectoryConfig().to_dict(),
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_DIRECTORY_KEYS = set(DirectoryConfig().to_dict().keys())


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


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


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

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    directory = raw.get("directory")
    if directory is not None:
        directory_map = _as_dict(directory, "directory")
        unknown = set(directory_map.keys()) - ALLOWED_DIRECTORY_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown directory configuration keys: {joined}.")
        for key, value in directory_map.items():
            if key == "command_timeout":
                continue
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(f"directory.{key} must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    defaults = DirectoryConfig()
    directory_mapping = _as_dict(raw.get("directory"), "directory")

    def _string(key: str) -> str:
        return str(directory_mapping.get(key, getattr(defaults, key)))

    directory = DirectoryConfig(
        dscl_bin=_string("dscl_bin"),
        sysadminctl_bin=_string("sysadminctl_bin"),
        dsmemberutil_bin=_string("dsmemberutil_bin"),
        createhomedir_bin=_string("createhomedir_bin"),
        id_bin=_string("id_bin"),
        cp_bin=_string("cp_bin"),
        node=_string("node"),
        command_timeout=_expect_positive_float(
            directory_mapping.get("command_timeout"),
            "directory.command_timeout",
            default=defaults.command_timeout,
        ),
        admin_group=_string("admin_group"),
        superuser=_string("superuser"),
        managed_attribute=_string("managed_attribute"),
        users_root=_string("users_root"),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        profiles_root=_to_path(raw.get("profiles_root")),
        shell_prefix=_expect_str(raw.get("shell_prefix"), "shell_prefix"),
        directory=directory,
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
    "ConfigError",
    "DirectoryConfig",
    "load_config",
]
