"""Load declaration fragments and merge them into a single :class:`Declaration`.

A declaration may be split across several YAML files (a shared base, a
per-host override, ...). Fragments are merged field by field:

* scalars take the value from the fragment with the lowest ``priority``
  number; fragments with equal priority resolve last-writer-wins in the
  order they were given;
* ``packages`` and ``members`` lists are concatenated in fragment order with
  duplicates dropped.

The winning source of every scalar is kept in
:attr:`MergedDeclaration.provenance` so ``acctctl plan`` can show where a value
came from.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

from .errors import DeclarationError
from .models import Declaration, Group, ShellRef, User

DEFAULT_PRIORITY = 100

SETTING_DEFAULTS: dict[str, bool] = {
    "mutable_users": True,
    "enforce_id_uniqueness": True,
    "strict_shell_check": True,
}
TOP_LEVEL_KEYS = {"priority", "programs", "users", "groups", *SETTING_DEFAULTS}

USER_BOOL_KEYS = {
    "is_hidden",
    "create_home",
    "is_normal_user",
    "is_system_user",
    "is_admin_user",
    "is_token_user",
    "ignore_shell_program_check",
}
USER_INT_KEYS = {"uid", "gid"}
USER_STR_KEYS = {"name", "description", "home", "shell", "initial_password", "password"}
USER_LIST_KEYS = {"packages"}
USER_KEYS = USER_BOOL_KEYS | USER_INT_KEYS | USER_STR_KEYS | USER_LIST_KEYS

GROUP_INT_KEYS = {"gid"}
GROUP_STR_KEYS = {"description"}
GROUP_LIST_KEYS = {"members"}
GROUP_KEYS = GROUP_INT_KEYS | GROUP_STR_KEYS | GROUP_LIST_KEYS

FieldPath = tuple[str, ...]


@dataclass(slots=True, frozen=True)
class DeclarationFragment:
    """One parsed declaration file."""

    source: str
    data: Mapping[str, object]
    priority: int = DEFAULT_PRIORITY


@dataclass(slots=True)
class MergedDeclaration:
    """Result of merging fragments, with per-field provenance."""

    declaration: Declaration
    provenance: dict[FieldPath, str] = field(default_factory=dict)
    sources: tuple[str, ...] = ()

    def provenance_dict(self) -> dict[str, str]:
        """Return provenance keyed by dotted path."""
        return {".".join(path): source for path, source in sorted(self.provenance.items())}


def load_fragment(path: str | Path) -> DeclarationFragment:
    """Read and structurally check a declaration file."""
    source = Path(path)
    try:
        data = yaml.safe_load(source.read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise DeclarationError(f"Cannot read declaration {source}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise DeclarationError(f"Failed to parse declaration {source}: {exc}") from exc
    return fragment_from_mapping(data, source=str(source))


def fragment_from_mapping(data: object, *, source: str) -> DeclarationFragment:
    """Build a fragment from already-parsed data."""
    if not isinstance(data, Mapping):
        raise DeclarationError(f"{source}: declaration must be a mapping at the top level.")
    unknown = set(data) - TOP_LEVEL_KEYS
    if unknown:
        raise DeclarationError(f"{source}: unknown keys: {', '.join(sorted(map(str, unknown)))}.")
    priority = data.get("priority", DEFAULT_PRIORITY)
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise DeclarationError(f"{source}: priority must be an integer.")
    for key in SETTING_DEFAULTS:
        if key in data and not isinstance(data[key], bool):
            raise DeclarationError(f"{source}: {key} must be a boolean.")
    _check_programs(data.get("programs"), source)
    _check_entries(data.get("users"), "users", USER_KEYS, source)
    _check_entries(data.get("groups"), "groups", GROUP_KEYS, source)
    return DeclarationFragment(source=source, data=dict(data), priority=priority)


def _check_programs(value: object, source: str) -> None:
    if value is None:
        return
    if not isinstance(value, Mapping):
        raise DeclarationError(f"{source}: programs must be a mapping.")
    for name, entry in value.items():
        if not isinstance(entry, Mapping) or set(entry) - {"enable"}:
            raise DeclarationError(f"{source}: programs.{name} must be a mapping with 'enable'.")
        if not isinstance(entry.get("enable", False), bool):
            raise DeclarationError(f"{source}: programs.{name}.enable must be a boolean.")


def _check_entries(value: object, section: str, allowed: set[str], source: str) -> None:
    if value is None:
        return
    if not isinstance(value, Mapping):
        raise DeclarationError(f"{source}: {section} must be a mapping of name to attributes.")
    for name, entry in value.items():
        label = f"{source}: {section}.{name}"
        if not isinstance(name, str) or not name:
            raise DeclarationError(f"{source}: {section} keys must be non-empty strings.")
        if entry is None:
            continue
        if not isinstance(entry, Mapping):
            raise DeclarationError(f"{label} must be a mapping.")
        unknown = set(entry) - allowed
        if unknown:
            joined = ", ".join(sorted(map(str, unknown)))
            raise DeclarationError(f"{label}: unknown keys: {joined}.")
        for key, item in entry.items():
            _check_value(key, item, f"{label}.{key}")


def _check_value(key: str, value: object, label: str) -> None:
    if value is None:
        return
    if key in USER_BOOL_KEYS:
        if not isinstance(value, bool):
            raise DeclarationError(f"{label} must be a boolean.")
    elif key in USER_INT_KEYS | GROUP_INT_KEYS:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise DeclarationError(f"{label} must be a non-negative integer.")
    elif key in USER_LIST_KEYS | GROUP_LIST_KEYS:
        if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
            raise DeclarationError(f"{label} must be a list of strings.")
        if not all(isinstance(item, str) for item in value):
            raise DeclarationError(f"{label} must be a list of strings.")
    elif not isinstance(value, str) or not value.strip():
        raise DeclarationError(f"{label} must be a non-empty string.")


class _Resolver:
    """Track the winning value per field across fragments."""

    def __init__(self) -> None:
        self.scalars: dict[FieldPath, tuple[int, object, str]] = {}
        self.lists: dict[FieldPath, list[str]] = {}

    def offer(self, path: FieldPath, value: object, fragment: DeclarationFragment) -> None:
        current = self.scalars.get(path)
        if current is None or fragment.priority <= current[0]:
            self.scalars[path] = (fragment.priority, value, fragment.source)

    def extend(self, path: FieldPath, values: Iterable[str]) -> None:
        merged = self.lists.setdefault(path, [])
        for value in values:
            if value not in merged:
                merged.append(value)

    def get(self, path: FieldPath, default: object = None) -> object:
        entry = self.scalars.get(path)
        return default if entry is None else entry[1]


def merge_fragments(
    fragments: Sequence[DeclarationFragment],
    *,
    shell_prefix: str = "/run/current-system/sw/bin",
) -> MergedDeclaration:
    """Merge *fragments* into one :class:`Declaration`."""
    resolver = _Resolver()
    user_keys: list[str] = []
    group_keys: list[str] = []

    for fragment in fragments:
        data = fragment.data
        for key in SETTING_DEFAULTS:
            if key in data:
                resolver.offer(("settings", key), data[key], fragment)
        programs = cast(Mapping[str, Mapping[str, object]], data.get("programs") or {})
        for name, entry in programs.items():
            resolver.offer(("programs", str(name), "enable"), entry.get("enable", False), fragment)
        for section, keys, list_keys in (
            ("users", user_keys, USER_LIST_KEYS),
            ("groups", group_keys, GROUP_LIST_KEYS),
        ):
            entries = cast(Mapping[str, Mapping[str, object] | None], data.get(section) or {})
            for name, entry in entries.items():
                if name not in keys:
                    keys.append(name)
                for attr, value in (entry or {}).items():
                    path = (section, name, attr)
                    if attr in list_keys:
                        resolver.extend(path, value or ())
                    elif value is not None:
                        resolver.offer(path, value, fragment)

    users: dict[str, User] = {}
    for key in user_keys:
        user = _build_user(key, resolver, shell_prefix)
        if user.name in users:
            raise DeclarationError(f"users.{key}: account name '{user.name}' is declared twice.")
        users[user.name] = user

    groups = {key: _build_group(key, resolver) for key in group_keys}

    programs_enabled = {
        path[1]: bool(value)
        for path, (_, value, _) in resolver.scalars.items()
        if path[0] == "programs"
    }

    def _setting(name: str) -> bool:
        return bool(resolver.get(("settings", name), SETTING_DEFAULTS[name]))

    declaration = Declaration(
        users=users,
        groups=groups,
        mutable_users=_setting("mutable_users"),
        enforce_id_uniqueness=_setting("enforce_id_uniqueness"),
        strict_shell_check=_setting("strict_shell_check"),
        programs=programs_enabled,
    )
    provenance = {path: source for path, (_, _, source) in resolver.scalars.items()}
    return MergedDeclaration(
        declaration=declaration,
        provenance=provenance,
        sources=tuple(fragment.source for fragment in fragments),
    )


def _build_user(key: str, resolver: _Resolver, shell_prefix: str) -> User:
    def value(attr: str, default: object = None) -> object:
        return resolver.get(("users", key, attr), default)

    shell = value("shell")
    return User(
        name=str(value("name", key)),
        uid=_optional_int(value("uid")),
        gid=_optional_int(value("gid")),
        description=_optional_str(value("description")),
        is_hidden=bool(value("is_hidden", True)),
        home=_optional_str(value("home")),
        create_home=bool(value("create_home", False)),
        shell=ShellRef.parse(str(shell), prefix=shell_prefix) if shell is not None else None,
        is_normal_user=bool(value("is_normal_user", False)),
        is_system_user=bool(value("is_system_user", False)),
        is_admin_user=bool(value("is_admin_user", False)),
        is_token_user=bool(value("is_token_user", False)),
        initial_password=_optional_str(value("initial_password")),
        password=_optional_str(value("password")),
        packages=tuple(resolver.lists.get(("users", key, "packages"), ())),
        ignore_shell_program_check=bool(value("ignore_shell_program_check", False)),
    )


def _build_group(key: str, resolver: _Resolver) -> Group:
    return Group(
        name=key,
        gid=_optional_int(resolver.get(("groups", key, "gid"))),
        description=_optional_str(resolver.get(("groups", key, "description"))),
        members=tuple(resolver.lists.get(("groups", key, "members"), ())),
    )


def _optional_int(value: object) -> int | None:
    return None if value is None else int(value)  # type: ignore[call-overload]


def _optional_str(value: object) -> str | None:
    return None if value is None else str(value)


def load_declaration(
    paths: Sequence[str | Path],
    *,
    shell_prefix: str = "/run/current-system/sw/bin",
) -> MergedDeclaration:
    """Load every file in *paths* and merge them in order."""
    if not paths:
        raise DeclarationError("At least one declaration file is required.")
    return merge_fragments([load_fragment(path) for path in paths], shell_prefix=shell_prefix)


__all__ = [
    "DEFAULT_PRIORITY",
    "DeclarationFragment",
    "MergedDeclaration",
    "fragment_from_mapping",
    "load_declaration",
    "load_fragment",
    "merge_fragments",
]
