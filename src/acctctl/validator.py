"""Cross-entity checks run before any account is touched."""
from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence

from .errors import ValidationError
from .models import (
    INTERACTIVE_SHELLS,
    ROOT_HOME,
    ROOT_USER,
    SYSTEM_NAME_PREFIX,
    Declaration,
    Group,
    ObservedState,
    User,
    Violation,
    ViolationKind,
)


def _check_roles(user: User) -> list[Violation]:
    violations: list[Violation] = []
    system = user.is_effectively_system
    if system == user.is_normal_user:
        violations.append(
            Violation(
                ViolationKind.ROLE_EXCLUSIVITY,
                user.name,
                f"Exactly one of users.{user.name}.is_system_user and "
                f"users.{user.name}.is_normal_user must be set.",
            )
        )
    if system and not user.name.startswith(SYSTEM_NAME_PREFIX):
        violations.append(
            Violation(
                ViolationKind.SYSTEM_NAME,
                user.name,
                f"System user '{user.name}' must have a name starting with "
                f"'{SYSTEM_NAME_PREFIX}' (uid range 200-400).",
            )
        )
    return violations


def _check_root_home(users: Mapping[str, User]) -> list[Violation]:
    root = users.get(ROOT_USER)
    if root is None or root.home in (None, ROOT_HOME):
        return []
    return [
        Violation(
            ViolationKind.ROOT_HOME,
            ROOT_USER,
            f"users.root.home must be either unset or {ROOT_HOME}.",
        )
    ]


def _duplicates(pairs: Iterable[tuple[str, int | None]]) -> dict[int, list[str]]:
    owners: dict[int, list[str]] = defaultdict(list)
    for name, value in pairs:
        if value is not None:
            owners[value].append(name)
    return {value: sorted(names) for value, names in owners.items() if len(names) > 1}


def _check_uniqueness(
    users: Mapping[str, User],
    groups: Mapping[str, Group],
    *,
    enforce_gids: bool,
) -> list[Violation]:
    violations: list[Violation] = []
    for uid, names in sorted(_duplicates((u.name, u.uid) for u in users.values()).items()):
        violations.append(
            Violation(
                ViolationKind.DUPLICATE_UID,
                ",".join(names),
                f"uid {uid} is declared by more than one user: {', '.join(names)}.",
            )
        )
    for gid, names in sorted(_duplicates((g.name, g.gid) for g in groups.values()).items()):
        violations.append(
            Violation(
                ViolationKind.DUPLICATE_GID,
                ",".join(names),
                f"gid {gid} is declared by more than one group: {', '.join(names)}.",
                fatal=enforce_gids,
            )
        )
    return violations


def _check_lockout(declaration: Declaration) -> list[Violation]:
    if declaration.mutable_users:
        return []
    for user in declaration.users.values():
        if user.is_admin_user and user.is_token_user and user.password is not None:
            return []
    return [
        Violation(
            ViolationKind.LOCKOUT_RISK,
            "users",
            "You must set a combined admin and token user with a password to prevent "
            "being locked out of your system (or set mutable_users: true).",
        )
    ]


def _check_shells(user: User, declaration: Declaration) -> list[Violation]:
    if user.shell is None or user.shell.package is None:
        return []
    violations: list[Violation] = []
    for shell in INTERACTIVE_SHELLS:
        if not user.shell.provides(shell) or declaration.program_enabled(shell):
            continue
        fatal = declaration.strict_shell_check and not user.ignore_shell_program_check
        violations.append(
            Violation(
                ViolationKind.SHELL_NOT_ENABLED,
                user.name,
                f"users.{user.name}.shell is set to {shell}, but programs.{shell}.enable "
                f"is not true. The shell will lack the managed directories in its PATH; "
                f"set programs.{shell}.enable or users.{user.name}.ignore_shell_program_check.",
                fatal=fatal,
            )
        )
    if user.shell.package == "bash":
        violations.append(
            Violation(
                ViolationKind.BASH_NOT_INTERACTIVE,
                user.name,
                f"Set users.{user.name}.shell to bash-interactive instead of bash as it "
                "does not include readline.",
                fatal=False,
            )
        )
    return violations


def validate(declaration: Declaration) -> list[Violation]:
    """Return every violation in *declaration*, sorted by kind and subject."""
    users = declaration.users
    violations: list[Violation] = []
    violations.extend(_check_root_home(users))
    for user in users.values():
        violations.extend(_check_roles(user))
        violations.extend(_check_shells(user, declaration))
    violations.extend(
        _check_uniqueness(
            users,
            declaration.groups,
            enforce_gids=declaration.enforce_id_uniqueness,
        )
    )
    violations.extend(_check_lockout(declaration))
    return sorted(violations, key=lambda v: (v.kind.value, v.subject, v.message))


def _id_clashes(
    assigned: Mapping[str, int | None],
    observed: Mapping[str, int],
) -> dict[int, list[str]]:
    owners = dict(assigned)
    for name, value in observed.items():
        owners.setdefault(name, value)
    return {
        value: names
        for value, names in _duplicates(owners.items()).items()
        if any(name in assigned for name in names)
    }


def check_assigned_ids(
    users: Mapping[str, User],
    groups: Mapping[str, Group],
    observed: ObservedState,
    *,
    enforce_gids: bool,
) -> list[Violation]:
    """Return id collisions left after allocation.

    Declared accounts are compared by their assigned id and every other
    account on the host by its observed id, so an explicit id that an
    existing account already holds is reported as well.
    """
    violations: list[Violation] = []
    uids = _id_clashes({name: user.uid for name, user in users.items()}, observed.users)
    for uid, names in sorted(uids.items()):
        violations.append(
            Violation(
                ViolationKind.DUPLICATE_UID,
                ",".join(names),
                f"uid {uid} would be shared by users: {', '.join(names)}.",
            )
        )
    gids = _id_clashes({name: group.gid for name, group in groups.items()}, observed.groups)
    for gid, names in sorted(gids.items()):
        violations.append(
            Violation(
                ViolationKind.DUPLICATE_GID,
                ",".join(names),
                f"gid {gid} would be shared by groups: {', '.join(names)}.",
                fatal=enforce_gids,
            )
        )
    return violations


def raise_for_violations(violations: Sequence[Violation]) -> list[Violation]:
    """Raise :class:`ValidationError` on fatal violations, else return warnings."""
    if any(violation.fatal for violation in violations):
        raise ValidationError(violations)
    return list(violations)


__all__ = ["check_assigned_ids", "raise_for_violations", "validate"]
