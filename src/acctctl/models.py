"""Data model for declared and observed accounts."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

SYSTEM_UID_RANGE: tuple[int, int] = (200, 400)
NORMAL_UID_RANGE: tuple[int, int] = (501, 60000)
SYSTEM_NAME_PREFIX = "_"
ROOT_USER = "root"
ROOT_HOME = "/var/root"
DEFAULT_HOME = "/var/empty"
DEFAULT_SHELL = "/usr/bin/false"
INTERACTIVE_SHELLS: tuple[str, ...] = ("bash", "fish", "zsh")


def in_system_range(value: int | None) -> bool:
    """Return ``True`` when *value* falls inside the system account range."""
    if value is None:
        return False
    low, high = SYSTEM_UID_RANGE
    return low <= value <= high


@dataclass(slots=True, frozen=True)
class ShellRef:
    """A login shell given either as a package name or an absolute path."""

    path: str
    package: str | None = None

    @classmethod
    def parse(cls, value: str, *, prefix: str = "/run/current-system/sw/bin") -> ShellRef:
        """Build a reference from a declaration value.

        Absolute paths are taken verbatim. Anything else names a shell
        package whose executable is published under *prefix*.
        """
        text = value.strip()
        if text.startswith("/"):
            return cls(path=text)
        executable = "bash" if text == "bash-interactive" else text
        return cls(path=f"{prefix.rstrip('/')}/{executable}", package=text)

    def provides(self, shell: str) -> bool:
        """Return ``True`` when this shell package satisfies *shell*."""
        if self.package is None:
            return False
        return self.package == shell or (shell == "bash" and self.package == "bash-interactive")


@dataclass(slots=True, frozen=True)
class User:
    """Desired attributes for a local user account."""

    name: str
    uid: int | None = None
    gid: int | None = None
    description: str | None = None
    is_hidden: bool = True
    home: str | None = None
    create_home: bool = False
    shell: ShellRef | None = None
    is_normal_user: bool = False
    is_system_user: bool = False
    is_admin_user: bool = False
    is_token_user: bool = False
    initial_password: str | None = field(default=None, repr=False)
    password: str | None = field(default=None, repr=False)
    packages: tuple[str, ...] = ()
    ignore_shell_program_check: bool = False

    @property
    def is_effectively_system(self) -> bool:
        """System role as derived from the flag or a uid in the system range."""
        return self.is_system_user or in_system_range(self.uid)


@dataclass(slots=True, frozen=True)
class Group:
    """Desired attributes for a local group."""

    name: str
    gid: int | None = None
    description: str | None = None
    members: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class Declaration:
    """The complete desired state applied by a single pass."""

    users: Mapping[str, User] = field(default_factory=dict)
    groups: Mapping[str, Group] = field(default_factory=dict)
    mutable_users: bool = True
    enforce_id_uniqueness: bool = True
    strict_shell_check: bool = True
    programs: Mapping[str, bool] = field(default_factory=dict)

    def program_enabled(self, shell: str) -> bool:
        """Return ``True`` when the shell program integration is enabled."""
        return bool(self.programs.get(shell, False))


@dataclass(slots=True, frozen=True)
class ObservedState:
    """Read-only snapshot of the local directory service."""

    users: Mapping[str, int] = field(default_factory=dict)
    groups: Mapping[str, int] = field(default_factory=dict)
    group_members: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    group_descriptions: Mapping[str, str] = field(default_factory=dict)
    managed_users: frozenset[str] = frozenset()
    managed_groups: frozenset[str] = frozenset()
    admins: tuple[str, ...] = ()
    token_holders: frozenset[str] = frozenset()

    def user_exists(self, name: str) -> bool:
        """Return ``True`` when *name* is an existing user account."""
        return name in self.users

    def group_exists(self, name: str) -> bool:
        """Return ``True`` when *name* is an existing group."""
        return name in self.groups


class ViolationKind(str, Enum):
    """Categories of declaration problems reported by the validator."""

    ROLE_EXCLUSIVITY = "role-exclusivity"
    SYSTEM_NAME = "system-name"
    DUPLICATE_UID = "duplicate-uid"
    DUPLICATE_GID = "duplicate-gid"
    ROOT_HOME = "root-home"
    LOCKOUT_RISK = "lockout-risk"
    SHELL_NOT_ENABLED = "shell-not-enabled"
    BASH_NOT_INTERACTIVE = "bash-not-interactive"


@dataclass(slots=True, frozen=True)
class Violation:
    """A single problem found in the declaration."""

    kind: ViolationKind
    subject: str
    message: str
    fatal: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind.value,
            "subject": self.subject,
            "message": self.message,
            "fatal": self.fatal,
        }


__all__ = [
    "DEFAULT_HOME",
    "DEFAULT_SHELL",
    "INTERACTIVE_SHELLS",
    "NORMAL_UID_RANGE",
    "ROOT_HOME",
    "ROOT_USER",
    "SYSTEM_NAME_PREFIX",
    "SYSTEM_UID_RANGE",
    "Declaration",
    "Group",
    "ObservedState",
    "ShellRef",
    "User",
    "Violation",
    "ViolationKind",
    "in_system_range",
]
