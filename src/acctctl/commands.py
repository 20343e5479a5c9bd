"""Typed account-mutation commands.

Every mutation the reconciler performs is one of the dataclasses below.
They render to an argv list for ``dscl``, ``sysadminctl`` and friends, so no
shell is ever involved and tests can assert on the emitted sequence
directly. ``describe()`` is the only form that is safe to print or log.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from .config import DirectoryConfig

REDACTED = "********"


class Command:
    """Base class for a single account-mutation invocation."""

    __slots__ = ()

    kind: ClassVar[str] = "command"
    #: Whether the command may prompt on the controlling terminal.
    interactive: ClassVar[bool] = False
    #: Whether a non-zero exit status aborts the pass.
    check: ClassVar[bool] = True

    @property
    def account(self) -> str:
        """Name of the account the command acts on."""
        return self.name  # type: ignore[attr-defined]

    def argv(self, config: DirectoryConfig) -> list[str]:
        """Return the argument vector for *config*."""
        raise NotImplementedError

    def secrets(self) -> Sequence[str]:
        """Return sensitive values embedded in :meth:`argv`."""
        return ()

    def describe(self, config: DirectoryConfig) -> str:
        """Return a printable command line with secrets masked."""
        hidden = {secret for secret in self.secrets() if secret}
        parts = [REDACTED if part in hidden else _quote(part) for part in self.argv(config)]
        return " ".join(parts)


def _quote(part: str) -> str:
    if part and all(ch.isalnum() or ch in "-_./:=@+," for ch in part):
        return part
    return "'" + part.replace("'", "'\\''") + "'"


def _record(kind: str, name: str) -> str:
    return f"/{kind}/{name}"


@dataclass(slots=True, frozen=True)
class DeleteGroup(Command):
    """Remove a managed group that is no longer declared."""

    kind: ClassVar[str] = "delete-group"

    name: str

    def argv(self, config: DirectoryConfig) -> list[str]:
        return [config.dscl_bin, config.node, "-delete", _record("Groups", self.name)]


@dataclass(slots=True, frozen=True)
class CreateGroup(Command):
    """Create (or overwrite) a group record with its primary gid."""

    kind: ClassVar[str] = "create-group"

    name: str
    gid: int

    def argv(self, config: DirectoryConfig) -> list[str]:
        return [
            config.dscl_bin,
            config.node,
            "-create",
            _record("Groups", self.name),
            "PrimaryGroupID",
            str(self.gid),
        ]


@dataclass(slots=True, frozen=True)
class SetGroupDescription(Command):
    kind: ClassVar[str] = "set-group-description"

    name: str
    description: str

    def argv(self, config: DirectoryConfig) -> list[str]:
        return [
            config.dscl_bin,
            config.node,
            "-create",
            _record("Groups", self.name),
            "RealName",
            self.description,
        ]


@dataclass(slots=True, frozen=True)
class SetGroupMembers(Command):
    """Replace the member list of a group."""

    kind: ClassVar[str] = "set-group-members"

    name: str
    members: tuple[str, ...] = ()

    def argv(self, config: DirectoryConfig) -> list[str]:
        return [
            config.dscl_bin,
            config.node,
            "-create",
            _record("Groups", self.name),
            "GroupMembership",
            *self.members,
        ]


@dataclass(slots=True, frozen=True)
class ArchiveHome(Command):
    """Copy a home directory aside before its account is removed.

    The copy is best effort; a failure is reported but never aborts.
    """

    kind: ClassVar[str] = "archive-home"
    check: ClassVar[bool] = False

    name: str

    def source(self, config: DirectoryConfig) -> str:
        return f"{config.users_root.rstrip('/')}/{self.name}"

    def argv(self, config: DirectoryConfig) -> list[str]:
        source = self.source(config)
        return [config.cp_bin, "-ax", source, f"{source} (Deleted)"]


@dataclass(slots=True, frozen=True)
class DeleteUser(Command):
    kind: ClassVar[str] = "delete-user"

    name: str

    def argv(self, config: DirectoryConfig) -> list[str]:
        return [config.sysadminctl_bin, "-deleteUser", self.name]


@dataclass(slots=True, frozen=True)
class CreateUser(Command):
    """Create a user through ``sysadminctl`` so every platform attribute is set."""

    kind: ClassVar[str] = "create-user"

    name: str
    uid: int
    home: str
    shell: str
    gid: int | None = None
    description: str | None = None
    role_account: bool = False
    password: str | None = field(default=None, repr=False)

    def argv(self, config: DirectoryConfig) -> list[str]:
        argv = [config.sysadminctl_bin, "-addUser", self.name, "-UID", str(self.uid)]
        if self.gid is not None:
            argv.extend(["-GID", str(self.gid)])
        if self.description is not None:
            argv.extend(["-fullName", self.description])
        argv.extend(["-home", self.home])
        if self.role_account:
            argv.append("-roleAccount")
        if self.password is not None:
            argv.extend(["-password", self.password])
        argv.extend(["-shell", self.shell])
        return argv

    def secrets(self) -> Sequence[str]:
        return (self.password,) if self.password else ()


@dataclass(slots=True, frozen=True)
class CreateHome(Command):
    """Create the home directory; ``-addUser`` skips it when ``-home`` is given."""

    kind: ClassVar[str] = "create-home"

    name: str

    def argv(self, config: DirectoryConfig) -> list[str]:
        return [config.createhomedir_bin, "-cu", self.name]


@dataclass(slots=True, frozen=True)
class SetHidden(Command):
    kind: ClassVar[str] = "set-hidden"

    name: str
    hidden: bool

    def argv(self, config: DirectoryConfig) -> list[str]:
        return [
            config.dscl_bin,
            config.node,
            "-create",
            _record("Users", self.name),
            "IsHidden",
            "1" if self.hidden else "0",
        ]


@dataclass(slots=True, frozen=True)
class SetManagedMarker(Command):
    """Tag a user or group record as owned by the declaration."""

    kind: ClassVar[str] = "set-managed-marker"

    name: str
    record_type: str = "Users"

    def argv(self, config: DirectoryConfig) -> list[str]:
        return [
            config.dscl_bin,
            config.node,
            "-create",
            _record(self.record_type, self.name),
            config.managed_attribute,
            "true",
        ]


@dataclass(slots=True, frozen=True)
class GrantSecureToken(Command):
    """Give *name* a secure token, authorised by a token-holding admin.

    The admin password is always read from the terminal; the user password
    is prompted for as well when none is declared.
    """

    kind: ClassVar[str] = "grant-secure-token"
    interactive: ClassVar[bool] = True

    name: str
    admin: str
    password: str | None = field(default=None, repr=False)

    def argv(self, config: DirectoryConfig) -> list[str]:
        return [
            config.sysadminctl_bin,
            "-adminUser",
            self.admin,
            "-adminPassword",
            "-",
            "-secureTokenOn",
            self.name,
            "-password",
            self.password if self.password is not None else "-",
        ]

    def secrets(self) -> Sequence[str]:
        return (self.password,) if self.password else ()


@dataclass(slots=True, frozen=True)
class ResetPassword(Command):
    """Reset a password; token holders need a token-holding admin to do it."""

    kind: ClassVar[str] = "reset-password"

    name: str
    password: str = field(repr=False)
    admin: str | None = None

    @property
    def interactive(self) -> bool:  # type: ignore[override]
        return self.admin is not None

    def argv(self, config: DirectoryConfig) -> list[str]:
        argv = [config.sysadminctl_bin]
        if self.admin is not None:
            argv.extend(["-adminUser", self.admin, "-adminPassword", "-"])
        argv.extend(["-resetPasswordFor", self.name, "-newPassword", self.password])
        return argv

    def secrets(self) -> Sequence[str]:
        return (self.password,)


__all__ = [
    "REDACTED",
    "ArchiveHome",
    "Command",
    "CreateGroup",
    "CreateHome",
    "CreateUser",
    "DeleteGroup",
    "DeleteUser",
    "GrantSecureToken",
    "ResetPassword",
    "SetGroupDescription",
    "SetGroupMembers",
    "SetHidden",
    "SetManagedMarker",
]
