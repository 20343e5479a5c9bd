"""Directory service provider backed by ``dscl`` and ``sysadminctl``."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable, Collection, Sequence
from typing import Protocol

from ..commands import REDACTED, Command
from ..config import DirectoryConfig
from ..errors import CommandFailed, CommandNotFound, CommandTimeout
from ..models import ObservedState

_LOG = logging.getLogger(__name__)


class Runner(Protocol):
    def __call__(
        self,
        args: list[str],
        *,
        capture_output: bool,
        timeout: float,
    ) -> subprocess.CompletedProcess[str]: ...


def _default_runner(
    args: list[str],
    *,
    capture_output: bool,
    timeout: float,
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603
        args,
        capture_output=capture_output,
        text=True,
        check=False,
        timeout=timeout,
    )


def _search_names(output: str) -> list[str]:
    """Return record names from ``dscl -search`` output.

    Matching records start at column zero followed by the attribute dump;
    continuation lines are indented.
    """
    names: list[str] = []
    for line in output.splitlines():
        if not line or line[0].isspace():
            continue
        parts = line.split()
        if len(parts) > 1 and parts[0] not in names:
            names.append(parts[0])
    return names


def _list_ids(output: str) -> dict[str, int]:
    """Parse ``dscl -list <path> <IDAttribute>`` output."""
    ids: dict[str, int] = {}
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        try:
            ids[parts[0]] = int(parts[-1])
        except ValueError:
            continue
    return ids


def _read_attribute(output: str, attribute: str) -> list[str]:
    """Parse ``dscl -read <record> <attribute>`` output into values."""
    prefix = f"{attribute}:"
    values: list[str] = []
    capturing = False
    for line in output.splitlines():
        if line.startswith(prefix):
            rest = line[len(prefix) :].strip()
            if rest:
                values.extend(rest.split())
                return values
            capturing = True
            continue
        if capturing:
            if line and not line[0].isspace():
                break
            text = line.strip()
            if text:
                values.append(text)
    return values


class DirectoryProvider:
    """Run account commands and answer read-only questions about accounts."""

    def __init__(
        self,
        config: DirectoryConfig,
        *,
        runner: Runner | Callable[..., subprocess.CompletedProcess[str]] | None = None,
    ) -> None:
        self.config = config
        self._runner = runner or _default_runner

    # ------------------------------------------------------------------
    # mutations
    def execute(self, command: Command) -> bool:
        """Run *command*; return ``False`` only for failures it tolerates."""
        description = command.describe(self.config)
        _LOG.debug("running %s", description)
        result = self._invoke(
            command.argv(self.config),
            description=description,
            capture_output=not command.interactive,
        )
        if result.returncode == 0:
            return True
        output = (result.stderr or "") + (result.stdout or "")
        if command.check:
            raise CommandFailed(description, result.returncode, _redact(output, command))
        _LOG.warning("%s exited %s (ignored)", description, result.returncode)
        return False

    # ------------------------------------------------------------------
    # queries
    def user_exists(self, name: str) -> bool:
        """Return ``True`` when the platform resolves *name* to an account."""
        result = self._query([self.config.id_bin, name], check=False)
        return result.returncode == 0

    def list_ids(self, record_type: str) -> dict[str, int]:
        attribute = "UniqueID" if record_type == "Users" else "PrimaryGroupID"
        output = self._query(
            [self.config.dscl_bin, self.config.node, "-list", f"/{record_type}", attribute]
        ).stdout
        return _list_ids(output or "")

    def managed(self, record_type: str) -> list[str]:
        """Return records carrying the managed marker."""
        result = self._query(
            [
                self.config.dscl_bin,
                self.config.node,
                "-search",
                f"/{record_type}",
                self.config.managed_attribute,
                "true",
            ],
            check=False,
        )
        return _search_names(result.stdout or "")

    def read_group_attribute(self, name: str, attribute: str) -> list[str]:
        result = self._query(
            [self.config.dscl_bin, self.config.node, "-read", f"/Groups/{name}", attribute],
            check=False,
        )
        if result.returncode != 0:
            return []
        return _read_attribute(result.stdout or "", attribute)

    def is_member(self, user: str, group: str) -> bool:
        result = self._query(
            [self.config.dsmemberutil_bin, "checkmembership", "-U", user, "-G", group],
            check=False,
        )
        return "is a member" in (result.stdout or "")

    def has_secure_token(self, user: str) -> bool:
        # sysadminctl reports the status on stderr
        result = self._query(
            [self.config.sysadminctl_bin, "-secureTokenStatus", user],
            check=False,
        )
        return "is ENABLED" in (result.stdout or "") + (result.stderr or "")

    def observe(
        self,
        *,
        users: Collection[str] = (),
        groups: Collection[str] = (),
    ) -> ObservedState:
        """Take a snapshot of accounts relevant to a pass.

        *users* and *groups* name the declared accounts; their token status
        and group attributes are read in addition to the admin set.
        """
        existing_users = self.list_ids("Users")
        existing_groups = self.list_ids("Groups")
        admins = tuple(
            name
            for name in sorted(existing_users)
            if name != self.config.superuser and self.is_member(name, self.config.admin_group)
        )
        token_candidates = sorted(
            set(admins) | {name for name in users if name in existing_users}
        )
        token_holders = frozenset(name for name in token_candidates if self.has_secure_token(name))

        members: dict[str, tuple[str, ...]] = {}
        descriptions: dict[str, str] = {}
        for name in sorted(groups):
            if name not in existing_groups:
                continue
            members[name] = tuple(self.read_group_attribute(name, "GroupMembership"))
            description = " ".join(self.read_group_attribute(name, "RealName"))
            if description:
                descriptions[name] = description

        return ObservedState(
            users=existing_users,
            groups=existing_groups,
            group_members=members,
            group_descriptions=descriptions,
            managed_users=frozenset(self.managed("Users")),
            managed_groups=frozenset(self.managed("Groups")),
            admins=admins,
            token_holders=token_holders,
        )

    # ------------------------------------------------------------------
    def _query(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        description = " ".join(args)
        result = self._invoke(list(args), description=description, capture_output=True)
        if check and result.returncode != 0:
            output = (result.stderr or "") + (result.stdout or "")
            raise CommandFailed(description, result.returncode, output)
        return result

    def _invoke(
        self,
        args: list[str],
        *,
        description: str,
        capture_output: bool,
    ) -> subprocess.CompletedProcess[str]:
        timeout = self.config.command_timeout
        try:
            return self._runner(args, capture_output=capture_output, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise CommandTimeout(description, timeout) from None
        except FileNotFoundError as exc:
            raise CommandNotFound(args[0]) from exc


def _redact(output: str, command: Command) -> str:
    for secret in command.secrets():
        if secret:
            output = output.replace(secret, REDACTED)
    return output


__all__ = ["DirectoryProvider", "Runner"]
