"""Order and execute the account mutations for one pass.

The reconciler never talks to the operating system directly. It is handed an
``execute`` callable that runs a :class:`~acctctl.commands.Command` and a
``verify_user`` callable that reports whether an account exists, together
with the admin and secure-token snapshot taken before the pass started.

Ordering within a pass:

1. Groups (deletions first, then creates/updates).
2. User deletions, guarded so the last admin account is never removed.
3. Token-holding admins are resolved once and reused for every grant/reset.
4. User creates/updates in name order. A created user that cannot be found
   afterwards halts the whole pass.

Every touched user gets its hidden flag and managed marker re-asserted as the
last step of its own operation, even when an earlier step failed.
"""
from __future__ import annotations

from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field
from enum import Enum

from .commands import (
    ArchiveHome,
    Command,
    CreateGroup,
    CreateHome,
    CreateUser,
    DeleteGroup,
    DeleteUser,
    GrantSecureToken,
    ResetPassword,
    SetGroupDescription,
    SetGroupMembers,
    SetHidden,
    SetManagedMarker,
)
from .differ import Diff, diff
from .errors import AcctctlError, CreationVerificationFailed
from .models import DEFAULT_HOME, DEFAULT_SHELL, ROOT_USER, Group, ObservedState, User

Executor = Callable[[Command], bool]
Verifier = Callable[[str], bool]


class AccountState(str, Enum):
    """Per-account progress through a pass.

    An account the pass has not reached yet has no entry.
    """

    PRESENT = "present"
    CREATING = "creating"
    VERIFIED = "verified"
    UPDATING = "updating"
    CONFIGURED = "configured"
    DELETING = "deleting"
    ARCHIVED = "archived"
    DELETED = "deleted"
    SKIPPED = "skipped"


class WarningKind(str, Enum):
    LOCKOUT_GUARD = "lockout-guard"
    ARCHIVE_FAILED = "archive-failed"
    NO_TOKEN_ADMIN = "no-token-admin"


@dataclass(slots=True, frozen=True)
class ReconcileWarning:
    """A non-fatal problem surfaced during a pass."""

    kind: WarningKind
    account: str
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True, frozen=True)
class ReconcilePlan:
    """Everything the reconciler needs, computed before execution.

    The diffs compare against the *managed* accounts, so ``to_create`` also
    lists declared accounts that already exist on the host without the
    managed marker. Those are adopted (updated and marked) rather than
    created; :attr:`adopted_users` and :attr:`adopted_groups` name them.
    """

    users: Mapping[str, User]
    groups: Mapping[str, Group]
    user_diff: Diff
    group_diff: Diff
    observed: ObservedState
    mutable: bool

    @classmethod
    def build(
        cls,
        users: Mapping[str, User],
        groups: Mapping[str, Group],
        observed: ObservedState,
        *,
        mutable: bool,
    ) -> ReconcilePlan:
        """Diff *users*/*groups* (with ids assigned) against *observed*."""
        return cls(
            users=dict(users),
            groups=dict(groups),
            user_diff=diff(users, observed.managed_users, mutable=mutable),
            group_diff=diff(groups, observed.managed_groups, mutable=mutable),
            observed=observed,
            mutable=mutable,
        )

    @property
    def adopted_users(self) -> tuple[str, ...]:
        return tuple(name for name in self.user_diff.to_create if self.observed.user_exists(name))

    @property
    def adopted_groups(self) -> tuple[str, ...]:
        return tuple(
            name for name in self.group_diff.to_create if self.observed.group_exists(name)
        )


@dataclass(slots=True)
class ReconcileResult:
    """Commands issued and the terminal state of every touched account."""

    commands: list[Command] = field(default_factory=list)
    user_states: dict[str, AccountState] = field(default_factory=dict)
    group_states: dict[str, AccountState] = field(default_factory=dict)
    warnings: list[ReconcileWarning] = field(default_factory=list)

    def _users_in(self, state: AccountState) -> list[str]:
        return sorted(name for name, value in self.user_states.items() if value is state)

    @property
    def deleted(self) -> list[str]:
        return self._users_in(AccountState.ARCHIVED)

    @property
    def skipped(self) -> list[str]:
        return self._users_in(AccountState.SKIPPED)

    @property
    def created(self) -> list[str]:
        return sorted(
            command.name for command in self.commands if isinstance(command, CreateUser)
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable summary (commands are listed by kind and account)."""
        return {
            "commands": [
                {"kind": command.kind, "account": command.account} for command in self.commands
            ],
            "users": {name: state.value for name, state in sorted(self.user_states.items())},
            "groups": {name: state.value for name, state in sorted(self.group_states.items())},
            "warnings": [
                {"kind": warning.kind.value, "account": warning.account, "message": warning.message}
                for warning in self.warnings
            ],
        }


class Reconciler:
    """Apply a :class:`ReconcilePlan` through an executor."""

    def __init__(
        self,
        execute: Executor,
        verify_user: Verifier,
        *,
        superuser: str = ROOT_USER,
    ) -> None:
        self._execute = execute
        self._verify_user = verify_user
        self._superuser = superuser
        self._result = ReconcileResult()

    def apply(
        self,
        plan: ReconcilePlan,
        live_admins: Collection[str],
        live_token_holders: Collection[str],
    ) -> ReconcileResult:
        """Execute *plan* and return what was done.

        Execution errors propagate immediately; the partial result is
        attached to the exception as ``partial``.
        """
        self._result = ReconcileResult()
        try:
            self._apply_groups(plan)
            admins = [name for name in live_admins if name != self._superuser]
            present_admins = self._delete_users(plan, admins)
            token_admins = sorted(name for name in present_admins if name in live_token_holders)
            for name in sorted(plan.users):
                user = plan.users[name]
                if plan.observed.user_exists(name):
                    self._update_user(plan, user, token_admins, live_token_holders)
                else:
                    self._create_user(user, token_admins)
        except AcctctlError as exc:
            exc.partial = self._result
            raise
        return self._result

    # ------------------------------------------------------------------
    def _run(self, command: Command) -> bool:
        self._result.commands.append(command)
        return self._execute(command)

    def _warn(self, kind: WarningKind, account: str, message: str) -> None:
        self._result.warnings.append(ReconcileWarning(kind, account, message))

    def _apply_groups(self, plan: ReconcilePlan) -> None:
        states = self._result.group_states
        for name in plan.group_diff.to_delete:
            states[name] = AccountState.DELETING
            self._run(DeleteGroup(name))
            states[name] = AccountState.DELETED

        observed = plan.observed
        for name in sorted(plan.groups):
            group = plan.groups[name]
            exists = observed.group_exists(name)
            if exists and plan.mutable:
                states[name] = AccountState.PRESENT
                self._run(SetManagedMarker(name, record_type="Groups"))
                states[name] = AccountState.CONFIGURED
                continue

            states[name] = AccountState.UPDATING if exists else AccountState.CREATING
            if group.gid is None:
                raise ValueError(f"group '{name}' has no gid; run the allocator first")
            if not exists or observed.groups.get(name) != group.gid:
                self._run(CreateGroup(name, group.gid))
            if group.description is not None and (
                not exists or observed.group_descriptions.get(name) != group.description
            ):
                self._run(SetGroupDescription(name, group.description))
            if not exists or tuple(observed.group_members.get(name, ())) != group.members:
                self._run(SetGroupMembers(name, group.members))
            self._run(SetManagedMarker(name, record_type="Groups"))
            states[name] = AccountState.CONFIGURED

    def _delete_users(self, plan: ReconcilePlan, admins: list[str]) -> list[str]:
        """Delete undeclared managed users and return the admins still present."""
        states = self._result.user_states
        guard = list(admins)
        present = list(admins)
        for name in plan.user_diff.to_delete:
            if name in guard and not [admin for admin in guard if admin != name]:
                states[name] = AccountState.SKIPPED
                guard.remove(name)
                self._warn(
                    WarningKind.LOCKOUT_GUARD,
                    name,
                    f"user {name} is last user in admin group, skipping deletion",
                )
                continue

            states[name] = AccountState.DELETING
            if not self._run(ArchiveHome(name)):
                self._warn(
                    WarningKind.ARCHIVE_FAILED,
                    name,
                    f"could not archive home directory of {name}; deleting anyway",
                )
            self._run(DeleteUser(name))
            if name in guard:
                guard.remove(name)
            if name in present:
                present.remove(name)
            states[name] = AccountState.ARCHIVED
        return present

    def _create_user(self, user: User, token_admins: list[str]) -> None:
        states = self._result.user_states
        if user.uid is None:
            raise ValueError(f"user '{user.name}' has no uid; run the allocator first")
        states[user.name] = AccountState.CREATING
        self._run(
            CreateUser(
                name=user.name,
                uid=user.uid,
                gid=user.gid,
                description=user.description,
                home=user.home if user.home is not None else DEFAULT_HOME,
                role_account=user.is_system_user,
                password=user.initial_password,
                shell=user.shell.path if user.shell is not None else DEFAULT_SHELL,
            )
        )
        # sysadminctl -addUser exits 0 even when it fails
        if not self._verify_user(user.name):
            raise CreationVerificationFailed(user.name)
        states[user.name] = AccountState.VERIFIED

        try:
            if user.home is not None and user.create_home:
                self._run(CreateHome(user.name))
            if user.is_token_user:
                admin = self._token_admin(user.name, token_admins)
                if admin is not None:
                    self._run(GrantSecureToken(user.name, admin, user.password))
        finally:
            self._reassert(user)
        states[user.name] = AccountState.CONFIGURED

    def _update_user(
        self,
        plan: ReconcilePlan,
        user: User,
        token_admins: list[str],
        token_holders: Collection[str],
    ) -> None:
        states = self._result.user_states
        states[user.name] = AccountState.PRESENT
        try:
            if not plan.mutable and user.password is not None:
                states[user.name] = AccountState.UPDATING
                if user.name in token_holders:
                    admin = self._token_admin(user.name, token_admins)
                    if admin is not None:
                        self._run(ResetPassword(user.name, user.password, admin=admin))
                else:
                    self._run(ResetPassword(user.name, user.password))
        finally:
            self._reassert(user)
        states[user.name] = AccountState.CONFIGURED

    def _token_admin(self, account: str, token_admins: list[str]) -> str | None:
        if token_admins:
            return token_admins[0]
        self._warn(
            WarningKind.NO_TOKEN_ADMIN,
            account,
            f"no admin with a secure token is available to authorise changes for {account}",
        )
        return None

    def _reassert(self, user: User) -> None:
        self._run(SetHidden(user.name, user.is_hidden))
        self._run(SetManagedMarker(user.name))


__all__ = [
    "AccountState",
    "Executor",
    "ReconcilePlan",
    "ReconcileResult",
    "ReconcileWarning",
    "Reconciler",
    "Verifier",
    "WarningKind",
]
