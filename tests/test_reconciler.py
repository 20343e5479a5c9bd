"""Tests for command ordering and safety rules of the reconciler."""
from __future__ import annotations

from collections.abc import Collection, Mapping

import pytest

from acctctl.commands import (
    ArchiveHome,
    Command,
    CreateGroup,
    CreateHome,
    CreateUser,
    DeleteGroup,
    DeleteUser,
    GrantSecureToken,
    ResetPassword,
    SetGroupMembers,
    SetHidden,
    SetManagedMarker,
)
from acctctl.errors import CommandFailed, CreationVerificationFailed
from acctctl.models import Group, ObservedState, User
from acctctl.reconciler import (
    AccountState,
    ReconcilePlan,
    ReconcileResult,
    Reconciler,
    WarningKind,
)


class RecordingExecutor:
    """Collect commands; optionally fail or raise for given command kinds."""

    def __init__(
        self,
        *,
        failing: Collection[str] = (),
        raising: Collection[str] = (),
    ) -> None:
        self.commands: list[Command] = []
        self.failing = set(failing)
        self.raising = set(raising)

    def __call__(self, command: Command) -> bool:
        self.commands.append(command)
        if command.kind in self.raising:
            raise CommandFailed(command.kind, 1, "boom")
        return command.kind not in self.failing


def _normal(name: str, uid: int, **kwargs: object) -> User:
    return User(name=name, uid=uid, is_normal_user=True, **kwargs)  # type: ignore[arg-type]


def _apply(
    observed: ObservedState,
    *,
    users: Mapping[str, User] | None = None,
    groups: Mapping[str, Group] | None = None,
    mutable: bool = True,
    executor: RecordingExecutor | None = None,
    verify: bool = True,
) -> tuple[ReconcileResult, RecordingExecutor]:
    executor = executor or RecordingExecutor()
    plan = ReconcilePlan.build(users or {}, groups or {}, observed, mutable=mutable)
    reconciler = Reconciler(executor, lambda name: verify)
    result = reconciler.apply(plan, observed.admins, observed.token_holders)
    return result, executor


def test_last_admin_is_never_deleted() -> None:
    observed = ObservedState(
        users={"alice": 501},
        managed_users=frozenset({"alice"}),
        admins=("alice",),
    )

    result, executor = _apply(observed, mutable=False)

    assert executor.commands == []
    assert result.user_states["alice"] is AccountState.SKIPPED
    assert result.skipped == ["alice"]
    assert [w.kind for w in result.warnings] == [WarningKind.LOCKOUT_GUARD]
    assert str(result.warnings[0]) == "user alice is last user in admin group, skipping deletion"


def test_deleting_every_admin_keeps_the_last_one() -> None:
    observed = ObservedState(
        users={"alice": 501, "bob": 502},
        managed_users=frozenset({"alice", "bob"}),
        admins=("alice", "bob"),
    )

    result, executor = _apply(observed, mutable=False)

    assert executor.commands == [ArchiveHome("alice"), DeleteUser("alice")]
    assert result.deleted == ["alice"]
    assert result.skipped == ["bob"]


def test_non_admin_deletion_archives_home_first() -> None:
    observed = ObservedState(
        users={"alice": 501, "carol": 503},
        managed_users=frozenset({"carol"}),
        admins=("alice",),
    )

    result, executor = _apply(observed, mutable=False)

    assert executor.commands == [ArchiveHome("carol"), DeleteUser("carol")]
    assert result.user_states["carol"] is AccountState.ARCHIVED
    assert result.warnings == []


def test_archive_failure_warns_and_still_deletes() -> None:
    observed = ObservedState(
        users={"carol": 503},
        managed_users=frozenset({"carol"}),
        admins=("alice",),
    )

    result, executor = _apply(
        observed,
        mutable=False,
        executor=RecordingExecutor(failing={"archive-home"}),
    )

    assert executor.commands == [ArchiveHome("carol"), DeleteUser("carol")]
    assert [w.kind for w in result.warnings] == [WarningKind.ARCHIVE_FAILED]
    assert result.deleted == ["carol"]


def test_mutable_users_are_never_deleted() -> None:
    observed = ObservedState(
        users={"carol": 503},
        managed_users=frozenset({"carol"}),
    )

    result, executor = _apply(observed, mutable=True)

    assert executor.commands == []
    assert result.user_states == {}


def test_token_grant_uses_first_admin_by_name() -> None:
    observed = ObservedState(
        users={"root": 0, "zed": 501, "adam": 502},
        admins=("zed", "adam"),
        token_holders=frozenset({"zed", "adam"}),
    )
    carol = _normal("carol", 503, is_token_user=True, password="pw")

    result, executor = _apply(observed, users={"carol": carol})

    assert executor.commands == [
        CreateUser(name="carol", uid=503, home="/var/empty", shell="/usr/bin/false"),
        GrantSecureToken("carol", "adam", "pw"),
        SetHidden("carol", True),
        SetManagedMarker("carol"),
    ]
    assert result.created == ["carol"]
    assert result.user_states["carol"] is AccountState.CONFIGURED


def test_superuser_is_not_used_as_token_admin() -> None:
    observed = ObservedState(
        users={"root": 0, "zed": 501},
        admins=("root", "zed"),
        token_holders=frozenset({"root", "zed"}),
    )
    carol = _normal("carol", 503, is_token_user=True)

    _, executor = _apply(observed, users={"carol": carol})

    grants = [c for c in executor.commands if isinstance(c, GrantSecureToken)]
    assert grants == [GrantSecureToken("carol", "zed", None)]


def test_deleted_admin_is_not_used_as_token_admin() -> None:
    observed = ObservedState(
        users={"adam": 501, "zed": 502},
        managed_users=frozenset({"adam"}),
        admins=("adam", "zed"),
        token_holders=frozenset({"adam", "zed"}),
    )
    carol = _normal("carol", 503, is_token_user=True)

    _, executor = _apply(observed, users={"carol": carol}, mutable=False)

    grants = [c for c in executor.commands if isinstance(c, GrantSecureToken)]
    assert grants == [GrantSecureToken("carol", "zed", None)]


def test_missing_token_admin_warns_and_skips_grant() -> None:
    observed = ObservedState(admins=("alice",), users={"alice": 501})
    carol = _normal("carol", 503, is_token_user=True)

    result, executor = _apply(observed, users={"carol": carol})

    assert not any(isinstance(c, GrantSecureToken) for c in executor.commands)
    assert [(w.kind, w.account) for w in result.warnings] == [
        (WarningKind.NO_TOKEN_ADMIN, "carol")
    ]


def test_failed_creation_halts_the_pass() -> None:
    """A user missing after creation stops every further mutation."""
    executor = RecordingExecutor()
    plan = ReconcilePlan.build(
        {"alice": _normal("alice", 501), "bob": _normal("bob", 502)},
        {},
        ObservedState(),
        mutable=True,
    )
    reconciler = Reconciler(executor, lambda name: name != "alice")

    with pytest.raises(CreationVerificationFailed) as excinfo:
        reconciler.apply(plan, (), ())

    assert str(excinfo.value) == "failed to create user alice, aborting activation"
    assert [c.kind for c in executor.commands] == ["create-user"]
    partial = excinfo.value.partial
    assert isinstance(partial, ReconcileResult)
    assert partial.user_states == {"alice": AccountState.CREATING}


def test_hidden_flag_and_marker_reasserted_after_failure() -> None:
    alice = _normal("alice", 501, home="/Users/alice", create_home=True)
    executor = RecordingExecutor(raising={"create-home"})

    with pytest.raises(CommandFailed):
        _apply(ObservedState(), users={"alice": alice}, executor=executor)

    assert executor.commands[1:] == [
        CreateHome("alice"),
        SetHidden("alice", True),
        SetManagedMarker("alice"),
    ]


def test_rerun_with_mutable_users_only_reasserts() -> None:
    observed = ObservedState(
        users={"alice": 501},
        groups={"staff": 501},
        managed_users=frozenset({"alice"}),
        managed_groups=frozenset({"staff"}),
    )
    users = {"alice": _normal("alice", 501, is_hidden=False, password="pw")}
    groups = {"staff": Group("staff", gid=501, members=("alice",))}

    first, executor = _apply(observed, users=users, groups=groups)
    second, again = _apply(observed, users=users, groups=groups)

    expected: list[Command] = [
        SetManagedMarker("staff", record_type="Groups"),
        SetHidden("alice", False),
        SetManagedMarker("alice"),
    ]
    assert executor.commands == expected
    assert again.commands == expected
    assert first.created == second.created == []


def test_groups_are_handled_before_users_and_deletions_first() -> None:
    observed = ObservedState(managed_groups=frozenset({"old"}), groups={"old": 700})
    groups = {"new": Group("new", gid=600, members=("alice",))}
    users = {"alice": _normal("alice", 501)}

    result, executor = _apply(observed, users=users, groups=groups, mutable=False)

    assert executor.commands[:4] == [
        DeleteGroup("old"),
        CreateGroup("new", 600),
        SetGroupMembers("new", ("alice",)),
        SetManagedMarker("new", record_type="Groups"),
    ]
    assert isinstance(executor.commands[4], CreateUser)
    assert result.group_states == {
        "old": AccountState.DELETED,
        "new": AccountState.CONFIGURED,
    }


def test_immutable_group_update_only_writes_differences() -> None:
    observed = ObservedState(
        groups={"staff": 501},
        group_members={"staff": ("alice",)},
        group_descriptions={"staff": "Staff"},
        managed_groups=frozenset({"staff"}),
    )
    same = {"staff": Group("staff", gid=501, description="Staff", members=("alice",))}
    changed = {"staff": Group("staff", gid=501, description="Staff", members=("alice", "bob"))}

    _, unchanged_run = _apply(observed, groups=same, mutable=False)
    _, changed_run = _apply(observed, groups=changed, mutable=False)

    assert unchanged_run.commands == [SetManagedMarker("staff", record_type="Groups")]
    assert changed_run.commands == [
        SetGroupMembers("staff", ("alice", "bob")),
        SetManagedMarker("staff", record_type="Groups"),
    ]


def test_immutable_update_resets_passwords() -> None:
    observed = ObservedState(
        users={"alice": 501, "bob": 502, "carol": 503},
        managed_users=frozenset({"alice", "bob", "carol"}),
        admins=("bob",),
        token_holders=frozenset({"alice", "bob"}),
    )
    users = {
        "alice": _normal("alice", 501, password="a-pw"),
        "bob": _normal("bob", 502, is_admin_user=True, is_token_user=True, password="b-pw"),
        "carol": _normal("carol", 503, password="c-pw"),
    }

    _, executor = _apply(observed, users=users, mutable=False)

    resets = [c for c in executor.commands if isinstance(c, ResetPassword)]
    assert resets == [
        ResetPassword("alice", "a-pw", admin="bob"),
        ResetPassword("bob", "b-pw", admin="bob"),
        ResetPassword("carol", "c-pw"),
    ]
