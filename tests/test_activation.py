"""Tests for the end-to-end reconciliation pass."""
from __future__ import annotations

import pytest

from acctctl.activation import plan_pass, prepare, run_pass
from acctctl.commands import Command, CreateUser, SetHidden, SetManagedMarker
from acctctl.errors import ValidationError
from acctctl.models import Declaration, Group, ObservedState, ShellRef, User, ViolationKind


def _declaration() -> Declaration:
    users = {
        "alice": User(
            name="alice",
            is_normal_user=True,
            shell=ShellRef.parse("bash"),
        ),
    }
    groups = {"staff": Group("staff", members=("alice",))}
    return Declaration(users=users, groups=groups, programs={"bash": True})


def test_fatal_violations_stop_before_any_command() -> None:
    executed: list[Command] = []
    declaration = Declaration(users={"svc": User(name="svc", is_system_user=True)})

    with pytest.raises(ValidationError) as excinfo:
        run_pass(
            declaration,
            ObservedState(),
            execute=lambda command: executed.append(command) or True,
            verify_user=lambda name: True,
        )

    assert executed == []
    assert [v.kind for v in excinfo.value.violations] == [ViolationKind.SYSTEM_NAME]


def test_prepare_assigns_ids_and_diffs() -> None:
    warnings, plan = prepare(_declaration(), ObservedState(users={"root": 0}))

    assert [v.kind for v in warnings] == [ViolationKind.BASH_NOT_INTERACTIVE]
    assert plan.users["alice"].uid == 501
    assert plan.groups["staff"].gid == 501
    assert plan.user_diff.to_create == ("alice",)
    assert plan.group_diff.to_create == ("staff",)


def test_run_pass_reports_every_command_and_warning() -> None:
    seen: list[tuple[str, bool]] = []

    report = run_pass(
        _declaration(),
        ObservedState(),
        execute=lambda command: True,
        verify_user=lambda name: True,
        on_command=lambda command, ok: seen.append((command.kind, ok)),
    )

    assert report.dry_run is False
    assert [kind for kind, _ in seen] == [
        "create-group",
        "set-group-members",
        "set-managed-marker",
        "create-user",
        "set-hidden",
        "set-managed-marker",
    ]
    assert all(ok for _, ok in seen)
    assert report.result.created == ["alice"]
    assert len(report.warnings) == 1
    assert "bash-interactive" in report.warnings[0]


def test_plan_pass_matches_run_pass_without_executing() -> None:
    observed = ObservedState(users={"root": 0})
    executed: list[Command] = []

    planned = plan_pass(_declaration(), observed)
    applied = run_pass(
        _declaration(),
        observed,
        execute=lambda command: executed.append(command) or True,
        verify_user=lambda name: True,
    )

    assert planned.dry_run is True
    assert planned.result.commands == executed == applied.result.commands


def test_second_pass_against_converged_host_only_reasserts() -> None:
    converged = ObservedState(
        users={"alice": 501},
        groups={"staff": 501},
        managed_users=frozenset({"alice"}),
        managed_groups=frozenset({"staff"}),
    )

    report = plan_pass(_declaration(), converged)

    assert report.result.commands == [
        SetManagedMarker("staff", record_type="Groups"),
        SetHidden("alice", True),
        SetManagedMarker("alice"),
    ]
    assert report.plan.users["alice"].uid == 501


def test_report_to_dict_lists_ids_and_diff() -> None:
    report = plan_pass(_declaration(), ObservedState())

    data = report.to_dict()

    assert data["dry_run"] is True
    assert data["ids"] == {"users": {"alice": 501}, "groups": {"staff": 501}}
    assert data["diff"] == {
        "groups": {"create": ["staff"], "update": [], "delete": [], "adopt": []},
        "users": {"create": ["alice"], "update": [], "delete": [], "adopt": []},
    }
    assert isinstance(report.result.commands[3], CreateUser)


def test_explicit_uid_held_by_existing_account_stops_the_pass() -> None:
    declaration = Declaration(
        users={
            "olduser": User(name="olduser", is_normal_user=True),
            "newuser": User(name="newuser", uid=501, is_normal_user=True),
        }
    )
    executed: list[Command] = []

    with pytest.raises(ValidationError) as excinfo:
        run_pass(
            declaration,
            ObservedState(users={"olduser": 501}),
            execute=lambda command: executed.append(command) or True,
            verify_user=lambda name: True,
        )

    assert executed == []
    assert [(v.kind, v.subject) for v in excinfo.value.violations] == [
        (ViolationKind.DUPLICATE_UID, "newuser,olduser")
    ]


def test_gid_clash_with_existing_group_warns_when_not_enforced() -> None:
    declaration = Declaration(
        groups={"new": Group("new", gid=600)},
        enforce_id_uniqueness=False,
    )

    warnings, plan = prepare(declaration, ObservedState(groups={"old": 600}))

    assert [(v.kind, v.fatal) for v in warnings] == [(ViolationKind.DUPLICATE_GID, False)]
    assert plan.groups["new"].gid == 600

    with pytest.raises(ValidationError):
        prepare(
            Declaration(groups={"new": Group("new", gid=600)}),
            ObservedState(groups={"old": 600}),
        )


def test_explicit_duplicates_are_reported_once() -> None:
    declaration = Declaration(
        groups={"a": Group("a", gid=600), "b": Group("b", gid=600)},
        enforce_id_uniqueness=False,
    )

    warnings, _ = prepare(declaration, ObservedState())

    assert [v.subject for v in warnings] == ["a,b"]


def test_unmanaged_existing_accounts_are_reported_as_adopted() -> None:
    """Accounts without the managed marker are marked, not created."""
    observed = ObservedState(users={"alice": 501}, groups={"staff": 501})

    report = plan_pass(_declaration(), observed)

    data = report.to_dict()
    assert data["diff"]["users"] == {  # type: ignore[index]
        "create": ["alice"],
        "update": [],
        "delete": [],
        "adopt": ["alice"],
    }
    assert data["diff"]["groups"]["adopt"] == ["staff"]  # type: ignore[index]
    assert report.result.created == []
