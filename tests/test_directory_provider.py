"""Tests for the dscl/sysadminctl directory provider."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping

import pytest

from acctctl.commands import (
    REDACTED,
    ArchiveHome,
    CreateUser,
    DeleteUser,
    GrantSecureToken,
    SetHidden,
)
from acctctl.config import DirectoryConfig
from acctctl.errors import CommandFailed, CommandNotFound, CommandTimeout
from acctctl.providers.directory import (
    DirectoryProvider,
    _list_ids,
    _read_attribute,
    _search_names,
)

Response = tuple[int, str, str]


class FakeRunner:
    """Return canned results keyed by the full argv; record every call."""

    def __init__(self, responses: Mapping[tuple[str, ...], Response] | None = None) -> None:
        self.responses = dict(responses or {})
        self.calls: list[tuple[list[str], bool, float]] = []

    def __call__(
        self,
        args: list[str],
        *,
        capture_output: bool,
        timeout: float,
    ) -> subprocess.CompletedProcess[str]:
        self.calls.append((list(args), capture_output, timeout))
        returncode, stdout, stderr = self.responses.get(tuple(args), (0, "", ""))
        return subprocess.CompletedProcess(args, returncode, stdout, stderr)


def _provider(runner: FakeRunner, **overrides: object) -> DirectoryProvider:
    return DirectoryProvider(DirectoryConfig(**overrides), runner=runner)  # type: ignore[arg-type]


def test_list_ids_parses_dscl_listing() -> None:
    output = "_www                     70\nalice                    501\nroot 0\ngarbage\nbad x\n"

    assert _list_ids(output) == {"_www": 70, "alice": 501, "root": 0}


def test_search_names_ignores_continuation_lines() -> None:
    output = (
        "alice\t\tNixDeclarative = (\n"
        "    true\n"
        ")\n"
        "bob\t\tNixDeclarative = (\n"
        "    true\n"
        ")\n"
    )

    assert _search_names(output) == ["alice", "bob"]


def test_read_attribute_handles_inline_and_multiline_values() -> None:
    assert _read_attribute("GroupMembership: alice bob\n", "GroupMembership") == ["alice", "bob"]
    assert _read_attribute("RealName:\n Staff Members\n", "RealName") == ["Staff Members"]
    assert _read_attribute("No such key: RealName\n", "RealName") == []


def test_observe_builds_snapshot() -> None:
    runner = FakeRunner(
        {
            ("dscl", ".", "-list", "/Users", "UniqueID"): (
                0,
                "_www 70\nalice 501\nbob 502\nroot 0\n",
                "",
            ),
            ("dscl", ".", "-list", "/Groups", "PrimaryGroupID"): (0, "admin 80\nstaff 20\n", ""),
            ("dsmemberutil", "checkmembership", "-U", "alice", "-G", "admin"): (
                0,
                "user is a member of the group\n",
                "",
            ),
            ("dsmemberutil", "checkmembership", "-U", "bob", "-G", "admin"): (
                0,
                "user is not a member of the group\n",
                "",
            ),
            ("sysadminctl", "-secureTokenStatus", "alice"): (
                0,
                "",
                "2024-01-01 sysadminctl[1] Secure token is ENABLED for user Alice\n",
            ),
            ("sysadminctl", "-secureTokenStatus", "bob"): (
                0,
                "",
                "2024-01-01 sysadminctl[1] Secure token is DISABLED for user bob\n",
            ),
            ("dscl", ".", "-read", "/Groups/staff", "GroupMembership"): (
                0,
                "GroupMembership: alice bob\n",
                "",
            ),
            ("dscl", ".", "-read", "/Groups/staff", "RealName"): (0, "RealName:\n Staff\n", ""),
            ("dscl", ".", "-search", "/Users", "NixDeclarative", "true"): (
                0,
                "alice\t\tNixDeclarative = (\n    true\n)\n",
                "",
            ),
        }
    )
    provider = _provider(runner)

    observed = provider.observe(users=["bob", "carol"], groups=["staff", "new"])

    assert observed.users == {"_www": 70, "alice": 501, "bob": 502, "root": 0}
    assert observed.groups == {"admin": 80, "staff": 20}
    assert observed.admins == ("alice",)
    assert observed.token_holders == frozenset({"alice"})
    assert observed.group_members == {"staff": ("alice", "bob")}
    assert observed.group_descriptions == {"staff": "Staff"}
    assert observed.managed_users == frozenset({"alice"})
    assert observed.managed_groups == frozenset()
    issued = [call[0] for call in runner.calls]
    assert ["dsmemberutil", "checkmembership", "-U", "root", "-G", "admin"] not in issued
    assert ["sysadminctl", "-secureTokenStatus", "carol"] not in issued


def test_observe_fails_when_listing_fails() -> None:
    runner = FakeRunner(
        {("dscl", ".", "-list", "/Users", "UniqueID"): (1, "", "eDSNodeNotFound")}
    )

    with pytest.raises(CommandFailed, match="eDSNodeNotFound"):
        _provider(runner).observe()


def test_execute_runs_argv_with_timeout() -> None:
    runner = FakeRunner()
    provider = _provider(runner, command_timeout=7.5)

    assert provider.execute(SetHidden("alice", True)) is True

    assert runner.calls == [
        (["dscl", ".", "-create", "/Users/alice", "IsHidden", "1"], True, 7.5),
    ]


def test_interactive_commands_keep_the_terminal() -> None:
    runner = FakeRunner()

    _provider(runner).execute(GrantSecureToken("carol", "adam"))

    assert runner.calls[0][1] is False


def test_failed_command_output_is_redacted() -> None:
    command = CreateUser(
        name="alice",
        uid=501,
        home="/Users/alice",
        shell="/bin/zsh",
        password="s3cret",
    )
    runner = FakeRunner({tuple(command.argv(DirectoryConfig())): (1, "", "rejected s3cret\n")})

    with pytest.raises(CommandFailed) as excinfo:
        _provider(runner).execute(command)

    message = str(excinfo.value)
    assert "s3cret" not in message
    assert REDACTED in message
    assert excinfo.value.returncode == 1


def test_best_effort_command_failure_returns_false() -> None:
    command = ArchiveHome("alice")
    runner = FakeRunner({tuple(command.argv(DirectoryConfig())): (1, "", "No such file\n")})

    assert _provider(runner).execute(command) is False


def test_timeout_is_fatal_and_does_not_chain_argv() -> None:
    def slow(args: list[str], *, capture_output: bool, timeout: float) -> object:
        raise subprocess.TimeoutExpired(args, timeout)

    provider = DirectoryProvider(DirectoryConfig(command_timeout=1.0), runner=slow)
    command = CreateUser(
        name="alice",
        uid=501,
        home="/Users/alice",
        shell="/bin/zsh",
        password="pw1",
    )

    with pytest.raises(CommandTimeout) as excinfo:
        provider.execute(command)

    assert excinfo.value.__cause__ is None
    assert excinfo.value.__suppress_context__ is True
    assert "pw1" not in str(excinfo.value)
    assert "timed out after 1s" in str(excinfo.value)


def test_missing_tool_is_reported() -> None:
    def missing(args: list[str], *, capture_output: bool, timeout: float) -> object:
        raise FileNotFoundError(args[0])

    provider = DirectoryProvider(
        DirectoryConfig(sysadminctl_bin="/nope/sysadminctl"),
        runner=missing,
    )

    with pytest.raises(CommandNotFound, match="/nope/sysadminctl not found"):
        provider.execute(DeleteUser("alice"))
    with pytest.raises(CommandNotFound):
        provider.has_secure_token("alice")


def test_user_exists_uses_id_exit_status() -> None:
    runner = FakeRunner({("id", "ghost"): (1, "", "id: ghost: no such user\n")})
    provider = _provider(runner)

    assert provider.user_exists("alice") is True
    assert provider.user_exists("ghost") is False
