"""Tests for the declared/managed set difference."""
from __future__ import annotations

from acctctl.differ import Diff, diff


def test_immutable_diff_reports_deletions() -> None:
    result = diff({"a", "b", "c"}, {"b", "c", "d"}, mutable=False)

    assert result == Diff(to_create=("a",), to_update=("b", "c"), to_delete=("d",))


def test_mutable_diff_never_deletes() -> None:
    result = diff({"a", "b", "c"}, {"b", "c", "d"}, mutable=True)

    assert result.to_create == ("a",)
    assert result.to_update == ("b", "c")
    assert result.to_delete == ()


def test_unmanaged_accounts_are_ignored() -> None:
    """Only names carrying the managed marker are candidates for deletion."""
    result = diff(["alice"], [], mutable=False)

    assert result.to_delete == ()
    assert result.to_create == ("alice",)


def test_empty_and_to_dict() -> None:
    assert diff([], [], mutable=False).empty
    result = diff(["x"], ["y"], mutable=False)

    assert not result.empty
    assert result.to_dict() == {"create": ["x"], "update": [], "delete": ["y"]}
