"""Per-user package profiles and login shells to publish.

Only the wiring is computed here: which users get a profile directory and
which shell packages must be installed system-wide. Building the package
environments themselves is left to the package manager.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .models import User


@dataclass(slots=True, frozen=True)
class UserProfile:
    """Profile location for a user with declared packages."""

    name: str
    path: Path
    packages: tuple[str, ...]


def plan_profiles(users: Mapping[str, User], profiles_root: Path) -> list[UserProfile]:
    """Return a profile for every user that declares packages."""
    return [
        UserProfile(name=name, path=Path(profiles_root) / name, packages=users[name].packages)
        for name in sorted(users)
        if users[name].packages
    ]


def profile_search_paths(users: Mapping[str, User], profiles_root: Path) -> list[str]:
    """Return the profile entries to add to every login environment."""
    if not any(user.packages for user in users.values()):
        return []
    return [f"{Path(profiles_root)}/$USER"]


def system_shells(users: Mapping[str, User]) -> list[str]:
    """Return shell packages referenced by declared users."""
    shells: list[str] = []
    for name in sorted(users):
        shell = users[name].shell
        if shell is not None and shell.package is not None and shell.package not in shells:
            shells.append(shell.package)
    return shells


__all__ = ["UserProfile", "plan_profiles", "profile_search_paths", "system_shells"]
