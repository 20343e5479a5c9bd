"""Fill in UIDs and GIDs the declaration leaves unset."""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import replace

from .errors import AllocationExhausted
from .models import (
    NORMAL_UID_RANGE,
    SYSTEM_NAME_PREFIX,
    SYSTEM_UID_RANGE,
    Group,
    ObservedState,
    User,
)

GROUP_GID_RANGE: tuple[int, int] = NORMAL_UID_RANGE
SYSTEM_GID_RANGE: tuple[int, int] = SYSTEM_UID_RANGE


def _lowest_free(taken: set[int], low: int, high: int) -> int | None:
    for candidate in range(low, high + 1):
        if candidate not in taken:
            return candidate
    return None


def _user_range(user: User) -> tuple[int, int]:
    return SYSTEM_UID_RANGE if user.is_system_user else NORMAL_UID_RANGE


def _group_range(group: Group) -> tuple[int, int]:
    return SYSTEM_GID_RANGE if group.name.startswith(SYSTEM_NAME_PREFIX) else GROUP_GID_RANGE


def _explicit(values: Iterable[int | None]) -> set[int]:
    return {value for value in values if value is not None}


def assign_missing_ids(
    users: Mapping[str, User],
    groups: Mapping[str, Group],
    observed: ObservedState | None = None,
) -> tuple[dict[str, User], dict[str, Group]]:
    """Return copies of *users* and *groups* with every id filled in.

    An account that already exists keeps its observed id. Otherwise the
    lowest integer that is neither declared nor observed is picked from the
    applicable range. Names are visited in sorted order so the outcome does
    not depend on declaration order.
    """
    observed = observed or ObservedState()

    taken_uids = _explicit(user.uid for user in users.values()) | set(observed.users.values())
    assigned_users: dict[str, User] = {}
    for name in sorted(users):
        user = users[name]
        if user.uid is None:
            uid = observed.users.get(name)
            if uid is None:
                low, high = _user_range(user)
                uid = _lowest_free(taken_uids, low, high)
                if uid is None:
                    raise AllocationExhausted("uid", name, low, high)
            taken_uids.add(uid)
            user = replace(user, uid=uid)
        assigned_users[name] = user

    taken_gids = _explicit(group.gid for group in groups.values()) | set(observed.groups.values())
    assigned_groups: dict[str, Group] = {}
    for name in sorted(groups):
        group = groups[name]
        if group.gid is None:
            gid = observed.groups.get(name)
            if gid is None:
                low, high = _group_range(group)
                gid = _lowest_free(taken_gids, low, high)
                if gid is None:
                    raise AllocationExhausted("gid", name, low, high)
            taken_gids.add(gid)
            group = replace(group, gid=gid)
        assigned_groups[name] = group

    return assigned_users, assigned_groups


__all__ = ["GROUP_GID_RANGE", "SYSTEM_GID_RANGE", "assign_missing_ids"]
