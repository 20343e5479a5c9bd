"""Compute create/update/delete sets between declared and managed accounts."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class Diff:
    """Names to create, update and delete for one kind of account."""

    to_create: tuple[str, ...] = ()
    to_update: tuple[str, ...] = ()
    to_delete: tuple[str, ...] = ()

    @property
    def empty(self) -> bool:
        """Return ``True`` when nothing needs to change."""
        return not (self.to_create or self.to_update or self.to_delete)

    def to_dict(self) -> dict[str, list[str]]:
        """Return a serialisable representation."""
        return {
            "create": list(self.to_create),
            "update": list(self.to_update),
            "delete": list(self.to_delete),
        }


def diff(declared: Iterable[str], observed_managed: Iterable[str], *, mutable: bool) -> Diff:
    """Return the delta between *declared* names and managed *observed* names.

    Deletion candidates are only reported when *mutable* is false; with
    mutable accounts anything not declared is left alone.
    """
    wanted = set(declared)
    managed = set(observed_managed)
    return Diff(
        to_create=tuple(sorted(wanted - managed)),
        to_update=tuple(sorted(wanted & managed)),
        to_delete=() if mutable else tuple(sorted(managed - wanted)),
    )


__all__ = ["Diff", "diff"]
