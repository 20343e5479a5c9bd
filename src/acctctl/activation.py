"""A complete reconciliation pass: validate, allocate, diff, apply."""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from .allocator import assign_missing_ids
from .commands import Command
from .models import ROOT_USER, Declaration, ObservedState, Violation
from .reconciler import Executor, ReconcilePlan, ReconcileResult, Reconciler, Verifier
from .validator import check_assigned_ids, raise_for_violations, validate

CommandHook = Callable[[Command, bool], None]


@dataclass(slots=True)
class PassReport:
    """Outcome of a pass (or a dry run of one)."""

    plan: ReconcilePlan
    result: ReconcileResult
    violations: list[Violation] = field(default_factory=list)
    dry_run: bool = False

    @property
    def warnings(self) -> list[str]:
        messages = [violation.message for violation in self.violations if not violation.fatal]
        messages.extend(str(warning) for warning in self.result.warnings)
        return messages

    def to_dict(self) -> dict[str, object]:
        return {
            "dry_run": self.dry_run,
            "violations": [violation.to_dict() for violation in self.violations],
            "diff": {
                "groups": {
                    **self.plan.group_diff.to_dict(),
                    "adopt": list(self.plan.adopted_groups),
                },
                "users": {**self.plan.user_diff.to_dict(), "adopt": list(self.plan.adopted_users)},
            },
            "ids": {
                "users": {name: user.uid for name, user in sorted(self.plan.users.items())},
                "groups": {name: group.gid for name, group in sorted(self.plan.groups.items())},
            },
            "result": self.result.to_dict(),
        }


def prepare(
    declaration: Declaration,
    observed: ObservedState,
) -> tuple[list[Violation], ReconcilePlan]:
    """Validate *declaration*, fill in ids and diff it against *observed*.

    Ids are checked again after allocation, against every account on the
    host, so an explicit id already held by another account is reported.

    Raises :class:`~acctctl.errors.ValidationError` listing every violation
    when any of them is fatal; otherwise returns the warnings and the plan.
    """
    warnings = raise_for_violations(validate(declaration))
    users, groups = assign_missing_ids(declaration.users, declaration.groups, observed)
    reported = {(violation.kind, violation.subject) for violation in warnings}
    clashes = [
        violation
        for violation in check_assigned_ids(
            users, groups, observed, enforce_gids=declaration.enforce_id_uniqueness
        )
        if (violation.kind, violation.subject) not in reported
    ]
    warnings = raise_for_violations(warnings + clashes)
    plan = ReconcilePlan.build(users, groups, observed, mutable=declaration.mutable_users)
    return warnings, plan


def run_pass(
    declaration: Declaration,
    observed: ObservedState,
    *,
    execute: Executor,
    verify_user: Verifier,
    superuser: str = ROOT_USER,
    on_command: CommandHook | None = None,
) -> PassReport:
    """Run one reconciliation pass against *observed*."""
    warnings, plan = prepare(declaration, observed)

    def _execute(command: Command) -> bool:
        ok = execute(command)
        if on_command is not None:
            on_command(command, ok)
        return ok

    reconciler = Reconciler(_execute, verify_user, superuser=superuser)
    result = reconciler.apply(plan, observed.admins, observed.token_holders)
    return PassReport(plan=plan, result=result, violations=warnings)


def plan_pass(
    declaration: Declaration,
    observed: ObservedState,
    *,
    superuser: str = ROOT_USER,
) -> PassReport:
    """Compute the commands a pass would issue without running any of them."""
    warnings, plan = prepare(declaration, observed)
    reconciler = Reconciler(lambda command: True, lambda name: True, superuser=superuser)
    result = reconciler.apply(plan, observed.admins, observed.token_holders)
    return PassReport(plan=plan, result=result, violations=warnings, dry_run=True)


__all__ = ["CommandHook", "PassReport", "plan_pass", "prepare", "run_pass"]
