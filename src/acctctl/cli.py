"""Typer-powered command line for ``acctctl``.

Commands share a :class:`RuntimeContext` built once per invocation from the
resolved configuration. Every command runs inside a structured logging
operation so the outcome (including warnings and the redacted command list)
ends up in ``operations.jsonl``.
"""
from __future__ import annotations

import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .activation import PassReport, plan_pass, run_pass
from .commands import Command
from .config import AppConfig, ConfigError, load_config
from .declaration import MergedDeclaration, load_declaration
from .errors import (
    AcctctlError,
    CommandNotFound,
    DeclarationError,
    ValidationError,
)
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .models import ObservedState, Violation
from .profiles import plan_profiles, profile_search_paths, system_shells
from .reconciler import ReconcileResult
from .providers import DirectoryProvider
from .validator import validate as validate_declaration

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    "-c",
    help="Path to the acctctl config file (defaults to /etc/acctctl/config.yml).",
)
DECLARATION_ARGUMENT = typer.Argument(
    ...,
    help="Declaration files, merged in the order given.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON.")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Declarative local user and group management.

        Declaration files describe the users and groups a host should have.
        acctctl validates them, assigns missing ids and reconciles the local
        directory service to match.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the resolved acctctl configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    locks: LockManager
    provider: DirectoryProvider


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        provider=DirectoryProvider(config.directory),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the acctctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"acctctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _exit_code_for(exc: Exception) -> ExitCode:
    if isinstance(exc, (ValidationError, DeclarationError, ConfigError)):
        return ExitCode.VALIDATION
    if isinstance(exc, (LockTimeoutError, CommandNotFound)):
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


def _load(op: OperationScope, runtime: RuntimeContext, files: Sequence[Path]) -> MergedDeclaration:
    try:
        return load_declaration(files, shell_prefix=runtime.config.shell_prefix)
    except DeclarationError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)


def _observe(runtime: RuntimeContext, merged: MergedDeclaration) -> ObservedState:
    declaration = merged.declaration
    return runtime.provider.observe(users=list(declaration.users), groups=list(declaration.groups))


def _render_violations(violations: Sequence[Violation]) -> None:
    if not violations:
        console.print("[green]No violations found.[/green]")
        return
    table = Table(title="Declaration problems")
    table.add_column("Severity")
    table.add_column("Kind")
    table.add_column("Subject")
    table.add_column("Message", overflow="fold")
    for violation in violations:
        severity = "[red]ERROR[/red]" if violation.fatal else "[yellow]WARN[/yellow]"
        table.add_row(severity, violation.kind.value, violation.subject, violation.message)
    console.print(table)


def _render_commands(commands: Sequence[Command], runtime: RuntimeContext) -> None:
    if not commands:
        console.print("No account commands to run.")
        return
    table = Table(title="Account commands")
    table.add_column("#", justify="right")
    table.add_column("Kind")
    table.add_column("Account")
    table.add_column("Command", overflow="fold")
    for index, command in enumerate(commands, start=1):
        table.add_row(
            str(index),
            command.kind,
            command.account,
            command.describe(runtime.config.directory),
        )
    console.print(table)


def _render_warnings(warnings: Sequence[str]) -> None:
    for warning in warnings:
        console.print(f"[bold yellow]warning:[/bold yellow] {warning}")


def _report_payload(
    report: PassReport,
    runtime: RuntimeContext,
    merged: MergedDeclaration,
) -> dict[str, object]:
    payload = report.to_dict()
    payload["commands"] = [
        command.describe(runtime.config.directory) for command in report.result.commands
    ]
    payload["provenance"] = merged.provenance_dict()
    users = merged.declaration.users
    payload["profiles"] = {
        "users": {
            profile.name: {"path": str(profile.path), "packages": list(profile.packages)}
            for profile in plan_profiles(users, runtime.config.profiles_root)
        },
        "search_paths": profile_search_paths(users, runtime.config.profiles_root),
        "shells": system_shells(users),
    }
    return payload


def _render_profiles(merged: MergedDeclaration, runtime: RuntimeContext) -> None:
    users = merged.declaration.users
    profiles = plan_profiles(users, runtime.config.profiles_root)
    shells = system_shells(users)
    if profiles:
        table = Table(title="Per-user profiles")
        table.add_column("User")
        table.add_column("Path")
        table.add_column("Packages", overflow="fold")
        for profile in profiles:
            table.add_row(profile.name, str(profile.path), ", ".join(profile.packages))
        console.print(table)
    if shells:
        console.print(f"Shell packages to install: {', '.join(shells)}")


def _summary(report: PassReport) -> str:
    result = report.result
    parts = [
        f"created {len(result.created)}",
        f"deleted {len(result.deleted)}",
        f"skipped {len(result.skipped)}",
    ]
    return f"{len(result.commands)} command(s); " + ", ".join(parts) + "."


@app.command()
def validate(
    ctx: typer.Context,
    files: list[Path] = DECLARATION_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Check declaration files without touching the host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "validate",
        args={"files": [str(path) for path in files], "json": json_output},
        target={"kind": "declaration", "scope": "validate"},
    ) as op:
        merged = _load(op, runtime, files)
        violations = validate_declaration(merged.declaration)
        fatal = [violation for violation in violations if violation.fatal]
        if json_output:
            payload = {"violations": [violation.to_dict() for violation in violations]}
            console.print_json(data=payload)
        else:
            _render_violations(violations)

        context = {"violations": [violation.to_dict() for violation in violations]}
        if fatal:
            op.error(
                "Declaration has fatal violations.",
                errors=[violation.message for violation in fatal],
                rc=int(ExitCode.VALIDATION),
                context=context,
            )
            raise typer.Exit(code=ExitCode.VALIDATION)
        if violations:
            op.warning(
                "Declaration is valid with warnings.",
                warnings=[violation.message for violation in violations],
                context=context,
            )
            return
        op.success("Declaration is valid.", context=context)


@app.command()
def plan(
    ctx: typer.Context,
    files: list[Path] = DECLARATION_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the account commands a pass would run."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "plan",
        args={"files": [str(path) for path in files], "json": json_output},
        target={"kind": "accounts", "scope": "plan"},
    ) as op:
        merged = _load(op, runtime, files)
        try:
            observed = _observe(runtime, merged)
            report = plan_pass(
                merged.declaration,
                observed,
                superuser=runtime.config.directory.superuser,
            )
        except ValidationError as exc:
            if not json_output:
                _render_violations(exc.violations)
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except AcctctlError as exc:
            _command_error(op, str(exc), rc=_exit_code_for(exc))

        payload = _report_payload(report, runtime, merged)
        if json_output:
            console.print_json(data=payload)
        else:
            _render_commands(report.result.commands, runtime)
            _render_profiles(merged, runtime)
            _render_warnings(report.warnings)
            console.print(f"[yellow]Plan[/yellow]: {_summary(report)}")
        if report.warnings:
            op.warning("Plan computed with warnings.", warnings=report.warnings, changed=0)
        else:
            op.success("Plan computed.", changed=0, context={"diff": payload["diff"]})


@app.command()
def apply(
    ctx: typer.Context,
    files: list[Path] = DECLARATION_ARGUMENT,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Compute the pass but do not run any account command.",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not ask for confirmation before deleting accounts.",
    ),
) -> None:
    """Reconcile local users and groups with the declaration."""
    runtime = _get_runtime(ctx)
    directory = runtime.config.directory
    with runtime.logger.operation(
        "apply",
        args={"files": [str(path) for path in files], "dry_run": dry_run, "yes": yes},
        target={"kind": "accounts", "scope": "apply"},
    ) as op:
        merged = _load(op, runtime, files)

        def _record(command: Command, ok: bool) -> None:
            op.add_step(
                command.kind,
                status="ok" if ok else "failed",
                detail=command.describe(directory),
            )

        try:
            with runtime.locks.pass_lock() as handle:
                op.add_step("lock", detail=f"acquired after {handle.wait_ms} ms")
                observed = _observe(runtime, merged)
                preview = plan_pass(merged.declaration, observed, superuser=directory.superuser)
                if dry_run:
                    _render_commands(preview.result.commands, runtime)
                    _render_warnings(preview.warnings)
                    console.print(f"[yellow]Dry run[/yellow]: {_summary(preview)}")
                    op.success("Dry run complete.", changed=0)
                    return

                deletions = preview.result.deleted + list(preview.plan.group_diff.to_delete)
                if deletions and not yes:
                    typer.confirm(
                        f"Delete {len(deletions)} account(s): {', '.join(deletions)}?",
                        abort=True,
                    )

                report = run_pass(
                    merged.declaration,
                    observed,
                    execute=runtime.provider.execute,
                    verify_user=runtime.provider.user_exists,
                    superuser=directory.superuser,
                    on_command=_record,
                )
        except ValidationError as exc:
            _render_violations(exc.violations)
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except AcctctlError as exc:
            partial = exc.partial
            if isinstance(partial, ReconcileResult):
                console.print(f"[red]Pass halted[/red] after {len(partial.commands)} command(s).")
                issued = f"{len(partial.commands)} command(s) issued"
                op.add_step("halted", status="failed", detail=issued)
            _command_error(op, str(exc), rc=_exit_code_for(exc))

        _render_warnings(report.warnings)
        console.print(f"[green]Reconciled[/green]: {_summary(report)}")
        context: Mapping[str, object] = report.result.to_dict()
        if report.warnings:
            op.warning(
                "Pass completed with warnings.",
                warnings=report.warnings,
                changed=len(report.result.commands),
                context=context,
            )
        else:
            op.success(
                "Pass completed.",
                changed=len(report.result.commands),
                context=context,
            )


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Print the resolved configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config", "scope": "show"},
    ) as op:
        data = runtime.config.to_dict()
        if json_output:
            console.print_json(data=data)
        else:
            table = Table(title="acctctl configuration")
            table.add_column("Key")
            table.add_column("Value", overflow="fold")
            for key, value in data.items():
                if isinstance(value, Mapping):
                    for sub_key, sub_value in value.items():
                        table.add_row(f"{key}.{sub_key}", str(sub_value))
                else:
                    table.add_row(key, str(value))
            console.print(table)
        op.success("Reported configuration.", changed=0)


__all__ = ["app"]
