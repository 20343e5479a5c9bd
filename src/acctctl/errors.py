"""Exception hierarchy shared by the reconciliation pipeline."""
from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Violation


class AcctctlError(RuntimeError):
    """Base class for errors raised by acctctl."""

    #: Work completed before the error, attached by the reconciler.
    partial: object | None = None


class DeclarationError(AcctctlError):
    """Raised when a declaration fragment is structurally invalid."""


class ValidationError(AcctctlError):
    """Raised before any mutation when fatal violations are present."""

    def __init__(self, violations: Sequence[Violation]) -> None:
        self.violations = tuple(violations)
        fatal = [violation for violation in self.violations if violation.fatal]
        summary = "; ".join(violation.message for violation in fatal) or "validation failed"
        super().__init__(f"{len(fatal)} fatal violation(s): {summary}")


class AllocationExhausted(AcctctlError):
    """Raised when no free identifier remains in the applicable range."""

    def __init__(self, kind: str, name: str, low: int, high: int) -> None:
        self.kind = kind
        self.name = name
        self.low = low
        self.high = high
        super().__init__(f"No free {kind} left in range {low}-{high} for '{name}'.")


class CreationVerificationFailed(AcctctlError):
    """Raised when an account is missing right after it was created."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"failed to create user {name}, aborting activation")


class CommandFailed(AcctctlError):
    """Raised when an account-management command exits non-zero."""

    def __init__(self, description: str, returncode: int, output: str = "") -> None:
        self.description = description
        self.returncode = returncode
        self.output = output
        detail = output.strip() or "no output"
        super().__init__(f"{description} failed (exit {returncode}): {detail}")


class CommandNotFound(AcctctlError):
    """Raised when an account-management tool is not installed."""

    def __init__(self, executable: str) -> None:
        self.executable = executable
        super().__init__(f"{executable} not found on this host")


class CommandTimeout(AcctctlError):
    """Raised when an account-management command does not finish in time."""

    def __init__(self, description: str, timeout: float) -> None:
        self.description = description
        self.timeout = timeout
        super().__init__(f"{description} timed out after {timeout:g}s")


__all__ = [
    "AcctctlError",
    "AllocationExhausted",
    "CommandFailed",
    "CommandNotFound",
    "CommandTimeout",
    "CreationVerificationFailed",
    "DeclarationError",
    "ValidationError",
]
