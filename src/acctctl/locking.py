"""Exclusive lock held for the duration of a reconciliation pass."""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "acctctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Serialise passes so only one touches the directory service at a time."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout

    @property
    def pass_lock_path(self) -> Path:
        return self.runtime_dir / GLOBAL_LOCK_NAME

    @contextmanager
    def pass_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global pass lock for the body of the ``with`` block."""
        path = self.pass_lock_path
        path.parent.mkdir(parents=True, exist_ok=True)
        limit = self.default_timeout if timeout is None else timeout
        started = time.monotonic()
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:g}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            metadata = {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(UTC).isoformat(),
            }
            os.ftruncate(fd, 0)
            os.write(fd, json.dumps(metadata).encode("utf-8"))
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
