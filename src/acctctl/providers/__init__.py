"""Provider implementations that talk to the host."""
from __future__ import annotations

from .directory import DirectoryProvider, Runner

__all__ = ["DirectoryProvider", "Runner"]
