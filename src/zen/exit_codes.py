"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    OTHER = 1
    USAGE = 2
    NOT_FOUND = 3
    BUSY = 4
    INCONSISTENT = 5
    EXTERNAL = 6
    TIMEOUT = 7
