"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 2
    NO_MATCH = 3
    CONFLICT = 4
    IO = 5
    CANCELLED = 6
