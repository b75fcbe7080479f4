"""Enumerations for process exit codes reported by ``bedrockctl run``."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    CONFIG = 1
    BACKUP = 2
    DOWNLOAD = 3
    APPLY = 4
    START = 5
