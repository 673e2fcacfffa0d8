from __future__ import annotations

import sys
from enum import Enum

from .errors import ConfigurationError


class Mode(str, Enum):
    ATTACHED = "attached"
    DETACHED = "detached"


def resolve_mode(attached: bool = False, detached: bool = False) -> Mode:
    if attached and detached:
        raise ConfigurationError(
            "Cannot use both --attached and --detached at the same time. Please choose only one mode."
        )
    return Mode.DETACHED if detached else Mode.ATTACHED


def terminal_available() -> bool:
    try:
        return sys.stdin.isatty() and sys.stdout.isatty()
    except (AttributeError, ValueError):
        # closed or replaced streams (pytest capture, daemons)
        return False
