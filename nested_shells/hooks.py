from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional


MaybeAwaitable = Any


@dataclass(frozen=True)
class WrapperHooks:
    """Optional callbacks for the collaborators that live outside the wrapper.

    Callbacks may be sync or async. ``rewrite`` errors propagate (the command
    would otherwise be wrong); ``report_failure`` errors are logged and dropped.
    """

    # Natural-language substitution: returns the command that should actually run.
    rewrite: Optional[Callable[[str], MaybeAwaitable]] = None

    # Called after a non-zero exit with (command, exit_code, log_path).
    report_failure: Optional[Callable[[str, int, str], MaybeAwaitable]] = None
