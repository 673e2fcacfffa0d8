from __future__ import annotations

import random
import shlex
import string
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple, Union

from .errors import ConfigurationError

MAX_ISOLATION_DEPTH = 7
PLACEHOLDER = "_"

_BASE36 = string.digits + string.ascii_lowercase


class Backend(str, Enum):
    NONE = "none"
    SCREEN = "screen"
    TMUX = "tmux"
    DOCKER = "docker"
    SSH = "ssh"

    @classmethod
    def parse(cls, raw: str) -> "Backend":
        try:
            return cls(raw.strip().lower())
        except ValueError:
            valid = ", ".join(b.value for b in cls)
            raise ConfigurationError(f'Invalid isolation environment "{raw}". Valid options are: {valid}') from None


# option -> backends it can be applied to
APPLICABLE: Dict[str, FrozenSet[Backend]] = {
    "image": frozenset({Backend.DOCKER}),
    "endpoint": frozenset({Backend.SSH}),
    "session": frozenset({Backend.SCREEN, Backend.TMUX, Backend.DOCKER, Backend.SSH}),
}


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def random_base36(length: int = 6) -> str:
    return "".join(random.choice(_BASE36) for _ in range(length))


def generate_session_name(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{random_base36(6)}"


@dataclass(frozen=True)
class CommandSpec:
    """What a driver runs: user shell text, or an argv that re-invokes the wrapper."""

    text: Optional[str] = None
    argv: Optional[Tuple[str, ...]] = None

    def __post_init__(self) -> None:
        if (self.text is None) == (self.argv is None):
            raise ValueError("CommandSpec needs exactly one of text or argv")

    @classmethod
    def shell(cls, text: str) -> "CommandSpec":
        return cls(text=text)

    @classmethod
    def vector(cls, argv: Sequence[str]) -> "CommandSpec":
        return cls(argv=tuple(str(a) for a in argv))

    @property
    def is_shell(self) -> bool:
        return self.text is not None

    def to_argv(self, shell: str = "/bin/sh") -> List[str]:
        if self.text is not None:
            return [shell, "-c", self.text]
        return list(self.argv or ())

    def to_shell_string(self) -> str:
        # Only for boundaries that take one string (ssh remote command, tmux < 3.0).
        if self.text is not None:
            return self.text
        return shlex.join(self.argv or ())

    def display(self) -> str:
        return self.to_shell_string()


@dataclass(frozen=True)
class Level:
    backend: Backend
    session: Optional[str] = None
    image: Optional[str] = None
    endpoint: Optional[str] = None
    user: Optional[str] = None

    def label(self) -> str:
        if self.backend is Backend.DOCKER and self.image:
            return f"docker:{self.image}"
        if self.backend is Backend.SSH and self.endpoint:
            return f"ssh@{self.endpoint}"
        return self.backend.value


def parse_sequence(raw: Optional[str]) -> List[Optional[str]]:
    """Split a whitespace-separated value list, mapping ``_`` to None."""
    if raw is None:
        return []
    return [None if part == PLACEHOLDER else part for part in raw.split()]


def _as_occurrences(raw: Union[None, str, Sequence[str]]) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    return [str(r) for r in raw]


def distribute_option(
    name: str,
    occurrences: Union[None, str, Sequence[str]],
    stack: Sequence[Backend],
) -> List[Optional[str]]:
    """Resolve one per-level option into exactly ``len(stack)`` values.

    ``occurrences`` is every value the flag was given (argparse ``append``).
    A single token is replicated to the levels it applies to; a multi-token
    value is a positional sequence.
    """
    values = _as_occurrences(occurrences)
    depth = len(stack)
    applicable = APPLICABLE[name]
    if not values:
        return [None] * depth
    if len(values) > 1:
        raise ConfigurationError(f"--{name} was given {len(values)} times; pass a single value or one sequence")

    seq = parse_sequence(values[0])
    if not seq:
        raise ConfigurationError(f"--{name} requires a value")

    if len(seq) == 1 and depth > 1:
        value = seq[0]
        if value is None:
            return [None] * depth
        targets = [i for i, backend in enumerate(stack) if backend in applicable]
        if not targets:
            raise ConfigurationError(
                f"--{name} is not applicable to any level of the isolation stack "
                f"({' '.join(b.value for b in stack)})"
            )
        return [value if i in targets else None for i in range(depth)]

    if len(seq) != depth:
        raise ConfigurationError(
            f"--{name} has {len(seq)} value(s) but the isolation stack has {depth} level(s)"
        )
    for i, (value, backend) in enumerate(zip(seq, stack)):
        if value is not None and backend not in applicable:
            raise ConfigurationError(
                f"--{name} value '{value}' at level {i + 1} is not applicable to {backend.value}; use '{PLACEHOLDER}'"
            )
    return seq


@dataclass(frozen=True)
class IsolationSpec:
    levels: Tuple[Level, ...] = field(default_factory=tuple)

    @classmethod
    def local(cls) -> "IsolationSpec":
        return cls(levels=(Level(Backend.NONE),))

    @classmethod
    def build(
        cls,
        isolated: Optional[str],
        *,
        image: Union[None, str, Sequence[str]] = None,
        endpoint: Union[None, str, Sequence[str]] = None,
        session: Union[None, str, Sequence[str]] = None,
        user: Optional[str] = None,
    ) -> "IsolationSpec":
        if not isolated or not isolated.strip():
            for name, raw in (("image", image), ("endpoint", endpoint), ("session", session)):
                if _as_occurrences(raw):
                    raise ConfigurationError(f"--{name} option requires --isolated")
            return cls(levels=(Level(Backend.NONE, user=user),))

        tokens = isolated.split()
        if len(tokens) > MAX_ISOLATION_DEPTH:
            raise ConfigurationError(
                f"Isolation stack too deep: {len(tokens)} levels (max: {MAX_ISOLATION_DEPTH})"
            )
        stack = [Backend.parse(t) for t in tokens]

        images = distribute_option("image", image, stack)
        endpoints = distribute_option("endpoint", endpoint, stack)
        sessions = distribute_option("session", session, stack)

        levels = []
        for i, backend in enumerate(stack):
            if backend is Backend.SSH and not endpoints[i]:
                raise ConfigurationError(
                    f"ssh at level {i + 1} requires --endpoint (e.g. --endpoint user@host)"
                )
            levels.append(Level(
                backend=backend,
                session=sessions[i],
                image=images[i],
                endpoint=endpoints[i],
                user=user if i == 0 else None,
            ))
        return cls(levels=tuple(levels))

    @property
    def depth(self) -> int:
        return len(self.levels)

    @property
    def head(self) -> Level:
        return self.levels[0]

    @property
    def backends(self) -> List[Backend]:
        return [lvl.backend for lvl in self.levels]

    def contains(self, backend: Backend) -> bool:
        return backend in self.backends

    @property
    def is_isolated(self) -> bool:
        return any(lvl.backend is not Backend.NONE for lvl in self.levels)

    def residual(self) -> "IsolationSpec":
        return replace(self, levels=self.levels[1:])

    def option_sequence(self, name: str) -> Optional[str]:
        """Render one option back into ``_``-delimited form, or None if unused."""
        values = [getattr(lvl, name) for lvl in self.levels]
        if all(v is None for v in values):
            return None
        return " ".join(PLACEHOLDER if v is None else v for v in values)

    def isolated_arg(self) -> str:
        return " ".join(b.value for b in self.backends)

    def format_chain(self) -> str:
        return " → ".join(lvl.label() for lvl in self.levels)
