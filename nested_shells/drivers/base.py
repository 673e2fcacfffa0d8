from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from ..config import WrapperConfig
from ..controller import Mode
from ..isolation import Backend, CommandSpec, Level
from ..janitor import Janitor
from ..probe import CapabilityProbe
from ..reconcile import OutputSink


@dataclass
class DriverResult:
    success: bool
    exit_code: int
    message: str = ""
    handle: Optional[str] = None
    output: str = ""


@dataclass
class RunContext:
    """Everything a driver needs besides the command and its level."""

    mode: Mode = Mode.ATTACHED
    keep_alive: bool = False
    auto_remove: bool = False
    sink: OutputSink = field(default_factory=OutputSink)
    config: WrapperConfig = field(default_factory=WrapperConfig)
    probe: CapabilityProbe = field(default_factory=CapabilityProbe)
    janitor: Janitor = field(default_factory=Janitor)
    terminal: bool = False
    # Called with the pid (or handle) as soon as the child exists.
    on_spawn: Optional[Callable[[int], Any]] = None

    @property
    def attached(self) -> bool:
        return self.mode is Mode.ATTACHED

    def spawned(self, pid: int) -> None:
        if self.on_spawn is not None:
            self.on_spawn(pid)

    def say(self, message: str) -> None:
        print(message, flush=True)


class Driver(abc.ABC):
    backend: Backend

    @abc.abstractmethod
    async def run(self, command: CommandSpec, level: Level, context: RunContext) -> DriverResult:
        raise NotImplementedError


def sudo_prefix(user: Optional[str]) -> List[str]:
    return ["sudo", "-n", "-u", user] if user else []


async def run_quiet(argv: List[str], *, timeout: Optional[float] = None) -> Tuple[int, str]:
    """Run a short helper command and return (exit_code, combined output)."""
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return 124, f"{argv[0]} timed out after {timeout}s"
    return proc.returncode if proc.returncode is not None else 1, (out or b"").decode("utf-8", errors="replace")
