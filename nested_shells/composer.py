from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .config import WrapperConfig
from .controller import Mode
from .drivers import Driver, DriverResult, RunContext, driver_registry
from .isolation import Backend, CommandSpec, IsolationSpec, Level

logger = logging.getLogger(__name__)

FORWARDED_OPTIONS = ("image", "endpoint", "session")


@dataclass(frozen=True)
class RunFlags:
    mode: Mode = Mode.ATTACHED
    keep_alive: bool = False
    auto_remove: bool = False


@dataclass(frozen=True)
class Step:
    level: Level
    command: CommandSpec


class StackComposer:
    """Runs the head level of a spec; deeper levels re-invoke the wrapper."""

    def __init__(self, config: WrapperConfig, drivers: Optional[Dict[Backend, Driver]] = None) -> None:
        self.config = config
        self.drivers = drivers if drivers is not None else driver_registry()

    def next_command(self, spec: IsolationSpec, user_command: str, flags: RunFlags) -> CommandSpec:
        """Command for the head level of ``spec``: the user command, or a wrapper re-invocation."""
        rest = spec.residual()
        if rest.depth == 0:
            return CommandSpec.shell(user_command)

        argv: List[str] = list(self.config.self_command)
        argv += ["--isolated", rest.isolated_arg()]
        for name in FORWARDED_OPTIONS:
            seq = rest.option_sequence(name)
            if seq is not None:
                argv += [f"--{name}", seq]
        argv.append("--detached" if flags.mode is Mode.DETACHED else "--attached")
        if flags.keep_alive:
            argv.append("--keep-alive")
        if flags.auto_remove and rest.contains(Backend.DOCKER):
            argv.append("--auto-remove-docker-container")
        argv += ["--", user_command]
        return CommandSpec.vector(argv)

    def expand(self, spec: IsolationSpec, user_command: str, flags: RunFlags) -> List[Step]:
        steps = []
        current = spec
        while current.depth:
            steps.append(Step(current.head, self.next_command(current, user_command, flags)))
            current = current.residual()
        return steps

    def driver_for(self, backend: Backend) -> Driver:
        try:
            return self.drivers[backend]
        except KeyError:
            raise LookupError(f"No driver registered for {backend.value}") from None

    async def run(self, spec: IsolationSpec, user_command: str, context: RunContext) -> DriverResult:
        flags = RunFlags(mode=context.mode, keep_alive=context.keep_alive, auto_remove=context.auto_remove)
        level = spec.head
        command = self.next_command(spec, user_command, flags)
        logger.debug("%s (stack depth %s): %s", level.backend.value, spec.depth, command.display())
        return await self.driver_for(level.backend).run(command, level, context)
