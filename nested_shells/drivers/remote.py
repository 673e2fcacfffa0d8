from __future__ import annotations

import asyncio
import logging
import shlex
from typing import List, Optional

from ..errors import ConfigurationError
from ..isolation import Backend, CommandSpec, Level, generate_session_name
from ..reconcile import drain
from .base import Driver, DriverResult, RunContext, run_quiet

logger = logging.getLogger(__name__)


def remote_command(command: CommandSpec, user: Optional[str] = None) -> str:
    # ssh joins its arguments into one string for the remote shell, so this is
    # the one boundary where the command has to travel as quoted text.
    text = command.to_shell_string()
    if user:
        return f"sudo -n -u {shlex.quote(user)} sh -c {shlex.quote(text)}"
    return text


def detached_remote_command(command: CommandSpec, name: str, user: Optional[str] = None) -> str:
    inner = remote_command(command, user)
    return f"nohup sh -c {shlex.quote(inner)} > /tmp/{name}.log 2>&1 &"


class SshDriver(Driver):
    backend = Backend.SSH

    def attached_argv(self, endpoint: str, command: CommandSpec, level: Level, context: RunContext) -> List[str]:
        argv = ["ssh"]
        if context.terminal:
            argv.append("-t")
        return argv + [endpoint, remote_command(command, level.user)]

    async def run(self, command: CommandSpec, level: Level, context: RunContext) -> DriverResult:
        if not level.endpoint:
            raise ConfigurationError("ssh isolation requires --endpoint (e.g. --endpoint user@host)")
        context.probe.require("ssh")
        if context.attached:
            return await self._run_attached(command, level, context)
        return await self._run_detached(command, level, context)

    async def _run_attached(self, command: CommandSpec, level: Level, context: RunContext) -> DriverResult:
        argv = self.attached_argv(level.endpoint or "", command, level, context)
        logger.debug("ssh exec: %r", argv)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return DriverResult(False, 1, f"Failed to start ssh: {exc}", handle=level.endpoint)

        context.spawned(proc.pid)
        code = await drain(proc, context.sink)
        return DriverResult(
            success=code == 0,
            exit_code=code,
            message=f"Remote command on {level.endpoint} exited with code {code}",
            handle=level.endpoint,
            output=context.sink.output,
        )

    async def _run_detached(self, command: CommandSpec, level: Level, context: RunContext) -> DriverResult:
        name = level.session or generate_session_name("ssh")
        endpoint = level.endpoint or ""
        argv = ["ssh", endpoint, detached_remote_command(command, name, level.user)]
        logger.debug("ssh exec: %r", argv)
        try:
            code, output = await run_quiet(argv)
        except OSError as exc:
            code, output = 127, str(exc)
        if code != 0:
            detail = output.strip() or f"ssh exited with code {code}"
            return DriverResult(False, 1, f"Failed to start remote command on {endpoint}: {detail}", handle=name)

        context.say(f"Command started in background on {endpoint}: {name}")
        context.say(f"Follow output with: ssh {endpoint} tail -f /tmp/{name}.log")
        return DriverResult(True, 0, f"Started remote command {name} on {endpoint}", handle=name)
