from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path

from ..isolation import Backend, CommandSpec, Level
from ..janitor import PROCESS
from ..reconcile import drain
from ..record import default_shell
from .base import Driver, DriverResult, RunContext, sudo_prefix

logger = logging.getLogger(__name__)


class LocalDriver(Driver):
    """Runs the command directly through the platform shell."""

    backend = Backend.NONE

    async def run(self, command: CommandSpec, level: Level, context: RunContext) -> DriverResult:
        argv = sudo_prefix(level.user) + command.to_argv(default_shell())
        if context.attached:
            return await self._run_attached(argv, context)
        return await self._run_detached(argv, context)

    async def _run_attached(self, argv, context: RunContext) -> DriverResult:
        logger.debug("local exec: %r", argv)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return DriverResult(False, 127, f"Failed to start {argv[0]}: {exc}")

        context.spawned(proc.pid)
        owned = context.janitor.own(PROCESS, str(proc.pid))
        try:
            code = await drain(proc, context.sink)
        finally:
            context.janitor.release(owned)
        return DriverResult(
            success=code == 0,
            exit_code=code,
            message=f"Command exited with code {code}",
            handle=str(proc.pid),
            output=context.sink.output,
        )

    async def _run_detached(self, argv, context: RunContext) -> DriverResult:
        artifact = context.sink.artifact
        log_path = artifact.path if artifact is not None else Path(tempfile.gettempdir()) / "nested-shells-detached.log"
        logger.debug("local detached exec: %r -> %s", argv, log_path)
        try:
            with open(log_path, "ab") as log_fh:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_fh,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                    cwd=os.getcwd(),
                )
        except OSError as exc:
            return DriverResult(False, 127, f"Failed to start {argv[0]}: {exc}")

        context.spawned(proc.pid)
        context.say(f"Started in background with PID {proc.pid}")
        context.say(f"Output: tail -f {log_path}")
        return DriverResult(
            success=True,
            exit_code=0,
            message=f"Command started in background (PID {proc.pid})",
            handle=str(proc.pid),
        )
