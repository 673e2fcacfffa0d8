"""screen and tmux drivers.

Both multiplexers are always started detached, since attaching needs a real
terminal we cannot count on. Attached runs are emulated: output is logged to a
file while the session runs, the session is polled until the command is done,
and the log is replayed to the caller.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import shlex
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

import aiofiles

from ..errors import JanitorError
from ..isolation import Backend, CommandSpec, Level, generate_session_name
from ..janitor import SCREEN, TMUX, Resource, screen_session_exists, tmux_session_exists
from ..probe import ToolInfo
from ..record import default_shell
from .base import Driver, DriverResult, RunContext, run_quiet, sudo_prefix

logger = logging.getLogger(__name__)

# The command arrives as "$@" so it is never re-quoted.
CODE_SCRIPT = 'code_file=$1; shift; "$@"; rc=$?; echo "$rc" > "$code_file"'
TEE_SCRIPT = (
    'log=$1; code_file=$2; shift 2; '
    '{ "$@"; echo $? > "$code_file.tmp"; } 2>&1 | tee "$log"; '
    'mv "$code_file.tmp" "$code_file"'
)
KEEP_ALIVE_SCRIPT = '"$@"; exec "${SHELL:-/bin/sh}"'
KEEP_ALIVE_TAIL = '; exec "${SHELL:-/bin/sh}"'
EXIT_TAIL = '; exit "$rc"'

REPLAY_CHUNK = 64 * 1024


class MultiplexerDriver(Driver):
    tool = ""
    resource_kind = ""

    @abc.abstractmethod
    def reattach_hint(self, name: str) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    def creation_argv(self, name: str, inner: List[str], info: ToolInfo, log_path: Optional[Path]) -> List[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def session_exists(self, name: str, timeout: float) -> bool:
        raise NotImplementedError

    def uses_native_log(self, info: ToolInfo, context: RunContext) -> bool:
        return False

    async def alive(self, name: str, context: RunContext) -> bool:
        return await asyncio.to_thread(self.session_exists, name, context.config.probe_timeout)

    async def run(self, command: CommandSpec, level: Level, context: RunContext) -> DriverResult:
        info = context.probe.require(self.tool)
        name = level.session or generate_session_name(self.tool)
        command_argv = sudo_prefix(level.user) + command.to_argv(default_shell())
        if context.attached:
            return await self._run_attached(name, command_argv, info, context)
        return await self._run_detached(name, command_argv, info, context)

    async def _launch(self, argv: List[str], name: str, context: RunContext) -> Optional[str]:
        logger.debug("%s launch: %r", self.tool, argv)
        try:
            code, output = await run_quiet(argv, timeout=context.config.probe_timeout)
        except OSError as exc:
            code, output = 127, str(exc)
        if code == 0:
            return None
        # Something may have been created before the failure.
        resource = Resource(self.resource_kind, name)
        context.janitor.release(resource)
        try:
            await asyncio.to_thread(context.janitor.teardown, resource)
        except JanitorError as exc:
            logger.warning("%s", exc)
        return output.strip() or f"{self.tool} exited with code {code}"

    async def _run_detached(self, name: str, command_argv: List[str], info: ToolInfo, context: RunContext) -> DriverResult:
        inner = command_argv
        if context.keep_alive:
            inner = ["/bin/sh", "-c", KEEP_ALIVE_SCRIPT, "sh", *command_argv]
        error = await self._launch(self.creation_argv(name, inner, info, None), name, context)
        if error is not None:
            return DriverResult(False, 1, f"Failed to start {self.tool} session {name}: {error}", handle=name)

        context.say(f'Command started in detached {self.tool} session: {name}')
        context.say(f"Reattach with: {self.reattach_hint(name)}")
        return DriverResult(True, 0, f"Started detached {self.tool} session {name}", handle=name)

    async def _run_attached(self, name: str, command_argv: List[str], info: ToolInfo, context: RunContext) -> DriverResult:
        workdir = Path(tempfile.mkdtemp(prefix="nested-shells-"))
        log_path = workdir / f"{name}.log"
        code_path = workdir / f"{name}.code"
        native = self.uses_native_log(info, context)

        if native:
            script = CODE_SCRIPT + EXIT_TAIL
            inner = ["/bin/sh", "-c", script, "sh", str(code_path), *command_argv]
        else:
            script = TEE_SCRIPT + (KEEP_ALIVE_TAIL if context.keep_alive else "")
            inner = ["/bin/sh", "-c", script, "sh", str(log_path), str(code_path), *command_argv]

        if not context.keep_alive:
            context.janitor.own(self.resource_kind, name)

        try:
            error = await self._launch(
                self.creation_argv(name, inner, info, log_path if native else None), name, context
            )
            if error is not None:
                return DriverResult(False, 1, f"Failed to start {self.tool} session {name}: {error}", handle=name)

            await self._wait(name, code_path, native, context)
            exit_code = self._read_exit_code(code_path)
            await self._replay(log_path, context)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        if context.keep_alive:
            context.say(f"Session {name} kept alive. Reattach with: {self.reattach_hint(name)}")
        return DriverResult(
            success=exit_code == 0,
            exit_code=exit_code,
            message=f"{self.tool} session {name} exited with code {exit_code}",
            handle=name,
            output=context.sink.output,
        )

    async def _wait(self, name: str, code_path: Path, native: bool, context: RunContext) -> None:
        # Native logging is only complete once screen has closed the session;
        # the tee path is complete once the code file has been moved into place.
        while True:
            if not native and code_path.exists():
                return
            if not await self.alive(name, context):
                return
            await asyncio.sleep(context.config.poll_interval)

    def _read_exit_code(self, code_path: Path) -> int:
        try:
            return int(code_path.read_text().strip())
        except (OSError, ValueError):
            logger.debug("no exit code recorded at %s", code_path)
            return 1

    async def _replay(self, log_path: Path, context: RunContext) -> None:
        if not log_path.exists():
            return
        async with aiofiles.open(log_path, "rb") as fh:
            while True:
                chunk = await fh.read(REPLAY_CHUNK)
                if not chunk:
                    break
                await context.sink.write(chunk)


class ScreenDriver(MultiplexerDriver):
    backend = Backend.SCREEN
    tool = "screen"
    resource_kind = SCREEN

    def reattach_hint(self, name: str) -> str:
        return f"screen -r {name}"

    def uses_native_log(self, info: ToolInfo, context: RunContext) -> bool:
        return info.supports("native_logfile") and not context.keep_alive

    def creation_argv(self, name: str, inner: List[str], info: ToolInfo, log_path: Optional[Path]) -> List[str]:
        argv = ["screen", "-dmS", name]
        if log_path is not None:
            argv += ["-L", "-Logfile", str(log_path)]
        return argv + inner

    def session_exists(self, name: str, timeout: float) -> bool:
        return screen_session_exists(name, timeout)


class TmuxDriver(MultiplexerDriver):
    backend = Backend.TMUX
    tool = "tmux"
    resource_kind = TMUX

    def reattach_hint(self, name: str) -> str:
        return f"tmux attach -t {name}"

    def creation_argv(self, name: str, inner: List[str], info: ToolInfo, log_path: Optional[Path]) -> List[str]:
        argv = ["tmux", "new-session", "-d", "-s", name]
        if info.supports("argv_command"):
            return argv + inner
        # Older tmux only takes one shell-command string.
        return argv + [shlex.join(inner)]

    def session_exists(self, name: str, timeout: float) -> bool:
        return tmux_session_exists(name, timeout)
