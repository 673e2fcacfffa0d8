from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import List

from ..errors import JanitorError
from ..isolation import Backend, CommandSpec, Level, generate_session_name
from ..janitor import DOCKER, Resource
from ..reconcile import drain
from .base import Driver, DriverResult, RunContext, run_quiet

logger = logging.getLogger(__name__)

DEFAULT_IMAGE = "alpine:latest"
OS_RELEASE = Path("/etc/os-release")

# (markers in /etc/os-release, image), first match wins
_DISTRO_IMAGES = [
    (("ID=ubuntu", "ID_LIKE=ubuntu", "ID_LIKE=debian ubuntu"), "ubuntu:latest"),
    (("ID=debian", "ID_LIKE=debian"), "debian:latest"),
    (("ID=arch", "ID_LIKE=arch"), "archlinux:latest"),
    (("ID=fedora",), "fedora:latest"),
    (("ID=centos", "ID=rhel", "ID_LIKE=rhel"), "centos:latest"),
    (("ID=alpine",), "alpine:latest"),
]


def default_container_image(os_release: Path = OS_RELEASE, platform: str = sys.platform) -> str:
    """Pick an image close to the host distribution, alpine otherwise."""
    if not platform.startswith("linux"):
        return DEFAULT_IMAGE
    try:
        text = os_release.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return DEFAULT_IMAGE
    for markers, image in _DISTRO_IMAGES:
        if any(marker in text for marker in markers):
            return image
    return DEFAULT_IMAGE


def container_command(command: CommandSpec, keep_alive: bool = False) -> List[str]:
    if command.is_shell:
        text = command.text or ""
        if keep_alive:
            text = f"{text}; exec /bin/sh"
        return ["/bin/sh", "-c", text]
    argv = command.to_argv()
    if keep_alive:
        return ["/bin/sh", "-c", '"$@"; exec /bin/sh', "sh", *argv]
    return argv


class DockerDriver(Driver):
    backend = Backend.DOCKER

    def attached_argv(self, name: str, image: str, command: CommandSpec, level: Level, context: RunContext) -> List[str]:
        argv = ["docker", "run", "--name", name]
        if not context.keep_alive:
            argv.append("--rm")
        if context.terminal:
            argv += ["-i", "-t"]
        if level.user:
            argv += ["--user", level.user]
        return argv + [image] + container_command(command)

    def detached_argv(self, name: str, image: str, command: CommandSpec, level: Level, context: RunContext) -> List[str]:
        argv = ["docker", "run", "-d", "--name", name]
        if context.auto_remove:
            argv.append("--rm")
        if context.keep_alive:
            argv += ["-i", "-t"]
        if level.user:
            argv += ["--user", level.user]
        return argv + [image] + container_command(command, keep_alive=context.keep_alive)

    async def run(self, command: CommandSpec, level: Level, context: RunContext) -> DriverResult:
        context.probe.require("docker")
        name = level.session or generate_session_name("docker")
        image = level.image or default_container_image()
        if context.attached:
            return await self._run_attached(name, image, command, level, context)
        return await self._run_detached(name, image, command, level, context)

    async def _run_attached(self, name: str, image: str, command: CommandSpec, level: Level, context: RunContext) -> DriverResult:
        argv = self.attached_argv(name, image, command, level, context)
        logger.debug("docker exec: %r", argv)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return DriverResult(False, 1, f"Failed to start docker: {exc}", handle=name)

        context.spawned(proc.pid)
        if not context.keep_alive:
            context.janitor.own(DOCKER, name)
        code = await drain(proc, context.sink)
        if context.keep_alive:
            context.say(f"Container {name} kept. Inspect with: docker start -ai {name}")
        return DriverResult(
            success=code == 0,
            exit_code=code,
            message=f"Container {name} exited with code {code}",
            handle=name,
            output=context.sink.output,
        )

    async def _run_detached(self, name: str, image: str, command: CommandSpec, level: Level, context: RunContext) -> DriverResult:
        argv = self.detached_argv(name, image, command, level, context)
        logger.debug("docker exec: %r", argv)
        try:
            code, output = await run_quiet(argv)
        except OSError as exc:
            code, output = 127, str(exc)
        if code != 0:
            # docker may have created the container before failing to start it
            try:
                await asyncio.to_thread(context.janitor.teardown, Resource(DOCKER, name))
            except JanitorError as exc:
                logger.warning("%s", exc)
            detail = output.strip() or f"docker exited with code {code}"
            return DriverResult(False, 1, f"Failed to start container {name}: {detail}", handle=name)

        lines = output.strip().splitlines()
        container_id = lines[-1].strip()[:12] if lines else ""
        context.say(f"Command started in detached docker container: {name} ({container_id})")
        context.say(f"View logs with: docker logs -f {name}")
        if context.keep_alive:
            context.say(f"Attach with: docker attach {name}")
        return DriverResult(True, 0, f"Started container {name}", handle=name)
