from __future__ import annotations

import logging
import os
import platform
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import aiofiles

from .isolation import random_base36
from .record import utc_now

logger = logging.getLogger(__name__)

RULE = "=" * 50


def log_file_name(environment: str) -> str:
    env = (environment or "direct").replace(" ", "-")
    return f"nested-shells-{env}-{int(time.time() * 1000)}-{random_base36(6)}.log"


@dataclass
class LogHeader:
    execution_id: str
    command: str
    environment: str = "direct"
    mode: str = "attached"
    session: Optional[str] = None
    image: Optional[str] = None
    user: Optional[str] = None
    shell: str = ""
    working_directory: str = field(default_factory=os.getcwd)
    timestamp: str = field(default_factory=utc_now)

    def render(self) -> str:
        lines = [
            "=== Start Command Log ===",
            f"Execution ID: {self.execution_id}",
            f"Timestamp: {self.timestamp}",
            f"Command: {self.command}",
            f"Environment: {self.environment}",
            f"Mode: {self.mode}",
        ]
        if self.session:
            lines.append(f"Session: {self.session}")
        if self.image:
            lines.append(f"Image: {self.image}")
        if self.user:
            lines.append(f"User: {self.user}")
        lines += [
            f"Shell: {self.shell}",
            f"Platform: {sys.platform}",
            f"Python Version: {platform.python_version()}",
            f"Working Directory: {self.working_directory}",
            RULE,
            "",
        ]
        return "\n".join(lines) + "\n"


def render_footer(exit_code: int, finished: Optional[str] = None) -> str:
    return "\n" + "\n".join([
        RULE,
        f"Finished: {finished or utc_now()}",
        f"Exit Code: {exit_code}",
        "",
    ])


class LogArtifact:
    """Append-only transcript file for one invocation.

    Async writes go through aiofiles; ``write_footer_sync`` exists for the
    signal path, where the loop is about to stop.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._fh: Any = None
        self._closed = False

    @classmethod
    def create(cls, log_dir: Path, environment: str) -> "LogArtifact":
        log_dir.mkdir(parents=True, exist_ok=True)
        return cls(log_dir / log_file_name(environment))

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self, header: LogHeader) -> None:
        self._fh = await aiofiles.open(self.path, "ab")
        await self.append(header.render().encode("utf-8"))

    async def append(self, data: bytes) -> None:
        if self._closed or not data:
            return
        if self._fh is None:
            async with aiofiles.open(self.path, "ab") as fh:
                await fh.write(data)
            return
        await self._fh.write(data)
        await self._fh.flush()

    async def close(self, exit_code: int) -> None:
        if self._closed:
            return
        await self.append(render_footer(exit_code).encode("utf-8"))
        if self._fh is not None:
            await self._fh.close()
            self._fh = None
        self._closed = True

    def write_footer_sync(self, exit_code: int) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            with open(self.path, "ab") as fh:
                fh.write(render_footer(exit_code).encode("utf-8"))
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as exc:
            logger.warning("Could not write log footer to %s: %s", self.path, exc)

    async def read_text(self) -> str:
        async with aiofiles.open(self.path, "rb") as fh:
            data = await fh.read()
        return data.decode("utf-8", errors="replace")
