"""Drain a child's output before trusting its exit status.

Short-lived children can exit before their buffered output has reached us.
``drain`` orders on end-of-stream for both pipes first and only then on
process termination, so the transcript is complete whenever an exit code is
returned.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any, List, Optional

from .logfile import LogArtifact

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096

STDOUT = "stdout"
STDERR = "stderr"


def normalize_returncode(returncode: Optional[int]) -> int:
    if returncode is None:
        return 1
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


class OutputSink:
    """Fan-out for child output: terminal echo, log artifact, in-memory transcript."""

    def __init__(self, artifact: Optional[LogArtifact] = None, *, echo: bool = True) -> None:
        self.artifact = artifact
        self.echo = echo
        self._chunks: List[bytes] = []

    async def write(self, data: bytes, stream: str = STDOUT) -> None:
        if not data:
            return
        self._chunks.append(data)
        if self.echo:
            self._echo(data, stream)
        if self.artifact is not None:
            await self.artifact.append(data)

    def _echo(self, data: bytes, stream: str) -> None:
        target: Any = sys.stderr if stream == STDERR else sys.stdout
        buffer = getattr(target, "buffer", None)
        if buffer is not None:
            buffer.write(data)
            buffer.flush()
        else:
            target.write(data.decode("utf-8", errors="replace"))
            target.flush()

    @property
    def output(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


async def _pump(reader: Optional[asyncio.StreamReader], sink: OutputSink, stream: str) -> None:
    if reader is None:
        return
    while True:
        chunk = await reader.read(CHUNK_SIZE)
        if not chunk:
            break
        await sink.write(chunk, stream)


async def drain(proc: asyncio.subprocess.Process, sink: OutputSink) -> int:
    await asyncio.gather(
        _pump(proc.stdout, sink, STDOUT),
        _pump(proc.stderr, sink, STDERR),
    )
    returncode = await proc.wait()
    code = normalize_returncode(returncode)
    logger.debug("pid %s drained, exit %s", proc.pid, code)
    return code
