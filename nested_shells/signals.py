from __future__ import annotations

import asyncio
import logging
import signal
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


def signal_exit_code(signum: int) -> int:
    return 128 + int(signum)


class SignalGuard:
    """Routes SIGINT/SIGTERM/SIGHUP into a synchronous finalize callback, then exits.

    ``finalize`` receives the conventional exit code (128 + signum) and must not
    await anything; the process exits as soon as it returns.
    """

    def __init__(self, finalize: Callable[[int], None], loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.finalize = finalize
        self.loop = loop
        self.received: Optional[int] = None
        self._installed: List[int] = []

    def install(self) -> "SignalGuard":
        loop = self.loop or asyncio.get_running_loop()
        self.loop = loop
        for signum in HANDLED_SIGNALS:
            try:
                loop.add_signal_handler(signum, self.handle, signum)
                self._installed.append(signum)
            except (NotImplementedError, RuntimeError, ValueError) as exc:
                logger.debug("cannot install handler for %s: %s", signum, exc)
        return self

    def remove(self) -> None:
        if self.loop is None:
            return
        for signum in self._installed:
            self.loop.remove_signal_handler(signum)
        self._installed.clear()

    def handle(self, signum: int) -> None:
        if self.received is not None:
            # second signal while finalizing
            return
        self.received = signum
        code = signal_exit_code(signum)
        logger.debug("received signal %s, finalizing with %s", signum, code)
        try:
            self.finalize(code)
        finally:
            self.remove()
        raise SystemExit(code)

    def __enter__(self) -> "SignalGuard":
        return self.install()

    def __exit__(self, *exc) -> None:
        self.remove()
