from __future__ import annotations

import asyncio
import logging
import re
import signal
import subprocess
import time
from dataclasses import dataclass
from typing import List, Optional

import psutil

from . import users
from .errors import JanitorError

logger = logging.getLogger(__name__)

PROCESS = "process"
SCREEN = "screen"
TMUX = "tmux"
DOCKER = "docker"
USER = "user"


@dataclass(frozen=True)
class ShutdownPolicy:
    sigterm_timeout_s: float = 2.0
    sigkill_timeout_s: float = 2.0
    poll_interval_s: float = 0.1


@dataclass(frozen=True)
class Resource:
    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind} {self.name}"


def _is_pid_gone(pid: int) -> bool:
    try:
        proc = psutil.Process(pid)
        return proc.status() == psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return not psutil.pid_exists(pid)


def _wait_pid_exit(pid: int, *, timeout_s: float, poll_interval_s: float) -> bool:
    start = time.time()
    while time.time() - start < timeout_s:
        if _is_pid_gone(pid):
            return True
        time.sleep(poll_interval_s)
    return _is_pid_gone(pid)


def terminate_process(pid: int, policy: Optional[ShutdownPolicy] = None) -> bool:
    """SIGTERM, wait, then SIGKILL. Returns True if it exited without SIGKILL."""
    policy = policy or ShutdownPolicy()
    try:
        psutil.Process(pid).send_signal(signal.SIGTERM)
    except psutil.NoSuchProcess:
        return True
    except psutil.AccessDenied as exc:
        raise JanitorError(f"process {pid}", str(exc)) from exc

    if _wait_pid_exit(pid, timeout_s=policy.sigterm_timeout_s, poll_interval_s=policy.poll_interval_s):
        return True

    logger.debug("pid %s ignored SIGTERM, sending SIGKILL", pid)
    try:
        psutil.Process(pid).kill()
    except psutil.NoSuchProcess:
        return True
    _wait_pid_exit(pid, timeout_s=policy.sigkill_timeout_s, poll_interval_s=policy.poll_interval_s)
    return False


def _run(argv: List[str], timeout: float) -> subprocess.CompletedProcess:
    return subprocess.run(argv, stdin=subprocess.DEVNULL, capture_output=True, text=True, timeout=timeout)


def screen_session_exists(name: str, timeout: float = 5.0) -> bool:
    try:
        result = _run(["screen", "-ls"], timeout)
    except (OSError, subprocess.TimeoutExpired):
        return False
    # "screen -ls" exits 1 when there are no sessions; only the listing matters.
    pattern = re.compile(rf"\d+\.{re.escape(name)}\s")
    return bool(pattern.search(result.stdout or ""))


def tmux_session_exists(name: str, timeout: float = 5.0) -> bool:
    try:
        return _run(["tmux", "has-session", "-t", f"={name}"], timeout).returncode == 0
    except (OSError, subprocess.TimeoutExpired):
        return False


def docker_container_exists(name: str, timeout: float = 5.0) -> bool:
    try:
        return _run(["docker", "container", "inspect", name], timeout).returncode == 0
    except (OSError, subprocess.TimeoutExpired):
        return False


class Janitor:
    """Tracks the resources this invocation owns and tears them down.

    Resources handed to the user (keep-alive, detached runs, kept users) are
    simply never registered.
    """

    def __init__(self, *, timeout: float = 5.0, policy: Optional[ShutdownPolicy] = None) -> None:
        self.timeout = timeout
        self.policy = policy or ShutdownPolicy()
        self._owned: List[Resource] = []

    @property
    def owned(self) -> List[Resource]:
        return list(self._owned)

    def own(self, kind: str, name: str) -> Resource:
        resource = Resource(kind, str(name))
        if resource not in self._owned:
            self._owned.append(resource)
        return resource

    def release(self, resource: Resource) -> None:
        if resource in self._owned:
            self._owned.remove(resource)

    def teardown(self, resource: Resource) -> None:
        logger.debug("teardown %s", resource)
        if resource.kind == PROCESS:
            terminate_process(int(resource.name), self.policy)
        elif resource.kind == SCREEN:
            if screen_session_exists(resource.name, self.timeout):
                self._check(resource, ["screen", "-S", resource.name, "-X", "quit"])
        elif resource.kind == TMUX:
            if tmux_session_exists(resource.name, self.timeout):
                self._check(resource, ["tmux", "kill-session", "-t", f"={resource.name}"])
        elif resource.kind == DOCKER:
            if docker_container_exists(resource.name, self.timeout):
                self._check(resource, ["docker", "rm", "-f", resource.name])
        elif resource.kind == USER:
            users.delete_user(resource.name, timeout=self.timeout)
        else:
            raise JanitorError(str(resource), "unknown resource kind")

    def _check(self, resource: Resource, argv: List[str]) -> None:
        try:
            result = _run(argv, self.timeout)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise JanitorError(str(resource), str(exc)) from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip() or f"exit {result.returncode}"
            raise JanitorError(str(resource), detail)

    def teardown_all(self) -> List[JanitorError]:
        """Tear down owned resources newest-first; errors are collected, not raised."""
        errors: List[JanitorError] = []
        while self._owned:
            resource = self._owned.pop()
            try:
                self.teardown(resource)
            except JanitorError as exc:
                errors.append(exc)
        return errors

    async def cleanup(self) -> List[JanitorError]:
        if not self._owned:
            return []
        return await asyncio.to_thread(self.teardown_all)
