from __future__ import annotations

import grp
import logging
import os
import pwd
import re
import subprocess
import time
from typing import List, Optional, Tuple

from .errors import ConfigurationError, JanitorError, LaunchError
from .isolation import random_base36, to_base36
from .probe import INSTALL_HINTS

logger = logging.getLogger(__name__)

_USERNAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
MAX_USERNAME_LENGTH = 32

# Groups worth reporting when they are inherited by the isolated user.
IMPORTANT_GROUPS = ("sudo", "docker", "wheel", "admin")


def validate_username(name: str) -> str:
    if not name or len(name) > MAX_USERNAME_LENGTH or not _USERNAME_RE.match(name):
        raise ConfigurationError(
            f"Invalid username format for --isolated-user: {name!r}. "
            "Username should contain only letters, numbers, hyphens, and underscores"
        )
    return name


def generate_username(prefix: str = "start") -> str:
    return f"{prefix}-{to_base36(int(time.time() * 1000))}{random_base36(4)}"[:31]


def _run(argv: List[str], timeout: float) -> subprocess.CompletedProcess:
    return subprocess.run(argv, stdin=subprocess.DEVNULL, capture_output=True, text=True, timeout=timeout)


def has_sudo_access(timeout: float = 5.0) -> bool:
    try:
        return _run(["sudo", "-n", "true"], timeout).returncode == 0
    except (OSError, subprocess.TimeoutExpired):
        return False


def user_exists(name: str) -> bool:
    try:
        pwd.getpwnam(name)
    except KeyError:
        return False
    return True


def current_groups() -> List[str]:
    names = []
    for gid in os.getgroups():
        try:
            names.append(grp.getgrgid(gid).gr_name)
        except KeyError:
            continue
    return sorted(set(names))


def create_isolated_user(name: Optional[str] = None, *, timeout: float = 5.0) -> Tuple[str, bool]:
    """Create a throwaway login user that shares the caller's groups.

    Needs passwordless sudo. Returns ``(username, created)``; ``created`` is
    False when the account already existed, so the caller must not delete it.
    """
    username = validate_username(name) if name else generate_username()
    if not has_sudo_access(timeout):
        raise LaunchError("--isolated-user requires passwordless sudo access. " + INSTALL_HINTS["sudo"])
    if user_exists(username):
        logger.debug('user "%s" already exists, reusing it', username)
        return username, False

    groups = current_groups()
    inherited = [g for g in IMPORTANT_GROUPS if g in groups]
    argv = ["sudo", "-n", "useradd", "-m", "-s", "/bin/bash"]
    if groups:
        argv += ["-G", ",".join(groups)]
    argv.append(username)
    logger.debug("creating user: %s (important groups: %s)", " ".join(argv), ", ".join(inherited) or "none")

    try:
        result = _run(argv, timeout)
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise LaunchError(f"Failed to create user {username}: {exc}") from exc
    if result.returncode != 0:
        raise LaunchError(f"Failed to create user {username}: {result.stderr.strip() or 'Unknown error'}")
    return username, True


def delete_user(name: str, *, timeout: float = 5.0) -> None:
    if not user_exists(name):
        return
    try:
        result = _run(["sudo", "-n", "userdel", "-r", name], timeout)
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise JanitorError(f"user {name}", str(exc)) from exc
    if result.returncode != 0:
        raise JanitorError(f"user {name}", result.stderr.strip() or f"userdel exited {result.returncode}")
