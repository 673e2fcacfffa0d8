"""Installed-tool detection.

Everything the drivers need to know about a tool's version lives here, so that
driver code reads as ``if info.supports("native_logfile")`` instead of parsing
version strings inline.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Tuple

from .errors import ToolUnavailableError

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"(\d+)\.(\d+)(?:\.(\d+))?")

VERSION_FLAGS: Dict[str, List[str]] = {
    "screen": ["--version"],
    "tmux": ["-V"],
    "docker": ["--version"],
    "ssh": ["-V"],
}

# feature -> minimum version that has it
FEATURES: Dict[str, Dict[str, Tuple[int, int, int]]] = {
    "screen": {"native_logfile": (4, 5, 1)},
    "tmux": {"argv_command": (3, 0, 0)},
}

INSTALL_HINTS: Dict[str, str] = {
    "screen": "Install it with: sudo apt-get install screen (Debian/Ubuntu) or brew install screen (macOS)",
    "tmux": "Install it with: sudo apt-get install tmux (Debian/Ubuntu) or brew install tmux (macOS)",
    "docker": "Install Docker from https://docs.docker.com/get-docker/",
    "ssh": "Install it with: sudo apt-get install openssh-client (Debian/Ubuntu)",
    "sudo": "Install sudo and configure passwordless access for this user",
}


class SemVer(NamedTuple):
    major: int
    minor: int
    patch: int = 0

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def parse_version(text: str) -> Optional[SemVer]:
    # "4.09.01" -> 4.9.1, "tmux 3.3a" -> 3.3.0, "OpenSSH_9.6p1" -> 9.6.0
    match = _VERSION_RE.search(text or "")
    if not match:
        return None
    major, minor, patch = match.groups()
    return SemVer(int(major), int(minor), int(patch or 0))


@dataclass(frozen=True)
class ToolInfo:
    name: str
    installed: bool
    version: Optional[SemVer] = None
    version_text: Optional[str] = None
    features: Dict[str, Tuple[int, int, int]] = field(default_factory=dict)

    def supports(self, feature: str) -> bool:
        """True when the installed version meets the feature's minimum.

        Unknown versions and unknown features are treated as unsupported.
        """
        minimum = self.features.get(feature)
        if not self.installed or self.version is None or minimum is None:
            return False
        return tuple(self.version) >= tuple(minimum)


class CapabilityProbe:
    """Caches one ``ToolInfo`` per tool for the lifetime of the probe."""

    def __init__(self, *, timeout: float = 5.0) -> None:
        self.timeout = timeout
        self._cache: Dict[str, ToolInfo] = {}

    def which(self, tool: str) -> Optional[str]:
        return shutil.which(tool)

    def probe(self, tool: str) -> ToolInfo:
        cached = self._cache.get(tool)
        if cached is not None:
            return cached
        info = self._probe(tool)
        self._cache[tool] = info
        return info

    def _probe(self, tool: str) -> ToolInfo:
        features = FEATURES.get(tool, {})
        path = self.which(tool)
        if not path:
            logger.debug("probe %s: not installed", tool)
            return ToolInfo(name=tool, installed=False, features=features)

        flags = VERSION_FLAGS.get(tool, ["--version"])
        # Exit status is ignored on purpose: several tools print their version
        # to stderr and exit non-zero (ssh -V, old screen builds).
        try:
            proc = subprocess.run(
                [path, *flags],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=self.timeout,
            )
            combined = (proc.stdout or b"") + (proc.stderr or b"")
        except subprocess.TimeoutExpired as exc:
            logger.debug("probe %s: timed out after %ss", tool, self.timeout)
            combined = (exc.stdout or b"") + (exc.stderr or b"")
        except OSError as exc:
            logger.debug("probe %s: %s", tool, exc)
            combined = b""

        text = combined.decode("utf-8", errors="replace").strip()
        first_line = text.splitlines()[0].strip() if text else None
        version = parse_version(first_line or "")
        logger.debug("probe %s: %r -> %s", tool, first_line, version)
        return ToolInfo(
            name=tool,
            installed=True,
            version=version,
            version_text=first_line,
            features=features,
        )

    def supports(self, tool: str, feature: str) -> bool:
        return self.probe(tool).supports(feature)

    def require(self, tool: str) -> ToolInfo:
        info = self.probe(tool)
        if not info.installed:
            raise ToolUnavailableError(tool, INSTALL_HINTS.get(tool))
        return info
