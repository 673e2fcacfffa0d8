"""Pytest configuration and fixtures for nested-shells tests."""

from __future__ import annotations

import os
import stat
import sys
import tempfile
from pathlib import Path
from typing import AsyncGenerator, Callable, Generator

import pytest
import pytest_asyncio

from nested_shells import CommandRunner, ExecutionTracker, WrapperConfig
from nested_shells.janitor import Janitor, ShutdownPolicy

REPO_ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory(prefix="nested_shells_test_") as tmp:
        yield Path(tmp)


@pytest.fixture(autouse=True)
def plain_shell(monkeypatch: pytest.MonkeyPatch) -> None:
    """Run user commands through /bin/sh regardless of the developer's $SHELL."""
    monkeypatch.setenv("SHELL", "/bin/sh")


@pytest.fixture
def config(temp_dir: Path) -> WrapperConfig:
    cfg = WrapperConfig(
        app_folder=temp_dir / "app",
        log_dir=temp_dir / "logs",
        self_command=[sys.executable, "-m", "nested_shells"],
        poll_interval=0.05,
        probe_timeout=5.0,
        lock_timeout=5.0,
    )
    cfg.ensure_log_dir()
    return cfg


@pytest_asyncio.fixture
async def tracker(config: WrapperConfig) -> AsyncGenerator[ExecutionTracker, None]:
    tracker = ExecutionTracker.from_config(config)
    async with tracker:
        yield tracker


@pytest.fixture
def janitor() -> Janitor:
    return Janitor(timeout=5.0, policy=ShutdownPolicy(sigterm_timeout_s=1.0, sigkill_timeout_s=1.0, poll_interval_s=0.05))


@pytest.fixture
def make_runner(config: WrapperConfig, tracker: ExecutionTracker, janitor: Janitor) -> Callable[..., CommandRunner]:
    def factory(**kwargs) -> CommandRunner:
        kwargs.setdefault("tracker", tracker)
        kwargs.setdefault("janitor", janitor)
        kwargs.setdefault("echo", False)
        kwargs.setdefault("install_signals", False)
        return CommandRunner(config, **kwargs)

    return factory


def _script_installer(bin_dir: Path) -> Callable[[str, str], Path]:
    def install(name: str, script: str) -> Path:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + script + "\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return install


@pytest.fixture
def fake_bin(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Callable[[str, str], Path]:
    """Install fake executables in a directory that is the only entry on PATH."""
    bin_dir = temp_dir / "bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", str(bin_dir))
    return _script_installer(bin_dir)


@pytest.fixture
def shadow_bin(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Callable[[str, str], Path]:
    """Install fake executables ahead of the real PATH, so coreutils stay available."""
    bin_dir = temp_dir / "shadow"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", os.pathsep.join(filter(None, [str(bin_dir), os.environ.get("PATH")])))
    return _script_installer(bin_dir)


@pytest.fixture
def wrapper_env(config: WrapperConfig) -> dict:
    """Environment for running the wrapper as a subprocess against the test store."""
    env = dict(os.environ)
    env["NESTED_SHELLS_APP_FOLDER"] = str(config.app_folder)
    env["NESTED_SHELLS_LOG_DIR"] = str(config.log_dir)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT), env.get("PYTHONPATH")]))
    env["SHELL"] = "/bin/sh"
    return env
