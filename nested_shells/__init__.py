"""Nested Shells - run commands inside stacked screen/tmux/docker/ssh isolation."""

from typing import Any, Optional

from .composer import StackComposer, RunFlags
from .config import WrapperConfig
from .controller import Mode, resolve_mode, terminal_available
from .drivers import Driver, DriverResult, RunContext, driver_registry
from .errors import (
    ConfigurationError,
    JanitorError,
    LaunchError,
    NestedShellsError,
    ToolUnavailableError,
    TrackingError,
)
from .hooks import WrapperHooks
from .isolation import Backend, CommandSpec, IsolationSpec, Level, MAX_ISOLATION_DEPTH
from .janitor import Janitor, ShutdownPolicy
from .probe import CapabilityProbe, SemVer, ToolInfo
from .reconcile import OutputSink, drain
from .record import ExecutionRecord
from .runner import CommandRunner, RunRequest
from .status import format_record, query_status
from .tracker import ExecutionStore, ExecutionTracker


async def run_command(command: str, *, config: Optional[WrapperConfig] = None, **options: Any) -> int:
    """Run ``command`` the way the CLI would and return its exit code.

    ``options`` are ``RunRequest`` fields (isolated, image, detached, ...).
    """
    config = config or WrapperConfig.from_env()
    config.ensure_log_dir()
    runner = CommandRunner(config)
    return await runner.run(RunRequest(command=command, **options))


__all__ = [
    "Backend",
    "CapabilityProbe",
    "CommandRunner",
    "CommandSpec",
    "ConfigurationError",
    "Driver",
    "DriverResult",
    "ExecutionRecord",
    "ExecutionStore",
    "ExecutionTracker",
    "IsolationSpec",
    "Janitor",
    "JanitorError",
    "LaunchError",
    "Level",
    "MAX_ISOLATION_DEPTH",
    "Mode",
    "NestedShellsError",
    "OutputSink",
    "RunContext",
    "RunFlags",
    "RunRequest",
    "SemVer",
    "ShutdownPolicy",
    "StackComposer",
    "ToolInfo",
    "ToolUnavailableError",
    "TrackingError",
    "WrapperConfig",
    "WrapperHooks",
    "drain",
    "driver_registry",
    "format_record",
    "query_status",
    "resolve_mode",
    "run_command",
    "terminal_available",
]
