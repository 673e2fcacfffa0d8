from __future__ import annotations

import asyncio
import inspect
import logging
import os
import sys
import uuid as uuid_mod
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from . import users
from .composer import StackComposer
from .config import WrapperConfig
from .controller import Mode, resolve_mode, terminal_available
from .drivers import Driver, RunContext
from .errors import ConfigurationError, LaunchError, ToolUnavailableError, TrackingError
from .hooks import WrapperHooks
from .isolation import APPLICABLE, Backend, IsolationSpec, generate_session_name
from .janitor import USER, Janitor, ShutdownPolicy
from .logfile import LogArtifact, LogHeader
from .probe import CapabilityProbe
from .reconcile import OutputSink
from .record import ExecutionRecord
from .signals import SignalGuard
from .tracker import ExecutionTracker

logger = logging.getLogger(__name__)


@dataclass
class RunRequest:
    """One wrapper invocation as the CLI understood it."""

    command: str
    isolated: Optional[str] = None
    attached: bool = False
    detached: bool = False
    session: Sequence[str] = ()
    image: Sequence[str] = ()
    endpoint: Sequence[str] = ()
    session_id: Optional[str] = None
    isolated_user: bool = False
    user_name: Optional[str] = None
    keep_user: bool = False
    keep_alive: bool = False
    auto_remove: bool = False


@dataclass
class Plan:
    command: str
    spec: IsolationSpec
    mode: Mode
    user: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)


def validate_request(req: RunRequest) -> None:
    """Cross-option checks that do not depend on the parsed stack."""
    if not req.command.strip():
        raise ConfigurationError("No command provided")
    if req.keep_alive and not req.isolated:
        raise ConfigurationError("--keep-alive option requires --isolated")
    if req.session and not req.isolated:
        raise ConfigurationError("--session option requires --isolated")
    if req.keep_user and not req.isolated_user:
        raise ConfigurationError("--keep-user option requires --isolated-user")
    if req.user_name:
        users.validate_username(req.user_name)
    if req.session_id:
        try:
            uuid_mod.UUID(req.session_id)
        except ValueError:
            raise ConfigurationError(f"--session-id must be a valid UUID, got {req.session_id!r}") from None


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class CommandRunner:
    """Drives one invocation from parsed request to exit code."""

    def __init__(
        self,
        config: WrapperConfig,
        *,
        tracker: Optional[ExecutionTracker] = None,
        probe: Optional[CapabilityProbe] = None,
        drivers: Optional[Dict[Backend, Driver]] = None,
        hooks: Optional[WrapperHooks] = None,
        janitor: Optional[Janitor] = None,
        echo: bool = True,
        install_signals: bool = True,
    ) -> None:
        self.config = config
        self.tracker = tracker if tracker is not None else ExecutionTracker.from_config(config)
        self.probe = probe or CapabilityProbe(timeout=config.probe_timeout)
        self.composer = StackComposer(config, drivers)
        self.hooks = hooks or WrapperHooks()
        self.janitor = janitor or Janitor(timeout=config.probe_timeout, policy=ShutdownPolicy())
        self.echo = echo
        self.install_signals = install_signals

    async def rewrite(self, command: str) -> str:
        if self.hooks.rewrite is None:
            return command
        rewritten = await _maybe_await(self.hooks.rewrite(command))
        if rewritten and rewritten != command:
            print(f'[Substitution] "{command}" -> "{rewritten}"')
            print("")
            return str(rewritten)
        return command

    def plan(self, req: RunRequest, command: str) -> Plan:
        """Resolve everything that can fail as a configuration error. Spawns nothing."""
        validate_request(replace(req, command=command))
        mode = resolve_mode(req.attached, req.detached)

        user = None
        if req.isolated_user:
            user = req.user_name or users.generate_username()

        spec = IsolationSpec.build(
            req.isolated,
            image=list(req.image),
            endpoint=list(req.endpoint),
            session=list(req.session),
            user=user,
        )
        if req.auto_remove and not spec.contains(Backend.DOCKER):
            raise ConfigurationError("--auto-remove-docker-container option requires docker in --isolated")
        if user and spec.head.backend is Backend.DOCKER:
            raise ConfigurationError(
                "--isolated-user is not supported with docker as the first isolation level; "
                "docker runs its own user namespace"
            )

        head = spec.head
        if head.session is None and head.backend in APPLICABLE["session"]:
            spec = IsolationSpec(levels=(replace(head, session=generate_session_name(head.backend.value)),) + spec.levels[1:])

        options: Dict[str, Any] = {
            "isolated": spec.isolated_arg() if spec.is_isolated else None,
            "chain": spec.format_chain() if spec.depth > 1 else None,
            "mode": mode.value,
            "session": spec.head.session,
            "image": spec.head.image,
            "endpoint": spec.head.endpoint,
            "user": user,
            "keep_alive": req.keep_alive or None,
            "keep_user": req.keep_user or None,
            "auto_remove_docker_container": req.auto_remove or None,
        }
        return Plan(
            command=command,
            spec=spec,
            mode=mode,
            user=user,
            options={k: v for k, v in options.items() if v is not None},
        )

    async def run(self, req: RunRequest) -> int:
        command = await self.rewrite(req.command)
        plan = self.plan(req, command)
        spec = plan.spec

        environment = spec.isolated_arg().replace(" ", "-") if spec.is_isolated else "direct"
        artifact = LogArtifact.create(self.config.log_dir, environment)
        record = ExecutionRecord(
            command=command,
            uuid=req.session_id or str(uuid_mod.uuid4()),
            pid=os.getpid(),
            log_path=str(artifact.path),
            options=dict(plan.options),
        )
        await self._track(self.tracker.open())
        await self._track(self.tracker.create(record))

        guard = SignalGuard(lambda code: self.finalize_on_signal(record, artifact, code))
        if self.install_signals:
            guard.install()
        exit_code = 1
        try:
            exit_code = await self._execute(plan, record, artifact, req)
        finally:
            guard.remove()
            # After a signal the record was already finalized with 128+signum.
            if guard.received is None:
                await self._complete(record, artifact, exit_code)

        print("")
        print(f"[{record.end_time}] Finished")
        print(f"Exit code: {exit_code}")
        print(f"Log saved: {artifact.path}")

        if exit_code != 0:
            await self.report_failure(command, exit_code, str(artifact.path))

        print("")
        print(record.uuid)
        return exit_code

    async def _complete(self, record: ExecutionRecord, artifact: LogArtifact, exit_code: int) -> None:
        """Close out the record, the log and every owned resource, even if execution raised."""
        record.complete(exit_code)
        try:
            await artifact.close(exit_code)
        finally:
            await self._track(self.tracker.save(record))
            await self._track(self.tracker.close())
            for error in await self.janitor.cleanup():
                logger.warning("%s", error)

    async def _execute(self, plan: Plan, record: ExecutionRecord, artifact: LogArtifact, req: RunRequest) -> int:
        spec = plan.spec
        print(record.uuid)
        print("")
        try:
            await artifact.open(LogHeader(
                execution_id=record.uuid,
                command=plan.command,
                environment=spec.format_chain() if spec.is_isolated else "direct",
                mode=plan.mode.value,
                session=spec.head.session,
                image=spec.head.image,
                user=plan.user,
                shell=record.shell,
                working_directory=record.working_directory,
                timestamp=record.start_time,
            ))

            if plan.user:
                await self._create_user(plan.user, req.keep_user)

            print(f"[{record.start_time}] Starting: {plan.command}")
            print("")
            if spec.is_isolated:
                print(f"[Isolation] Environment: {spec.format_chain()}, Mode: {plan.mode.value}")
                if spec.head.session:
                    print(f"[Isolation] Session: {spec.head.session}")
                if spec.head.image:
                    print(f"[Isolation] Image: {spec.head.image}")
                if spec.head.endpoint:
                    print(f"[Isolation] Endpoint: {spec.head.endpoint}")
                if plan.user:
                    print(f"[Isolation] User: {plan.user} (isolated)")
                print("")
            sys.stdout.flush()

            context = RunContext(
                mode=plan.mode,
                keep_alive=req.keep_alive,
                auto_remove=req.auto_remove,
                sink=OutputSink(artifact, echo=self.echo),
                config=self.config,
                probe=self.probe,
                janitor=self.janitor,
                terminal=terminal_available(),
                on_spawn=lambda pid: self._on_spawn(record, pid),
            )
            result = await self.composer.run(spec, plan.command, context)
        except (ToolUnavailableError, LaunchError) as exc:
            print(f"Error: {exc}", file=sys.stderr)
            await artifact.append(f"Error: {exc}\n".encode("utf-8"))
            return 1

        if result.handle:
            record.options.setdefault("handle", result.handle)
        if not result.success and plan.mode is Mode.DETACHED:
            print(result.message, file=sys.stderr)
        elif result.message:
            logger.debug("%s", result.message)
        return result.exit_code

    async def _create_user(self, name: str, keep_user: bool) -> None:
        print("[User Isolation] Creating new user with same permissions...")
        username, created = await asyncio.to_thread(
            users.create_isolated_user, name, timeout=self.config.probe_timeout
        )
        if not created:
            print(f"[User Isolation] Using existing user: {username} (it will not be removed)")
        else:
            print(f"[User Isolation] Created user: {username}")
            if keep_user:
                print("[User Isolation] User will be kept after command completes")
            else:
                self.janitor.own(USER, username)
        print("")

    def _on_spawn(self, record: ExecutionRecord, pid: int) -> None:
        record.pid = pid
        try:
            self.tracker.save_sync(record)
        except TrackingError as exc:
            logger.warning("Execution tracking: %s", exc)

    async def _track(self, awaitable: Any) -> Any:
        try:
            return await awaitable
        except TrackingError as exc:
            logger.warning("Execution tracking: %s", exc)
            return None

    async def report_failure(self, command: str, exit_code: int, log_path: str) -> None:
        if self.hooks.report_failure is None or self.config.disable_auto_issue:
            return
        try:
            await _maybe_await(self.hooks.report_failure(command, exit_code, log_path))
        except Exception as exc:
            logger.warning("Failure reporting failed: %s", exc)

    def finalize_on_signal(self, record: ExecutionRecord, artifact: LogArtifact, code: int) -> None:
        """Same transition as normal completion, done synchronously before exit."""
        record.complete(code)
        try:
            self.tracker.save_sync(record)
        except TrackingError as exc:
            logger.warning("Execution tracking: %s", exc)
        errors: List[Exception] = list(self.janitor.teardown_all())
        artifact.write_footer_sync(code)
        print("")
        print(f"[{record.end_time}] Interrupted")
        print(f"Exit code: {code}")
        print(f"Log saved: {artifact.path}")
        for error in errors:
            logger.warning("%s", error)
        print("")
        print(record.uuid)
        sys.stdout.flush()
