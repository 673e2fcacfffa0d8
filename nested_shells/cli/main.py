import argparse
import asyncio
import sys
from typing import List, Optional, Tuple

from ..config import WrapperConfig, configure_logging
from ..errors import ConfigurationError, LaunchError, NestedShellsError, ToolUnavailableError
from ..hooks import WrapperHooks
from ..runner import CommandRunner, RunRequest
from ..status import FORMATS, query_status
from ..tracker import ExecutionTracker

EXIT_CONFIG_ERROR = 2
EXIT_FAILURE = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nested-shells",
        description="Run a command directly or inside nested screen/tmux/docker/ssh isolation, with logging and tracking.",
    )
    parser.add_argument("-i", "--isolated", help='Isolation stack, e.g. "screen ssh docker"')
    parser.add_argument("-a", "--attached", action="store_true", help="Stream output and wait (default)")
    parser.add_argument("-d", "--detached", action="store_true", help="Start in the background and return")
    parser.add_argument("-s", "--session", action="append", default=[], help="Session name or per-level sequence")
    parser.add_argument("--session-id", help="UUID to record this execution under")
    parser.add_argument("--image", action="append", default=[], help="Docker image or per-level sequence")
    parser.add_argument("--endpoint", action="append", default=[], help="ssh endpoint or per-level sequence")
    parser.add_argument(
        "-u", "--isolated-user", nargs="?", const="", default=None, metavar="NAME",
        help="Run as a temporary user (generated name unless given)",
    )
    parser.add_argument("--keep-user", action="store_true", help="Do not delete the isolated user afterwards")
    parser.add_argument("-k", "--keep-alive", action="store_true", help="Keep the session/container after the command exits")
    parser.add_argument(
        "--auto-remove-docker-container", action="store_true",
        help="Remove a detached container once it exits",
    )
    parser.add_argument("--status", metavar="UUID", help="Show the record of an execution")
    parser.add_argument("--output-format", choices=FORMATS, help="Format for --status (default: yaml)")
    parser.add_argument("--cleanup", action="store_true", help="Finalize stale executing records")
    parser.add_argument("--cleanup-dry-run", action="store_true", help="List stale records without changing them")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Command to run")
    return parser


def parse_wrapper_args(argv: List[str]) -> Tuple[argparse.Namespace, str]:
    """Split wrapper options from the command; everything after ``--`` is the command."""
    if "--" in argv:
        idx = argv.index("--")
        options, command_parts = argv[:idx], argv[idx + 1:]
    else:
        options, command_parts = argv, []
    args = build_parser().parse_args(options)
    command_parts = list(args.command) + list(command_parts)
    return args, " ".join(command_parts)


def build_request(args: argparse.Namespace, command: str) -> RunRequest:
    return RunRequest(
        command=command,
        isolated=args.isolated,
        attached=args.attached,
        detached=args.detached,
        session=args.session,
        image=args.image,
        endpoint=args.endpoint,
        session_id=args.session_id,
        isolated_user=args.isolated_user is not None,
        user_name=args.isolated_user or None,
        keep_user=args.keep_user,
        keep_alive=args.keep_alive,
        auto_remove=args.auto_remove_docker_container,
    )


async def _status(config: WrapperConfig, uuid: str, fmt: Optional[str]) -> int:
    tracker = ExecutionTracker.from_config(config)
    result = await query_status(tracker, uuid, fmt)
    if not result.success:
        print(f"Error: {result.error}", file=sys.stderr)
        return EXIT_FAILURE
    print(result.output)
    return 0


async def _cleanup(config: WrapperConfig, dry_run: bool) -> int:
    tracker = ExecutionTracker.from_config(config)
    if not tracker.enabled:
        print("Error: Execution tracking is disabled.", file=sys.stderr)
        return EXIT_FAILURE
    async with tracker:
        affected = await tracker.cleanup_stale(max_age=config.stale_max_age, dry_run=dry_run)
    if not affected:
        print("No stale executions found.")
        return 0
    verb = "Would clean" if dry_run else "Cleaned"
    print(f"{verb} {len(affected)} stale execution(s):")
    for uuid in affected:
        print(f"  {uuid}")
    return 0


def run_cli(argv: Optional[List[str]] = None, *, hooks: Optional[WrapperHooks] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    args, command = parse_wrapper_args(argv)

    try:
        config = WrapperConfig.from_env(verbose=args.verbose or None)
        configure_logging(config.verbose)
        if args.output_format and not args.status:
            raise ConfigurationError("--output-format option requires --status")
        if args.status:
            return asyncio.run(_status(config, args.status, args.output_format))
        if args.cleanup or args.cleanup_dry_run:
            return asyncio.run(_cleanup(config, dry_run=args.cleanup_dry_run))
        if not command.strip():
            build_parser().print_usage(sys.stderr)
            raise ConfigurationError("No command provided")

        config.ensure_log_dir()
        runner = CommandRunner(config, hooks=hooks)
        return asyncio.run(runner.run(build_request(args, command)))
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except (ToolUnavailableError, LaunchError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    except NestedShellsError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE


def main() -> None:
    sys.exit(run_cli())


if __name__ == "__main__":
    main()
