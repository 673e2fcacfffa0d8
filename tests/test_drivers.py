"""Tests for the backend drivers.

Argument vectors are checked directly; the run paths use small shell scripts
standing in for screen, tmux, docker and ssh so they work without the real tools.
"""

from __future__ import annotations

import shlex
import shutil
from pathlib import Path
from typing import Optional

import pytest

from nested_shells import (
    Backend,
    CapabilityProbe,
    CommandSpec,
    ConfigurationError,
    Janitor,
    Level,
    Mode,
    OutputSink,
    ToolUnavailableError,
    WrapperConfig,
)
from nested_shells.drivers import DockerDriver, RunContext, ScreenDriver, SshDriver, TmuxDriver, default_container_image
from nested_shells.drivers.container import container_command
from nested_shells.drivers.multiplexer import MultiplexerDriver
from nested_shells.drivers.remote import detached_remote_command, remote_command
from nested_shells.janitor import SCREEN
from nested_shells.probe import FEATURES, SemVer, ToolInfo


def requires_tool(name: str):
    return pytest.mark.skipif(shutil.which(name) is None, reason=f"{name} is not installed")


QUOTED = """printf '%s\\n' "it's | piped" | tr a-z A-Z; exit 3"""

# Stand-in for screen: runs the session command in the foreground, logging
# to the -Logfile path when one is given.
FAKE_SCREEN = """
case "$1" in
  --version) echo "$SCREEN_VERSION"; exit 1;;
  -ls) echo "No Sockets found in /tmp/screens."; exit 1;;
  -S) exit 0;;
  -dmS) shift 2;;
esac
if [ "$1" = "-L" ]; then
  log=$3; shift 3; "$@" > "$log" 2>&1
else
  "$@" > /dev/null 2>&1
fi
"""

FAKE_TMUX = """
case "$1" in
  -V) echo "$TMUX_VERSION"; exit 0;;
  has-session|kill-session) exit 1;;
  new-session) shift 4;;
esac
if [ $# -eq 1 ]; then
  /bin/sh -c "$1" > /dev/null 2>&1
else
  "$@" > /dev/null 2>&1
fi
"""

# Stand-in for ssh: the last argument is the remote command string.
FAKE_SSH = """
if [ "$1" = "-V" ]; then echo "OpenSSH_9.6p1, OpenSSL 3.0.13" >&2; exit 0; fi
while [ $# -gt 1 ]; do shift; done
exec /bin/sh -c "$1"
"""


def context_for(config: WrapperConfig, janitor: Janitor, **kwargs) -> RunContext:
    kwargs.setdefault("sink", OutputSink(echo=False))
    return RunContext(config=config, janitor=janitor, probe=CapabilityProbe(), **kwargs)


def tool(name: str, version: Optional[SemVer] = None) -> ToolInfo:
    return ToolInfo(name, True, version, features=FEATURES.get(name, {}))


class TestMultiplexerContract:
    def test_subclass_must_define_session_hooks(self) -> None:
        class HalfDone(MultiplexerDriver):
            def reattach_hint(self, name: str) -> str:
                return name

        with pytest.raises(TypeError, match="creation_argv"):
            HalfDone()

    def test_concrete_multiplexers_instantiate(self) -> None:
        assert ScreenDriver().tool == "screen"
        assert TmuxDriver().tool == "tmux"


class TestScreenArgv:
    def test_native_logfile_flags(self) -> None:
        argv = ScreenDriver().creation_argv("s1", ["sh", "-c", "x"], tool("screen", SemVer(4, 9, 1)), Path("/tmp/s1.log"))
        assert argv == ["screen", "-dmS", "s1", "-L", "-Logfile", "/tmp/s1.log", "sh", "-c", "x"]

    def test_without_log_path(self) -> None:
        argv = ScreenDriver().creation_argv("s1", ["true"], tool("screen"), None)
        assert argv == ["screen", "-dmS", "s1", "true"]

    def test_native_log_depends_on_version_and_keep_alive(self) -> None:
        driver = ScreenDriver()
        assert driver.uses_native_log(tool("screen", SemVer(4, 9, 1)), RunContext())
        assert not driver.uses_native_log(tool("screen", SemVer(4, 0, 3)), RunContext())
        assert not driver.uses_native_log(tool("screen", SemVer(4, 9, 1)), RunContext(keep_alive=True))


class TestTmuxArgv:
    def test_modern_tmux_takes_argv(self) -> None:
        argv = TmuxDriver().creation_argv("t1", ["sh", "-c", "echo 'a b'"], tool("tmux", SemVer(3, 4)), None)
        assert argv == ["tmux", "new-session", "-d", "-s", "t1", "sh", "-c", "echo 'a b'"]

    def test_old_tmux_gets_one_quoted_string(self) -> None:
        inner = ["sh", "-c", "echo 'a b'"]
        argv = TmuxDriver().creation_argv("t1", inner, tool("tmux", SemVer(2, 8)), None)
        assert argv[:5] == ["tmux", "new-session", "-d", "-s", "t1"]
        assert len(argv) == 6
        assert shlex.split(argv[5]) == inner


class TestScreenRun:
    @pytest.mark.parametrize("version", ["Screen version 4.09.01 (GNU) 20-Aug-23", "Screen version 4.00.03 (FAU) 23-Oct-06"])
    async def test_attached_output_and_exit_code(self, shadow_bin, monkeypatch, config, janitor, version) -> None:
        """Native logging and the tee fallback both deliver output and the real exit code."""
        monkeypatch.setenv("SCREEN_VERSION", version)
        shadow_bin("screen", FAKE_SCREEN)
        context = context_for(config, janitor)

        result = await ScreenDriver().run(CommandSpec.shell(QUOTED), Level(Backend.SCREEN, session="s-test"), context)

        assert result.exit_code == 3
        assert not result.success
        assert result.handle == "s-test"
        assert "IT'S | PIPED" in result.output
        assert [(r.kind, r.name) for r in janitor.owned] == [(SCREEN, "s-test")]

    async def test_keep_alive_session_is_not_owned(self, shadow_bin, monkeypatch, config, janitor, capsys) -> None:
        monkeypatch.setenv("SCREEN_VERSION", "Screen version 4.09.01 (GNU) 20-Aug-23")
        shadow_bin("screen", FAKE_SCREEN)
        context = context_for(config, janitor, keep_alive=True)

        result = await ScreenDriver().run(CommandSpec.shell("echo kept"), Level(Backend.SCREEN, session="s-kept"), context)

        assert "kept" in result.output
        assert janitor.owned == []
        assert "screen -r s-kept" in capsys.readouterr().out

    async def test_detached_prints_reattach_hint(self, shadow_bin, monkeypatch, config, janitor, capsys) -> None:
        monkeypatch.setenv("SCREEN_VERSION", "Screen version 4.09.01 (GNU) 20-Aug-23")
        shadow_bin("screen", FAKE_SCREEN)
        context = context_for(config, janitor, mode=Mode.DETACHED)

        result = await ScreenDriver().run(CommandSpec.shell("true"), Level(Backend.SCREEN, session="s-bg"), context)

        assert result.success
        assert result.handle == "s-bg"
        out = capsys.readouterr().out
        assert "detached screen session: s-bg" in out
        assert "screen -r s-bg" in out

    async def test_launch_failure_is_reported(self, shadow_bin, monkeypatch, config, janitor) -> None:
        monkeypatch.setenv("SCREEN_VERSION", "Screen version 4.09.01 (GNU) 20-Aug-23")
        shadow_bin("screen", 'case "$1" in --version) echo "$SCREEN_VERSION";; -ls) exit 1;; *) echo "Cannot make directory" >&2; exit 1;; esac')
        context = context_for(config, janitor)

        result = await ScreenDriver().run(CommandSpec.shell("true"), Level(Backend.SCREEN, session="s-fail"), context)

        assert not result.success
        assert result.exit_code == 1
        assert "Cannot make directory" in result.message
        assert janitor.owned == []


class TestTmuxRun:
    @pytest.mark.parametrize("version", ["tmux 3.4", "tmux 2.8"])
    async def test_attached_output_and_exit_code(self, shadow_bin, monkeypatch, config, janitor, version) -> None:
        monkeypatch.setenv("TMUX_VERSION", version)
        shadow_bin("tmux", FAKE_TMUX)
        context = context_for(config, janitor)

        result = await TmuxDriver().run(CommandSpec.shell(QUOTED), Level(Backend.TMUX, session="t-test"), context)

        assert result.exit_code == 3
        assert "IT'S | PIPED" in result.output


class TestRealMultiplexers:
    @requires_tool("screen")
    async def test_screen(self, config, janitor) -> None:
        context = context_for(config, janitor)
        result = await ScreenDriver().run(CommandSpec.shell(QUOTED), Level(Backend.SCREEN), context)
        assert result.exit_code == 3
        assert "IT'S | PIPED" in result.output
        assert await janitor.cleanup() == []

    @requires_tool("tmux")
    async def test_tmux(self, config, janitor) -> None:
        context = context_for(config, janitor)
        result = await TmuxDriver().run(CommandSpec.shell(QUOTED), Level(Backend.TMUX), context)
        assert result.exit_code == 3
        assert "IT'S | PIPED" in result.output
        assert await janitor.cleanup() == []


class TestDocker:
    def test_attached_argv(self) -> None:
        argv = DockerDriver().attached_argv(
            "c1", "alpine", CommandSpec.shell("echo hi"), Level(Backend.DOCKER, user="bob"), RunContext(terminal=True)
        )
        assert argv == ["docker", "run", "--name", "c1", "--rm", "-i", "-t", "--user", "bob", "alpine", "/bin/sh", "-c", "echo hi"]

    def test_attached_keep_alive_keeps_container(self) -> None:
        argv = DockerDriver().attached_argv("c1", "alpine", CommandSpec.shell("true"), Level(Backend.DOCKER), RunContext(keep_alive=True))
        assert "--rm" not in argv

    def test_detached_argv(self) -> None:
        context = RunContext(mode=Mode.DETACHED, keep_alive=True, auto_remove=True)
        argv = DockerDriver().detached_argv("c1", "alpine", CommandSpec.shell("echo hi"), Level(Backend.DOCKER), context)
        assert argv == ["docker", "run", "-d", "--name", "c1", "--rm", "-i", "-t", "alpine", "/bin/sh", "-c", "echo hi; exec /bin/sh"]

    def test_reinvocation_argv_is_passed_as_is(self) -> None:
        command = CommandSpec.vector(["nested-shells", "--isolated", "screen", "--", "echo 'a b'"])
        assert container_command(command) == list(command.argv)
        assert container_command(command, keep_alive=True) == ["/bin/sh", "-c", '"$@"; exec /bin/sh', "sh", *command.argv]

    @pytest.mark.parametrize(
        "content, expected",
        [
            ('ID=ubuntu\nVERSION_ID="24.04"\n', "ubuntu:latest"),
            ("ID=linuxmint\nID_LIKE=ubuntu\n", "ubuntu:latest"),
            ("ID=debian\n", "debian:latest"),
            ("ID=arch\n", "archlinux:latest"),
            ('ID=fedora\n', "fedora:latest"),
            ('ID="rhel"\nID_LIKE=rhel\n', "centos:latest"),
            ("ID=opensuse-tumbleweed\n", "alpine:latest"),
        ],
    )
    def test_default_image_follows_host(self, temp_dir: Path, content: str, expected: str) -> None:
        os_release = temp_dir / "os-release"
        os_release.write_text(content)
        assert default_container_image(os_release, "linux") == expected

    def test_default_image_fallbacks(self, temp_dir: Path) -> None:
        assert default_container_image(temp_dir / "missing", "linux") == "alpine:latest"
        os_release = temp_dir / "os-release"
        os_release.write_text("ID=ubuntu\n")
        assert default_container_image(os_release, "darwin") == "alpine:latest"

    async def test_detached_reports_short_id(self, shadow_bin, config, janitor, capsys) -> None:
        shadow_bin("docker", 'if [ "$1" = "--version" ]; then echo "Docker version 24.0.7"; exit 0; fi\necho 0123456789abcdef0123')
        context = context_for(config, janitor, mode=Mode.DETACHED)

        result = await DockerDriver().run(CommandSpec.shell("true"), Level(Backend.DOCKER, session="c-bg", image="alpine"), context)

        assert result.success
        assert result.handle == "c-bg"
        assert "c-bg (0123456789ab)" in capsys.readouterr().out

    async def test_detached_failure(self, shadow_bin, config, janitor) -> None:
        shadow_bin("docker", """
case "$1" in
  --version) echo "Docker version 24.0.7";;
  container) exit 1;;
  *) echo "Unable to find image 'nope:latest' locally" >&2; exit 125;;
esac
""")
        context = context_for(config, janitor, mode=Mode.DETACHED)

        result = await DockerDriver().run(CommandSpec.shell("true"), Level(Backend.DOCKER, session="c-x", image="nope"), context)

        assert not result.success
        assert "Unable to find image" in result.message

    async def test_missing_docker(self, fake_bin, config, janitor) -> None:
        with pytest.raises(ToolUnavailableError, match="docker"):
            await DockerDriver().run(CommandSpec.shell("true"), Level(Backend.DOCKER), context_for(config, janitor))


class TestSsh:
    def test_remote_command_plain(self) -> None:
        assert remote_command(CommandSpec.shell("echo 'hi'")) == "echo 'hi'"

    def test_remote_command_with_user(self) -> None:
        text = "echo \"it's\" | cat"
        wrapped = remote_command(CommandSpec.shell(text), "bob")
        assert shlex.split(wrapped) == ["sudo", "-n", "-u", "bob", "sh", "-c", text]

    def test_reinvocation_survives_remote_shell(self) -> None:
        argv = ["nested-shells", "--isolated", "docker", "--image", "alpine", "--", "echo 'a | b'"]
        assert shlex.split(remote_command(CommandSpec.vector(argv))) == argv

    def test_detached_remote_command(self) -> None:
        line = detached_remote_command(CommandSpec.shell("make"), "ssh-1")
        assert line.startswith("nohup sh -c ")
        assert line.endswith("> /tmp/ssh-1.log 2>&1 &")

    def test_attached_argv(self) -> None:
        argv = SshDriver().attached_argv("me@host", CommandSpec.shell("ls"), Level(Backend.SSH), RunContext(terminal=True))
        assert argv == ["ssh", "-t", "me@host", "ls"]

    async def test_endpoint_required(self) -> None:
        with pytest.raises(ConfigurationError, match="--endpoint"):
            await SshDriver().run(CommandSpec.shell("true"), Level(Backend.SSH), RunContext())

    async def test_attached_run(self, shadow_bin, config, janitor) -> None:
        shadow_bin("ssh", FAKE_SSH)
        context = context_for(config, janitor)

        result = await SshDriver().run(CommandSpec.shell(QUOTED), Level(Backend.SSH, endpoint="me@host"), context)

        assert result.exit_code == 3
        assert result.handle == "me@host"
        assert "IT'S | PIPED" in result.output
