"""Tests for resource teardown."""

from __future__ import annotations

import subprocess

import pytest

from nested_shells import JanitorError
from nested_shells.janitor import PROCESS, SCREEN, TMUX, Janitor, Resource, ShutdownPolicy, terminate_process

FAST = ShutdownPolicy(sigterm_timeout_s=0.5, sigkill_timeout_s=1.0, poll_interval_s=0.05)


class TestTerminateProcess:
    def test_sigterm_is_enough(self) -> None:
        proc = subprocess.Popen(["/bin/sh", "-c", "exec sleep 30"])
        try:
            assert terminate_process(proc.pid, FAST) is True
        finally:
            proc.kill()
            proc.wait()
        assert proc.returncode is not None

    def test_escalates_to_sigkill(self) -> None:
        proc = subprocess.Popen(["/bin/sh", "-c", 'trap "" TERM; while true; do sleep 0.05; done'])
        try:
            assert terminate_process(proc.pid, FAST) is False
            assert proc.wait(timeout=5) == -9
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()

    def test_gone_process(self) -> None:
        proc = subprocess.Popen(["true"])
        proc.wait()
        assert terminate_process(proc.pid, FAST) is True


class TestJanitor:
    def test_own_and_release(self, janitor: Janitor) -> None:
        res = janitor.own(SCREEN, "s1")
        assert janitor.owned == [Resource(SCREEN, "s1")]
        janitor.own(SCREEN, "s1")
        assert len(janitor.owned) == 1
        janitor.release(res)
        assert janitor.owned == []

    def test_unknown_kind(self, janitor: Janitor) -> None:
        with pytest.raises(JanitorError, match="Could not clean up"):
            janitor.teardown(Resource("volcano", "x"))

    def test_teardown_all_continues_after_errors(self, janitor: Janitor) -> None:
        proc = subprocess.Popen(["/bin/sh", "-c", "exec sleep 30"])
        try:
            janitor.own(PROCESS, str(proc.pid))
            janitor.own("volcano", "x")
            errors = janitor.teardown_all()
            assert len(errors) == 1
            assert proc.wait(timeout=5) is not None
            assert janitor.owned == []
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()

    async def test_cleanup_with_nothing_owned(self, janitor: Janitor) -> None:
        assert await janitor.cleanup() == []

    def test_missing_sessions_are_already_clean(self, janitor: Janitor, fake_bin) -> None:
        fake_bin("screen", 'echo "No Sockets found in /run/screen/S-test."; exit 1')
        fake_bin("tmux", "exit 1")
        janitor.teardown(Resource(SCREEN, "gone"))
        janitor.teardown(Resource(TMUX, "gone"))

    def test_failed_teardown_raises(self, janitor: Janitor, fake_bin) -> None:
        fake_bin(
            "screen",
            'if [ "$1" = "-ls" ]; then printf "\\t123.stuck\\t(Detached)\\n"; exit 0; fi\n'
            'echo "permission denied" >&2; exit 1',
        )
        with pytest.raises(JanitorError, match="permission denied"):
            janitor.teardown(Resource(SCREEN, "stuck"))
