"""Tests for attach/detach mode resolution."""

from __future__ import annotations

import pytest

from nested_shells import ConfigurationError, Mode, resolve_mode, terminal_available


class TestResolveMode:
    def test_default_is_attached(self) -> None:
        assert resolve_mode() is Mode.ATTACHED

    def test_explicit_modes(self) -> None:
        assert resolve_mode(attached=True) is Mode.ATTACHED
        assert resolve_mode(detached=True) is Mode.DETACHED

    def test_both_is_a_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError, match="--attached and --detached"):
            resolve_mode(attached=True, detached=True)


def test_no_terminal_under_capture(capsys) -> None:
    assert terminal_available() is False
