from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging
import os
import shlex
import tempfile

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "NESTED_SHELLS_"
CONFIG_FILE = "config.yaml"

_TRUTHY = {"1", "true", "yes", "y", "on"}


def _truthy(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in _TRUTHY


def _truthy_env(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return _truthy(raw)


def _default_app_folder() -> Path:
    return Path.home() / ".nested-shells"


def _load_config_file(app_folder: Path) -> Dict[str, Any]:
    path = app_folder / CONFIG_FILE
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: expected a mapping", path)
        return {}
    return data


@dataclass(frozen=True)
class WrapperConfig:
    """Resolved wrapper settings.

    Precedence: explicit keyword > NESTED_SHELLS_* environment variable >
    ``config.yaml`` in the app folder > default.
    """

    app_folder: Path = field(default_factory=_default_app_folder)
    log_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    verbose: bool = False
    disable_tracking: bool = False
    disable_auto_issue: bool = False
    self_command: List[str] = field(default_factory=lambda: ["nested-shells"])
    poll_interval: float = 0.1
    probe_timeout: float = 5.0
    stale_max_age: float = 24 * 60 * 60
    lock_timeout: float = 30.0

    @property
    def store_path(self) -> Path:
        return self.app_folder / "executions.yaml"

    @property
    def lock_path(self) -> Path:
        return self.app_folder / "executions.lock"

    def ensure_log_dir(self) -> None:
        # The app folder is created by ExecutionTracker.open.
        self.log_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls, **overrides: Any) -> "WrapperConfig":
        env_folder = os.environ.get(f"{ENV_PREFIX}APP_FOLDER")
        app_folder = Path(os.path.expanduser(
            str(overrides.get("app_folder") or env_folder or _default_app_folder())
        )).resolve()
        values: Dict[str, Any] = {"app_folder": app_folder}

        file_values = _load_config_file(app_folder)
        known = {f.name for f in fields(cls)}
        for key, value in file_values.items():
            if key in known and key != "app_folder":
                values[key] = value

        env_map = {
            "log_dir": os.environ.get(f"{ENV_PREFIX}LOG_DIR"),
            "self_command": os.environ.get(f"{ENV_PREFIX}SELF_COMMAND"),
            "poll_interval": os.environ.get(f"{ENV_PREFIX}POLL_INTERVAL"),
            "probe_timeout": os.environ.get(f"{ENV_PREFIX}PROBE_TIMEOUT"),
            "stale_max_age": os.environ.get(f"{ENV_PREFIX}STALE_MAX_AGE"),
            "lock_timeout": os.environ.get(f"{ENV_PREFIX}LOCK_TIMEOUT"),
        }
        for key, raw in env_map.items():
            if raw:
                values[key] = raw
        for key in ("verbose", "disable_tracking", "disable_auto_issue"):
            if os.environ.get(f"{ENV_PREFIX}{key.upper()}") is not None:
                values[key] = _truthy_env(f"{ENV_PREFIX}{key.upper()}")

        for key, value in overrides.items():
            if value is not None and key != "app_folder":
                values[key] = value

        return cls(**_coerce(values))


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(values)
    if "log_dir" in out:
        out["log_dir"] = Path(os.path.expanduser(str(out["log_dir"])))
    if "self_command" in out and isinstance(out["self_command"], str):
        out["self_command"] = shlex.split(out["self_command"])
    if "self_command" in out:
        out["self_command"] = [str(part) for part in out["self_command"]]
    for key in ("poll_interval", "probe_timeout", "stale_max_age", "lock_timeout"):
        if key in out:
            try:
                out[key] = float(out[key])
            except (TypeError, ValueError):
                raise ConfigurationError(
                    f"Invalid value for {key} ({ENV_PREFIX}{key.upper()}): {out[key]!r}, expected a number"
                ) from None
    for key in ("verbose", "disable_tracking", "disable_auto_issue"):
        if key in out:
            out[key] = _truthy(out[key])
    return out


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="[%(levelname)s] %(name)s: %(message)s",
    )
