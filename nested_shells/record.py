from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import os
import sys
import uuid as uuid_mod

EXECUTING = "executing"
EXECUTED = "executed"

# Exit code written by the stale sweep for runs that never finished properly.
STALE_EXIT_CODE = -1


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def default_shell() -> str:
    return os.environ.get("SHELL") or "/bin/sh"


@dataclass
class ExecutionRecord:
    """Serializable lifecycle record for one wrapper invocation."""

    command: str
    uuid: str = field(default_factory=lambda: str(uuid_mod.uuid4()))
    pid: Optional[int] = None
    status: str = EXECUTING
    exit_code: Optional[int] = None
    log_path: str = ""
    working_directory: str = field(default_factory=os.getcwd)
    shell: str = field(default_factory=default_shell)
    platform: str = sys.platform
    start_time: str = field(default_factory=utc_now)
    end_time: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_executing(self) -> bool:
        return self.status == EXECUTING

    def complete(self, exit_code: int) -> None:
        self.status = EXECUTED
        self.exit_code = exit_code
        self.end_time = utc_now()

    def age_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        started = parse_timestamp(self.start_time)
        if started is None:
            return None
        now = now or datetime.now(timezone.utc)
        return (now - started).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "pid": self.pid,
            "status": self.status,
            "exit_code": self.exit_code,
            "command": self.command,
            "log_path": self.log_path,
            "working_directory": self.working_directory,
            "shell": self.shell,
            "platform": self.platform,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "options": dict(self.options),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionRecord":
        options = data.get("options")
        pid = data.get("pid")
        exit_code = data.get("exit_code")
        return cls(
            uuid=str(data["uuid"]),
            command=str(data.get("command") or ""),
            pid=int(pid) if pid is not None else None,
            status=data.get("status") or EXECUTING,
            exit_code=int(exit_code) if exit_code is not None else None,
            log_path=str(data.get("log_path") or ""),
            working_directory=str(data.get("working_directory") or ""),
            shell=str(data.get("shell") or default_shell()),
            platform=str(data.get("platform") or sys.platform),
            start_time=str(data.get("start_time") or utc_now()),
            end_time=data.get("end_time"),
            options=dict(options) if isinstance(options, dict) else {},
        )
