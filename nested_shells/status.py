from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional

import yaml

from .errors import ConfigurationError
from .record import ExecutionRecord

FORMATS = ("yaml", "json", "text")
DEFAULT_FORMAT = "yaml"

_TEXT_FIELDS = [
    ("UUID", "uuid"),
    ("Status", "status"),
    ("Command", "command"),
    ("Exit Code", "exit_code"),
    ("PID", "pid"),
    ("Working Directory", "working_directory"),
    ("Shell", "shell"),
    ("Platform", "platform"),
    ("Start Time", "start_time"),
    ("End Time", "end_time"),
    ("Log Path", "log_path"),
]


def check_format(fmt: Optional[str]) -> str:
    fmt = (fmt or DEFAULT_FORMAT).lower()
    if fmt not in FORMATS:
        raise ConfigurationError(f"Invalid output format: {fmt}. Valid options are: {', '.join(FORMATS)}")
    return fmt


def format_text(record: ExecutionRecord) -> str:
    data = record.to_dict()
    lines = ["Execution Status", "=" * 50]
    for label, key in _TEXT_FIELDS:
        value = data.get(key)
        lines.append(f"{label + ':':<19}{'N/A' if value is None or value == '' else value}")
    options = {k: v for k, v in record.options.items() if v is not None}
    if options:
        lines.append("Options:")
        for key, value in options.items():
            lines.append(f"  {key}: {value}")
    return "\n".join(lines)


def format_record(record: ExecutionRecord, fmt: Optional[str] = None) -> str:
    fmt = check_format(fmt)
    if fmt == "json":
        return json.dumps(record.to_dict(), indent=2)
    if fmt == "text":
        return format_text(record)
    return yaml.safe_dump(record.to_dict(), sort_keys=False, allow_unicode=True).rstrip("\n")


@dataclass
class StatusResult:
    success: bool
    output: str = ""
    error: str = ""


async def query_status(tracker, uuid: str, fmt: Optional[str] = None) -> StatusResult:
    fmt = check_format(fmt)
    if tracker is None or not tracker.enabled:
        return StatusResult(False, error="Execution tracking is disabled.")
    record = await tracker.get(uuid)
    if record is None:
        return StatusResult(False, error=f"No execution found with UUID: {uuid}")
    return StatusResult(True, output=format_record(record, fmt))
