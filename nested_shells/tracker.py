from __future__ import annotations

import asyncio
import contextlib
import errno
import fcntl
import logging
import os
import socket
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import psutil
import yaml

from .errors import TrackingError
from .record import EXECUTED, EXECUTING, STALE_EXIT_CODE, ExecutionRecord

logger = logging.getLogger(__name__)

LOCK_POLL_S = 0.05


def _pid_alive(pid: int) -> bool:
    if not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


class ExecutionStore:
    """YAML list of records guarded by an exclusive flock on a sidecar file."""

    def __init__(self, path: Path, lock_path: Optional[Path] = None, *, lock_timeout: float = 30.0) -> None:
        self.path = Path(path)
        self.lock_path = Path(lock_path) if lock_path else self.path.with_suffix(".lock")
        self.lock_timeout = lock_timeout

    @contextlib.contextmanager
    def locked(self) -> Iterator[None]:
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise TrackingError(f"Cannot open lock file {self.lock_path}: {exc}") from exc
        try:
            deadline = time.monotonic() + self.lock_timeout
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError as exc:
                    if exc.errno not in (errno.EAGAIN, errno.EACCES):
                        raise TrackingError(f"Cannot lock {self.lock_path}: {exc}") from exc
                    if time.monotonic() >= deadline:
                        raise TrackingError(
                            f"Timed out after {self.lock_timeout}s waiting for {self.lock_path}"
                        ) from exc
                    time.sleep(LOCK_POLL_S)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def read_items(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError) as exc:
            raise TrackingError(f"Cannot read {self.path}: {exc}") from exc
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict) and item.get("uuid")]

    def write_items(self, items: List[Dict[str, Any]]) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as fh:
                yaml.safe_dump(items, fh, sort_keys=False, allow_unicode=True)
                fh.flush()
                os.fsync(fh.fileno())
            tmp_path.replace(self.path)
        except OSError as exc:
            raise TrackingError(f"Cannot write {self.path}: {exc}") from exc

    def all(self) -> List[ExecutionRecord]:
        return [ExecutionRecord.from_dict(item) for item in self.read_items()]

    def get(self, uuid: str) -> Optional[ExecutionRecord]:
        for item in self.read_items():
            if str(item.get("uuid")) == uuid:
                return ExecutionRecord.from_dict(item)
        return None

    def save(self, record: ExecutionRecord) -> None:
        with self.locked():
            items = self.read_items()
            data = record.to_dict()
            for i, item in enumerate(items):
                if str(item.get("uuid")) == record.uuid:
                    items[i] = data
                    break
            else:
                items.append(data)
            self.write_items(items)

    def delete(self, uuid: str) -> bool:
        with self.locked():
            items = self.read_items()
            kept = [item for item in items if str(item.get("uuid")) != uuid]
            if len(kept) == len(items):
                return False
            self.write_items(kept)
            return True

    def clear(self) -> None:
        with self.locked():
            self.write_items([])


class ExecutionTracker:
    """Async facade over ``ExecutionStore`` with an explicit open/close lifecycle."""

    def __init__(self, store: ExecutionStore, *, enabled: bool = True) -> None:
        self.store = store
        self.enabled = enabled
        self._opened = False

    @classmethod
    def from_config(cls, config: Any) -> "ExecutionTracker":
        store = ExecutionStore(config.store_path, config.lock_path, lock_timeout=config.lock_timeout)
        return cls(store, enabled=not config.disable_tracking)

    async def open(self) -> "ExecutionTracker":
        if self.enabled:
            folder = self.store.path.parent
            try:
                await asyncio.to_thread(folder.mkdir, parents=True, exist_ok=True)
            except OSError as exc:
                raise TrackingError(f"Cannot create store folder {folder}: {exc}") from exc
        self._opened = True
        return self

    async def close(self) -> None:
        self._opened = False

    async def __aenter__(self) -> "ExecutionTracker":
        return await self.open()

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Writes

    async def create(self, record: ExecutionRecord) -> ExecutionRecord:
        record.options.setdefault("hostname", socket.gethostname())
        await self.save(record)
        return record

    async def save(self, record: ExecutionRecord) -> None:
        if not self.enabled:
            return
        await asyncio.to_thread(self.store.save, record)

    def save_sync(self, record: ExecutionRecord) -> None:
        if self.enabled:
            self.store.save(record)

    async def delete(self, uuid: str) -> bool:
        return await asyncio.to_thread(self.store.delete, uuid)

    async def clear(self) -> None:
        await asyncio.to_thread(self.store.clear)

    # ------------------------------------------------------------------
    # Queries

    async def get(self, uuid: str) -> Optional[ExecutionRecord]:
        return await asyncio.to_thread(self.store.get, uuid)

    async def all(self) -> List[ExecutionRecord]:
        return await asyncio.to_thread(self.store.all)

    async def by_status(self, status: str) -> List[ExecutionRecord]:
        return [r for r in await self.all() if r.status == status]

    async def executing(self) -> List[ExecutionRecord]:
        return await self.by_status(EXECUTING)

    async def recent(self, limit: int = 10) -> List[ExecutionRecord]:
        records = sorted(await self.all(), key=lambda r: r.start_time, reverse=True)
        return records[:limit]

    async def stats(self) -> Dict[str, int]:
        records = await self.all()
        executed = [r for r in records if r.status == EXECUTED]
        return {
            "total": len(records),
            "executing": sum(1 for r in records if r.status == EXECUTING),
            "executed": len(executed),
            "successful": sum(1 for r in executed if r.exit_code == 0),
            "failed": sum(1 for r in executed if r.exit_code not in (0, None)),
        }

    # ------------------------------------------------------------------
    # Stale sweep

    def is_stale(self, record: ExecutionRecord, max_age: float, now: Optional[datetime] = None) -> bool:
        if record.status != EXECUTING:
            return False
        age = record.age_seconds(now or datetime.now(timezone.utc))
        if age is not None and age > max_age:
            return True
        # A pid is only meaningful on the machine that recorded it.
        same_host = record.options.get("hostname") in (None, socket.gethostname())
        if record.pid and record.platform == sys.platform and same_host:
            return not _pid_alive(record.pid)
        return False

    async def cleanup_stale(self, max_age: float = 24 * 60 * 60, dry_run: bool = False) -> List[str]:
        return await asyncio.to_thread(self._cleanup_stale_sync, max_age, dry_run)

    def _cleanup_stale_sync(self, max_age: float, dry_run: bool) -> List[str]:
        now = datetime.now(timezone.utc)
        if dry_run:
            return [r.uuid for r in self.store.all() if self.is_stale(r, max_age, now)]

        with self.store.locked():
            items = self.store.read_items()
            affected = []
            for i, item in enumerate(items):
                record = ExecutionRecord.from_dict(item)
                if not self.is_stale(record, max_age, now):
                    continue
                record.complete(STALE_EXIT_CODE)
                record.options["stale_cleanup"] = True
                items[i] = record.to_dict()
                affected.append(record.uuid)
            if affected:
                self.store.write_items(items)
        for uuid in affected:
            logger.debug("finalized stale execution %s", uuid)
        return affected
