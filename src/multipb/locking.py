"""Locking primitives shared by the control plane.

Two layers cooperate:

* an ``asyncio.Lock`` per key serialises coroutines inside one process;
* an ``fcntl`` lock file under ``runtime_dir`` serialises separate processes
  (for example the API daemon and an operator running the CLI).

Lock files are left on disk after release. They carry JSON metadata about the
last holder, which is handy when diagnosing a stuck operation.
"""
from __future__ import annotations

import asyncio
import fcntl
import json
import os
import time
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "multipb"
MONITOR_LOCK_NAME = "monitor"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout elapses."""


@dataclass(slots=True)
class LockHandle:
    """Information about an acquired lock."""

    name: str
    path: Path
    wait_ms: int


class LockManager:
    """Hand out manifest-wide, monitor and per-instance locks."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default acquisition timeout."""
        self.root = Path(runtime_dir).expanduser()
        self.default_timeout = float(default_timeout)
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def manifest_lock(
        self, *, timeout: float | None = None
    ) -> AbstractAsyncContextManager[LockHandle]:
        """Return the single-writer lock guarding the manifest document."""
        return self._acquire(GLOBAL_LOCK_NAME, self.root / f"{GLOBAL_LOCK_NAME}.lock", timeout)

    def monitor_lock(
        self, *, timeout: float | None = None
    ) -> AbstractAsyncContextManager[LockHandle]:
        """Return the lock held for the duration of one health monitor tick.

        A ``timeout`` of zero never waits: a busy lock raises
        :class:`LockTimeoutError` immediately.
        """
        return self._acquire(MONITOR_LOCK_NAME, self.root / f"{MONITOR_LOCK_NAME}.lock", timeout)

    def instance_lock(
        self, name: str, *, timeout: float | None = None
    ) -> AbstractAsyncContextManager[LockHandle]:
        """Return the lock serialising backup/restore work on *name*."""
        safe = _safe_name(name)
        return self._acquire(f"instance:{safe}", self.root / "instances" / f"{safe}.lock", timeout)

    def is_locked(self, name: str) -> bool:
        """Return ``True`` when this process holds the lock for instance *name*."""
        lock = self._locks.get(f"instance:{_safe_name(name)}")
        return lock is not None and lock.locked()

    # ------------------------------------------------------------------
    @asynccontextmanager
    async def _acquire(
        self,
        key: str,
        path: Path,
        timeout: float | None,
    ) -> AsyncIterator[LockHandle]:
        limit = self.default_timeout if timeout is None else float(timeout)
        started = time.monotonic()
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            await self._acquire_local(lock, key, limit)
            fd: int | None = None
            try:
                fd = await self._lock_file(path, deadline=started + limit, key=key)
                wait_ms = int((time.monotonic() - started) * 1000)
                _write_metadata(fd, path, key)
                yield LockHandle(name=key, path=path, wait_ms=wait_ms)
            finally:
                if fd is not None:
                    try:
                        fcntl.flock(fd, fcntl.LOCK_UN)
                    finally:
                        os.close(fd)
                lock.release()
        finally:
            self._forget(key)

    @staticmethod
    async def _acquire_local(lock: asyncio.Lock, key: str, limit: float) -> None:
        if limit <= 0:
            if lock.locked():
                raise LockTimeoutError(f"Lock {key} is busy.")
            await lock.acquire()
            return
        try:
            await asyncio.wait_for(lock.acquire(), timeout=limit)
        except TimeoutError as exc:
            raise LockTimeoutError(f"Timed out after {limit:.1f}s waiting for lock {key}.") from exc

    def _forget(self, key: str) -> None:
        remaining = self._users.get(key, 1) - 1
        if remaining > 0:
            self._users[key] = remaining
            return
        self._users.pop(key, None)
        self._locks.pop(key, None)

    async def _lock_file(self, path: Path, *, deadline: float, key: str) -> int:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return fd
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise LockTimeoutError(
                        f"Timed out waiting for lock file {path} ({key})."
                    ) from None
                await asyncio.sleep(_POLL_INTERVAL)


def _safe_name(name: str) -> str:
    safe = name.strip().replace("/", "-") if isinstance(name, str) else ""
    if not safe:
        raise ValueError("Lock name must be a non-empty string.")
    return safe


def _write_metadata(fd: int, path: Path, key: str) -> None:
    payload = {
        "name": key,
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
