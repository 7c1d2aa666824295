"""
Cross-process advisory locks.

A lock is a marker file ``<lock_dir>/<name>.lock`` created with O_EXCL, so
only one cooperating process (the sync daemon, a CLI sync, ...) can hold it.
The marker records the owner's pid, acquisition time and hostname; markers
older than the staleness threshold are treated as abandoned by a crashed
owner and removed before the next attempt.
"""

import asyncio
import json
import logging
import os
import re
import socket
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Union

from memsqlite.exceptions import LockTimeoutError

logger = logging.getLogger(__name__)

WRITE_LOCK = "database_write"

DEFAULT_TIMEOUT = 30.0
DEFAULT_STALE_AFTER = 300.0
DEFAULT_POLL_INTERVAL = 0.1


@dataclass
class LockInfo:
    """Contents of a lock marker file."""

    pid: int
    timestamp: float
    hostname: str

    def to_dict(self) -> dict:
        return {"pid": self.pid, "timestamp": self.timestamp, "hostname": self.hostname}


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", name)


class FileLock:
    """One named marker-file lock."""

    def __init__(
        self,
        lock_dir: Union[str, Path],
        name: str,
        stale_after: float = DEFAULT_STALE_AFTER,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.lock_dir = Path(lock_dir)
        self.name = name
        self.path = self.lock_dir / f"{_safe_name(name)}.lock"
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def read_info(self) -> Optional[LockInfo]:
        """Read the current marker, or None if absent or unreadable."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return LockInfo(
                pid=int(data["pid"]),
                timestamp=float(data["timestamp"]),
                hostname=str(data["hostname"]),
            )
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def is_stale(self) -> bool:
        """
        Check whether the existing marker has been abandoned.

        A marker that cannot be parsed is judged by its mtime, since the owner
        may be between creating the file and writing its contents.
        """
        info = self.read_info()
        if info is not None:
            return time.time() - info.timestamp > self.stale_after
        try:
            return time.time() - self.path.stat().st_mtime > self.stale_after
        except FileNotFoundError:
            return False

    def try_acquire(self) -> bool:
        """Make one non-blocking attempt to create the marker."""
        if self._held:
            return True
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False

        info = LockInfo(pid=os.getpid(), timestamp=time.time(), hostname=socket.gethostname())
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(info.to_dict(), f)
        self._held = True
        return True

    def break_if_stale(self) -> bool:
        """Remove an abandoned marker. Returns True if one was removed."""
        if not self.is_stale():
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.warning(f"Removed stale lock '{self.name}' at {self.path}")
        return True

    async def acquire(self, timeout: float = DEFAULT_TIMEOUT) -> bool:
        """
        Poll for the lock until ``timeout`` seconds have passed.

        Returns:
            True if acquired, False on timeout
        """
        deadline = time.monotonic() + timeout
        while True:
            if self.try_acquire():
                logger.debug(f"Acquired lock '{self.name}'")
                return True
            if self.break_if_stale() and self.try_acquire():
                logger.debug(f"Acquired lock '{self.name}' after clearing stale marker")
                return True
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(self.poll_interval)

    def release(self) -> None:
        """Remove the marker if this instance holds it."""
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning(f"Lock '{self.name}' marker vanished before release")

    @asynccontextmanager
    async def hold(self, timeout: float = DEFAULT_TIMEOUT) -> AsyncIterator["FileLock"]:
        """
        Hold the lock for an ``async with`` block.

        Raises:
            LockTimeoutError: If the lock could not be acquired in time
        """
        if not await self.acquire(timeout):
            raise LockTimeoutError(self.name, timeout)
        try:
            yield self
        finally:
            self.release()


class LockManager:
    """Factory and inspector for the named locks in one lock directory."""

    def __init__(
        self,
        lock_dir: Union[str, Path],
        default_timeout: float = DEFAULT_TIMEOUT,
        stale_after: float = DEFAULT_STALE_AFTER,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.lock_dir = Path(lock_dir)
        self.default_timeout = default_timeout
        self.stale_after = stale_after
        self.poll_interval = poll_interval

    def lock(self, name: str) -> FileLock:
        return FileLock(
            self.lock_dir,
            name,
            stale_after=self.stale_after,
            poll_interval=self.poll_interval,
        )

    def write_lock(self) -> FileLock:
        """Lock serializing all writers of the database file."""
        return self.lock(WRITE_LOCK)

    def session_lock(self, session_id: str) -> FileLock:
        return self.lock(f"session_{session_id}")

    @asynccontextmanager
    async def hold(
        self, name: str, timeout: Optional[float] = None
    ) -> AsyncIterator[FileLock]:
        async with self.lock(name).hold(
            self.default_timeout if timeout is None else timeout
        ) as held:
            yield held

    def is_locked(self, name: str) -> bool:
        """Check for a live (non-stale) marker."""
        lock = self.lock(name)
        return lock.path.exists() and not lock.is_stale()

    def _marker_files(self) -> list[Path]:
        if not self.lock_dir.exists():
            return []
        return sorted(self.lock_dir.glob("*.lock"))

    def cleanup_stale_locks(self) -> int:
        """
        Remove every abandoned marker in the lock directory.

        Returns:
            Number of markers removed
        """
        removed = 0
        for marker in self._marker_files():
            if self.lock(marker.stem).break_if_stale():
                removed += 1
        return removed

    def lock_stats(self) -> dict:
        """Summarize current markers for diagnostics."""
        locks = []
        stale = 0
        for marker in self._marker_files():
            lock = self.lock(marker.stem)
            info = lock.read_info()
            is_stale = lock.is_stale()
            stale += int(is_stale)
            locks.append(
                {
                    "name": marker.stem,
                    "stale": is_stale,
                    **(info.to_dict() if info else {}),
                }
            )
        return {"total": len(locks), "stale": stale, "locks": locks}
