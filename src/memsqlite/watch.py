"""
Directory watching daemon for continuous sync.

Monitors the Claude Code projects directory for session logs (.jsonl files)
and feeds changed files to the sync engine. The watchdog observer runs in
its own thread; events are handed to the asyncio loop, debounced per path,
and processed by a fixed number of workers with at most one pass in flight
per file.
"""

import asyncio
import logging
import platform
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler

# fsevents is unreliable across rapid observer start/stop cycles on macOS
if platform.system() == "Darwin":
    from watchdog.observers.polling import PollingObserver as Observer
else:
    from watchdog.observers import Observer

from memsqlite.config import Settings
from memsqlite.parsers.incremental import (
    ChangeType,
    FilePosition,
    calculate_partial_hash,
    detect_file_change_type,
)
from memsqlite.pipeline.sync import FileSyncResult, SyncEngine

logger = logging.getLogger(__name__)


def _is_session_file(path: str) -> bool:
    return path.endswith(".jsonl")


@dataclass
class RetryEntry:
    """Represents a file whose last pass failed and needs another one."""

    file_path: Path
    attempts: int = 0
    last_attempt: Optional[datetime] = None
    last_error: str = ""
    next_retry: Optional[datetime] = None


@dataclass
class WatcherStats:
    """Statistics for the watch daemon."""

    started_at: datetime = field(default_factory=datetime.now)
    files_processed: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    files_retried: int = 0
    messages_inserted: int = 0
    last_activity: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert stats to dictionary for serialization."""
        return {
            "started_at": self.started_at.isoformat(),
            "files_processed": self.files_processed,
            "files_skipped": self.files_skipped,
            "files_failed": self.files_failed,
            "files_retried": self.files_retried,
            "messages_inserted": self.messages_inserted,
            "last_activity": (
                self.last_activity.isoformat() if self.last_activity else None
            ),
        }


class RetryQueue:
    """
    Tracks files whose pass failed (lock timeout, busy store, rolled-back batch).

    Exponential backoff: base, 3x base, 9x base, then give up.
    """

    def __init__(self, max_retries: int = 3, base_interval: float = 30):
        self.max_retries = max_retries
        self.base_interval = base_interval
        self.queue: dict[str, RetryEntry] = {}

    def add(self, file_path: Path, error: str) -> RetryEntry:
        """Record a failed pass for ``file_path``."""
        key = str(file_path)
        entry = self.queue.get(key)
        if entry is None:
            entry = RetryEntry(file_path=file_path)
            self.queue[key] = entry
        entry.attempts += 1
        entry.last_error = error
        entry.last_attempt = datetime.now()
        entry.next_retry = entry.last_attempt + timedelta(
            seconds=self.base_interval * 3 ** (entry.attempts - 1)
        )

        logger.info(
            f"Added {file_path.name} to retry queue "
            f"(attempt {entry.attempts}/{self.max_retries})"
        )
        return entry

    def get_ready_files(self) -> list[RetryEntry]:
        """Entries due for another pass; entries out of attempts are dropped."""
        now = datetime.now()
        ready = []
        for entry in list(self.queue.values()):
            if entry.attempts >= self.max_retries:
                logger.warning(
                    f"Giving up on {entry.file_path.name} "
                    f"after {entry.attempts} attempts: {entry.last_error}"
                )
                del self.queue[str(entry.file_path)]
                continue
            if entry.next_retry and entry.next_retry <= now:
                ready.append(entry)
        return ready

    def remove(self, file_path: Path) -> None:
        self.queue.pop(str(file_path), None)

    def __contains__(self, file_path: object) -> bool:
        return str(file_path) in self.queue

    def __len__(self) -> int:
        return len(self.queue)


class FilePositionTracker:
    """
    Remembers how far into each file the store is up to date.

    Positions live in memory only; after a restart every file is read from
    the start again, which is safe because inserts are idempotent.
    """

    def __init__(self):
        self._positions: dict[str, FilePosition] = {}

    def get(self, file_path: Path) -> Optional[FilePosition]:
        return self._positions.get(str(file_path))

    def resume_point(self, file_path: Path) -> Optional[tuple[int, int]]:
        """
        Decide where the next pass over ``file_path`` should start.

        Returns:
            (offset, line_number) to resume from, or None when there is
            nothing new to read
        """
        if not file_path.exists():
            self.forget(file_path)
            return None

        position = self.get(file_path)
        if position is None:
            return 0, 0

        change_type = detect_file_change_type(file_path, position)
        logger.debug(f"Change detection: {change_type.value} for {file_path.name}")

        if change_type == ChangeType.UNCHANGED:
            return None
        if change_type == ChangeType.APPEND:
            return position.offset, position.line_number

        logger.info(f"Full reparse required for {file_path.name} ({change_type.value})")
        self.forget(file_path)
        return 0, 0

    def record(self, file_path: Path, offset: int, line_number: int) -> FilePosition:
        """
        Store the committed offset after a pass.

        The recorded size is the offset itself, so a trailing partial line or
        bytes left behind by a failed batch count as new content next time.
        """
        position = FilePosition(
            offset=offset,
            line_number=line_number,
            file_size=offset,
            partial_hash=calculate_partial_hash(file_path, offset) if offset else None,
        )
        self._positions[str(file_path)] = position
        return position

    def forget(self, file_path: Path) -> None:
        self._positions.pop(str(file_path), None)

    def __len__(self) -> int:
        return len(self._positions)


class FileWatcher(FileSystemEventHandler):
    """
    Watchdog event handler for session .jsonl files.

    Runs in the observer thread and only forwards paths to the event loop.
    On the loop, events are debounced per path: a file is emitted once no
    further event arrived for ``debounce_seconds``.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        on_ready: Callable[[Path], None],
        debounce_seconds: float = 1.0,
    ):
        super().__init__()
        self.loop = loop
        self.on_ready = on_ready
        self.debounce_seconds = debounce_seconds
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def on_created(self, event: FileSystemEvent) -> None:
        path = str(event.src_path)
        if not event.is_directory and _is_session_file(path):
            self._forward(Path(path))

    def on_modified(self, event: FileSystemEvent) -> None:
        path = str(event.src_path)
        if not event.is_directory and _is_session_file(path):
            self._forward(Path(path))

    def on_moved(self, event: FileSystemEvent) -> None:
        dest_path = str(event.dest_path)
        if not event.is_directory and _is_session_file(dest_path):
            self._forward(Path(dest_path))

    def _forward(self, file_path: Path) -> None:
        if self.loop.is_closed():
            return
        self.loop.call_soon_threadsafe(self.notify, file_path)

    def notify(self, file_path: Path) -> None:
        """Register an event for ``file_path`` (event loop thread only)."""
        key = str(file_path)
        timer = self._timers.pop(key, None)
        if timer is not None:
            logger.debug(f"Debouncing event for {file_path.name}")
            timer.cancel()
        self._timers[key] = self.loop.call_later(
            self.debounce_seconds, self._emit, file_path
        )

    def _emit(self, file_path: Path) -> None:
        self._timers.pop(str(file_path), None)
        self.on_ready(file_path)

    @property
    def pending(self) -> int:
        return len(self._timers)

    def cancel_pending(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()


class WatcherDaemon:
    """
    Keeps the store in sync with a projects directory.

    Args:
        sync_engine: Engine that runs file passes
        config: Settings providing watch options
        directory: Directory to watch (defaults to the configured projects dir)
    """

    def __init__(
        self,
        sync_engine: SyncEngine,
        config: Settings,
        directory: Optional[Union[str, Path]] = None,
    ):
        self.sync_engine = sync_engine
        self.config = config
        self.directory = Path(directory or config.projects_directory).expanduser()
        self.workers = max(1, config.watch_workers)

        self.stats = WatcherStats()
        self.retry_queue = RetryQueue(
            max_retries=config.watch_max_retries,
            base_interval=config.watch_retry_interval,
        )
        self.positions = FilePositionTracker()

        self._queue: asyncio.Queue[Path] = asyncio.Queue()
        self._queued: set[str] = set()
        self._active: set[str] = set()
        self._dirty: set[str] = set()
        self._shutdown = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._observer: Optional[Any] = None
        self._handler: Optional[FileWatcher] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._shutdown.is_set()

    def schedule(self, file_path: Path) -> bool:
        """
        Queue a pass over ``file_path``.

        A path already queued is not queued twice; a path being processed is
        marked dirty and queued again once its current pass finishes.

        Returns:
            True if the path was added to the queue
        """
        if self._shutdown.is_set():
            return False
        key = str(file_path)
        if key in self._queued:
            return False
        if key in self._active:
            self._dirty.add(key)
            return False
        self._queued.add(key)
        self._queue.put_nowait(file_path)
        return True

    async def process_path(self, file_path: Path) -> Optional[FileSyncResult]:
        """Run one pass over ``file_path`` from its last committed offset."""
        resume = self.positions.resume_point(file_path)
        if resume is None:
            logger.debug(f"Skipped {file_path.name} (no changes detected)")
            self.stats.files_skipped += 1
            return None

        offset, line_number = resume
        result = await self.sync_engine.process_file(file_path, offset, line_number)
        self.positions.record(file_path, result.end_offset, result.end_line)
        self.stats.last_activity = datetime.now()
        self.stats.messages_inserted += result.execute.messages_inserted

        if result.success:
            self.retry_queue.remove(file_path)
            self.stats.files_processed += 1
        else:
            self.stats.files_failed += 1
            self.retry_queue.add(file_path, result.failure.message)
        return result

    async def _worker(self, index: int) -> None:
        while True:
            file_path = await self._queue.get()
            key = str(file_path)
            self._queued.discard(key)
            self._active.add(key)
            try:
                await self.process_path(file_path)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Worker {index} failed on {file_path.name}: {e}", exc_info=True
                )
                self.stats.files_failed += 1
                self.retry_queue.add(file_path, str(e))
            finally:
                self._active.discard(key)
                if key in self._dirty:
                    self._dirty.discard(key)
                    self.schedule(file_path)
                self._queue.task_done()

    async def _retry_loop(self) -> None:
        interval = max(0.1, min(float(self.config.watch_retry_interval), 5.0))
        logger.info(f"Retry loop started (check interval: {interval}s)")
        while not self._shutdown.is_set():
            for entry in self.retry_queue.get_ready_files():
                logger.info(
                    f"Retrying {entry.file_path.name} (attempt {entry.attempts + 1})"
                )
                if self.schedule(entry.file_path):
                    self.stats.files_retried += 1
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def scan_existing_files(self) -> int:
        """
        Queue every session file already present under the directory.

        Returns:
            Number of files queued
        """
        files = sorted(self.directory.glob("*/*.jsonl"))
        queued = sum(1 for file_path in files if self.schedule(file_path))
        logger.info(f"Startup scan: {queued} of {len(files)} session files queued")
        return queued

    async def start(self, observe: bool = True) -> None:
        """
        Start workers, the retry loop and (optionally) the filesystem observer.

        Raises:
            ValueError: If the directory does not exist
        """
        if not self.directory.is_dir():
            raise ValueError(f"Not a directory: {self.directory}")

        self._loop = asyncio.get_running_loop()
        logger.info(f"Starting watch daemon for directory: {self.directory}")

        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"memsqlite-worker-{i}")
            for i in range(self.workers)
        ]
        self._tasks.append(asyncio.create_task(self._retry_loop(), name="memsqlite-retry"))
        logger.info(f"✓ {self.workers} workers started")

        if observe:
            self._handler = FileWatcher(
                self._loop, self.schedule, self.config.watch_debounce_seconds
            )
            self._observer = Observer()
            self._observer.schedule(self._handler, str(self.directory), recursive=True)
            self._observer.start()
            logger.info("✓ Observer started")

        if self.config.watch_initial_scan:
            self.scan_existing_files()

    async def wait_idle(self) -> None:
        """Wait until every queued pass has finished."""
        await self._queue.join()

    def stop(self) -> None:
        """Request shutdown; safe to call from signal handlers and other threads."""
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._shutdown.set)
        else:
            self._shutdown.set()

    async def shutdown(self) -> None:
        """
        Stop observing and wind the workers down.

        A pass interrupted here stops after its current batch commits; the
        locks it holds are released on the way out.
        """
        logger.info("Stopping watch daemon...")
        self._shutdown.set()

        if self._observer is not None:
            self._observer.stop()
            await asyncio.to_thread(self._observer.join, 3)
            if self._observer.is_alive():
                logger.warning("Observer thread did not stop cleanly")
            else:
                logger.info("✓ Observer stopped")
            self._observer = None
        if self._handler is not None:
            self._handler.cancel_pending()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"✓ Watch daemon stopped: {self.stats.to_dict()}")

    async def run(self) -> None:
        """Run until ``stop()`` is called."""
        await self.start()
        try:
            await self._shutdown.wait()
        finally:
            await self.shutdown()
