"""Tests for the directory watch daemon."""

import asyncio
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from watchdog.events import DirCreatedEvent, FileCreatedEvent, FileModifiedEvent, FileMovedEvent

from memsqlite.models.db import Message
from memsqlite.pipeline.sync import SyncEngine
from memsqlite.watch import FilePositionTracker, FileWatcher, RetryQueue, WatcherDaemon


def new_line(uuid: str) -> dict:
    return {
        "type": "assistant",
        "uuid": uuid,
        "sessionId": "s1",
        "timestamp": "2025-01-01T11:00:00Z",
        "message": {"role": "assistant", "content": f"reply {uuid}"},
    }


@pytest.fixture
def session_file(test_settings, write_jsonl, user_line, assistant_tool_line):
    return write_jsonl(
        test_settings.projects_directory / "proj" / "s1.jsonl",
        [user_line, assistant_tool_line],
    )


@pytest.fixture
def daemon(sync_engine, test_settings):
    return WatcherDaemon(sync_engine, test_settings)


async def wait_for_rows(fetch, model, count: int, timeout: float = 10.0) -> list:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        rows = fetch(model)
        if len(rows) >= count or asyncio.get_running_loop().time() > deadline:
            return rows
        await asyncio.sleep(0.05)


class TestRetryQueue:
    """Tests for RetryQueue."""

    def test_backoff_triples(self):
        queue = RetryQueue(max_retries=3, base_interval=30)
        path = Path("/p/s1.jsonl")

        first = queue.add(path, "busy")
        first_delay = first.next_retry - first.last_attempt
        second = queue.add(path, "busy again")
        second_delay = second.next_retry - second.last_attempt

        assert second is first
        assert second.attempts == 2
        assert second.last_error == "busy again"
        assert first_delay == timedelta(seconds=30)
        assert second_delay == timedelta(seconds=90)

    def test_ready_files(self):
        queue = RetryQueue(max_retries=3, base_interval=0)
        path = Path("/p/s1.jsonl")
        queue.add(path, "busy")

        ready = queue.get_ready_files()

        assert [entry.file_path for entry in ready] == [path]

    def test_not_ready_before_backoff(self):
        queue = RetryQueue(base_interval=30)
        queue.add(Path("/p/s1.jsonl"), "busy")

        assert queue.get_ready_files() == []

    def test_gives_up_after_max_retries(self):
        queue = RetryQueue(max_retries=2, base_interval=0)
        path = Path("/p/s1.jsonl")
        queue.add(path, "busy")
        queue.add(path, "busy")

        assert queue.get_ready_files() == []
        assert path not in queue
        assert len(queue) == 0

    def test_remove(self):
        queue = RetryQueue()
        path = Path("/p/s1.jsonl")
        queue.add(path, "busy")

        queue.remove(path)
        queue.remove(path)

        assert path not in queue


class TestFilePositionTracker:
    """Tests for FilePositionTracker."""

    def test_unknown_file_starts_at_zero(self, session_file):
        assert FilePositionTracker().resume_point(session_file) == (0, 0)

    def test_unchanged_file_is_skipped(self, session_file):
        tracker = FilePositionTracker()
        tracker.record(session_file, session_file.stat().st_size, 2)

        assert tracker.resume_point(session_file) is None

    def test_append_resumes(self, session_file, write_jsonl):
        tracker = FilePositionTracker()
        size = session_file.stat().st_size
        tracker.record(session_file, size, 2)
        write_jsonl(session_file, [new_line("m9")], mode="a")

        assert tracker.resume_point(session_file) == (size, 2)

    def test_uncommitted_tail_counts_as_new(self, session_file):
        """Test that bytes past the committed offset are read again next time."""
        tracker = FilePositionTracker()
        tracker.record(session_file, 10, 0)

        assert tracker.resume_point(session_file) == (10, 0)

    def test_truncation_restarts(self, session_file, user_line, write_jsonl):
        tracker = FilePositionTracker()
        tracker.record(session_file, session_file.stat().st_size, 2)
        write_jsonl(session_file, [user_line])

        assert tracker.resume_point(session_file) == (0, 0)
        assert tracker.get(session_file) is None

    def test_deleted_file(self, session_file):
        tracker = FilePositionTracker()
        tracker.record(session_file, session_file.stat().st_size, 2)
        session_file.unlink()

        assert tracker.resume_point(session_file) is None
        assert len(tracker) == 0


class TestFileWatcher:
    """Tests for event filtering and debouncing."""

    @pytest.mark.asyncio
    async def test_burst_is_debounced(self, tmp_path):
        ready = []
        watcher = FileWatcher(asyncio.get_running_loop(), ready.append, debounce_seconds=0.05)
        path = tmp_path / "s1.jsonl"

        for _ in range(3):
            watcher.notify(path)
            await asyncio.sleep(0.01)

        assert watcher.pending == 1
        await asyncio.sleep(0.15)
        assert ready == [path]
        assert watcher.pending == 0

    @pytest.mark.asyncio
    async def test_events_are_filtered(self, tmp_path):
        ready = []
        watcher = FileWatcher(asyncio.get_running_loop(), ready.append, debounce_seconds=0.01)

        watcher.on_created(FileCreatedEvent(str(tmp_path / "a.jsonl")))
        watcher.on_modified(FileModifiedEvent(str(tmp_path / "notes.txt")))
        watcher.on_created(DirCreatedEvent(str(tmp_path / "dir.jsonl")))
        watcher.on_moved(FileMovedEvent(str(tmp_path / "b.tmp"), str(tmp_path / "b.jsonl")))
        await asyncio.sleep(0.1)

        assert sorted(p.name for p in ready) == ["a.jsonl", "b.jsonl"]

    @pytest.mark.asyncio
    async def test_cancel_pending(self, tmp_path):
        ready = []
        watcher = FileWatcher(asyncio.get_running_loop(), ready.append, debounce_seconds=0.05)
        watcher.notify(tmp_path / "s1.jsonl")

        watcher.cancel_pending()
        await asyncio.sleep(0.1)

        assert ready == []


class TestProcessPath:
    """Tests for WatcherDaemon.process_path."""

    @pytest.mark.asyncio
    async def test_new_file_then_unchanged(self, daemon, session_file, fetch):
        result = await daemon.process_path(session_file)
        again = await daemon.process_path(session_file)

        assert result.success
        assert again is None
        assert daemon.stats.files_processed == 1
        assert daemon.stats.files_skipped == 1
        assert daemon.stats.messages_inserted == 2
        assert len(fetch(Message)) == 2

    @pytest.mark.asyncio
    async def test_appended_lines_only(self, daemon, session_file, write_jsonl):
        await daemon.process_path(session_file)
        write_jsonl(session_file, [new_line("m9")], mode="a")

        result = await daemon.process_path(session_file)

        assert result.start_offset > 0
        assert result.lines_parsed == 1
        assert result.execute.messages_inserted == 1

    @pytest.mark.asyncio
    async def test_failed_pass_goes_to_retry_queue(
        self, executor, lock_manager, test_settings, session_file
    ):
        config = test_settings.model_copy(update={"lock_timeout": 0.05})
        daemon = WatcherDaemon(SyncEngine(executor, config, lock_manager), config)
        held = lock_manager.session_lock("s1")
        held.try_acquire()

        result = await daemon.process_path(session_file)

        assert not result.success
        assert session_file in daemon.retry_queue
        assert daemon.stats.files_failed == 1
        assert daemon.positions.get(session_file).offset == 0

        held.release()
        retried = await daemon.process_path(session_file)

        assert retried.success
        assert session_file not in daemon.retry_queue


class TestScheduling:
    """Tests for queueing passes."""

    def test_schedule_deduplicates(self, daemon, session_file):
        assert daemon.schedule(session_file) is True
        assert daemon.schedule(session_file) is False

    @pytest.mark.asyncio
    async def test_initial_scan(self, sync_engine, test_settings, session_file, fetch):
        config = test_settings.model_copy(update={"watch_initial_scan": True})
        daemon = WatcherDaemon(sync_engine, config)

        await daemon.start(observe=False)
        try:
            await asyncio.wait_for(daemon.wait_idle(), timeout=10)
        finally:
            await daemon.shutdown()

        assert daemon.stats.files_processed == 1
        assert len(fetch(Message)) == 2

    def test_scan_ignores_nested_and_top_level_files(
        self, daemon, test_settings, write_jsonl, user_line
    ):
        write_jsonl(test_settings.projects_directory / "top.jsonl", [user_line])
        write_jsonl(test_settings.projects_directory / "p" / "deep" / "x.jsonl", [user_line])
        write_jsonl(test_settings.projects_directory / "p" / "s2.jsonl", [user_line])

        assert daemon.scan_existing_files() == 1

    @pytest.mark.asyncio
    async def test_missing_directory(self, sync_engine, test_settings, tmp_path):
        daemon = WatcherDaemon(sync_engine, test_settings, tmp_path / "nope")

        with pytest.raises(ValueError):
            await daemon.start(observe=False)


class TestRun:
    """Tests for the full daemon lifecycle."""

    @pytest.mark.asyncio
    async def test_stop_ends_run(self, daemon):
        task = asyncio.create_task(daemon.run())
        await asyncio.sleep(0.1)
        assert daemon.running

        daemon.stop()
        await asyncio.wait_for(task, timeout=10)

        assert not daemon.running
        assert not daemon.schedule(Path("/p/s1.jsonl"))

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_written_file_is_synced(
        self, daemon, test_settings, write_jsonl, user_line, fetch
    ):
        (test_settings.projects_directory / "proj").mkdir()
        task = asyncio.create_task(daemon.run())
        await asyncio.sleep(0.2)
        try:
            write_jsonl(test_settings.projects_directory / "proj" / "s1.jsonl", [user_line])
            rows = await wait_for_rows(fetch, Message, 1)
        finally:
            daemon.stop()
            await asyncio.wait_for(task, timeout=10)

        assert [row.id for row in rows] == ["m0"]
        assert daemon.stats.last_activity <= datetime.now()
