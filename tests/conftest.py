"""
Pytest configuration and fixtures for memsqlite tests.

Every test gets its own SQLite file under ``tmp_path`` so that pools, locks
and the audit log never leak between tests.
"""

import json
from pathlib import Path
from typing import Any, Callable, Iterable

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.orm import Session

from memsqlite.config import Settings
from memsqlite.db.connection import create_db_engine, init_db
from memsqlite.db.locks import LockManager
from memsqlite.db.pool import ConnectionPool
from memsqlite.db.repositories import MessageRepository, SessionRepository
from memsqlite.models.records import MessageRecord, SessionRecord
from memsqlite.pipeline.audit_log import AuditLog
from memsqlite.pipeline.executor import BusyRetryConfig, TransactionalExecutor
from memsqlite.pipeline.sync import SyncEngine


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings pointing every path into the test's temporary directory."""
    projects = tmp_path / "projects"
    projects.mkdir()
    return Settings(
        _env_file=None,
        database_path=str(tmp_path / "data" / "claude_code.db"),
        log_dir=str(tmp_path / "logs"),
        log_file_enabled=False,
        projects_path=str(projects),
        pool_min_size=1,
        pool_max_size=4,
        pool_acquire_timeout=5.0,
        pool_sweep_interval=0,
        lock_timeout=2.0,
        lock_poll_interval=0.01,
        sync_batch_size=2,
        sync_busy_base_delay_ms=1,
        sync_busy_max_delay_ms=5,
        watch_debounce_seconds=0.05,
        watch_workers=2,
        watch_retry_interval=1,
        watch_initial_scan=False,
    )


@pytest.fixture
def engine(test_settings: Settings):
    """Writable engine with the schema created."""
    engine = create_db_engine(test_settings.database_file, test_settings.busy_timeout_ms)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def fetch(engine) -> Callable[..., list[Any]]:
    """
    Read rows of a model in a short-lived session.

    Sessions are closed straight away so that no test holds the write lock
    while the code under test is writing.
    """

    def _fetch(model, *criteria) -> list[Any]:
        with Session(engine, expire_on_commit=False) as session:
            stmt = select(model)
            for criterion in criteria:
                stmt = stmt.where(criterion)
            rows = list(session.execute(stmt).scalars())
            session.expunge_all()
            return rows

    return _fetch


@pytest_asyncio.fixture
async def pool(engine):
    pool = ConnectionPool(engine, min_size=1, max_size=4, sweep_interval=0)
    await pool.start()
    yield pool
    await pool.close()


@pytest.fixture
def lock_manager(test_settings: Settings) -> LockManager:
    return LockManager(
        test_settings.lock_directory,
        default_timeout=test_settings.lock_timeout,
        poll_interval=test_settings.lock_poll_interval,
    )


@pytest.fixture
def audit_log(test_settings: Settings) -> AuditLog:
    return AuditLog(test_settings.audit_log_file)


@pytest.fixture
def executor(pool, audit_log, lock_manager) -> TransactionalExecutor:
    return TransactionalExecutor(
        pool,
        audit=audit_log,
        lock_manager=lock_manager,
        fk_max_retries=3,
        busy_retry=BusyRetryConfig(max_attempts=3, base_delay=0.001, max_delay=0.005),
        lock_timeout=2.0,
    )


@pytest.fixture
def sync_engine(executor, test_settings, lock_manager) -> SyncEngine:
    return SyncEngine(executor, test_settings, lock_manager)


@pytest.fixture
def write_jsonl() -> Callable[[Path, Iterable[Any]], Path]:
    """Write values (dicts are JSON-encoded, strings written raw) one per line."""

    def _write(path: Path, lines: Iterable[Any], mode: str = "w") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open(mode, encoding="utf-8") as f:
            for line in lines:
                f.write((line if isinstance(line, str) else json.dumps(line)) + "\n")
        return path

    return _write


# ===== Sample log lines =====


@pytest.fixture
def assistant_tool_line() -> dict:
    """Assistant turn with text and one Read tool call."""
    return {
        "type": "assistant",
        "uuid": "m1",
        "sessionId": "s1",
        "timestamp": "2025-01-01T10:00:00Z",
        "message": {
            "role": "assistant",
            "content": [
                {"type": "text", "text": "ok"},
                {
                    "type": "tool_use",
                    "id": "toolu_1",
                    "name": "Read",
                    "input": {"file_path": "/a"},
                },
            ],
        },
    }


@pytest.fixture
def tool_result_line() -> dict:
    """User envelope carrying only the result of toolu_1."""
    return {
        "type": "user",
        "uuid": "m2",
        "sessionId": "s1",
        "parentUuid": "m1",
        "timestamp": "2025-01-01T10:00:01Z",
        "message": {
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": "toolu_1",
                    "content": "file contents",
                }
            ],
        },
    }


@pytest.fixture
def user_line() -> dict:
    return {
        "type": "user",
        "uuid": "m0",
        "sessionId": "s1",
        "timestamp": "2025-01-01T09:59:59Z",
        "cwd": "/home/dev/project",
        "gitBranch": "main",
        "platform": "linux",
        "userType": "external",
        "message": {"role": "user", "content": "Please read /a"},
    }


@pytest.fixture
def seeded(engine):
    """One session holding three user messages, m0 to m2."""
    with Session(engine) as session:
        SessionRepository(session).ensure(
            SessionRecord(id="s1", session_id="s1", session_path="/p/s1.jsonl")
        )
        messages = MessageRepository(session)
        for i in range(3):
            messages.insert(
                MessageRecord(
                    id=f"m{i}",
                    session_id="s1",
                    kind="user",
                    timestamp=f"2025-01-01T10:00:0{i}Z",
                    user_text=f"message {i}",
                )
            )
        session.commit()
    return engine
