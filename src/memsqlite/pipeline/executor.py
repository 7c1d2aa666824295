"""
Transactional executor.

Writes one batch of parsed entries in a single SQLite transaction:

    BEGIN IMMEDIATE
      -> sessions -> placeholder messages -> messages -> tool uses
      -> tool results -> attachments / env info
    COMMIT

Rows whose primary key already exists are skipped and counted as updates, so
re-processing a file is harmless. Each record is inserted inside its own
SAVEPOINT; a foreign-key failure triggers placeholder-parent repair and a
bounded retry, and if that is exhausted only that record is rolled back and
reported. Any other error rolls back the whole batch. A busy database is
retried with exponential backoff.
"""

import asyncio
import logging
from contextlib import nullcontext
from dataclasses import dataclass, field, fields
from typing import Any, AsyncContextManager, Callable, Optional, Sequence

from sqlalchemy import Connection
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from memsqlite.db.connection import transaction
from memsqlite.db.locks import WRITE_LOCK, LockManager
from memsqlite.db.pool import ConnectionPool
from memsqlite.db.repositories import (
    AttachmentRepository,
    EnvInfoRepository,
    MessageRepository,
    SessionRepository,
    ToolResultRepository,
    ToolUseRepository,
)
from memsqlite.exceptions import (
    ForeignKeyResolutionError,
    MemSQLiteError,
    StoreBusyError,
    TransactionError,
    is_busy_error,
    is_foreign_key_error,
)
from memsqlite.models.records import ParsedEntry
from memsqlite.pipeline import audit_log
from memsqlite.pipeline.audit_log import AuditEntry, AuditLog
from memsqlite.pipeline.fk_repair import ForeignKeyRepairer
from memsqlite.utils.concurrency import run_to_completion

logger = logging.getLogger(__name__)


@dataclass
class BusyRetryConfig:
    """Backoff for SQLITE_BUSY: delay = min(base * 2^(attempt-1), max)."""

    max_attempts: int = 5
    base_delay: float = 0.05
    max_delay: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


@dataclass
class ExecuteResult:
    """Outcome of one batch. Per-record failures live in ``errors``."""

    sessions_inserted: int = 0
    messages_inserted: int = 0
    messages_updated: int = 0
    placeholders_inserted: int = 0
    tool_uses_inserted: int = 0
    tool_uses_updated: int = 0
    tool_results_inserted: int = 0
    tool_results_updated: int = 0
    attachments_inserted: int = 0
    attachments_updated: int = 0
    env_info_inserted: int = 0
    env_info_updated: int = 0
    parents_synthesized: int = 0
    attempts: int = 0
    errors: list[MemSQLiteError] = field(default_factory=list)

    @property
    def inserted(self) -> int:
        return (
            self.messages_inserted
            + self.placeholders_inserted
            + self.tool_uses_inserted
            + self.tool_results_inserted
            + self.attachments_inserted
            + self.env_info_inserted
        )

    @property
    def updated(self) -> int:
        return (
            self.messages_updated
            + self.tool_uses_updated
            + self.tool_results_updated
            + self.attachments_updated
            + self.env_info_updated
        )

    def merge(self, other: "ExecuteResult") -> None:
        for f in fields(self):
            if f.name == "errors":
                self.errors.extend(other.errors)
            elif f.name == "attempts":
                self.attempts = max(self.attempts, other.attempts)
            else:
                setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "errors"}
        data["errors"] = [error.to_dict() for error in self.errors]
        return data


class _BatchWriter:
    """Runs the phases of one batch against one ORM session (worker thread)."""

    def __init__(self, session: Session, fk_max_retries: int):
        self.session = session
        self.fk_max_retries = fk_max_retries
        self.sessions = SessionRepository(session)
        self.messages = MessageRepository(session)
        self.tool_uses = ToolUseRepository(session)
        self.tool_results = ToolResultRepository(session)
        self.attachments = AttachmentRepository(session)
        self.env_info = EnvInfoRepository(session)
        self.repairer = ForeignKeyRepairer(session)
        self.result = ExecuteResult()
        self.audit: list[AuditEntry] = []

    def _insert(
        self, table: str, record: Any, insert: Callable[[Any], Any], session_id: str
    ) -> bool:
        """
        Insert one record, repairing missing parents up to the retry bound.

        Returns:
            True if inserted; False if the record was given up on (the
            failure is recorded and nothing from the record persists)
        """
        repairs = 0
        try:
            with self.session.begin_nested():
                while True:
                    try:
                        with self.session.begin_nested():
                            insert(record)
                        return True
                    except IntegrityError as e:
                        if not is_foreign_key_error(e):
                            raise
                        if repairs >= self.fk_max_retries:
                            raise ForeignKeyResolutionError(table, record.id, repairs) from e
                        repairs += 1
                        created = self.repairer.repair(table, record, session_id)
                        if not created:
                            raise ForeignKeyResolutionError(table, record.id, repairs) from e
                        self.result.parents_synthesized += len(created)
        except ForeignKeyResolutionError as e:
            logger.warning(str(e))
            self.result.errors.append(e)
            return False

    def write_sessions(self, entries: Sequence[ParsedEntry]) -> None:
        seen: set[str] = set()
        for entry in entries:
            record = entry.session
            if record is None or record.id in seen:
                continue
            seen.add(record.id)
            if self.sessions.ensure(record):
                self.result.sessions_inserted += 1
                self.audit.append(audit_log.session_inserted(record))

    def write_messages(self, entries: Sequence[ParsedEntry], placeholders: bool) -> None:
        for entry in entries:
            record = entry.message
            if record is None or record.is_placeholder != placeholders:
                continue
            if self.messages.exists(record.id):
                self.result.messages_updated += 1
                continue
            if self._insert("messages", record, self.messages.insert, record.session_id):
                if placeholders:
                    self.result.placeholders_inserted += 1
                else:
                    self.result.messages_inserted += 1
                self.audit.append(audit_log.message_inserted(record))

    def write_tool_uses(self, entries: Sequence[ParsedEntry]) -> None:
        for entry in entries:
            session_id = entry.session.id if entry.session else ""
            for record in entry.tool_uses:
                if self.tool_uses.exists(record.id):
                    self.result.tool_uses_updated += 1
                    continue
                if self._insert("tool_uses", record, self.tool_uses.insert, session_id):
                    self.result.tool_uses_inserted += 1
                    self.audit.append(audit_log.tool_use_inserted(record, session_id))

    def write_tool_results(self, entries: Sequence[ParsedEntry]) -> None:
        for entry in entries:
            session_id = entry.session.id if entry.session else ""
            for record in entry.tool_results:
                existing = self.tool_results.exists(record.id) or (
                    self.tool_results.find_by_origin(record.tool_use_id, record.message_id)
                    is not None
                )
                if existing:
                    self.result.tool_results_updated += 1
                    continue
                if self._insert(
                    "tool_use_results", record, self.tool_results.insert, session_id
                ):
                    self.result.tool_results_inserted += 1
                    self.audit.append(audit_log.tool_result_inserted(record, session_id))

    def write_context(self, entries: Sequence[ParsedEntry]) -> None:
        for entry in entries:
            session_id = entry.session.id if entry.session else ""
            for record in entry.attachments:
                if self.attachments.exists(record.id):
                    self.result.attachments_updated += 1
                elif self._insert("attachments", record, self.attachments.insert, session_id):
                    self.result.attachments_inserted += 1

            record = entry.env_info
            if record is None:
                continue
            if self.env_info.exists(record.id):
                self.result.env_info_updated += 1
            elif self._insert("env_info", record, self.env_info.insert, session_id):
                self.result.env_info_inserted += 1

    def run(self, entries: Sequence[ParsedEntry]) -> None:
        self.write_sessions(entries)
        self.write_messages(entries, placeholders=True)
        self.write_messages(entries, placeholders=False)
        self.write_tool_uses(entries)
        self.write_tool_results(entries)
        self.write_context(entries)


class TransactionalExecutor:
    """
    Persists batches of ParsedEntry records.

    Args:
        pool: Pool of writable connections
        audit: Audit log receiving one line per committed insert
        lock_manager: Cross-process locks; when given, the write lock is held
            for the duration of each batch
        fk_max_retries: Placeholder-repair attempts per record
        busy_retry: Backoff settings for a busy database
        lock_timeout: Seconds to wait for the write lock
    """

    def __init__(
        self,
        pool: ConnectionPool,
        audit: Optional[AuditLog] = None,
        lock_manager: Optional[LockManager] = None,
        fk_max_retries: int = 3,
        busy_retry: Optional[BusyRetryConfig] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.pool = pool
        self.audit = audit
        self.lock_manager = lock_manager
        self.fk_max_retries = fk_max_retries
        self.busy_retry = busy_retry or BusyRetryConfig()
        self.lock_timeout = lock_timeout

    def _write_batch(
        self, connection: Connection, entries: Sequence[ParsedEntry]
    ) -> ExecuteResult:
        with transaction(connection) as session:
            writer = _BatchWriter(session, self.fk_max_retries)
            writer.run(entries)
        # Committed. Audit here so a caller cancelled mid-batch still logs it
        if self.audit is not None:
            self.audit.write(writer.audit)
        return writer.result

    def _write_lock(self) -> AsyncContextManager:
        if self.lock_manager is None:
            return nullcontext()
        return self.lock_manager.hold(WRITE_LOCK, self.lock_timeout)

    async def execute(self, entries: Sequence[ParsedEntry]) -> ExecuteResult:
        """
        Write one batch atomically.

        Args:
            entries: Parsed entries in file order

        Returns:
            ExecuteResult with per-table counts and per-record failures

        Raises:
            StoreBusyError: If the database stayed busy through every retry
            TransactionError: If the batch failed and was rolled back
            LockTimeoutError: If the write lock could not be acquired
            PoolTimeoutError: If no connection became available
        """
        pending = [entry for entry in entries if not entry.is_empty]
        if not pending:
            return ExecuteResult()

        async with self._write_lock():
            attempt = 0
            while True:
                attempt += 1
                try:
                    async with self.pool.connection() as connection:
                        result = await run_to_completion(
                            self._write_batch, connection, pending
                        )
                    break
                except OperationalError as e:
                    if not is_busy_error(e):
                        raise TransactionError(
                            f"Batch of {len(pending)} entries rolled back: "
                            f"{type(e).__name__}"
                        ) from e
                    if attempt >= self.busy_retry.max_attempts:
                        raise StoreBusyError(
                            f"Database still busy after {attempt} attempts",
                            {"attempts": attempt},
                        ) from e
                    delay = self.busy_retry.delay_for(attempt)
                    logger.warning(
                        f"Database busy (attempt {attempt}/"
                        f"{self.busy_retry.max_attempts}), retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                except MemSQLiteError:
                    raise
                except Exception as e:
                    raise TransactionError(
                        f"Batch of {len(pending)} entries rolled back: {type(e).__name__}"
                    ) from e

        result.attempts = attempt
        logger.debug(
            f"Committed batch: {result.inserted} inserted, {result.updated} updated, "
            f"{len(result.errors)} errors"
        )
        return result

    async def execute_one(self, entry: ParsedEntry) -> ExecuteResult:
        return await self.execute([entry])
