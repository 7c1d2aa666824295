"""
One file-processing pass.

Reads a Claude Code session file from a byte offset, transforms each batch of
lines and hands it to the TransactionalExecutor. Batches are committed in
file order, so a later line's reference to an earlier line always resolves.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from memsqlite.config import Settings
from memsqlite.db.locks import LockManager
from memsqlite.exceptions import LockTimeoutError, MemSQLiteError
from memsqlite.parsers.claude_code import ClaudeCodeTransformer, session_id_from_path
from memsqlite.parsers.jsonl_stream import JSONLStreamReader, LineError
from memsqlite.pipeline.executor import ExecuteResult, TransactionalExecutor

logger = logging.getLogger(__name__)


@dataclass
class FileSyncResult:
    """Summary of one pass over one file."""

    file_path: Path
    session_id: str
    start_offset: int = 0
    end_offset: int = 0  # Offset up to which batches were committed
    end_line: int = 0
    batches: int = 0
    lines_parsed: int = 0
    line_errors: list[LineError] = field(default_factory=list)
    validation_errors: list[str] = field(default_factory=list)
    execute: ExecuteResult = field(default_factory=ExecuteResult)
    failure: Optional[MemSQLiteError] = None  # Set when a batch was rolled back
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.failure is None

    def to_dict(self) -> dict:
        return {
            "file_path": str(self.file_path),
            "session_id": self.session_id,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "batches": self.batches,
            "lines_parsed": self.lines_parsed,
            "line_errors": len(self.line_errors),
            "validation_errors": len(self.validation_errors),
            "inserted": self.execute.inserted,
            "updated": self.execute.updated,
            "record_errors": len(self.execute.errors),
            "failure": self.failure.to_dict() if self.failure else None,
            "duration_seconds": round(self.duration, 3),
        }


class SyncEngine:
    """Runs file passes against one executor."""

    def __init__(
        self,
        executor: TransactionalExecutor,
        config: Settings,
        lock_manager: Optional[LockManager] = None,
    ):
        self.executor = executor
        self.config = config
        self.lock_manager = lock_manager

    async def process_file(
        self,
        file_path: Union[str, Path],
        start_offset: int = 0,
        start_line: int = 0,
    ) -> FileSyncResult:
        """
        Sync one file from ``start_offset`` to its last complete line.

        A batch that rolls back stops the pass: ``end_offset`` then points
        after the last committed batch and ``failure`` holds the error, so the
        caller can retry from there.

        Raises:
            ParserError: If the file cannot be opened
        """
        file_path = Path(file_path)
        session_id = session_id_from_path(file_path)
        result = FileSyncResult(
            file_path=file_path,
            session_id=session_id,
            start_offset=start_offset,
            end_offset=start_offset,
            end_line=start_line,
        )
        started = time.monotonic()

        if self.lock_manager is not None:
            try:
                async with self.lock_manager.session_lock(session_id).hold(
                    self.config.lock_timeout
                ):
                    await self._run(file_path, result, start_offset, start_line)
            except LockTimeoutError as e:
                result.failure = e
                logger.warning(f"Skipping {file_path.name} for now: {e}")
        else:
            await self._run(file_path, result, start_offset, start_line)

        result.duration = time.monotonic() - started
        if result.success:
            logger.info(
                f"✓ Synced {file_path.name}: {result.execute.inserted} inserted, "
                f"{result.execute.updated} unchanged, {len(result.line_errors)} bad lines "
                f"({result.duration:.2f}s)"
            )
        return result

    async def _run(
        self,
        file_path: Path,
        result: FileSyncResult,
        start_offset: int,
        start_line: int,
    ) -> None:
        reader = JSONLStreamReader(
            file_path,
            batch_size=self.config.sync_batch_size,
            max_line_length=self.config.sync_max_line_length,
            chunk_size=self.config.sync_chunk_size,
            streaming_threshold=self.config.sync_streaming_threshold,
            start_offset=start_offset,
            start_line=start_line,
        )
        transformer = ClaudeCodeTransformer(file_path, session_id=result.session_id)

        for batch in reader.iter_batches():
            parsed = transformer.transform_all(batch.entries)
            try:
                batch_result = await self.executor.execute(parsed)
            except MemSQLiteError as e:
                result.failure = e
                logger.error(
                    f"✗ Batch ending at line {batch.end_line} of {file_path.name} "
                    f"failed: {e}"
                )
                return

            result.batches += 1
            result.lines_parsed += len(batch.entries)
            result.line_errors.extend(batch.errors)
            for entry in parsed:
                result.validation_errors.extend(entry.errors)
            result.execute.merge(batch_result)
            result.end_offset = batch.end_offset
            result.end_line = batch.end_line
