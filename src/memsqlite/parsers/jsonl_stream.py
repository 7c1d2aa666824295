"""
Streaming JSONL reader.

Reads a Claude Code log file line by line without holding the whole file in
memory (above a size threshold), decodes each non-empty line as JSON and
groups the results into batches. Lines that are too long or do not decode
are reported as LineError values and skipped; they never stop the stream.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterator, Optional, Union

from memsqlite.exceptions import ParserError

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_LINE_LENGTH = 10 * 1024 * 1024
DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_STREAMING_THRESHOLD = 10 * 1024 * 1024

JSON_PREVIEW_CHARS = 200
LONG_LINE_PREVIEW_CHARS = 100


class LineErrorKind(str, Enum):
    LINE_TOO_LONG = "line_too_long"
    INVALID_JSON = "invalid_json"
    INVALID_ENCODING = "invalid_encoding"


@dataclass(frozen=True)
class LineError:
    """A line that was skipped, and why."""

    line_number: int
    kind: LineErrorKind
    message: str
    preview: str

    def __str__(self) -> str:
        return f"line {self.line_number}: {self.kind.value}: {self.message}"


@dataclass(frozen=True)
class JSONLEntry:
    """One decoded line. ``data`` may be any JSON value, not only objects."""

    data: Any
    line_number: int
    offset: int  # Byte offset of the start of the line
    end_offset: int  # Byte offset just past the line terminator


@dataclass
class LineBatch:
    entries: list[JSONLEntry] = field(default_factory=list)
    errors: list[LineError] = field(default_factory=list)
    end_offset: int = 0  # Resume point once this batch is committed
    end_line: int = 0

    def __len__(self) -> int:
        return len(self.entries)


@dataclass
class StreamStats:
    """Progress counters for one read. Advisory only."""

    total_lines: int = 0  # Non-empty lines seen
    parsed_lines: int = 0
    error_lines: int = 0
    end_offset: int = 0  # Byte offset just past the last consumed line
    end_line: int = 0
    started_at: float = 0.0
    finished_at: Optional[float] = None

    @property
    def duration(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    def to_dict(self) -> dict:
        return {
            "total_lines": self.total_lines,
            "parsed_lines": self.parsed_lines,
            "error_lines": self.error_lines,
            "end_offset": self.end_offset,
            "duration_seconds": round(self.duration, 3),
        }


@dataclass
class _RawLine:
    line_number: int
    offset: int
    end_offset: int
    data: Optional[bytes]  # None when the line overflowed max_line_length
    length: int
    terminated: bool
    preview: bytes = b""


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class JSONLStreamReader:
    """
    Lazy reader over one JSONL file.

    Every ``iter_*`` call opens the file afresh and resets ``stats`` and
    ``errors``; iteration cannot be resumed mid-stream, but ``start_offset``
    lets a later call continue after bytes that were already handled.

    A trailing fragment without a newline is treated as a line still being
    written: if it does not decode, it is left unconsumed (``stats.end_offset``
    stops before it) instead of being reported as an error.
    """

    def __init__(
        self,
        file_path: Union[str, Path],
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        streaming_threshold: int = DEFAULT_STREAMING_THRESHOLD,
        start_offset: int = 0,
        start_line: int = 0,
        progress_callback: Optional[Callable[[StreamStats], None]] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.file_path = Path(file_path)
        self.batch_size = batch_size
        self.max_line_length = max_line_length
        self.chunk_size = chunk_size
        self.streaming_threshold = streaming_threshold
        self.start_offset = start_offset
        self.start_line = start_line
        self.progress_callback = progress_callback

        self.stats = StreamStats()
        self.errors: list[LineError] = []

    def _chunks(self, f: BinaryIO, remaining: int) -> Iterator[bytes]:
        if remaining < self.streaming_threshold:
            # Small file: one read, same line handling
            data = f.read()
            if data:
                yield data
            return
        while True:
            chunk = f.read(self.chunk_size)
            if not chunk:
                return
            yield chunk

    def _iter_raw_lines(self) -> Iterator[_RawLine]:
        try:
            f = self.file_path.open("rb")
        except OSError as e:
            raise ParserError(f"Cannot read file {self.file_path}: {e}") from e

        with f:
            try:
                size = self.file_path.stat().st_size
            except OSError as e:
                raise ParserError(f"Cannot stat file {self.file_path}: {e}") from e
            f.seek(self.start_offset)

            buffer = bytearray()
            overflow = False
            length = 0
            preview = b""
            line_start = self.start_offset
            line_number = self.start_line

            for chunk in self._chunks(f, size - self.start_offset):
                pos = 0
                while pos < len(chunk):
                    newline = chunk.find(b"\n", pos)
                    if newline == -1:
                        piece, pos, terminated = chunk[pos:], len(chunk), False
                    else:
                        piece, pos, terminated = chunk[pos:newline], newline + 1, True

                    length += len(piece)
                    if not overflow:
                        buffer += piece
                        if len(buffer) > self.max_line_length:
                            # Keep only a preview; drop the rest of this line
                            overflow = True
                            preview = bytes(buffer[: LONG_LINE_PREVIEW_CHARS])
                            buffer.clear()

                    if terminated:
                        line_number += 1
                        end = line_start + length + 1
                        yield _RawLine(
                            line_number=line_number,
                            offset=line_start,
                            end_offset=end,
                            data=None if overflow else bytes(buffer),
                            length=length,
                            terminated=True,
                            preview=preview,
                        )
                        buffer.clear()
                        overflow = False
                        length = 0
                        preview = b""
                        line_start = end

            if length:
                yield _RawLine(
                    line_number=line_number + 1,
                    offset=line_start,
                    end_offset=line_start + length,
                    data=None if overflow else bytes(buffer),
                    length=length,
                    terminated=False,
                    preview=preview,
                )

    def _error(self, raw: _RawLine, kind: LineErrorKind, message: str, preview: str) -> LineError:
        error = LineError(
            line_number=raw.line_number, kind=kind, message=message, preview=preview
        )
        self.stats.total_lines += 1
        self.stats.error_lines += 1
        self.errors.append(error)
        logger.warning(f"Skipping line in {self.file_path}: {error}")
        return error

    def _consume(self, raw: _RawLine) -> None:
        self.stats.end_offset = raw.end_offset
        self.stats.end_line = raw.line_number

    def iter_items(self) -> Iterator[Union[JSONLEntry, LineError]]:
        """
        Yield decoded entries and line errors in file order.

        Raises:
            ParserError: If the file cannot be opened at all
        """
        self.stats = StreamStats(
            end_offset=self.start_offset,
            end_line=self.start_line,
            started_at=time.monotonic(),
        )
        self.errors = []

        for raw in self._iter_raw_lines():
            if raw.data is None:
                preview = _truncate(
                    raw.preview.decode("utf-8", errors="replace"), LONG_LINE_PREVIEW_CHARS
                )
                if not preview.endswith("..."):
                    preview += "..."
                self._consume(raw)
                yield self._error(
                    raw,
                    LineErrorKind.LINE_TOO_LONG,
                    f"line is {raw.length} bytes, limit is {self.max_line_length}",
                    preview,
                )
                continue

            try:
                text = raw.data.decode("utf-8").strip()
            except UnicodeDecodeError as e:
                if not raw.terminated:
                    break
                self._consume(raw)
                yield self._error(
                    raw,
                    LineErrorKind.INVALID_ENCODING,
                    str(e),
                    _truncate(raw.data.decode("utf-8", errors="replace"), JSON_PREVIEW_CHARS),
                )
                continue

            if not text:
                if raw.terminated:
                    self._consume(raw)
                continue

            try:
                data = json.loads(text)
            except json.JSONDecodeError as e:
                if not raw.terminated:
                    logger.debug(
                        f"Leaving incomplete trailing line {raw.line_number} "
                        f"of {self.file_path} for the next pass"
                    )
                    break
                self._consume(raw)
                yield self._error(
                    raw,
                    LineErrorKind.INVALID_JSON,
                    str(e),
                    _truncate(text, JSON_PREVIEW_CHARS),
                )
                continue

            self._consume(raw)
            self.stats.total_lines += 1
            self.stats.parsed_lines += 1
            yield JSONLEntry(
                data=data,
                line_number=raw.line_number,
                offset=raw.offset,
                end_offset=raw.end_offset,
            )

        self.stats.finished_at = time.monotonic()

    def iter_entries(self) -> Iterator[JSONLEntry]:
        """Yield decoded entries only; errors accumulate in ``self.errors``."""
        for item in self.iter_items():
            if isinstance(item, JSONLEntry):
                yield item

    def iter_batches(self) -> Iterator[LineBatch]:
        """
        Yield batches of up to ``batch_size`` entries.

        Each batch also carries the line errors met while filling it and the
        byte offset at which a later pass should resume once the batch has
        been committed.
        """
        batch = LineBatch()
        flushed_offset = self.start_offset
        for item in self.iter_items():
            if isinstance(item, LineError):
                batch.errors.append(item)
                continue
            batch.entries.append(item)
            if len(batch.entries) >= self.batch_size:
                yield self._close_batch(batch)
                flushed_offset = batch.end_offset
                batch = LineBatch()

        if batch.entries or batch.errors or self.stats.end_offset != flushed_offset:
            yield self._close_batch(batch)

    def _close_batch(self, batch: LineBatch) -> LineBatch:
        batch.end_offset = self.stats.end_offset
        batch.end_line = self.stats.end_line
        logger.debug(
            f"{self.file_path.name}: batch of {len(batch.entries)} entries, "
            f"{self.stats.parsed_lines} parsed / {self.stats.error_lines} errors so far"
        )
        if self.progress_callback is not None:
            self.progress_callback(self.stats)
        return batch


def read_entries(file_path: Union[str, Path], **kwargs: Any) -> list[JSONLEntry]:
    """Read every decodable entry of a file into a list."""
    return list(JSONLStreamReader(file_path, **kwargs).iter_entries())


def count_lines(file_path: Union[str, Path]) -> int:
    """Count newline-terminated lines without decoding them."""
    count = 0
    with Path(file_path).open("rb") as f:
        for chunk in iter(lambda: f.read(DEFAULT_CHUNK_SIZE), b""):
            count += chunk.count(b"\n")
    return count
