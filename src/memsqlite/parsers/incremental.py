"""
File-position bookkeeping for incremental syncs.

The watcher remembers, per file, how many bytes have already been committed
to the store. On the next change notification only the bytes after that
offset are read, unless the file was truncated or rewritten underneath us,
in which case the whole file is processed again (inserts are idempotent).
"""

import hashlib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional


class ChangeType(str, Enum):
    """Type of file change detected."""

    APPEND = "append"  # New content added to end (resume from offset)
    TRUNCATE = "truncate"  # File shrank or vanished (start over)
    REWRITE = "rewrite"  # Already-committed bytes changed (start over)
    UNCHANGED = "unchanged"  # No changes detected


@dataclass
class FilePosition:
    """How far into a file the store is known to be up to date."""

    offset: int = 0  # Byte offset after the last committed line
    line_number: int = 0  # Line number at that offset
    file_size: int = 0  # File size when the offset was recorded
    partial_hash: Optional[str] = None  # SHA-256 of bytes [0, offset)


def calculate_partial_hash(file_path: Path, offset: int) -> str:
    """
    Calculate SHA-256 hash of file content up to specified offset.

    Args:
        file_path: Path to the file
        offset: Byte offset to read up to

    Returns:
        Hex-encoded SHA-256 hash of content from start to offset

    Raises:
        ValueError: If offset is negative or exceeds file size
    """
    if offset < 0:
        raise ValueError(f"Offset must be non-negative, got {offset}")

    file_size = file_path.stat().st_size
    if offset > file_size:
        raise ValueError(f"Offset {offset} exceeds file size {file_size} for {file_path}")

    sha256 = hashlib.sha256()
    remaining = offset
    with open(file_path, "rb") as f:
        while remaining > 0:
            chunk = f.read(min(65536, remaining))
            if not chunk:
                break
            sha256.update(chunk)
            remaining -= len(chunk)

    return sha256.hexdigest()


def detect_file_change_type(file_path: Path, position: FilePosition) -> ChangeType:
    """
    Detect what happened to a file since ``position`` was recorded.

    Args:
        file_path: Path to the file to check
        position: Bookkeeping from the previous pass

    Returns:
        ChangeType indicating the type of change detected
    """
    if not file_path.exists():
        return ChangeType.TRUNCATE

    current_size = file_path.stat().st_size

    if current_size < position.offset or current_size < position.file_size:
        return ChangeType.TRUNCATE

    if position.partial_hash and position.offset:
        if calculate_partial_hash(file_path, position.offset) != position.partial_hash:
            return ChangeType.REWRITE

    if current_size == position.file_size:
        return ChangeType.UNCHANGED

    return ChangeType.APPEND
