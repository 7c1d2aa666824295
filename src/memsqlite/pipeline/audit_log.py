"""
Append-only audit trail of database mutations.

Every committed insert of a session, message, tool use or tool result is
written as one JSON line, so that external tools can tail the file for
change notification. Failing to write the audit log never fails a sync.
"""

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from memsqlite.models.records import (
    MessageRecord,
    SessionRecord,
    ToolResultRecord,
    ToolUseRecord,
)

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    """One line of the audit log."""

    operation: str
    table: str
    session_id: str
    changes: dict[str, Any]
    message_id: Optional[str] = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    log_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str, ensure_ascii=False)


def session_inserted(record: SessionRecord) -> AuditEntry:
    return AuditEntry(
        operation="INSERT",
        table="sessions",
        session_id=record.id,
        changes={"session_path": record.session_path},
    )


def message_inserted(record: MessageRecord) -> AuditEntry:
    return AuditEntry(
        operation="INSERT",
        table="messages",
        session_id=record.session_id,
        message_id=record.id,
        changes={
            "kind": record.kind,
            "placeholder": record.is_placeholder,
            "has_text": bool(record.user_text or record.assistant_text),
        },
    )


def tool_use_inserted(record: ToolUseRecord, session_id: str) -> AuditEntry:
    return AuditEntry(
        operation="INSERT",
        table="tool_uses",
        session_id=session_id,
        message_id=record.message_id,
        changes={"tool_use_id": record.id, "tool_name": record.tool_name},
    )


def tool_result_inserted(record: ToolResultRecord, session_id: str) -> AuditEntry:
    return AuditEntry(
        operation="INSERT",
        table="tool_use_results",
        session_id=session_id,
        message_id=record.message_id,
        changes={
            "tool_use_id": record.tool_use_id,
            "has_output": record.output is not None,
            "has_error": record.error is not None,
        },
    )


class AuditLog:
    """Writer for the JSONL audit file."""

    def __init__(self, path: Union[str, Path], enabled: bool = True):
        self.path = Path(path)
        self.enabled = enabled

    def write(self, entries: Iterable[AuditEntry]) -> int:
        """
        Append entries to the audit file.

        This function is safe to call - it will log but not raise if the
        file cannot be written.

        Returns:
            Number of entries written
        """
        if not self.enabled:
            return 0
        lines = [entry.to_json() for entry in entries]
        if not lines:
            return 0
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
        except OSError as e:
            logger.error(f"Failed to write {len(lines)} audit entries to {self.path}: {e}")
            return 0
        return len(lines)

    def read(self) -> list[dict[str, Any]]:
        """Load all entries; used by diagnostics and tests."""
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]
