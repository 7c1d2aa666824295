"""
Placeholder parents for unresolved foreign keys.

When an insert fails its foreign key check (for example a tool result whose
tool use lives in a line we never saw), the missing parent row is created
with neutral placeholder values so that the child can be stored.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from memsqlite.db.repositories import (
    MessageRepository,
    SessionRepository,
    ToolUseRepository,
)
from memsqlite.models.db import MessageKind
from memsqlite.models.records import MessageRecord, SessionRecord, ToolUseRecord

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"

# child table -> [(foreign key attribute, parent table)]
RELATIONSHIPS: dict[str, list[tuple[str, str]]] = {
    "messages": [("session_id", "sessions")],
    "tool_uses": [("message_id", "messages")],
    "tool_use_results": [("message_id", "messages"), ("tool_use_id", "tool_uses")],
    "attachments": [("message_id", "messages")],
    "env_info": [("message_id", "messages")],
}


class ForeignKeyRepairer:
    """Creates the missing parents of one record inside the current transaction."""

    def __init__(self, session: Session):
        self.sessions = SessionRepository(session)
        self.messages = MessageRepository(session)
        self.tool_uses = ToolUseRepository(session)

    def _ensure_session(self, session_id: str, created: list[str]) -> None:
        if self.sessions.ensure(
            SessionRecord(id=session_id, session_id=session_id, session_path=UNKNOWN)
        ):
            created.append(f"sessions:{session_id}")

    def _ensure_message(self, message_id: str, session_id: str, created: list[str]) -> None:
        if self.messages.exists(message_id):
            return
        self._ensure_session(session_id, created)
        self.messages.insert(
            MessageRecord(
                id=message_id,
                session_id=session_id,
                kind=MessageKind.TOOL_CARRIER.value,
                timestamp=datetime.now(timezone.utc).isoformat(),
                is_placeholder=True,
            )
        )
        created.append(f"messages:{message_id}")

    def _ensure_tool_use(
        self, tool_use_id: str, message_id: str, session_id: str, created: list[str]
    ) -> None:
        if self.tool_uses.exists(tool_use_id):
            return
        self._ensure_message(message_id, session_id, created)
        self.tool_uses.insert(
            ToolUseRecord(
                id=tool_use_id,
                message_id=message_id,
                tool_id=tool_use_id,
                tool_name=UNKNOWN,
            )
        )
        created.append(f"tool_uses:{tool_use_id}")

    def repair(self, table: str, record: Any, session_id: str = UNKNOWN) -> list[str]:
        """
        Create every missing parent of ``record``.

        Args:
            table: Table the record was being inserted into
            record: The record whose insert failed
            session_id: Session to hang placeholder messages on

        Returns:
            ``"<table>:<id>"`` for each placeholder created; empty if nothing
            was missing, meaning the failure cannot be repaired this way
        """
        created: list[str] = []
        for attribute, parent in RELATIONSHIPS.get(table, []):
            parent_id = getattr(record, attribute)
            if parent == "sessions":
                self._ensure_session(parent_id, created)
            elif parent == "messages":
                self._ensure_message(parent_id, session_id or UNKNOWN, created)
            elif parent == "tool_uses":
                self._ensure_tool_use(
                    parent_id, record.message_id, session_id or UNKNOWN, created
                )

        if created:
            logger.info(
                f"Created placeholder parents for {table} record {record.id}: "
                f"{', '.join(created)}"
            )
        return created
