"""
ToolUse and ToolResult repositories.
"""

from dataclasses import asdict
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from memsqlite.db.repositories.base import BaseRepository
from memsqlite.models.db import ToolResult, ToolUse
from memsqlite.models.records import ToolResultRecord, ToolUseRecord


class ToolUseRepository(BaseRepository[ToolUse]):
    """Repository for ToolUse model."""

    def __init__(self, session: Session):
        super().__init__(ToolUse, session)

    def insert(self, record: ToolUseRecord) -> ToolUse:
        return self.create(**asdict(record))

    def get_by_message(self, message_id: str) -> list[ToolUse]:
        stmt = select(ToolUse).where(ToolUse.message_id == message_id)
        return list(self.session.execute(stmt).scalars())


class ToolResultRepository(BaseRepository[ToolResult]):
    """Repository for ToolResult model."""

    def __init__(self, session: Session):
        super().__init__(ToolResult, session)

    def insert(self, record: ToolResultRecord) -> ToolResult:
        return self.create(**asdict(record))

    def find_by_origin(self, tool_use_id: str, message_id: str) -> Optional[ToolResult]:
        """
        Find the result already stored for a tool call within a message.

        Result ids are generated at extraction time, so re-reading a line
        yields a new id for the same result; this lookup identifies it.
        """
        stmt = select(ToolResult).where(
            ToolResult.tool_use_id == tool_use_id,
            ToolResult.message_id == message_id,
        )
        return self.session.execute(stmt).scalars().first()

    def get_by_tool_use(self, tool_use_id: str) -> list[ToolResult]:
        stmt = select(ToolResult).where(ToolResult.tool_use_id == tool_use_id)
        return list(self.session.execute(stmt).scalars())
