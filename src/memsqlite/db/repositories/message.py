"""
Message repository.
"""

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from memsqlite.db.repositories.base import BaseRepository
from memsqlite.models.db import Message
from memsqlite.models.records import MessageRecord


class MessageRepository(BaseRepository[Message]):
    """Repository for Message model."""

    def __init__(self, session: Session):
        super().__init__(Message, session)

    def insert(self, record: MessageRecord) -> Message:
        return self.create(**record.to_row())

    def get_by_session(
        self, session_id: str, limit: Optional[int] = None
    ) -> list[Message]:
        """
        Get messages for a session in timestamp order.

        Args:
            session_id: Session id
            limit: Maximum number of results

        Returns:
            List of message instances
        """
        stmt = (
            select(Message)
            .where(Message.session_id == session_id)
            .order_by(Message.timestamp)
        )
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars())

    def count_by_kind(self) -> dict[str, int]:
        rows = self.session.execute(
            select(Message.kind, func.count()).group_by(Message.kind)
        )
        return {kind: count for kind, count in rows}
