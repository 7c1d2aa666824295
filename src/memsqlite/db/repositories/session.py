"""
Session repository.
"""

from sqlalchemy.orm import Session

from memsqlite.db.repositories.base import BaseRepository
from memsqlite.models.db import ConversationSession
from memsqlite.models.records import SessionRecord


class SessionRepository(BaseRepository[ConversationSession]):
    """Repository for ConversationSession model."""

    def __init__(self, session: Session):
        super().__init__(ConversationSession, session)

    def ensure(self, record: SessionRecord) -> bool:
        """
        Insert the session unless it already exists.

        Returns:
            True if a row was inserted
        """
        if self.exists(record.id):
            return False
        self.create(
            id=record.id,
            session_id=record.session_id,
            session_path=record.session_path,
        )
        return True
