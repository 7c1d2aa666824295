"""
Attachment and EnvInfo repositories.
"""

from dataclasses import asdict

from sqlalchemy.orm import Session

from memsqlite.db.repositories.base import BaseRepository
from memsqlite.models.db import Attachment, EnvInfo
from memsqlite.models.records import AttachmentRecord, EnvInfoRecord


class AttachmentRepository(BaseRepository[Attachment]):
    def __init__(self, session: Session):
        super().__init__(Attachment, session)

    def insert(self, record: AttachmentRecord) -> Attachment:
        return self.create(**asdict(record))


class EnvInfoRepository(BaseRepository[EnvInfo]):
    def __init__(self, session: Session):
        super().__init__(EnvInfo, session)

    def insert(self, record: EnvInfoRecord) -> EnvInfo:
        return self.create(**asdict(record))
