"""
Base repository shared by all table repositories.
"""

from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from memsqlite.models.db import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """Primary-key lookups and inserts for one model."""

    def __init__(self, model: Type[ModelType], session: Session):
        self.model = model
        self.session = session

    def get(self, id: str) -> Optional[ModelType]:
        return self.session.get(self.model, id)

    def exists(self, id: str) -> bool:
        """Presence check by primary key."""
        stmt = select(self.model.id).where(self.model.id == id).limit(1)
        return self.session.execute(stmt).first() is not None

    def create(self, **kwargs: Any) -> ModelType:
        """
        Insert a row and flush it so constraint violations surface here.

        Args:
            **kwargs: Column values

        Returns:
            The new model instance
        """
        instance = self.model(**kwargs)
        self.session.add(instance)
        self.session.flush()
        return instance

    def count(self) -> int:
        return self.session.execute(
            select(func.count()).select_from(self.model)
        ).scalar_one()

    def get_all(self, limit: Optional[int] = None, offset: int = 0) -> list[ModelType]:
        stmt = select(self.model).offset(offset)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars())
