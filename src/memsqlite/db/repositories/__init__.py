"""Repositories for the memsqlite tables."""

from memsqlite.db.repositories.context import AttachmentRepository, EnvInfoRepository
from memsqlite.db.repositories.message import MessageRepository
from memsqlite.db.repositories.session import SessionRepository
from memsqlite.db.repositories.tool import ToolResultRepository, ToolUseRepository

__all__ = [
    "AttachmentRepository",
    "EnvInfoRepository",
    "MessageRepository",
    "SessionRepository",
    "ToolResultRepository",
    "ToolUseRepository",
]
