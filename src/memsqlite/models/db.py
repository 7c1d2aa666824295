"""
SQLAlchemy database models for memsqlite.

These models represent the SQLite schema for storing Claude Code conversation
logs. Primary keys are string ids preserved from the log source wherever the
source assigns one, so foreign keys track the origin system's ids.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class MessageKind(str, enum.Enum):
    """Persisted message kind."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    SUMMARY = "summary"
    TOOL_CARRIER = "tool_carrier"  # Placeholder satisfying tool record FKs


class ConversationSession(Base):
    """One Claude Code session (one JSONL file)."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    session_path: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    messages: Mapped[list["Message"]] = relationship(
        back_populates="session", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (Index("idx_sessions_created", "created_at"),)

    def __repr__(self) -> str:
        return f"<ConversationSession(id={self.id}, path={self.session_path})>"


class Message(Base):
    """One line-level conversational event."""

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    timestamp: Mapped[str] = mapped_column(
        String(64), nullable=False, index=True
    )  # ISO-8601 text as written by the log source
    is_sidechain: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default="0"
    )
    parent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Summary lines
    project_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    active_file: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # User turns
    user_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    user_attachments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tool_use_result_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    tool_use_result_name: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    system_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Assistant turns
    assistant_role: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    assistant_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    assistant_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    session: Mapped["ConversationSession"] = relationship(back_populates="messages")
    tool_uses: Mapped[list["ToolUse"]] = relationship(
        back_populates="message", cascade="all, delete-orphan", passive_deletes=True
    )
    tool_results: Mapped[list["ToolResult"]] = relationship(
        back_populates="message", cascade="all, delete-orphan", passive_deletes=True
    )
    attachments: Mapped[list["Attachment"]] = relationship(
        cascade="all, delete-orphan", passive_deletes=True
    )
    env_info: Mapped[Optional["EnvInfo"]] = relationship(
        cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("idx_messages_session_timestamp", "session_id", "timestamp"),
        Index("idx_messages_kind_timestamp", "kind", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, kind={self.kind}, session={self.session_id})>"


class ToolUse(Base):
    """One tool invocation. The id is the origin tool-call id, verbatim."""

    __tablename__ = "tool_uses"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    message_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tool_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tool_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    parameters: Mapped[str] = mapped_column(
        Text, nullable=False, server_default="{}"
    )  # JSON-serialized tool input
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    message: Mapped["Message"] = relationship(back_populates="tool_uses")
    results: Mapped[list["ToolResult"]] = relationship(
        back_populates="tool_use", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (Index("idx_tool_uses_name_message", "tool_name", "message_id"),)

    def __repr__(self) -> str:
        return f"<ToolUse(id={self.id}, tool_name={self.tool_name})>"


class ToolResult(Base):
    """One tool execution outcome."""

    __tablename__ = "tool_use_results"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    tool_use_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("tool_uses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    message_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    output_mime_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    tool_use: Mapped["ToolUse"] = relationship(back_populates="results")
    message: Mapped["Message"] = relationship(back_populates="tool_results")

    # Result ids are generated per extraction; the pair below identifies a result
    __table_args__ = (
        UniqueConstraint("tool_use_id", "message_id", name="uq_tool_result_origin"),
    )

    def __repr__(self) -> str:
        return f"<ToolResult(id={self.id}, tool_use_id={self.tool_use_id})>"


class Attachment(Base):
    """File, image or URL attached to a message."""

    __tablename__ = "attachments"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    message_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mime_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Attachment(id={self.id}, type={self.type})>"


class EnvInfo(Base):
    """Working directory / platform / git context captured with a message."""

    __tablename__ = "env_info"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    message_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    working_directory: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_git_repo: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default="0"
    )
    git_branch: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    platform: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    os_version: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    todays_date: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    def __repr__(self) -> str:
        return f"<EnvInfo(id={self.id}, cwd={self.working_directory})>"
