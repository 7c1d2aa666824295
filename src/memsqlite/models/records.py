"""
Mapped record models.

Intermediate dataclasses produced by the schema mapper and consumed by the
transactional executor. Each record mirrors one row of the SQLite schema in
``memsqlite.models.db``.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Optional


@dataclass
class SessionRecord:
    id: str
    session_id: str
    session_path: str


@dataclass
class MessageRecord:
    """Row for the messages table."""

    id: str
    session_id: str
    kind: str  # MessageKind value
    timestamp: str
    is_sidechain: bool = False
    parent_id: Optional[str] = None
    project_name: Optional[str] = None
    active_file: Optional[str] = None
    user_text: Optional[str] = None
    user_type: Optional[str] = None
    user_attachments: Optional[str] = None
    tool_use_result_id: Optional[str] = None
    tool_use_result_name: Optional[str] = None
    system_text: Optional[str] = None
    assistant_role: Optional[str] = None
    assistant_text: Optional[str] = None
    assistant_model: Optional[str] = None
    is_placeholder: bool = False  # Not a column; marks synthetic carriers

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row.pop("is_placeholder")
        return row


@dataclass
class ToolUseRecord:
    id: str  # Origin tool-call id, never regenerated
    message_id: str
    tool_id: str
    tool_name: str
    parameters: str = "{}"


@dataclass
class ToolResultRecord:
    id: str
    tool_use_id: str
    message_id: str
    output: Optional[str] = None
    output_mime_type: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


@dataclass
class AttachmentRecord:
    id: str
    message_id: str
    type: str
    text: Optional[str] = None
    url: Optional[str] = None
    mime_type: Optional[str] = None
    title: Optional[str] = None
    file_path: Optional[str] = None


@dataclass
class EnvInfoRecord:
    id: str
    message_id: str
    working_directory: Optional[str] = None
    is_git_repo: bool = False
    git_branch: Optional[str] = None
    platform: Optional[str] = None
    os_version: Optional[str] = None
    todays_date: Optional[str] = None


@dataclass
class ParsedEntry:
    """
    Everything one log line maps to.

    ``errors`` holds validation messages for records that were dropped; the
    remaining records are safe to hand to the executor.
    """

    line_number: int
    session: Optional[SessionRecord] = None
    message: Optional[MessageRecord] = None
    tool_uses: list[ToolUseRecord] = field(default_factory=list)
    tool_results: list[ToolResultRecord] = field(default_factory=list)
    attachments: list[AttachmentRecord] = field(default_factory=list)
    env_info: Optional[EnvInfoRecord] = None
    errors: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return (
            self.message is None
            and not self.tool_uses
            and not self.tool_results
            and not self.attachments
            and self.env_info is None
        )
