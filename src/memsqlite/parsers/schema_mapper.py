"""
Map classified log lines onto the persisted record shapes.

The mapper decides whether a line gets a Message row, builds a placeholder
Message when tool records need one to satisfy their foreign keys, and
validates the required fields of every record. Records that fail validation
are dropped and described in ``ParsedEntry.errors``; mapping never raises.
"""

import json
from datetime import datetime, timezone
from typing import Any, Optional

from memsqlite.models.db import MessageKind
from memsqlite.models.records import (
    AttachmentRecord,
    EnvInfoRecord,
    MessageRecord,
    ParsedEntry,
    SessionRecord,
    ToolResultRecord,
    ToolUseRecord,
)
from memsqlite.parsers.classifier import ClassifiedLine, LineKind, should_store_message
from memsqlite.parsers.tool_extractor import ExtractedTools

MESSAGE_REQUIRED_FIELDS = ("id", "session_id", "kind", "timestamp")
TOOL_USE_REQUIRED_FIELDS = ("id", "message_id", "tool_id", "tool_name")
TOOL_RESULT_REQUIRED_FIELDS = ("id", "tool_use_id", "message_id")

ATTACHMENT_TYPES = ("image", "document")

_KIND_MAP = {
    LineKind.USER_MESSAGE: MessageKind.USER,
    LineKind.TOOL_RESULT_MESSAGE: MessageKind.USER,
    LineKind.ASSISTANT_MESSAGE: MessageKind.ASSISTANT,
    LineKind.TOOL_USE_MESSAGE: MessageKind.ASSISTANT,
    LineKind.SYSTEM_MESSAGE: MessageKind.SYSTEM,
    LineKind.SUMMARY_MESSAGE: MessageKind.SUMMARY,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _missing_fields(record: Any, required: tuple[str, ...]) -> list[str]:
    return [name for name in required if not getattr(record, name, None)]


def _validation_error(label: str, record: Any, missing: list[str]) -> str:
    record_id = getattr(record, "id", None) or "unknown"
    return f"Invalid {label} record {record_id}: missing fields [{', '.join(missing)}]"


def validate_message(record: MessageRecord) -> list[str]:
    missing = _missing_fields(record, MESSAGE_REQUIRED_FIELDS)
    return [_validation_error("message", record, missing)] if missing else []


def validate_tool_use(record: ToolUseRecord) -> list[str]:
    missing = _missing_fields(record, TOOL_USE_REQUIRED_FIELDS)
    return [_validation_error("tool use", record, missing)] if missing else []


def validate_tool_result(record: ToolResultRecord) -> list[str]:
    missing = _missing_fields(record, TOOL_RESULT_REQUIRED_FIELDS)
    return [_validation_error("tool result", record, missing)] if missing else []


def _message_field(raw: dict[str, Any], name: str) -> Any:
    message = raw.get("message")
    return message.get(name) if isinstance(message, dict) else None


def build_message(
    classified: ClassifiedLine, session_id: str, extracted: ExtractedTools
) -> MessageRecord:
    """Build the Message row for a line that carries storable content."""
    raw = classified.raw
    kind = _KIND_MAP[classified.kind]
    record = MessageRecord(
        id=classified.message_id,
        session_id=session_id,
        kind=kind.value,
        timestamp=classified.timestamp,
        is_sidechain=bool(raw.get("isSidechain")),
        parent_id=classified.parent_id,
    )

    if kind == MessageKind.USER:
        record.user_text = classified.user_text
        record.user_type = _str_or_none(raw.get("userType"))
        if isinstance(raw.get("attachments"), list):
            record.user_attachments = json.dumps(raw["attachments"], default=str)
        if extracted.tool_results:
            record.tool_use_result_id = extracted.tool_results[0].tool_use_id
            tool_use_result = raw.get("toolUseResult")
            if isinstance(tool_use_result, dict):
                record.tool_use_result_name = _str_or_none(tool_use_result.get("name"))
    elif kind == MessageKind.ASSISTANT:
        record.assistant_role = _str_or_none(_message_field(raw, "role")) or "assistant"
        record.assistant_text = classified.assistant_text
        record.assistant_model = _str_or_none(_message_field(raw, "model"))
    elif kind == MessageKind.SYSTEM:
        record.system_text = _str_or_none(raw.get("content"))
    elif kind == MessageKind.SUMMARY:
        # Summaries name the project/topic and carry no timestamp of their own
        record.project_name = _str_or_none(raw.get("summary"))
        record.active_file = _str_or_none(raw.get("activeFile"))
        record.timestamp = record.timestamp or _now_iso()

    return record


def build_placeholder_message(
    classified: ClassifiedLine, session_id: str, tool_results: list[ToolResultRecord]
) -> MessageRecord:
    """
    Build a synthetic tool-carrier Message.

    Only used when a line produced valid tool records but no displayable
    text, so that the tool rows have a parent to reference.
    """
    raw = classified.raw if isinstance(classified.raw, dict) else {}
    first_result = tool_results[0] if tool_results else None
    return MessageRecord(
        id=classified.message_id,
        session_id=session_id,
        kind=MessageKind.TOOL_CARRIER.value,
        timestamp=classified.timestamp or _now_iso(),
        is_sidechain=bool(raw.get("isSidechain")),
        parent_id=classified.parent_id,
        tool_use_result_id=first_result.tool_use_id if first_result else None,
        is_placeholder=True,
    )


def extract_attachments(content: Any, message_id: str) -> list[AttachmentRecord]:
    """Describe image/document fragments of a content list (never their data)."""
    if not isinstance(content, list):
        return []

    attachments = []
    for item in content:
        if not isinstance(item, dict) or item.get("type") not in ATTACHMENT_TYPES:
            continue
        source = item.get("source") if isinstance(item.get("source"), dict) else {}
        source_type = source.get("type")
        attachments.append(
            AttachmentRecord(
                id=f"att_{message_id}_{len(attachments)}",
                message_id=message_id,
                type=item["type"],
                text=_str_or_none(source.get("data")) if source_type == "text" else None,
                url=_str_or_none(source.get("url")) if source_type == "url" else None,
                mime_type=_str_or_none(source.get("media_type")),
                title=_str_or_none(item.get("title")),
                file_path=_str_or_none(item.get("file_path")),
            )
        )
    return attachments


def build_env_info(raw: dict[str, Any], message_id: str) -> Optional[EnvInfoRecord]:
    """Capture cwd/platform/git context, if the line has any."""
    cwd = _str_or_none(raw.get("cwd"))
    platform = _str_or_none(raw.get("platform"))
    git_branch = _str_or_none(raw.get("gitBranch"))
    if not (cwd or platform or git_branch):
        return None
    return EnvInfoRecord(
        id=f"env_{message_id}",
        message_id=message_id,
        working_directory=cwd,
        is_git_repo=git_branch is not None,
        git_branch=git_branch,
        platform=platform,
        os_version=_str_or_none(raw.get("osVersion")),
        todays_date=_str_or_none(raw.get("todaysDate")),
    )


def map_entry(
    classified: ClassifiedLine,
    extracted: ExtractedTools,
    line_number: int,
    session_path: str,
    default_session_id: Optional[str] = None,
) -> ParsedEntry:
    """
    Convert one classified line and its tool fragments into records.

    Args:
        classified: Output of ``classify_line``
        extracted: Output of ``extract_tools`` for the same line
        line_number: Line number in the source file
        session_path: Path of the source file
        default_session_id: Session id to use when the line has none
            (the file name stem for Claude Code logs)

    Returns:
        ParsedEntry holding only valid records plus validation errors
    """
    entry = ParsedEntry(line_number=line_number)
    if classified.kind == LineKind.UNKNOWN:
        return entry

    session_id = classified.session_id or default_session_id or ""
    if not session_id:
        entry.errors.append(f"Line {line_number}: missing sessionId, line skipped")
        return entry

    entry.session = SessionRecord(
        id=session_id, session_id=session_id, session_path=session_path
    )

    for tool_use in extracted.tool_uses:
        errors = validate_tool_use(tool_use)
        if errors:
            entry.errors.extend(errors)
        else:
            entry.tool_uses.append(tool_use)

    for tool_result in extracted.tool_results:
        errors = validate_tool_result(tool_result)
        if errors:
            entry.errors.extend(errors)
        else:
            entry.tool_results.append(tool_result)

    message: Optional[MessageRecord] = None
    if should_store_message(classified):
        message = build_message(classified, session_id, extracted)
    elif entry.tool_uses or entry.tool_results:
        # A carrier row exists only for tool records that survived validation
        message = build_placeholder_message(classified, session_id, entry.tool_results)

    if message is not None:
        errors = validate_message(message)
        if errors:
            entry.errors.extend(errors)
            message = None

    entry.message = message
    if message is not None:
        entry.attachments = extract_attachments(classified.content, message.id)
        entry.env_info = build_env_info(classified.raw, message.id)

    return entry
