"""
Tool call extraction from message content.

Assistant turns embed ``tool_use`` items and the following "user" turns embed
``tool_result`` items. This module splits those fragments out into ToolUse
and ToolResult records and returns the remaining text fragments.

The ToolUse id is always the origin ``tool_use.id``. Results reference that
id through ``tool_use_id``, so regenerating it would orphan every result.
"""

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from memsqlite.models.records import ToolResultRecord, ToolUseRecord
from memsqlite.parsers.classifier import has_tool_fragments

TOOL_ERROR = "tool_error"


@dataclass
class ExtractedTools:
    tool_uses: list[ToolUseRecord] = field(default_factory=list)
    tool_results: list[ToolResultRecord] = field(default_factory=list)
    text_fragments: list[str] = field(default_factory=list)

    @property
    def has_tools(self) -> bool:
        return bool(self.tool_uses or self.tool_results)

    @property
    def cleaned_text(self) -> Optional[str]:
        return "\n".join(self.text_fragments) if self.text_fragments else None


def _to_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def normalize_result_content(content: Any) -> Optional[str]:
    """
    Collapse tool_result content into one text blob.

    Args:
        content: A string, a list of fragments, or a single object

    Returns:
        Text, or None for empty content

    Example:
        >>> normalize_result_content([{"type": "text", "text": "a"}, "b"])
        'a\\nb'
    """
    if content is None or content == "":
        return None
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        if not content:
            return None
        parts = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and item.get("text"):
                parts.append(str(item["text"]))
            else:
                # Fragments without text (images, structured data) keep their JSON
                parts.append(_to_json(item))
        return "\n".join(parts)
    return _to_json(content)


def _extract_tool_use(item: dict[str, Any], message_id: str) -> ToolUseRecord:
    tool_id = item.get("id") if isinstance(item.get("id"), str) else ""
    tool_name = item.get("name") if isinstance(item.get("name"), str) else ""
    tool_input = item.get("input")
    return ToolUseRecord(
        id=tool_id,
        message_id=message_id,
        tool_id=tool_id,
        tool_name=tool_name,
        parameters=_to_json(tool_input if tool_input is not None else {}),
    )


def _extract_tool_result(item: dict[str, Any], message_id: str) -> ToolResultRecord:
    tool_use_id = item.get("tool_use_id")
    error = item.get("error")
    mime_type = item.get("content_type")
    return ToolResultRecord(
        id=str(uuid.uuid4()),
        tool_use_id=tool_use_id if isinstance(tool_use_id, str) else "",
        message_id=message_id,
        output=normalize_result_content(item.get("content")),
        output_mime_type=mime_type if isinstance(mime_type, str) else None,
        error=(error if isinstance(error, str) else _to_json(error)) if error else None,
        error_type=TOOL_ERROR if error else None,
    )


def extract_tools(content: Any, message_id: str) -> ExtractedTools:
    """
    Partition a content list into tool uses, tool results and text.

    Args:
        content: ``message.content`` of one line
        message_id: Id of the message that owns the fragments

    Returns:
        ExtractedTools; all three collections empty when there are no
        tool fragments (the text then comes from the classifier)
    """
    if not has_tool_fragments(content):
        return ExtractedTools()

    extracted = ExtractedTools()
    for item in content:
        if not isinstance(item, dict):
            continue
        item_type = item.get("type")
        if item_type == "tool_use":
            extracted.tool_uses.append(_extract_tool_use(item, message_id))
        elif item_type == "tool_result":
            extracted.tool_results.append(_extract_tool_result(item, message_id))
        elif item_type == "text" and isinstance(item.get("text"), str):
            extracted.text_fragments.append(item["text"])
    return extracted


def tool_result_ids(content: Any) -> list[str]:
    """Return the tool_use_id of every tool_result fragment, in order."""
    if not isinstance(content, list):
        return []
    return [
        item["tool_use_id"]
        for item in content
        if isinstance(item, dict)
        and item.get("type") == "tool_result"
        and isinstance(item.get("tool_use_id"), str)
    ]
