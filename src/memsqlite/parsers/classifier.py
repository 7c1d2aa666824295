"""
Message classification for Claude Code log lines.

Claude Code writes tool results inside ``type: "user"`` envelopes, so a line
that looks like a user turn may really be a tool-result carrier. This module
decides what each decoded line actually is, without ever raising on odd
input: anything unrecognized becomes an UNKNOWN classification that keeps
the raw value for logging.
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

TOOL_FRAGMENT_TYPES = ("tool_use", "tool_result")


class LineKind(str, Enum):
    """Semantic kind of one log line."""

    USER_MESSAGE = "user_message"
    ASSISTANT_MESSAGE = "assistant_message"
    SYSTEM_MESSAGE = "system_message"
    SUMMARY_MESSAGE = "summary_message"
    TOOL_USE_MESSAGE = "tool_use_message"  # Assistant turn calling tools
    TOOL_RESULT_MESSAGE = "tool_result_message"  # "user" envelope carrying results
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassifiedLine:
    """Classification of one decoded line."""

    kind: LineKind
    is_tool_carrier: bool = False
    has_displayable_text: bool = False
    session_id: str = ""
    message_id: str = ""
    parent_id: Optional[str] = None
    timestamp: str = ""
    user_text: Optional[str] = None
    assistant_text: Optional[str] = None
    raw: Any = field(default=None, compare=False, repr=False)

    @property
    def content(self) -> Any:
        """The ``message.content`` payload, or None."""
        if not isinstance(self.raw, dict):
            return None
        message = self.raw.get("message")
        if isinstance(message, dict):
            return message.get("content")
        return None


def _message_content(data: dict[str, Any]) -> Any:
    message = data.get("message")
    if isinstance(message, dict):
        return message.get("content")
    return None


def has_tool_fragments(content: Any) -> bool:
    """Check whether a content list embeds tool_use or tool_result items."""
    if not isinstance(content, list):
        return False
    return any(
        isinstance(item, dict) and item.get("type") in TOOL_FRAGMENT_TYPES
        for item in content
    )


def extract_text(content: Any) -> Optional[str]:
    """
    Collect the text of a content payload, ignoring tool fragments.

    Args:
        content: A string or a list of content items

    Returns:
        Text items joined by newlines, or None if there is no text at all
    """
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return None

    texts = [
        item["text"]
        for item in content
        if isinstance(item, dict)
        and item.get("type") == "text"
        and isinstance(item.get("text"), str)
    ]
    return "\n".join(texts) if texts else None


def has_displayable_text(content: Any) -> bool:
    if isinstance(content, str):
        return bool(content.strip())
    if not isinstance(content, list):
        return False
    return any(
        isinstance(item, dict)
        and item.get("type") == "text"
        and isinstance(item.get("text"), str)
        and item["text"].strip()
        for item in content
    )


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def classify_line(data: Any) -> ClassifiedLine:
    """
    Classify one decoded JSONL value.

    Args:
        data: Whatever ``json.loads`` produced for the line

    Returns:
        ClassifiedLine; UNKNOWN for anything that is not a recognized event
    """
    if not isinstance(data, dict):
        return ClassifiedLine(kind=LineKind.UNKNOWN, raw=data)

    line_type = data.get("type")
    if line_type in ("user", "assistant") and not isinstance(data.get("message"), dict):
        return ClassifiedLine(kind=LineKind.UNKNOWN, raw=data)

    content = _message_content(data)
    tools = has_tool_fragments(content)
    parent = data.get("parentUuid")

    common = {
        "session_id": _as_str(data.get("sessionId")),
        "message_id": _as_str(data.get("uuid")),
        "parent_id": parent if isinstance(parent, str) else None,
        "timestamp": _as_str(data.get("timestamp")),
        "raw": data,
    }

    if line_type == "user":
        return ClassifiedLine(
            kind=LineKind.TOOL_RESULT_MESSAGE if tools else LineKind.USER_MESSAGE,
            is_tool_carrier=tools,
            has_displayable_text=has_displayable_text(content),
            user_text=extract_text(content),
            **common,
        )

    if line_type == "assistant":
        return ClassifiedLine(
            kind=LineKind.TOOL_USE_MESSAGE if tools else LineKind.ASSISTANT_MESSAGE,
            is_tool_carrier=tools,
            has_displayable_text=has_displayable_text(content),
            assistant_text=extract_text(content),
            **common,
        )

    if line_type == "system":
        return ClassifiedLine(
            kind=LineKind.SYSTEM_MESSAGE,
            has_displayable_text=has_displayable_text(data.get("content")),
            **common,
        )

    if line_type == "summary":
        # Summaries have no uuid of their own; they point at the leaf message
        leaf = _as_str(data.get("leafUuid"))
        if not common["message_id"] and leaf:
            common["message_id"] = f"summary_{leaf}"
        return ClassifiedLine(
            kind=LineKind.SUMMARY_MESSAGE,
            has_displayable_text=has_displayable_text(data.get("summary")),
            **common,
        )

    return ClassifiedLine(kind=LineKind.UNKNOWN, raw=data)


def should_store_message(classified: ClassifiedLine) -> bool:
    """
    Decide whether a line warrants its own Message row.

    Text-bearing lines always do; system and summary lines do regardless.
    Tool carriers without text only get a placeholder row, decided later.
    """
    if classified.kind == LineKind.UNKNOWN:
        return False
    if classified.kind in (LineKind.SYSTEM_MESSAGE, LineKind.SUMMARY_MESSAGE):
        return True
    return classified.has_displayable_text


def classification_stats(lines: Iterable[ClassifiedLine]) -> dict[str, int]:
    """Count lines per kind, plus tool carriers and storable messages."""
    counts: Counter = Counter()
    for line in lines:
        counts[line.kind.value] += 1
        counts["total"] += 1
        if line.is_tool_carrier:
            counts["tool_carriers"] += 1
        if should_store_message(line):
            counts["storable"] += 1
    return dict(counts)
