"""
Claude Code log transformer.

Glues the per-line steps together: classify the decoded line, pull out its
tool fragments, and map the result onto database records.
"""

import logging
from collections import Counter
from pathlib import Path
from typing import Iterable, Optional, Union

from memsqlite.models.records import ParsedEntry
from memsqlite.parsers.classifier import classify_line
from memsqlite.parsers.jsonl_stream import JSONLEntry
from memsqlite.parsers.schema_mapper import map_entry
from memsqlite.parsers.tool_extractor import extract_tools

logger = logging.getLogger(__name__)


def session_id_from_path(file_path: Union[str, Path]) -> str:
    """Claude Code names each session log ``<session id>.jsonl``."""
    return Path(file_path).stem


class ClaudeCodeTransformer:
    """
    Turns decoded lines of one session file into ParsedEntry records.

    Example:
        >>> transformer = ClaudeCodeTransformer(Path("~/.claude/projects/p/abc.jsonl"))
        >>> parsed = transformer.transform_all(reader.iter_entries())
    """

    def __init__(self, file_path: Union[str, Path], session_id: Optional[str] = None):
        self.session_path = str(file_path)
        self.session_id = session_id or session_id_from_path(file_path)

    def transform(self, entry: JSONLEntry) -> ParsedEntry:
        classified = classify_line(entry.data)
        extracted = extract_tools(classified.content, classified.message_id)
        parsed = map_entry(
            classified,
            extracted,
            line_number=entry.line_number,
            session_path=self.session_path,
            default_session_id=self.session_id,
        )
        for error in parsed.errors:
            logger.warning(f"{self.session_path}:{entry.line_number}: {error}")
        return parsed

    def transform_all(self, entries: Iterable[JSONLEntry]) -> list[ParsedEntry]:
        return [self.transform(entry) for entry in entries]


def parsing_stats(parsed: Iterable[ParsedEntry]) -> dict[str, int]:
    """
    Summarize what a set of parsed entries will write.

    Returns:
        Counts of messages (real and placeholder), tool records, attachments,
        env info rows, skipped lines and validation errors
    """
    counts: Counter = Counter()
    for entry in parsed:
        counts["entries"] += 1
        if entry.message is not None:
            key = "placeholders" if entry.message.is_placeholder else "messages"
            counts[key] += 1
        counts["tool_uses"] += len(entry.tool_uses)
        counts["tool_results"] += len(entry.tool_results)
        counts["attachments"] += len(entry.attachments)
        counts["env_info"] += int(entry.env_info is not None)
        counts["validation_errors"] += len(entry.errors)
        if entry.is_empty:
            counts["skipped"] += 1
    return dict(counts)
