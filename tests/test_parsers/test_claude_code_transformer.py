"""Tests for the Claude Code transformer (classify + extract + map)."""

from pathlib import Path

from memsqlite.parsers.claude_code import (
    ClaudeCodeTransformer,
    parsing_stats,
    session_id_from_path,
)
from memsqlite.parsers.jsonl_stream import read_entries


def test_session_id_from_path():
    assert session_id_from_path("/x/projects/p/abc-123.jsonl") == "abc-123"


class TestClaudeCodeTransformer:
    """Tests for ClaudeCodeTransformer."""

    def test_tool_call_and_result_lines(
        self, tmp_path, write_jsonl, assistant_tool_line, tool_result_line
    ):
        """Test the tool-call / tool-result pair from a real session shape."""
        path = write_jsonl(tmp_path / "s1.jsonl", [assistant_tool_line, tool_result_line])
        transformer = ClaudeCodeTransformer(path)

        first, second = transformer.transform_all(read_entries(path))

        assert first.message.id == "m1"
        assert first.message.assistant_text == "ok"
        assert len(first.tool_uses) == 1
        assert first.tool_uses[0].id == "toolu_1"
        assert first.tool_uses[0].message_id == "m1"
        assert first.tool_uses[0].tool_name == "Read"

        assert second.message.is_placeholder is True
        assert second.message.id == "m2"
        assert second.message.user_text is None
        assert len(second.tool_results) == 1
        assert second.tool_results[0].tool_use_id == "toolu_1"
        assert second.tool_results[0].message_id == "m2"
        assert second.tool_results[0].output == "file contents"

    def test_session_falls_back_to_file_name(self, tmp_path, write_jsonl):
        line = {"type": "user", "uuid": "u1", "timestamp": "T", "message": {"content": "hi"}}
        path = write_jsonl(tmp_path / "sess-42.jsonl", [line])

        (entry,) = ClaudeCodeTransformer(path).transform_all(read_entries(path))

        assert entry.session.id == "sess-42"
        assert entry.message.session_id == "sess-42"
        assert entry.session.session_path == str(path)

    def test_explicit_session_id(self):
        transformer = ClaudeCodeTransformer(Path("/x/a.jsonl"), session_id="override")

        assert transformer.session_id == "override"

    def test_parsing_stats(
        self, tmp_path, write_jsonl, user_line, assistant_tool_line, tool_result_line
    ):
        path = write_jsonl(
            tmp_path / "s1.jsonl",
            [user_line, assistant_tool_line, tool_result_line, {"type": "other"}],
        )

        stats = parsing_stats(ClaudeCodeTransformer(path).transform_all(read_entries(path)))

        assert stats["entries"] == 4
        assert stats["messages"] == 2
        assert stats["placeholders"] == 1
        assert stats["tool_uses"] == 1
        assert stats["tool_results"] == 1
        assert stats["env_info"] == 1
        assert stats["skipped"] == 1
