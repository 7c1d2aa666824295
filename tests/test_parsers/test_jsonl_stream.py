"""Tests for the streaming JSONL reader."""

import json

import pytest

from memsqlite.exceptions import ParserError
from memsqlite.parsers.jsonl_stream import (
    JSONLEntry,
    JSONLStreamReader,
    LineError,
    LineErrorKind,
    count_lines,
    read_entries,
)


class TestLineDecoding:
    """Tests for per-line decoding and error recovery."""

    def test_reads_every_valid_line(self, tmp_path, write_jsonl):
        """Test that each valid line becomes an entry with its line number."""
        path = write_jsonl(tmp_path / "s.jsonl", [{"n": 1}, {"n": 2}, {"n": 3}])

        entries = read_entries(path)

        assert [e.data["n"] for e in entries] == [1, 2, 3]
        assert [e.line_number for e in entries] == [1, 2, 3]

    def test_malformed_line_is_skipped_and_reported(self, tmp_path, write_jsonl):
        """Test that a bad line in the middle does not stop the stream."""
        path = write_jsonl(tmp_path / "s.jsonl", [{"n": 1}, "{not json", {"n": 3}])
        reader = JSONLStreamReader(path)

        items = list(reader.iter_items())

        assert isinstance(items[0], JSONLEntry)
        assert isinstance(items[1], LineError)
        assert items[1].kind == LineErrorKind.INVALID_JSON
        assert items[1].line_number == 2
        assert items[1].preview == "{not json"
        assert isinstance(items[2], JSONLEntry)
        assert reader.stats.parsed_lines == 2
        assert reader.stats.error_lines == 1

    def test_empty_lines_are_ignored(self, tmp_path):
        """Test that blank lines are neither entries nor errors."""
        path = tmp_path / "s.jsonl"
        path.write_text('{"n": 1}\n\n   \n{"n": 2}\n')
        reader = JSONLStreamReader(path)

        entries = list(reader.iter_entries())

        assert [e.data["n"] for e in entries] == [1, 2]
        assert entries[1].line_number == 4
        assert reader.errors == []
        assert reader.stats.total_lines == 2

    def test_non_object_values_are_entries(self, tmp_path, write_jsonl):
        """Test that any JSON value decodes; classification happens later."""
        path = write_jsonl(tmp_path / "s.jsonl", ["42", '"text"', "[1, 2]"])

        entries = read_entries(path)

        assert [e.data for e in entries] == [42, "text", [1, 2]]

    def test_invalid_utf8_is_reported(self, tmp_path):
        """Test that undecodable bytes produce an encoding error."""
        path = tmp_path / "s.jsonl"
        path.write_bytes(b'{"n": 1}\n\xff\xfe\n{"n": 2}\n')
        reader = JSONLStreamReader(path)

        entries = list(reader.iter_entries())

        assert len(entries) == 2
        assert reader.errors[0].kind == LineErrorKind.INVALID_ENCODING
        assert reader.errors[0].line_number == 2

    def test_line_too_long_is_skipped_with_preview(self, tmp_path):
        """Test that an oversized line is dropped and the next line still parses."""
        path = tmp_path / "s.jsonl"
        long_value = "x" * 500
        path.write_text(json.dumps({"v": long_value}) + "\n" + '{"n": 2}\n')
        reader = JSONLStreamReader(path, max_line_length=200, chunk_size=64, streaming_threshold=0)

        items = list(reader.iter_items())

        assert isinstance(items[0], LineError)
        assert items[0].kind == LineErrorKind.LINE_TOO_LONG
        assert items[0].preview.endswith("...")
        assert len(items[0].preview) <= 103
        assert isinstance(items[1], JSONLEntry)
        assert items[1].data == {"n": 2}

    def test_json_error_preview_is_truncated(self, tmp_path):
        path = tmp_path / "s.jsonl"
        path.write_text("{" + "a" * 400 + "\n")
        reader = JSONLStreamReader(path)

        list(reader.iter_items())

        assert len(reader.errors) == 1
        assert reader.errors[0].preview.endswith("...")
        assert len(reader.errors[0].preview) == 203

    def test_missing_file_raises_parser_error(self, tmp_path):
        """Test that an unreadable file is an I/O failure, not a line error."""
        reader = JSONLStreamReader(tmp_path / "missing.jsonl")

        with pytest.raises(ParserError):
            list(reader.iter_entries())


class TestStreamingModes:
    """Tests that whole-file and chunked reads agree."""

    def test_chunked_read_matches_whole_read(self, tmp_path, write_jsonl):
        lines = [{"n": i, "pad": "y" * (i * 7)} for i in range(50)]
        path = write_jsonl(tmp_path / "s.jsonl", lines)

        whole = read_entries(path)
        chunked = read_entries(path, chunk_size=16, streaming_threshold=0)

        assert [e.data for e in chunked] == [e.data for e in whole]
        assert [e.end_offset for e in chunked] == [e.end_offset for e in whole]

    def test_offsets_are_byte_positions(self, tmp_path):
        """Test that offsets count bytes, including multi-byte characters."""
        path = tmp_path / "s.jsonl"
        first = json.dumps({"t": "héllo"}, ensure_ascii=False)
        path.write_text(first + "\n" + '{"n": 2}\n', encoding="utf-8")

        entries = read_entries(path)

        assert entries[0].offset == 0
        assert entries[0].end_offset == len(first.encode("utf-8")) + 1
        assert entries[1].offset == entries[0].end_offset


class TestIncrementalReads:
    """Tests for resuming from a byte offset."""

    def test_resume_from_offset(self, tmp_path, write_jsonl):
        path = write_jsonl(tmp_path / "s.jsonl", [{"n": 1}, {"n": 2}])
        first = JSONLStreamReader(path)
        list(first.iter_entries())
        write_jsonl(path, [{"n": 3}], mode="a")

        resumed = JSONLStreamReader(
            path, start_offset=first.stats.end_offset, start_line=first.stats.end_line
        )
        entries = list(resumed.iter_entries())

        assert [e.data["n"] for e in entries] == [3]
        assert entries[0].line_number == 3

    def test_incomplete_trailing_line_is_left_for_next_pass(self, tmp_path):
        """Test that a half-written last line is neither parsed nor an error."""
        path = tmp_path / "s.jsonl"
        path.write_text('{"n": 1}\n{"n": 2, "partial')
        reader = JSONLStreamReader(path)

        entries = list(reader.iter_entries())

        assert [e.data["n"] for e in entries] == [1]
        assert reader.errors == []
        assert reader.stats.end_offset == len('{"n": 1}\n')

    def test_complete_trailing_line_without_newline_is_read(self, tmp_path):
        path = tmp_path / "s.jsonl"
        path.write_text('{"n": 1}\n{"n": 2}')

        entries = read_entries(path)

        assert [e.data["n"] for e in entries] == [1, 2]


class TestBatches:
    """Tests for batch grouping."""

    def test_batches_respect_size(self, tmp_path, write_jsonl):
        path = write_jsonl(tmp_path / "s.jsonl", [{"n": i} for i in range(5)])
        reader = JSONLStreamReader(path, batch_size=2)

        batches = list(reader.iter_batches())

        assert [len(b) for b in batches] == [2, 2, 1]
        assert batches[-1].end_offset == path.stat().st_size
        assert batches[0].end_line == 2

    def test_exact_multiple_yields_no_empty_batch(self, tmp_path, write_jsonl):
        path = write_jsonl(tmp_path / "s.jsonl", [{"n": i} for i in range(4)])
        reader = JSONLStreamReader(path, batch_size=2)

        batches = list(reader.iter_batches())

        assert [len(b) for b in batches] == [2, 2]

    def test_errors_travel_with_their_batch(self, tmp_path, write_jsonl):
        path = write_jsonl(tmp_path / "s.jsonl", [{"n": 1}, "oops", {"n": 2}])
        reader = JSONLStreamReader(path, batch_size=10)

        batches = list(reader.iter_batches())

        assert len(batches) == 1
        assert len(batches[0].entries) == 2
        assert [e.line_number for e in batches[0].errors] == [2]

    def test_progress_callback_called_per_batch(self, tmp_path, write_jsonl):
        path = write_jsonl(tmp_path / "s.jsonl", [{"n": i} for i in range(3)])
        seen = []
        reader = JSONLStreamReader(
            path, batch_size=2, progress_callback=lambda s: seen.append(s.parsed_lines)
        )

        list(reader.iter_batches())

        assert seen == [2, 3]

    def test_invalid_batch_size(self, tmp_path):
        with pytest.raises(ValueError):
            JSONLStreamReader(tmp_path / "s.jsonl", batch_size=0)


def test_count_lines(tmp_path, write_jsonl):
    path = write_jsonl(tmp_path / "s.jsonl", [{"n": 1}, "bad", {"n": 2}])

    assert count_lines(path) == 3
