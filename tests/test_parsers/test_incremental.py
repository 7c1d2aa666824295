"""Tests for file change detection."""

import pytest

from memsqlite.parsers.incremental import (
    ChangeType,
    FilePosition,
    calculate_partial_hash,
    detect_file_change_type,
)


def _position(path, offset):
    return FilePosition(
        offset=offset,
        line_number=1,
        file_size=path.stat().st_size,
        partial_hash=calculate_partial_hash(path, offset),
    )


class TestDetectFileChangeType:
    """Tests for detect_file_change_type."""

    def test_unchanged(self, tmp_path):
        path = tmp_path / "s.jsonl"
        path.write_text('{"n": 1}\n')
        position = _position(path, path.stat().st_size)

        assert detect_file_change_type(path, position) == ChangeType.UNCHANGED

    def test_append(self, tmp_path):
        path = tmp_path / "s.jsonl"
        path.write_text('{"n": 1}\n')
        position = _position(path, path.stat().st_size)
        with path.open("a") as f:
            f.write('{"n": 2}\n')

        assert detect_file_change_type(path, position) == ChangeType.APPEND

    def test_truncate(self, tmp_path):
        path = tmp_path / "s.jsonl"
        path.write_text('{"n": 1}\n{"n": 2}\n')
        position = _position(path, path.stat().st_size)
        path.write_text('{"n": 1}\n')

        assert detect_file_change_type(path, position) == ChangeType.TRUNCATE

    def test_rewrite(self, tmp_path):
        path = tmp_path / "s.jsonl"
        path.write_text('{"n": 1}\n')
        position = _position(path, path.stat().st_size)
        path.write_text('{"n": 9}\n{"n": 2}\n')

        assert detect_file_change_type(path, position) == ChangeType.REWRITE

    def test_missing_file_counts_as_truncate(self, tmp_path):
        position = FilePosition(offset=10, file_size=10)

        assert (
            detect_file_change_type(tmp_path / "gone.jsonl", position) == ChangeType.TRUNCATE
        )


class TestPartialHash:
    def test_hash_covers_prefix_only(self, tmp_path):
        path = tmp_path / "s.jsonl"
        path.write_text("abcdef")
        before = calculate_partial_hash(path, 3)
        path.write_text("abcXYZ")

        assert calculate_partial_hash(path, 3) == before

    def test_offset_beyond_file(self, tmp_path):
        path = tmp_path / "s.jsonl"
        path.write_text("abc")

        with pytest.raises(ValueError):
            calculate_partial_hash(path, 10)
