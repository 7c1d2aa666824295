"""Tests for the error taxonomy."""

import sqlite3

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from memsqlite.exceptions import (
    ForeignKeyResolutionError,
    LockTimeoutError,
    MemSQLiteError,
    QueryExecutionError,
    QueryTimeoutError,
    RateLimitExceededError,
    StoreBusyError,
    StoreError,
    StoreReadOnlyError,
    classify_store_error,
    is_busy_error,
    is_foreign_key_error,
)


def operational(message: str) -> OperationalError:
    return OperationalError("SELECT 1", {}, sqlite3.OperationalError(message))


class TestToDict:
    def test_context_is_flattened(self):
        error = ForeignKeyResolutionError("tool_use_results", "r1", 3)

        assert error.to_dict() == {
            "code": "foreign_key_unresolved",
            "message": "Could not resolve foreign keys for tool_use_results record r1 "
            "after 3 repair attempts",
            "table": "tool_use_results",
            "record_id": "r1",
            "attempts": 3,
        }

    def test_retryable_flags(self):
        assert StoreBusyError("x").retryable
        assert LockTimeoutError("db", 1.0).retryable
        assert RateLimitExceededError("c", 2.0).retryable
        assert not QueryExecutionError("x").retryable


class TestDriverErrors:
    def test_busy_detection(self):
        assert is_busy_error(operational("database is locked"))
        assert not is_busy_error(operational("no such table: x"))
        assert not is_busy_error(RuntimeError("database is locked"))

    def test_foreign_key_detection(self):
        error = IntegrityError(
            "INSERT", {}, sqlite3.IntegrityError("FOREIGN KEY constraint failed")
        )

        assert is_foreign_key_error(error)
        assert not is_foreign_key_error(operational("database is locked"))


class TestClassifyStoreError:
    """Tests for classify_store_error."""

    @pytest.mark.parametrize(
        "message,error_type",
        [
            ("database is locked", StoreBusyError),
            ("attempt to write a readonly database", StoreReadOnlyError),
            ("no such table: nope", QueryExecutionError),
            ("no such column: nope", QueryExecutionError),
            ('near "SELEC": syntax error', QueryExecutionError),
            ("interrupted", QueryTimeoutError),
            ("disk I/O error", StoreError),
        ],
    )
    def test_mapping(self, message, error_type):
        error = classify_store_error(operational(message))

        assert type(error) is error_type

    def test_driver_text_is_not_leaked(self):
        error = classify_store_error(operational("no such table: secret_internal"))

        assert "secret_internal" not in error.message

    def test_typed_errors_pass_through(self):
        original = StoreBusyError("busy")

        assert classify_store_error(original) is original

    def test_unknown_exception(self):
        error = classify_store_error(ValueError("boom"))

        assert isinstance(error, MemSQLiteError)
        assert error.code == "store_error"
