"""Custom exceptions for memsqlite."""

import sqlite3
from typing import Any, Optional

from sqlalchemy.exc import DBAPIError


class MemSQLiteError(Exception):
    """Base exception carrying a stable error code and structured context."""

    code = "internal_error"
    retryable = False

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for remote callers; never includes driver internals."""
        return {"code": self.code, "message": self.message, **self.context}


class ParserError(MemSQLiteError):
    """Raised when a log file cannot be read at all."""

    code = "parser_error"


# Store errors


class StoreError(MemSQLiteError):
    """Base exception for database failures."""

    code = "store_error"


class StoreBusyError(StoreError):
    """The store is locked by another writer; safe to retry."""

    code = "store_busy"
    retryable = True


class StoreReadOnlyError(StoreError):
    code = "store_readonly"


class ForeignKeyResolutionError(StoreError):
    """Raised when placeholder repair could not satisfy a foreign key."""

    code = "foreign_key_unresolved"

    def __init__(self, table: str, record_id: str, attempts: int):
        self.table = table
        self.record_id = record_id
        self.attempts = attempts
        super().__init__(
            f"Could not resolve foreign keys for {table} record {record_id} "
            f"after {attempts} repair attempts",
            {"table": table, "record_id": record_id, "attempts": attempts},
        )


class TransactionError(StoreError):
    """A batch transaction was rolled back; nothing from the batch persisted."""

    code = "transaction_failed"


# Pool and lock errors


class PoolError(MemSQLiteError):
    code = "pool_error"


class PoolClosedError(PoolError):
    code = "pool_closed"


class PoolTimeoutError(PoolError):
    """No handle became available within the acquire timeout."""

    code = "pool_timeout"
    retryable = True


class LockTimeoutError(MemSQLiteError):
    """Raised when a named cross-process lock could not be acquired in time."""

    code = "lock_timeout"
    retryable = True

    def __init__(self, name: str, timeout: float):
        self.name = name
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout:.1f}s waiting for lock '{name}'",
            {"lock": name, "timeout": timeout},
        )


# Query errors


class QueryError(MemSQLiteError):
    code = "query_error"


class InvalidQueryArguments(QueryError):
    """The query request itself is malformed (missing sql, bad limit)."""

    code = "invalid_params"


class UnsafeQueryError(QueryError):
    """The statement failed the read-only safety filter."""

    code = "unsafe_query"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Query rejected: {reason}", {"reason": reason})


class RateLimitExceededError(QueryError):
    code = "rate_limited"
    retryable = True

    def __init__(self, client_id: str, retry_after: float):
        self.client_id = client_id
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded, retry after {retry_after:.2f}s",
            {"retry_after": retry_after},
        )


class QueryTimeoutError(QueryError):
    code = "query_timeout"


class QueryExecutionError(QueryError):
    code = "query_failed"


def _driver_error(exc: BaseException) -> Optional[BaseException]:
    if isinstance(exc, DBAPIError):
        return exc.orig
    if isinstance(exc, sqlite3.Error):
        return exc
    return None


def is_busy_error(exc: BaseException) -> bool:
    """Check whether an exception means SQLITE_BUSY / SQLITE_LOCKED."""
    orig = _driver_error(exc)
    if orig is None:
        return False
    message = str(orig).lower()
    return "database is locked" in message or "busy" in message


def is_foreign_key_error(exc: BaseException) -> bool:
    orig = _driver_error(exc)
    return orig is not None and "foreign key constraint failed" in str(orig).lower()


def classify_store_error(exc: BaseException) -> MemSQLiteError:
    """
    Map a raw SQLAlchemy/sqlite3 error onto the typed taxonomy.

    Args:
        exc: Exception raised by the driver

    Returns:
        A MemSQLiteError subclass instance safe to show to a remote caller
    """
    if isinstance(exc, MemSQLiteError):
        return exc
    orig = _driver_error(exc)
    message = str(orig if orig is not None else exc).lower()

    if is_busy_error(exc):
        return StoreBusyError("Database is busy, try again shortly")
    if "readonly" in message or "read-only" in message:
        return StoreReadOnlyError("Database is opened read-only")
    if "no such table" in message:
        return QueryExecutionError("Unknown table referenced in query")
    if "no such column" in message:
        return QueryExecutionError("Unknown column referenced in query")
    if "syntax error" in message:
        return QueryExecutionError("SQL syntax error")
    if "interrupted" in message:
        return QueryTimeoutError("Query exceeded its time budget")
    if "foreign key constraint failed" in message:
        return StoreError("Foreign key constraint failed")
    return StoreError("Database operation failed")
