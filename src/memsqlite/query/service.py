"""
Query service.

Implements the ``query_memory`` operation: validate the arguments, run the
safety filter, charge the caller's rate limit according to the statement's
complexity, then execute on a read-only pooled connection with a time
budget. Driver errors are translated into typed errors before they reach
the caller.
"""

import logging
import time
from typing import Any, Optional

from sqlalchemy import Connection, inspect
from sqlalchemy.exc import SQLAlchemyError

from memsqlite.config import Settings
from memsqlite.db.pool import ConnectionPool
from memsqlite.exceptions import (
    InvalidQueryArguments,
    MemSQLiteError,
    RateLimitExceededError,
    classify_store_error,
)
from memsqlite.query.rate_limit import RateLimiter
from memsqlite.query.safety import (
    analyze_complexity,
    ensure_limit,
    has_limit,
    query_cost,
    query_restrictions,
    validate_query,
)
from memsqlite.utils.concurrency import run_to_completion

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"

# SQLite calls the progress handler every N virtual machine instructions
_PROGRESS_STEPS = 1000


def parse_query_arguments(
    arguments: Any, max_limit: int
) -> tuple[str, Optional[int]]:
    """
    Validate ``{sql, limit?}`` tool-call arguments.

    Returns:
        (sql, limit) with limit clamped to ``max_limit``

    Raises:
        InvalidQueryArguments: If sql is missing or limit is not a positive int
    """
    if not isinstance(arguments, dict):
        raise InvalidQueryArguments("Arguments must be an object")

    sql = arguments.get("sql")
    if not isinstance(sql, str) or not sql.strip():
        raise InvalidQueryArguments("sql parameter is required and must be a string")

    limit = arguments.get("limit")
    if limit is not None:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidQueryArguments("limit must be a positive integer")
        limit = min(limit, max_limit)
    return sql, limit


def _fetch(
    connection: Connection,
    statement: str,
    params: tuple,
    timeout_ms: int,
    row_cap: Optional[int],
) -> list[dict[str, Any]]:
    dbapi_connection = connection.connection.dbapi_connection
    deadline = time.monotonic() + timeout_ms / 1000

    def _interrupt_when_late() -> int:
        return 1 if time.monotonic() > deadline else 0

    dbapi_connection.set_progress_handler(_interrupt_when_late, _PROGRESS_STEPS)
    try:
        with connection.begin():
            result = connection.exec_driver_sql(statement, params).mappings()
            rows = result.fetchmany(row_cap) if row_cap else result.all()
            return [dict(row) for row in rows]
    finally:
        dbapi_connection.set_progress_handler(None, 0)


class QueryService:
    """
    Read-only query handler.

    Args:
        pool: Pool over a read-only engine
        limiter: Per-client rate limiter
        config: Settings providing default/max limit and time budget
    """

    def __init__(self, pool: ConnectionPool, limiter: RateLimiter, config: Settings):
        self.pool = pool
        self.limiter = limiter
        self.config = config

    async def execute(
        self, sql: str, limit: Optional[int] = None, client_id: str = ANONYMOUS
    ) -> dict[str, Any]:
        """
        Run one statement for a client.

        Returns:
            ``{"query": ..., "rowCount": ..., "results": [...]}``

        Raises:
            UnsafeQueryError: If the statement is not a plain SELECT
            RateLimitExceededError: If the client is over budget
            QueryExecutionError / QueryTimeoutError / StoreError: On failure
        """
        validate_query(sql)

        score = analyze_complexity(sql)
        weight = min(query_cost(score), self.limiter.requests_per_minute)
        decision = self.limiter.check(client_id, weight)
        if not decision.allowed:
            logger.info(
                f"Rate limited client {client_id}: retry after {decision.retry_after:.2f}s"
            )
            raise RateLimitExceededError(client_id, decision.retry_after)

        restrictions = query_restrictions(score)
        own_limit = has_limit(sql)
        statement, params = ensure_limit(
            sql, limit or self.config.query_default_limit, self.config.query_max_limit
        )
        timeout_ms = min(restrictions.timeout_ms, self.config.query_timeout_ms)
        # Statements with their own LIMIT bypass the bound cap; apply the hint
        row_cap = max(restrictions.max_rows, limit or 0) if own_limit else None

        try:
            async with self.pool.connection() as connection:
                rows = await run_to_completion(
                    _fetch, connection, statement, params, timeout_ms, row_cap
                )
        except SQLAlchemyError as e:
            error = classify_store_error(e)
            logger.warning(f"Query failed ({error.code}): {e}")
            raise error from e

        logger.debug(
            f"Query for {client_id} returned {len(rows)} rows (complexity {score})"
        )
        return {"query": statement, "rowCount": len(rows), "results": rows}

    async def query_memory(
        self, arguments: Any, client_id: str = ANONYMOUS
    ) -> dict[str, Any]:
        """
        Handle a ``query_memory`` tool call.

        Invalid arguments raise InvalidQueryArguments (a protocol-level
        error). Every other failure is returned as a structured payload:
        ``{"error": True, "code": ..., "message": ..., "query": ...}``.
        """
        sql, limit = parse_query_arguments(arguments, self.config.query_max_limit)
        try:
            return await self.execute(sql, limit, client_id)
        except MemSQLiteError as e:
            return {"error": True, **e.to_dict(), "query": sql}

    async def schema_info(self) -> dict[str, Any]:
        """Describe tables, columns and indexes for query authors."""

        def _inspect(connection: Connection) -> dict[str, Any]:
            inspector = inspect(connection)
            tables = {}
            for table in inspector.get_table_names():
                tables[table] = {
                    "columns": [
                        {
                            "name": column["name"],
                            "type": str(column["type"]),
                            "nullable": column["nullable"],
                        }
                        for column in inspector.get_columns(table)
                    ],
                    "indexes": [index["name"] for index in inspector.get_indexes(table)],
                }
            connection.rollback()
            return {"tables": tables}

        async with self.pool.connection() as connection:
            return await run_to_completion(_inspect, connection)
