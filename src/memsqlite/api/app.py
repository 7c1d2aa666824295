"""
memsqlite FastAPI Application.

Read-only query surface over the conversation store. Every request goes
through the safety filter and the per-client rate limiter before it touches
a (read-only) pooled connection.
"""

import logging
import math
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, Request, status
from fastapi.responses import JSONResponse

from memsqlite import __version__
from memsqlite.api.schemas import HealthResponse, QueryRequest, QueryResponse
from memsqlite.config import Settings, settings
from memsqlite.db.connection import check_connection
from memsqlite.exceptions import (
    InvalidQueryArguments,
    MemSQLiteError,
    PoolError,
    QueryExecutionError,
    QueryTimeoutError,
    RateLimitExceededError,
    StoreBusyError,
    UnsafeQueryError,
)
from memsqlite.logging_config import setup_logging
from memsqlite.query.service import parse_query_arguments
from memsqlite.services import QueryServices

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[MemSQLiteError], int]] = [
    (InvalidQueryArguments, status.HTTP_400_BAD_REQUEST),
    (UnsafeQueryError, status.HTTP_400_BAD_REQUEST),
    (QueryExecutionError, status.HTTP_400_BAD_REQUEST),
    (RateLimitExceededError, status.HTTP_429_TOO_MANY_REQUESTS),
    (QueryTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (StoreBusyError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PoolError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for_error(error: MemSQLiteError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(config: Optional[Settings] = None) -> FastAPI:
    """
    Build the query API.

    Args:
        config: Settings to use (defaults to the global settings)

    Returns:
        FastAPI application whose lifespan owns the read-only pool
    """
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the read-only pool on startup and close it on shutdown."""
        setup_logging(context="api", config=config)

        logger.info("Opening read-only query services...")
        services = QueryServices(config)
        await services.start()
        app.state.services = services
        logger.info("Application startup complete")

        yield

        logger.info("Application shutdown initiated...")
        try:
            await services.close()
            logger.info("✓ Query services closed")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}", exc_info=True)

    app = FastAPI(
        lifespan=lifespan,
        title="memsqlite API",
        description="Read-only SQL over Claude Code conversation history",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    @app.exception_handler(MemSQLiteError)
    async def handle_memsqlite_error(request: Request, exc: MemSQLiteError):
        headers = {}
        if isinstance(exc, RateLimitExceededError):
            headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))
            headers["X-RateLimit-Limit"] = str(config.query_rate_limit_per_minute)
        body = {"error": True, **exc.to_dict()}
        sql = getattr(request.state, "sql", None)
        if sql is not None:
            body["query"] = sql
        return JSONResponse(status_code=status_for_error(exc), content=body, headers=headers)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint - API health check."""
        return {
            "status": "ok",
            "message": "memsqlite API is running",
            "version": __version__,
        }

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Health check endpoint."""
        services: QueryServices = app.state.services
        db_status = "healthy" if check_connection(services.engine) else "unhealthy"
        return HealthResponse(
            status="healthy" if db_status == "healthy" else "degraded",
            database=db_status,
            pool=services.pool.stats().to_dict(),
        )

    @app.post("/query", response_model=QueryResponse)
    async def query_memory(
        body: QueryRequest,
        request: Request,
        x_client_id: Optional[str] = Header(None),
    ) -> QueryResponse:
        """
        Run one read-only SELECT.

        Clients are identified by the ``X-Client-Id`` header, falling back to
        the peer address.
        """
        request.state.sql = body.sql
        sql, limit = parse_query_arguments(
            body.model_dump(exclude_none=True), config.query_max_limit
        )
        client_id = x_client_id or (request.client.host if request.client else "anonymous")
        result = await app.state.services.query_service.execute(sql, limit, client_id)
        return QueryResponse(**result)

    @app.get("/schema")
    async def schema() -> dict:
        """Tables, columns and indexes available to queries."""
        return await app.state.services.query_service.schema_info()

    return app


app = create_app()
