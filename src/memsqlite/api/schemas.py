"""
API schemas for memsqlite.

Pydantic models for request/response validation.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class QueryRequest(BaseModel):
    """Body of ``POST /query`` (the ``query_memory`` tool arguments)."""

    sql: str = Field(..., description="A single read-only SELECT statement")
    limit: Optional[int] = Field(None, description="Row limit, clamped to the maximum")


class QueryResponse(BaseModel):
    query: str
    rowCount: int
    results: list[dict[str, Any]]


class ErrorResponse(BaseModel):
    """Structured error returned for every rejected or failed query."""

    error: bool = True
    code: str
    message: str
    query: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    database: str
    pool: dict[str, int]
