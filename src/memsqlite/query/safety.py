"""
Pre-execution safety filter for read-only queries.

Parameter binding is the primary defense; these checks reject anything that
is not a plain SELECT before it reaches SQLite, append a bound LIMIT when
the statement has none, and estimate how expensive the statement is.
"""

import math
import re
from dataclasses import dataclass
from typing import Any, Optional

from memsqlite.exceptions import UnsafeQueryError

DEFAULT_LIMIT = 100
MAX_LIMIT = 1000
MAX_COMPLEXITY = 10.0

FORBIDDEN_KEYWORDS = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "DROP",
    "CREATE",
    "ALTER",
    "REPLACE",
    "PRAGMA",
    "ATTACH",
    "DETACH",
    "VACUUM",
    "REINDEX",
)

_FORBIDDEN_RE = re.compile(r"\b(" + "|".join(FORBIDDEN_KEYWORDS) + r")\b", re.IGNORECASE)
# Table-valued PRAGMA functions (pragma_database_list, pragma_table_info, ...)
_PRAGMA_FUNCTION_RE = re.compile(r"\bpragma_\w+", re.IGNORECASE)

SUSPICIOUS_PATTERNS = (
    (re.compile(r";\s*(INSERT|UPDATE|DELETE|DROP|CREATE|ALTER)", re.IGNORECASE), "stacked statement"),
    (re.compile(r"UNION\s+SELECT", re.IGNORECASE), "UNION SELECT"),
    (re.compile(r"--"), "line comment"),
    (re.compile(r"/\*"), "block comment"),
)

_LIMIT_RE = re.compile(r"\bLIMIT\b", re.IGNORECASE)
_AGGREGATES = ("COUNT", "SUM", "AVG", "MAX", "MIN", "SUBSTR", "LENGTH")


def validate_query(sql: str) -> None:
    """
    Reject anything that is not a single read-only SELECT.

    Raises:
        UnsafeQueryError: With the reason the statement was rejected
    """
    if not isinstance(sql, str) or not sql.strip():
        raise UnsafeQueryError("query is empty")

    normalized = sql.strip()
    if not normalized.upper().startswith("SELECT"):
        raise UnsafeQueryError("only SELECT queries are allowed")

    match = _FORBIDDEN_RE.search(normalized)
    if match:
        raise UnsafeQueryError(f"forbidden keyword {match.group(1).upper()}")
    if _PRAGMA_FUNCTION_RE.search(normalized):
        raise UnsafeQueryError("forbidden keyword PRAGMA")

    for pattern, label in SUSPICIOUS_PATTERNS:
        if pattern.search(normalized):
            raise UnsafeQueryError(f"suspicious pattern ({label})")


def has_limit(sql: str) -> bool:
    return _LIMIT_RE.search(sql) is not None


def clamp_limit(limit: Optional[int], max_limit: int = MAX_LIMIT) -> int:
    if limit is None:
        limit = DEFAULT_LIMIT
    return max(1, min(int(limit), max_limit))


def ensure_limit(
    sql: str, limit: Optional[int] = None, max_limit: int = MAX_LIMIT
) -> tuple[str, tuple[Any, ...]]:
    """
    Append ``LIMIT ?`` when the statement has no LIMIT clause.

    The row cap is always bound as a parameter, never formatted into the SQL.

    Returns:
        (sql, positional parameters)
    """
    statement = sql.strip().rstrip(";").rstrip()
    if has_limit(statement):
        return statement, ()
    return f"{statement} LIMIT ?", (clamp_limit(limit, max_limit),)


def analyze_complexity(sql: str) -> float:
    """
    Score how expensive a statement is likely to be.

    Starts at 1 and adds: 1 per JOIN, 2 for UNION, 1 for GROUP BY, 0.5 each
    for ORDER BY and DISTINCT, 2 per subquery, 1 for LIKE with a wildcard,
    2 when there is no LIMIT, and 0.5 per aggregate/string function used.
    Capped at MAX_COMPLEXITY.
    """
    upper = sql.upper()
    score = 1.0
    score += len(re.findall(r"\bJOIN\b", upper))
    if re.search(r"\bUNION\b", upper):
        score += 2
    if re.search(r"\bGROUP\s+BY\b", upper):
        score += 1
    if re.search(r"\bORDER\s+BY\b", upper):
        score += 0.5
    if re.search(r"\bDISTINCT\b", upper):
        score += 0.5
    score += 2 * len(re.findall(r"\(\s*SELECT\b", upper))
    if re.search(r"\bLIKE\b", upper) and "%" in upper:
        score += 1
    if not has_limit(upper):
        score += 2
    for function in _AGGREGATES:
        if re.search(rf"\b{function}\s*\(", upper):
            score += 0.5
    return min(score, MAX_COMPLEXITY)


@dataclass(frozen=True)
class QueryRestrictions:
    """Limits derived from a complexity score."""

    max_rows: int
    timeout_ms: int
    cacheable: bool


def query_restrictions(score: float) -> QueryRestrictions:
    score = max(score, 1.0)
    return QueryRestrictions(
        max_rows=int(max(100, 1000 / score)),
        timeout_ms=int(min(30_000, 5000 * score)),
        cacheable=score < 3,
    )


def query_cost(score: float) -> int:
    """Rate-limit tokens charged for a query of the given score."""
    return max(1, math.ceil(score / 2))
