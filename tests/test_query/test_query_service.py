"""Tests for the read-only query service."""

import asyncio

import pytest
import pytest_asyncio

from memsqlite.exceptions import (
    InvalidQueryArguments,
    QueryExecutionError,
    QueryTimeoutError,
    RateLimitExceededError,
    UnsafeQueryError,
)
from memsqlite.query.rate_limit import RateLimiter
from memsqlite.query.service import parse_query_arguments
from memsqlite.services import QueryServices


class FrozenClock:
    def __call__(self) -> float:
        return 0.0


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest_asyncio.fixture
async def services(seeded, test_settings):
    async with QueryServices(test_settings) as services:
        yield services


@pytest.fixture
def service(services):
    return services.query_service


class TestParseQueryArguments:
    """Tests for tool-call argument validation."""

    def test_valid(self):
        assert parse_query_arguments({"sql": "SELECT 1"}, 1000) == ("SELECT 1", None)
        assert parse_query_arguments({"sql": "SELECT 1", "limit": 10}, 1000) == ("SELECT 1", 10)

    def test_limit_is_clamped(self):
        assert parse_query_arguments({"sql": "SELECT 1", "limit": 5000}, 1000)[1] == 1000

    @pytest.mark.parametrize(
        "arguments",
        [
            None,
            [],
            {},
            {"sql": ""},
            {"sql": 42},
            {"sql": "SELECT 1", "limit": 0},
            {"sql": "SELECT 1", "limit": -5},
            {"sql": "SELECT 1", "limit": "10"},
            {"sql": "SELECT 1", "limit": 2.5},
            {"sql": "SELECT 1", "limit": True},
        ],
    )
    def test_invalid(self, arguments):
        with pytest.raises(InvalidQueryArguments) as exc_info:
            parse_query_arguments(arguments, 1000)

        assert exc_info.value.code == "invalid_params"


class TestExecute:
    """Tests for QueryService.execute."""

    @pytest.mark.asyncio
    async def test_rows_as_dicts(self, service):
        response = await service.execute("SELECT id, user_text FROM messages ORDER BY id")

        assert response["query"] == "SELECT id, user_text FROM messages ORDER BY id LIMIT ?"
        assert response["rowCount"] == 3
        assert response["results"][0] == {"id": "m0", "user_text": "message 0"}

    @pytest.mark.asyncio
    async def test_limit_argument(self, service):
        response = await service.execute("SELECT id FROM messages ORDER BY id", limit=2)

        assert [row["id"] for row in response["results"]] == ["m0", "m1"]

    @pytest.mark.asyncio
    async def test_own_limit_is_kept(self, service):
        response = await service.execute("SELECT id FROM messages ORDER BY id LIMIT 1")

        assert response["query"] == "SELECT id FROM messages ORDER BY id LIMIT 1"
        assert response["rowCount"] == 1

    @pytest.mark.asyncio
    async def test_unsafe_query_rejected(self, service):
        with pytest.raises(UnsafeQueryError):
            await service.execute("SELECT * FROM messages; DROP TABLE messages")

    @pytest.mark.asyncio
    async def test_unknown_table(self, service):
        with pytest.raises(QueryExecutionError) as exc_info:
            await service.execute("SELECT * FROM nope")

        assert exc_info.value.message == "Unknown table referenced in query"

    @pytest.mark.asyncio
    async def test_runaway_query_times_out(self, seeded, test_settings):
        config = test_settings.model_copy(update={"query_timeout_ms": 50})
        sql = (
            "SELECT COUNT(*) AS n FROM (WITH RECURSIVE c(x) AS "
            "(SELECT 1 UNION ALL SELECT x + 1 FROM c) SELECT x FROM c)"
        )

        async with QueryServices(config) as services:
            with pytest.raises(QueryTimeoutError):
                await services.query_service.execute(sql)

    @pytest.mark.asyncio
    async def test_rate_limited(self, seeded, test_settings):
        limiter = RateLimiter(1, clock=FrozenClock())

        async with QueryServices(test_settings, limiter=limiter) as services:
            await services.query_service.execute("SELECT id FROM messages", client_id="a")

            with pytest.raises(RateLimitExceededError) as exc_info:
                await services.query_service.execute("SELECT id FROM messages", client_id="a")

            assert exc_info.value.retry_after == pytest.approx(60.0)
            await services.query_service.execute("SELECT id FROM messages", client_id="b")


class TestQueryMemory:
    """Tests for the tool-call entry point."""

    @pytest.mark.asyncio
    async def test_success(self, service):
        response = await service.query_memory({"sql": "SELECT id FROM messages", "limit": 1})

        assert response["rowCount"] == 1

    @pytest.mark.asyncio
    async def test_failure_is_structured(self, service):
        sql = "SELECT * FROM messages; DROP TABLE x"

        response = await service.query_memory({"sql": sql})

        assert response["error"] is True
        assert response["code"] == "unsafe_query"
        assert response["query"] == sql
        assert "DROP" in response["message"]

    @pytest.mark.asyncio
    async def test_bad_arguments_raise(self, service):
        with pytest.raises(InvalidQueryArguments):
            await service.query_memory({"limit": 5})


class TestSchemaInfo:
    @pytest.mark.asyncio
    async def test_lists_tables_and_columns(self, service):
        info = await service.schema_info()

        columns = {c["name"] for c in info["tables"]["messages"]["columns"]}
        assert {"id", "session_id", "kind", "timestamp"} <= columns
        assert "tool_use_results" in info["tables"]


class TestQueryServices:
    @pytest.mark.asyncio
    async def test_creates_missing_database(self, test_settings):
        assert not test_settings.database_file.exists()

        async with QueryServices(test_settings) as services:
            response = await services.query_service.execute("SELECT COUNT(*) AS n FROM sessions")

        assert response["results"] == [{"n": 0}]

    @pytest.mark.asyncio
    async def test_idle_clients_are_forgotten(self, seeded, test_settings):
        config = test_settings.model_copy(
            update={
                "query_rate_limit_cleanup_interval": 0.01,
                "query_rate_limit_idle_timeout": 60.0,
            }
        )
        clock = ManualClock()
        limiter = RateLimiter(10, clock=clock)

        async with QueryServices(config, limiter=limiter) as services:
            await services.query_service.execute("SELECT id FROM messages", client_id="a")
            assert "a" in limiter._buckets

            clock.now = 120.0
            for _ in range(100):
                if "a" not in limiter._buckets:
                    break
                await asyncio.sleep(0.01)

            assert "a" not in limiter._buckets

        assert services._cleanup_task is None

    @pytest.mark.asyncio
    async def test_cleanup_disabled(self, seeded, test_settings):
        config = test_settings.model_copy(update={"query_rate_limit_cleanup_interval": 0})

        async with QueryServices(config) as services:
            assert services._cleanup_task is None
