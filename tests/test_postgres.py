"""Tests for the PostgreSQL data source."""

import os
from typing import Any, get_args
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from dbwatch.datasource.base import DataSourceError
from dbwatch.datasource.postgres import QUERIES, PostgresDataSource
from dbwatch.models import QueryId


def _mock_pool(rows: list[dict[str, Any]] | None = None, error: Exception | None = None) -> MagicMock:
    conn = MagicMock()
    conn.fetch = AsyncMock(return_value=rows or [], side_effect=error)
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.close = AsyncMock()
    return pool


class TestQueries:
    def test_every_query_id_has_sql(self) -> None:
        assert set(QUERIES) == set(get_args(QueryId))

    def test_running_operations_excludes_self(self) -> None:
        assert "pg_backend_pid()" in QUERIES["running_operations"]


class TestPostgresDataSource:
    async def test_query_before_connect(self) -> None:
        with pytest.raises(DataSourceError, match="not connected"):
            _ = await PostgresDataSource("postgresql://x").run_check_query("running_operations")

    async def test_unreachable(self) -> None:
        with (
            patch("dbwatch.datasource.postgres.asyncpg.create_pool", AsyncMock(side_effect=OSError("refused"))),
            pytest.raises(DataSourceError, match="Could not connect"),
        ):
            await PostgresDataSource("postgresql://x").connect()

    async def test_rows_as_dicts(self) -> None:
        pool = _mock_pool(rows=[{"session_id": 7, "elapsed_ms": 1500.0}])
        with patch("dbwatch.datasource.postgres.asyncpg.create_pool", AsyncMock(return_value=pool)) as create:
            source = PostgresDataSource("postgresql://x", connect_timeout=3)
            await source.connect()
            await source.connect()

        assert create.await_count == 1
        assert create.call_args.kwargs["timeout"] == 3
        assert await source.run_check_query("running_operations") == [{"session_id": 7, "elapsed_ms": 1500.0}]

    async def test_query_error_wrapped(self) -> None:
        pool = _mock_pool(error=asyncpg.PostgresError("canceling statement due to statement timeout"))
        with patch("dbwatch.datasource.postgres.asyncpg.create_pool", AsyncMock(return_value=pool)):
            source = PostgresDataSource("postgresql://x")
            await source.connect()
        with pytest.raises(DataSourceError, match="blocking_pairs"):
            _ = await source.run_check_query("blocking_pairs")

    async def test_close(self) -> None:
        pool = _mock_pool()
        with patch("dbwatch.datasource.postgres.asyncpg.create_pool", AsyncMock(return_value=pool)):
            source = PostgresDataSource("postgresql://x")
            await source.connect()
        await source.close()
        await source.close()
        pool.close.assert_awaited_once()


@pytest.mark.e2e
class TestLiveDatabase:
    async def test_all_queries_run(self) -> None:
        dsn = os.environ.get("DBWATCH_DATA_SOURCE__DSN")
        if not dsn:
            pytest.skip("DBWATCH_DATA_SOURCE__DSN not set")
        source = PostgresDataSource(dsn)
        await source.connect()
        try:
            for query_id in QUERIES:
                rows = await source.run_check_query(query_id)  # type: ignore[arg-type]
                assert isinstance(rows, list)
        finally:
            await source.close()
