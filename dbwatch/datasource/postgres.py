"""PostgreSQL data source backed by an asyncpg pool.

Maps ``pg_stat_activity``, ``pg_locks`` and the statistics views onto the
row contract the checks expect.  PostgreSQL has no per-statement CPU
counter, so ``cpu_ms`` is the elapsed time of statements that are running
and not waiting on anything.
"""

import logging
from typing import Any

import asyncpg

from dbwatch.datasource.base import DataSourceError
from dbwatch.models import QueryId

logger = logging.getLogger(__name__)

_ELAPSED_MS = "(EXTRACT(EPOCH FROM (clock_timestamp() - a.query_start)) * 1000)::float8"

QUERIES: dict[str, str] = {
    "running_operations": f"""
        SELECT a.pid AS session_id,
               a.datname AS database,
               a.query AS text,
               {_ELAPSED_MS} AS elapsed_ms,
               CASE WHEN a.wait_event IS NULL THEN {_ELAPSED_MS} END AS cpu_ms,
               NULL::bigint AS logical_reads,
               a.wait_event_type || ':' || a.wait_event AS wait_type,
               (pg_blocking_pids(a.pid))[1] AS blocking_session_id
        FROM pg_stat_activity a
        WHERE a.pid <> pg_backend_pid()
          AND a.state = 'active'
          AND a.backend_type = 'client backend'
          AND a.datname = current_database()
        ORDER BY elapsed_ms DESC
        LIMIT 100
    """,
    "high_cpu_operations": f"""
        SELECT a.pid AS session_id,
               a.datname AS database,
               a.query AS text,
               {_ELAPSED_MS} AS elapsed_ms,
               {_ELAPSED_MS} AS cpu_ms,
               NULL::bigint AS logical_reads,
               NULL::text AS wait_type,
               NULL::int AS blocking_session_id
        FROM pg_stat_activity a
        WHERE a.pid <> pg_backend_pid()
          AND a.state = 'active'
          AND a.wait_event IS NULL
          AND a.backend_type = 'client backend'
          AND a.datname = current_database()
        ORDER BY cpu_ms DESC
        LIMIT 100
    """,
    "blocking_pairs": """
        SELECT blocked.pid AS session_id,
               blocker.pid AS blocking_session_id,
               blocked.datname AS database,
               blocked.query AS text,
               blocker.query AS blocking_text,
               (EXTRACT(EPOCH FROM (clock_timestamp() - blocked.query_start)) * 1000)::float8 AS wait_ms,
               blocked.wait_event_type || ':' || blocked.wait_event AS wait_type,
               bl.locktype AS resource_type,
               bl.relation::regclass::text AS object_name,
               bl.mode AS lock_mode,
               held.mode AS blocking_lock_mode,
               blocked.client_addr::text AS host,
               blocker.client_addr::text AS blocking_host,
               blocked.application_name AS program,
               blocker.application_name AS blocking_program
        FROM pg_stat_activity blocked
        JOIN LATERAL unnest(pg_blocking_pids(blocked.pid)) AS b(pid) ON true
        JOIN pg_stat_activity blocker ON blocker.pid = b.pid
        LEFT JOIN pg_locks bl ON bl.pid = blocked.pid AND NOT bl.granted
        LEFT JOIN pg_locks held ON held.pid = blocker.pid AND held.granted
             AND held.locktype = bl.locktype
             AND held.relation IS NOT DISTINCT FROM bl.relation
        WHERE blocked.datname = current_database()
    """,
    "unused_indexes": """
        SELECT current_database() AS database,
               s.schemaname AS schema_name,
               s.relname AS table_name,
               s.indexrelname AS index_name,
               s.idx_scan AS reads,
               COALESCE(t.n_tup_ins + t.n_tup_upd + t.n_tup_del, 0) AS writes,
               pg_relation_size(s.indexrelid) AS size_bytes
        FROM pg_stat_user_indexes s
        JOIN pg_stat_user_tables t ON t.relid = s.relid
        JOIN pg_index i ON i.indexrelid = s.indexrelid
        WHERE NOT i.indisunique AND NOT i.indisprimary
    """,
    "buffer_cache_stats": """
        SELECT datname AS database,
               blks_hit AS hits,
               blks_read AS reads,
               CASE WHEN blks_hit + blks_read > 0
                    THEN blks_hit::float8 * 100 / (blks_hit + blks_read)
               END AS hit_ratio
        FROM pg_stat_database
        WHERE datname = current_database()
    """,
}


class PostgresDataSource:
    """Lightweight wrapper around an asyncpg pool that runs the introspection queries."""

    def __init__(self, dsn: str, *, connect_timeout: float = 10.0, max_size: int = 2) -> None:
        self._dsn = dsn
        self._connect_timeout = connect_timeout
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        """Create the pool.  Raises DataSourceError when the database is unreachable."""
        if self._pool is not None:
            return
        try:
            self._pool = await asyncpg.create_pool(
                dsn=self._dsn,
                min_size=1,
                max_size=self._max_size,
                timeout=self._connect_timeout,
            )
        except (OSError, asyncpg.PostgresError) as exc:
            msg = f"Could not connect to PostgreSQL: {exc}"
            raise DataSourceError(msg) from exc
        logger.info("PostgreSQL connection pool ready")

    async def run_check_query(self, query_id: QueryId) -> list[dict[str, Any]]:
        if self._pool is None:
            msg = "Data source is not connected"
            raise DataSourceError(msg)
        sql = QUERIES.get(query_id)
        if sql is None:
            msg = f"Unknown check query: {query_id}"
            raise DataSourceError(msg)
        try:
            async with self._pool.acquire() as conn:
                records = await conn.fetch(sql)
        except (OSError, asyncpg.PostgresError) as exc:
            msg = f"Query '{query_id}' failed: {exc}"
            raise DataSourceError(msg) from exc
        return [dict(r) for r in records]

    async def close(self) -> None:
        if self._pool is None:
            return
        await self._pool.close()
        self._pool = None
        logger.info("PostgreSQL connection pool closed")
