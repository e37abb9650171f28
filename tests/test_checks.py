"""Tests for the check modules against a fake data source."""

from datetime import timedelta
from typing import Any

import pytest

from dbwatch.checks.base import CheckContext
from dbwatch.checks.blocking import BlockingCheck
from dbwatch.checks.cache_hit import CacheHitCheck
from dbwatch.checks.high_cpu import ResourceCheck
from dbwatch.checks.index_usage import IndexUsageCheck
from dbwatch.checks.slow_operations import SlowOperationCheck, summarize_plan
from dbwatch.config import Settings
from dbwatch.locks.tracker import LockAccumulationTracker, LockHistory


def _op(session_id: int, elapsed_ms: float, cpu_ms: float = 0, **extra: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "session_id": session_id,
        "database": "app",
        "text": f"SELECT * FROM orders WHERE id = {session_id}",
        "elapsed_ms": elapsed_ms,
        "cpu_ms": cpu_ms,
        "logical_reads": 100,
        "wait_type": None,
        "blocking_session_id": None,
    }
    row.update(extra)
    return row


def _block(blocked: int, blocker: int, wait_ms: float) -> dict[str, Any]:
    return {
        "session_id": blocked,
        "blocking_session_id": blocker,
        "database": "app",
        "text": "UPDATE orders SET status = 'paid' WHERE id = 7",
        "blocking_text": "ALTER TABLE orders ADD COLUMN note text",
        "wait_ms": wait_ms,
        "wait_type": "Lock:relation",
        "resource_type": "relation",
        "object_name": "orders",
        "lock_mode": "RowExclusiveLock",
        "blocking_lock_mode": "AccessExclusiveLock",
        "host": "10.0.0.5",
        "blocking_host": "10.0.0.9",
        "program": "api",
        "blocking_program": "psql",
    }


def _index(table: str, name: str, *, reads: int, writes: int) -> dict[str, Any]:
    return {
        "schema_name": "public",
        "table_name": table,
        "index_name": name,
        "reads": reads,
        "writes": writes,
        "size_bytes": 8192,
    }


@pytest.fixture
def context(settings: Settings) -> CheckContext:
    return CheckContext(settings=settings, server="db.test", database="app")


class TestSlowOperationCheck:
    async def test_classifies_by_elapsed(self, fake_source: Any, context: CheckContext) -> None:
        fake_source.rows["running_operations"] = [_op(1, 12_000), _op(2, 6_000), _op(3, 1_500), _op(4, 200)]
        findings = await SlowOperationCheck().run(fake_source, context)

        assert [(f.session_id, f.level) for f in findings] == [(1, "critical"), (2, "warning"), (3, "info")]
        assert all(f.type == "slow_operation" for f in findings)
        assert findings[0].server == "db.test"
        assert findings[0].metrics.execution_time_ms == 12_000

    async def test_top_n(self, fake_source: Any, context: CheckContext) -> None:
        context.settings.monitoring.top_n = 2
        fake_source.rows["running_operations"] = [_op(i, 20_000 + i) for i in range(10)]
        findings = await SlowOperationCheck().run(fake_source, context)
        assert [f.session_id for f in findings] == [9, 8]

    async def test_query_text_truncated(self, fake_source: Any, context: CheckContext) -> None:
        fake_source.rows["running_operations"] = [_op(1, 20_000, text="SELECT " + "x" * 2000)]
        findings = await SlowOperationCheck().run(fake_source, context)
        assert findings[0].query_text is not None
        assert len(findings[0].query_text) == 500 + len("...")

    async def test_plan_summary(self, fake_source: Any, context: CheckContext) -> None:
        plan = '<RelOp PhysicalOp="Table Scan"/><RelOp PhysicalOp="Index Seek"/><RelOp PhysicalOp="Index Seek"/>'
        fake_source.rows["running_operations"] = [_op(1, 20_000, query_plan=plan)]
        findings = await SlowOperationCheck().run(fake_source, context)
        assert findings[0].execution_plan_summary == {"table_scans": 1, "index_scans": 0, "index_seeks": 2}

    def test_plan_summary_absent(self) -> None:
        assert summarize_plan(None) is None

    def test_text_plan_operators(self) -> None:
        plan = "Nested Loop\n  -> Seq Scan on orders\n  -> Index Scan using customers_pkey on customers"
        assert summarize_plan(plan) == {"table_scans": 1, "index_scans": 1, "index_seeks": 0}


class TestResourceCheck:
    async def test_classifies_by_cpu(self, fake_source: Any, context: CheckContext) -> None:
        fake_source.rows["high_cpu_operations"] = [_op(1, 9_000, cpu_ms=6_000), _op(2, 9_000, cpu_ms=500)]
        findings = await ResourceCheck().run(fake_source, context)
        assert len(findings) == 1
        assert findings[0].type == "high_cpu"
        assert findings[0].level == "critical"
        assert findings[0].metrics.cpu_time_ms == 6_000


class TestBlockingCheck:
    async def test_blocking_finding(self, fake_source: Any, context: CheckContext) -> None:
        fake_source.rows["blocking_pairs"] = [_block(52, 51, 6_000)]
        findings = await BlockingCheck().run(fake_source, context)

        assert len(findings) == 1
        f = findings[0]
        assert f.type == "blocking"
        assert f.level == "warning"
        assert f.metrics.blocking_session_id == 51
        assert f.query_text is not None
        assert "UPDATE orders" in f.query_text
        assert "ALTER TABLE" in f.query_text
        assert f.lock_details is not None
        assert f.lock_details["blocker_lock_mode"] == "AccessExclusiveLock"
        assert f.lock_details["blocked_program"] == "api"

    async def test_short_waits_not_reported_but_tracked(self, fake_source: Any, context: CheckContext) -> None:
        tracker = LockAccumulationTracker(LockHistory(10), accumulation_seconds=600)
        fake_source.rows["blocking_pairs"] = [_block(52, 51, 100)]
        findings = await BlockingCheck(tracker).run(fake_source, context)
        assert findings == []
        assert len(tracker.history) == 1

    async def test_tracker_escalation_appended(self, fake_source: Any, settings: Settings) -> None:
        tracker = LockAccumulationTracker(LockHistory(10), accumulation_seconds=600)
        check = BlockingCheck(tracker)
        fake_source.rows["blocking_pairs"] = [_block(52, 51, 100)]

        first = CheckContext(settings=settings)
        _ = await check.run(fake_source, first)
        later = CheckContext(settings=settings, now=first.now + timedelta(minutes=10, seconds=1))
        findings = await check.run(fake_source, later)

        assert [f.type for f in findings] == ["lock_accumulation"]


class TestIndexUsageCheck:
    async def test_written_but_never_read(self, fake_source: Any, context: CheckContext) -> None:
        fake_source.rows["unused_indexes"] = [
            _index("orders", "ix_orders_note", reads=0, writes=12_000),
            _index("orders", "ix_orders_customer", reads=50, writes=12_000),
            _index("archive", "ix_archive_id", reads=0, writes=0),
        ]
        findings = await IndexUsageCheck().run(fake_source, context)

        assert len(findings) == 1
        f = findings[0]
        assert f.type == "unused_index"
        assert f.level == "info"
        assert "candidate for removal" in f.message
        assert f.index_details is not None
        assert f.index_details["index_name"] == "ix_orders_note"
        assert f.database == "app"


class TestCacheHitCheck:
    async def test_below_floor(self, fake_source: Any, context: CheckContext) -> None:
        fake_source.rows["buffer_cache_stats"] = [{"database": "app", "hits": 850, "reads": 150, "hit_ratio": 85.0}]
        findings = await CacheHitCheck().run(fake_source, context)
        assert len(findings) == 1
        assert findings[0].type == "low_cache_hit"
        assert findings[0].level == "warning"
        assert findings[0].cache_details == {"hit_ratio": 85.0, "floor_percent": 90.0, "hits": 850, "reads": 150}

    async def test_healthy_ratio(self, fake_source: Any, context: CheckContext) -> None:
        fake_source.rows["buffer_cache_stats"] = [{"database": "app", "hits": 990, "reads": 10, "hit_ratio": 99.0}]
        assert await CacheHitCheck().run(fake_source, context) == []

    async def test_no_traffic_yet(self, fake_source: Any, context: CheckContext) -> None:
        fake_source.rows["buffer_cache_stats"] = [{"database": "app", "hits": 0, "reads": 0, "hit_ratio": None}]
        assert await CacheHitCheck().run(fake_source, context) == []
