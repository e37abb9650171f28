"""Finding model and the row shapes the data source hands to checks."""

from datetime import UTC, datetime
from typing import Any, Literal, TypedDict

from pydantic import BaseModel, Field

from dbwatch.config import Level

FindingType = Literal[
    "slow_operation",
    "blocking",
    "watch_query",
    "high_cpu",
    "unused_index",
    "low_cache_hit",
    "lock_accumulation",
]

QueryId = Literal[
    "running_operations",
    "blocking_pairs",
    "high_cpu_operations",
    "unused_indexes",
    "buffer_cache_stats",
]

LEVELS: tuple[Level, ...] = ("info", "warning", "critical")


# --- Data source rows ---


class OperationRow(TypedDict, total=False):
    session_id: int
    database: str
    text: str
    elapsed_ms: float
    cpu_ms: float
    logical_reads: int
    wait_type: str | None
    blocking_session_id: int | None
    query_plan: str | None


class BlockingRow(TypedDict, total=False):
    session_id: int
    blocking_session_id: int
    database: str
    text: str
    blocking_text: str | None
    wait_ms: float
    wait_type: str | None
    resource_type: str | None
    object_name: str | None
    lock_mode: str | None
    blocking_lock_mode: str | None
    host: str | None
    blocking_host: str | None
    program: str | None
    blocking_program: str | None


class IndexUsageRow(TypedDict, total=False):
    database: str
    schema_name: str
    table_name: str
    index_name: str
    reads: int
    writes: int
    size_bytes: int


class CacheStatsRow(TypedDict, total=False):
    database: str
    hits: int
    reads: int
    hit_ratio: float | None


# --- Finding ---


class FindingMetrics(BaseModel):
    execution_time_ms: float | None = None
    cpu_time_ms: float | None = None
    logical_reads: int | None = None
    wait_type: str | None = None
    blocking_session_id: int | None = None


class Finding(BaseModel):
    """One detected anomaly from a single check in a single tick."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    type: FindingType
    level: Level
    message: str
    session_id: int | str | None = None
    database: str | None = None
    server: str | None = None
    metrics: FindingMetrics = FindingMetrics()
    query_text: str | None = None
    query_name: str | None = None
    execution_plan_summary: dict[str, int] | None = None
    lock_details: dict[str, Any] | None = None
    index_details: dict[str, Any] | None = None
    cache_details: dict[str, Any] | None = None
    ai_analysis: dict[str, Any] | None = None


def truncate(text: str | None, max_length: int, suffix: str = "...") -> str | None:
    """Bound ``text`` to ``max_length`` characters, marking the cut with ``suffix``."""
    if not text:
        return text
    if len(text) <= max_length:
        return text
    return text[:max_length] + suffix
