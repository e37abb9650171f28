"""Check contract shared by every check module."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar, Protocol

from dbwatch.config import Settings, ThresholdSet
from dbwatch.datasource.base import DataSource
from dbwatch.models import Finding, FindingMetrics, truncate


@dataclass
class CheckContext:
    settings: Settings
    server: str | None = None
    database: str | None = None
    now: datetime = field(default_factory=lambda: datetime.now(UTC))

    def thresholds(self, metric: str) -> ThresholdSet:
        return self.settings.thresholds.for_metric(metric)

    @property
    def max_query_length(self) -> int:
        return self.settings.alert_log.max_query_text_length


class Check(Protocol):
    name: ClassVar[str]

    async def run(self, source: DataSource, context: CheckContext) -> list[Finding]: ...


def top_n(rows: list[dict[str, Any]], field_name: str, n: int) -> list[dict[str, Any]]:
    """The ``n`` rows with the largest ``field_name``; missing values sort last."""
    return sorted(rows, key=lambda r: r.get(field_name) or 0, reverse=True)[:n]


def operation_finding(row: dict[str, Any], context: CheckContext, **kwargs: Any) -> Finding:
    """Finding populated with the common fields of a running-operation row."""
    return Finding(
        session_id=row.get("session_id"),
        database=row.get("database") or context.database,
        server=context.server,
        metrics=FindingMetrics(
            execution_time_ms=row.get("elapsed_ms"),
            cpu_time_ms=row.get("cpu_ms"),
            logical_reads=row.get("logical_reads"),
            wait_type=row.get("wait_type"),
            blocking_session_id=row.get("blocking_session_id") or None,
        ),
        query_text=truncate(row.get("text"), context.max_query_length),
        timestamp=context.now,
        **kwargs,
    )
