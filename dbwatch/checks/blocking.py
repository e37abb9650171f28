"""Blocked sessions, plus persistence-based escalation via the lock tracker."""

from typing import Any, ClassVar

from dbwatch.checks.base import CheckContext
from dbwatch.datasource.base import DataSource
from dbwatch.locks.tracker import LockAccumulationTracker, conflict_query_text, lock_details
from dbwatch.models import BlockingRow, Finding, FindingMetrics, truncate
from dbwatch.severity import classify


class BlockingCheck:
    name: ClassVar[str] = "blocking"

    def __init__(self, tracker: LockAccumulationTracker | None = None) -> None:
        self.tracker = tracker

    async def run(self, source: DataSource, context: CheckContext) -> list[Finding]:
        rows: list[Any] = await source.run_check_query("blocking_pairs")
        conflicts: list[BlockingRow] = rows
        thresholds = context.thresholds("blocking_time_ms")
        findings: list[Finding] = []

        for row in conflicts:
            level = classify(row.get("wait_ms"), thresholds)
            if level is None:
                continue
            findings.append(self._build(row, level, context))

        # The tracker sees every conflict, including those under the thresholds
        if self.tracker is not None:
            findings.extend(self.tracker.evaluate(conflicts, now=context.now.timestamp()))
        return findings

    def _build(self, row: BlockingRow, level: Any, context: CheckContext) -> Finding:
        wait_ms = row.get("wait_ms") or 0
        return Finding(
            type="blocking",
            level=level,
            message=(
                f"Blocking: session {row.get('blocking_session_id')} has blocked "
                f"session {row.get('session_id')} for {wait_ms / 1000:.1f}s"
            ),
            session_id=row.get("session_id"),
            database=row.get("database") or context.database,
            server=context.server,
            metrics=FindingMetrics(
                execution_time_ms=wait_ms,
                wait_type=row.get("wait_type"),
                blocking_session_id=row.get("blocking_session_id"),
            ),
            query_text=truncate(conflict_query_text(row), context.max_query_length * 2),
            lock_details=lock_details(row),
            timestamp=context.now,
        )
