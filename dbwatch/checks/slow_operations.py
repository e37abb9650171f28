"""Long-running statements, ranked by elapsed time."""

import re
from typing import ClassVar

from dbwatch.checks.base import CheckContext, operation_finding, top_n
from dbwatch.datasource.base import DataSource
from dbwatch.models import Finding
from dbwatch.severity import classify

_PLAN_OPERATORS = {
    "table_scans": re.compile(r'PhysicalOp="Table Scan"|\bSeq Scan\b'),
    "index_scans": re.compile(r'PhysicalOp="Index Scan"|\bIndex (?:Only )?Scan\b'),
    "index_seeks": re.compile(r'PhysicalOp="Index Seek"'),
}


def summarize_plan(plan: str | None) -> dict[str, int] | None:
    """Count scan and seek operators in an XML or text execution plan."""
    if not plan:
        return None
    return {name: len(pattern.findall(plan)) for name, pattern in _PLAN_OPERATORS.items()}


class SlowOperationCheck:
    name: ClassVar[str] = "slow_operations"

    async def run(self, source: DataSource, context: CheckContext) -> list[Finding]:
        rows = await source.run_check_query("running_operations")
        thresholds = context.thresholds("execution_time_ms")
        findings: list[Finding] = []

        for row in top_n(rows, "elapsed_ms", context.settings.monitoring.top_n):
            elapsed = row.get("elapsed_ms")
            level = classify(elapsed, thresholds)
            if level is None:
                continue
            findings.append(
                operation_finding(
                    row,
                    context,
                    type="slow_operation",
                    level=level,
                    message=f"Slow operation: session {row.get('session_id')} running for {elapsed / 1000:.1f}s",
                    execution_plan_summary=summarize_plan(row.get("query_plan")),
                )
            )
        return findings
