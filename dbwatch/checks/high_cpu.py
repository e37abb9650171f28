"""CPU-heavy statements, ranked by CPU time."""

from typing import ClassVar

from dbwatch.checks.base import CheckContext, operation_finding, top_n
from dbwatch.datasource.base import DataSource
from dbwatch.models import Finding
from dbwatch.severity import classify


class ResourceCheck:
    name: ClassVar[str] = "high_cpu"

    async def run(self, source: DataSource, context: CheckContext) -> list[Finding]:
        rows = await source.run_check_query("high_cpu_operations")
        thresholds = context.thresholds("cpu_time_ms")
        findings: list[Finding] = []

        for row in top_n(rows, "cpu_ms", context.settings.monitoring.top_n):
            cpu = row.get("cpu_ms")
            level = classify(cpu, thresholds)
            if level is None:
                continue
            findings.append(
                operation_finding(
                    row,
                    context,
                    type="high_cpu",
                    level=level,
                    message=f"High CPU: session {row.get('session_id')} used {cpu / 1000:.1f}s of CPU",
                )
            )
        return findings
