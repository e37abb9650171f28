"""Buffer cache hit ratio below the configured floor."""

from typing import ClassVar

from dbwatch.checks.base import CheckContext
from dbwatch.datasource.base import DataSource
from dbwatch.models import Finding


class CacheHitCheck:
    name: ClassVar[str] = "cache_hit"

    async def run(self, source: DataSource, context: CheckContext) -> list[Finding]:
        rows = await source.run_check_query("buffer_cache_stats")
        floor = context.settings.monitoring.cache_hit_floor_percent
        findings: list[Finding] = []
        for row in rows:
            ratio = row.get("hit_ratio")
            if ratio is None or ratio >= floor:
                continue
            findings.append(
                Finding(
                    type="low_cache_hit",
                    level="warning",
                    message=f"Buffer cache hit ratio {ratio:.1f}% is below {floor:.0f}%",
                    database=row.get("database") or context.database,
                    server=context.server,
                    cache_details={
                        "hit_ratio": round(ratio, 2),
                        "floor_percent": floor,
                        "hits": row.get("hits"),
                        "reads": row.get("reads"),
                    },
                    timestamp=context.now,
                )
            )
        return findings
