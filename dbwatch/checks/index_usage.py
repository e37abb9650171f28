"""Indexes that are maintained on every write but never read."""

from typing import ClassVar

from dbwatch.checks.base import CheckContext
from dbwatch.datasource.base import DataSource
from dbwatch.models import Finding


class IndexUsageCheck:
    name: ClassVar[str] = "unused_indexes"

    async def run(self, source: DataSource, context: CheckContext) -> list[Finding]:
        rows = await source.run_check_query("unused_indexes")
        findings: list[Finding] = []
        for row in rows:
            if (row.get("reads") or 0) != 0 or not row.get("writes"):
                continue
            qualified = ".".join(p for p in (row.get("schema_name"), row.get("table_name")) if p)
            findings.append(
                Finding(
                    type="unused_index",
                    level="info",
                    message=(
                        f"Unused index {row.get('index_name')} on {qualified}: "
                        f"{row.get('writes'):,} writes, no reads (candidate for removal)"
                    ),
                    database=row.get("database") or context.database,
                    server=context.server,
                    index_details={
                        "schema_name": row.get("schema_name"),
                        "table_name": row.get("table_name"),
                        "index_name": row.get("index_name"),
                        "reads": row.get("reads") or 0,
                        "writes": row.get("writes"),
                        "size_bytes": row.get("size_bytes"),
                    },
                    timestamp=context.now,
                )
            )
        return findings
