"""Data source contract shared by all checks."""

from typing import Any, Protocol

from dbwatch.models import QueryId


class DataSourceError(Exception):
    """Raised when the monitored database cannot be reached or a query fails."""


class DataSource(Protocol):
    """Runs named introspection queries and returns flat rows.

    Checks depend only on the row field names, never on the query language.
    """

    async def connect(self) -> None: ...

    async def run_check_query(self, query_id: QueryId) -> list[dict[str, Any]]: ...

    async def close(self) -> None: ...
