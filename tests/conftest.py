"""Shared pytest configuration and fixtures."""

import asyncio
from collections.abc import Callable, Generator
from typing import Any

import pytest

from dbwatch.config import Settings, get_settings
from dbwatch.datasource.base import DataSourceError
from dbwatch.models import Finding, FindingMetrics


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run e2e tests that hit a real database (requires DBWATCH_DATA_SOURCE__DSN)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if config.getoption("--run-e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="Need --run-e2e flag to run")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def _no_config_files(request: pytest.FixtureRequest, monkeypatch: pytest.MonkeyPatch) -> Generator[None]:
    """Block .env and dbwatch.yaml loading so tests only see the settings they build."""
    if "e2e" in request.keywords:
        yield
        return

    monkeypatch.delenv("DBWATCH_CONFIG_FILE", raising=False)
    get_settings.cache_clear()
    original_env = Settings.model_config.get("env_file")
    original_yaml = Settings.model_config.get("yaml_file")
    Settings.model_config["env_file"] = None
    Settings.model_config["yaml_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original_env
        Settings.model_config["yaml_file"] = original_yaml
        get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path: Any) -> Settings:
    """Settings with every file path redirected under tmp_path."""
    return Settings(
        data_source={"dsn": "postgresql://test@db.test/app", "database": "app", "server_name": "db.test"},
        lock_monitoring={"persist_path": str(tmp_path / "data" / "lock-history.json")},
        alert_log={"directory": str(tmp_path / "logs")},
    )


class FakeDataSource:
    """In-memory data source: canned rows per query id, optional failures and delays."""

    def __init__(self, rows: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.rows = rows or {}
        self.errors: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}
        self.calls: list[str] = []
        self.connected = False
        self.closed = False
        self.connect_error: Exception | None = None

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def run_check_query(self, query_id: str) -> list[dict[str, Any]]:
        self.calls.append(query_id)
        if query_id in self.delays:
            await asyncio.sleep(self.delays[query_id])
        if query_id in self.errors:
            raise self.errors[query_id]
        return [dict(row) for row in self.rows.get(query_id, [])]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_source() -> FakeDataSource:
    return FakeDataSource()


@pytest.fixture
def unreachable_source() -> FakeDataSource:
    source = FakeDataSource()
    source.connect_error = DataSourceError("connection refused")
    return source


def _make_finding(**overrides: Any) -> Finding:
    values: dict[str, Any] = {
        "type": "slow_operation",
        "level": "critical",
        "message": "Slow operation: session 42 running for 12.0s",
        "session_id": 42,
        "database": "app",
        "server": "db.test",
        "metrics": FindingMetrics(execution_time_ms=12_000, cpu_time_ms=8_000, logical_reads=500),
        "query_text": "SELECT * FROM orders WHERE customer_id = 42",
    }
    values.update(overrides)
    return Finding(**values)


@pytest.fixture
def make_finding() -> Callable[..., Finding]:
    """Factory for findings with sensible defaults; keyword overrides replace fields."""
    return _make_finding

