"""Monitor scheduler: periodic ticks, background jobs and graceful shutdown.

Uses an APScheduler ``AsyncIOScheduler`` for the tick and its housekeeping
jobs (lock-history persistence, cache sweep, cost-window reset).  Ticks
never overlap: the tick job runs with ``max_instances=1`` and the tick
body holds an ``asyncio.Lock``.
"""

import asyncio
import contextlib
import logging
import signal
import time
from datetime import UTC, datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]

from dbwatch.ai.cache import MemoryCache
from dbwatch.ai.engine import AIEngine, create_engine
from dbwatch.alerts.dispatcher import AlertDispatcher, create_dispatcher
from dbwatch.alerts.log import MONITOR_VERSION
from dbwatch.checks.base import Check, CheckContext
from dbwatch.checks.blocking import BlockingCheck
from dbwatch.checks.cache_hit import CacheHitCheck
from dbwatch.checks.high_cpu import ResourceCheck
from dbwatch.checks.index_usage import IndexUsageCheck
from dbwatch.checks.slow_operations import SlowOperationCheck
from dbwatch.checks.watched_queries import WatchedQueryCheck, load_mapper_dirs
from dbwatch.config import Settings
from dbwatch.datasource.base import DataSource, DataSourceError
from dbwatch.datasource.postgres import PostgresDataSource
from dbwatch.locks.store import LockHistoryStore
from dbwatch.locks.tracker import LockAccumulationTracker, LockHistory
from dbwatch.models import Finding
from dbwatch.observability.metrics import (
    APP_INFO,
    CHECK_DURATION,
    CHECK_RUNS_TOTAL,
    DATA_SOURCE_UP,
    TICK_DURATION,
    TICKS_TOTAL,
)

logger = logging.getLogger(__name__)

CACHE_SWEEP_INTERVAL_SECONDS = 60
COST_RESET_INTERVAL_SECONDS = 60


class Monitor:
    def __init__(
        self,
        settings: Settings,
        source: DataSource,
        dispatcher: AlertDispatcher,
        *,
        checks: list[Check],
        engine: AIEngine | None = None,
        tracker: LockAccumulationTracker | None = None,
        store: LockHistoryStore | None = None,
    ) -> None:
        self.settings = settings
        self.source = source
        self.dispatcher = dispatcher
        self.checks = checks
        self.engine = engine
        self.tracker = tracker
        self.store = store
        self.tick_count = 0
        self.started_at: float | None = None
        self._tick_lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._scheduler: AsyncIOScheduler | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect, restore lock history and schedule jobs. Raises DataSourceError if unreachable."""
        await self.source.connect()
        DATA_SOURCE_UP.set(1)
        self.started_at = time.monotonic()
        APP_INFO.info({"version": MONITOR_VERSION, "server": self.settings.data_source.server_name})

        if self.tracker is not None and self.store is not None:
            _ = self.store.load(self.tracker.history)

        monitoring = self.settings.monitoring
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.tick,
            "interval",
            seconds=monitoring.interval_seconds,
            id="tick",
            name="Monitoring tick",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(UTC),
        )
        if self.tracker is not None and self.store is not None:
            self._scheduler.add_job(
                self.persist_lock_history,
                "interval",
                seconds=self.settings.lock_monitoring.persist_interval_seconds,
                id="persist_lock_history",
                name="Lock history persistence",
                max_instances=1,
                coalesce=True,
            )
        if self.engine is not None and isinstance(self.engine.cache, MemoryCache):
            self._scheduler.add_job(
                self.engine.cache.cleanup,
                "interval",
                seconds=CACHE_SWEEP_INTERVAL_SECONDS,
                id="cache_sweep",
                name="Analysis cache sweep",
            )
        if self.engine is not None and self.engine.cost_tracker is not None:
            self._scheduler.add_job(
                self.engine.cost_tracker.check_reset,
                "interval",
                seconds=COST_RESET_INTERVAL_SECONDS,
                id="cost_reset",
                name="AI budget window reset",
            )
        self._scheduler.start()
        logger.info(
            "Monitoring %s every %.0fs: %s",
            self.settings.data_source.database or "database",
            monitoring.interval_seconds,
            ", ".join(c.name for c in self.checks) or "no checks",
        )

    async def run(self) -> None:
        """Start, then block until SIGINT/SIGTERM and shut down cleanly."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, self.request_stop)

        await self.start()
        try:
            await self._stop.wait()
        finally:
            await self.shutdown()

    def request_stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Shutdown requested")
        self._stop.set()

    async def shutdown(self) -> None:
        if self._scheduler is not None:
            with contextlib.suppress(Exception):
                self._scheduler.shutdown(wait=False)
            self._scheduler = None

        # Let an in-flight tick finish its dispatches
        try:
            await asyncio.wait_for(self._tick_lock.acquire(), timeout=self.settings.monitoring.tick_timeout_seconds)
            self._tick_lock.release()
        except TimeoutError:
            logger.warning("In-flight tick did not finish before shutdown")

        if self.tracker is not None and self.store is not None:
            _ = self.store.save(self.tracker.history)
        if self.engine is not None:
            await self.engine.close()
        await self.source.close()
        DATA_SOURCE_UP.set(0)
        logger.info("Monitor stopped after %d tick(s)", self.tick_count)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> list[Finding]:
        """Run every enabled check once and dispatch what they find."""
        if self._tick_lock.locked():
            logger.warning("Previous tick still running, skipping")
            TICKS_TOTAL.labels(status="skipped").inc()
            return []

        async with self._tick_lock:
            self.tick_count += 1
            start = time.monotonic()
            context = CheckContext(
                settings=self.settings,
                server=self.settings.data_source.server_name or None,
                database=self.settings.data_source.database or None,
            )
            findings: list[Finding] = []
            status = "success"
            try:
                await asyncio.wait_for(
                    self._run_checks(context, findings), timeout=self.settings.monitoring.tick_timeout_seconds
                )
            except TimeoutError:
                status = "timeout"
                logger.error(
                    "Tick %d exceeded %.0fs, dispatching %d partial finding(s)",
                    self.tick_count,
                    self.settings.monitoring.tick_timeout_seconds,
                    len(findings),
                )

            for finding in findings:
                try:
                    _ = await self.dispatcher.dispatch(finding)
                except Exception:
                    logger.exception("Dispatch failed for %s finding", finding.type)

            TICKS_TOTAL.labels(status=status).inc()
            TICK_DURATION.observe(time.monotonic() - start)
            return findings

    async def _run_checks(self, context: CheckContext, findings: list[Finding]) -> None:
        for check in self.checks:
            findings.extend(await self._run_check(check, context))

    async def _run_check(self, check: Check, context: CheckContext) -> list[Finding]:
        start = time.monotonic()
        result: list[Finding] = []
        try:
            result = await asyncio.wait_for(
                check.run(self.source, context), timeout=self.settings.monitoring.check_timeout_seconds
            )
            status = "success"
            DATA_SOURCE_UP.set(1)
        except TimeoutError:
            status = "timeout"
            logger.warning(
                "Check %s timed out after %.0fs", check.name, self.settings.monitoring.check_timeout_seconds
            )
        except DataSourceError as e:
            status = "error"
            DATA_SOURCE_UP.set(0)
            logger.error("Check %s failed: %s", check.name, e)
        except Exception:
            status = "error"
            logger.exception("Check %s failed", check.name)
        CHECK_DURATION.labels(check=check.name).observe(time.monotonic() - start)
        CHECK_RUNS_TOTAL.labels(check=check.name, status=status).inc()
        return result

    # ------------------------------------------------------------------
    # Background jobs
    # ------------------------------------------------------------------

    async def persist_lock_history(self) -> bool:
        """Snapshot on the loop, write in a worker thread."""
        if self.tracker is None or self.store is None:
            return False
        entries = self.tracker.history.snapshot()
        return await asyncio.to_thread(self.store.write_snapshot, entries)

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def summary(self) -> str:
        """Human-readable end-of-run report."""
        lines = ["", "=" * 60, "dbwatch summary", "=" * 60]
        if self.started_at is not None:
            lines.append(f"Uptime: {(time.monotonic() - self.started_at) / 60:.1f} min, {self.tick_count} tick(s)")
        counts = self.dispatcher.counts
        lines.append(
            f"Findings: critical {counts.get('critical', 0)}, "
            f"warning {counts.get('warning', 0)}, info {counts.get('info', 0)}"
        )

        if self.tracker is not None:
            stats = self.tracker.history.stats()
            lines.append(
                f"Lock history: {stats['total_entries']}/{stats['max_entries']} entries "
                f"({stats['usage_percent']}%), avg {stats['avg_duration_seconds']:.0f}s, "
                f"max {stats['max_duration_seconds']:.0f}s, evictions {self.tracker.history.evictions}"
            )

        if self.engine is not None and self.engine.enabled:
            ai = self.engine.stats()
            lines.append(
                f"AI: {ai['total_calls']} call(s), cache hit rate {ai['cache_hit_rate']}%, "
                f"{ai['failures']} failure(s), ${ai['total_cost']:.4f}"
            )
            if self.engine.cost_tracker is not None:
                cost = self.engine.cost_tracker.stats()
                lines.append(
                    f"AI budget: {cost['window_calls']}/{cost['max_calls_per_window']} call(s), "
                    f"${cost['window_spent']:.4f}/${cost['max_cost_per_window']:.2f} this window"
                )

        for check in self.checks:
            if isinstance(check, WatchedQueryCheck):
                for name, watch in check.stats.items():
                    lines.append(
                        f"Watch {name}: {watch['count']} hit(s), avg {watch['avg_ms']:,.0f} ms, "
                        f"min {watch['min_ms']:,.0f} ms, max {watch['max_ms']:,.0f} ms"
                    )

        if self.dispatcher.alert_log is not None:
            daily = self.dispatcher.alert_log.daily_stats()
            if daily is not None:
                lines.append(
                    f"Today's log: {daily['total_alerts']} alert(s), "
                    f"avg {daily['avg_execution_time_ms']:,.0f} ms, max {daily['max_execution_time_ms']:,.0f} ms"
                )
        lines.append("=" * 60)
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_checks(settings: Settings, tracker: LockAccumulationTracker | None) -> list[Check]:
    """Instantiate the enabled checks in a stable order."""
    checks: list[Check] = []
    if settings.is_check_enabled("slow_operations"):
        checks.append(SlowOperationCheck())
    if settings.is_check_enabled("blocking"):
        checks.append(BlockingCheck(tracker))
    if settings.is_check_enabled("high_cpu"):
        checks.append(ResourceCheck())
    if settings.is_check_enabled("watch_queries"):
        checks.append(WatchedQueryCheck(list(settings.watch_queries), load_mapper_dirs(settings.watch_mapper_dirs)))
    if settings.is_check_enabled("unused_indexes"):
        checks.append(IndexUsageCheck())
    if settings.is_check_enabled("cache_hit"):
        checks.append(CacheHitCheck())
    return checks


def build_monitor(settings: Settings, source: DataSource | None = None) -> Monitor:
    """Assemble a monitor and all its collaborators from settings."""
    if source is None:
        source = PostgresDataSource(
            settings.data_source.dsn,
            connect_timeout=settings.data_source.connect_timeout_seconds,
        )

    tracker = None
    store = None
    locks = settings.lock_monitoring
    if locks.enabled:
        tracker = LockAccumulationTracker(
            LockHistory(locks.max_entries),
            accumulation_seconds=locks.accumulation_minutes * 60,
            grace_seconds=locks.grace_seconds,
            repeat_alerts=locks.repeat_alerts,
            server=settings.data_source.server_name or None,
        )
        store = LockHistoryStore(locks.persist_path, max_age_seconds=locks.max_age_on_load_seconds)

    engine = create_engine(settings)
    return Monitor(
        settings,
        source,
        create_dispatcher(settings, engine),
        checks=build_checks(settings, tracker),
        engine=engine,
        tracker=tracker,
        store=store,
    )
