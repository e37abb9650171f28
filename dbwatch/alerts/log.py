"""Daily alert log: one append-only JSON array file per day.

Files are named ``db-alert-YYYY-MM-DD.json``.  Writes never raise: when the
day's file cannot be updated the entry lands in a ``.backup`` side file.
"""

import contextlib
import json
import logging
import os
import tempfile
import threading
import time
from datetime import UTC, date, datetime
from typing import Any, TypedDict

from dbwatch.config import AlertLogSettings
from dbwatch.models import Finding, truncate

logger = logging.getLogger(__name__)

MONITOR_VERSION = "1.0.0"
LOG_PREFIX = "db-alert-"


class AlertLogEntry(TypedDict):
    timestamp: str
    level: str
    alertType: str
    message: str
    details: dict[str, Any]
    metadata: dict[str, Any]


class DailyStats(TypedDict):
    date: str
    total_alerts: int
    by_level: dict[str, int]
    by_type: dict[str, int]
    avg_execution_time_ms: float
    max_execution_time_ms: float
    slowest_query: str | None


class AlertLog:
    def __init__(self, settings: AlertLogSettings) -> None:
        self.settings = settings
        self.directory = os.path.abspath(settings.directory)
        self._lock = threading.Lock()

    def prepare(self) -> int:
        """Create the log directory and delete files past retention. Returns files removed."""
        os.makedirs(self.directory, exist_ok=True)
        return self.cleanup_old_logs()

    def path_for(self, day: date) -> str:
        return os.path.join(self.directory, f"{LOG_PREFIX}{day.isoformat()}.json")

    def build_entry(self, finding: Finding) -> AlertLogEntry:
        m = finding.metrics
        return AlertLogEntry(
            timestamp=finding.timestamp.isoformat(),
            level=finding.level,
            alertType=finding.type,
            message=finding.message,
            details={
                "sessionId": finding.session_id,
                "queryName": finding.query_name,
                "executionTimeMs": m.execution_time_ms,
                "cpuTimeMs": m.cpu_time_ms,
                "logicalReads": m.logical_reads,
                "blockingSessionId": m.blocking_session_id,
                "waitType": m.wait_type,
                "queryText": truncate(finding.query_text, self.settings.max_query_text_length, "... (truncated)"),
                "executionPlan": finding.execution_plan_summary,
                "lockDetails": finding.lock_details,
                "indexDetails": finding.index_details,
                "cacheDetails": finding.cache_details,
                "aiAnalysis": finding.ai_analysis,
            },
            metadata={
                "database": finding.database,
                "server": finding.server,
                "monitorVersion": MONITOR_VERSION,
            },
        )

    def append(self, finding: Finding) -> str | None:
        """Append ``finding`` to its day's file. Returns the path written, or None."""
        entry = self.build_entry(finding)
        path = self.path_for(finding.timestamp.astimezone(UTC).date())
        with self._lock:
            try:
                entries = self._read(path)
                entries.append(entry)
                self._write(path, entries)
                return path
            except Exception:
                logger.exception("Failed to append to alert log %s", path)
                backup = f"{path}.{int(time.time() * 1000)}.backup"
                try:
                    self._write(backup, [entry])
                except OSError:
                    logger.exception("Failed to write alert log backup %s", backup)
                    return None
                return backup

    def _read(self, path: str) -> list[Any]:
        if not os.path.exists(path):
            return []
        with open(path, encoding="utf-8") as f:
            content = f.read()
        if not content.strip():
            return []
        data = json.loads(content)
        if not isinstance(data, list):
            msg = f"{path} does not contain a JSON array"
            raise ValueError(msg)
        return data

    def _write(self, path: str, entries: list[Any]) -> None:
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".alert-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(entries, f, indent=2, default=str)
            os.replace(tmp_path, path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise

    def cleanup_old_logs(self) -> int:
        """Delete log files older than ``retention_days``."""
        cutoff = time.time() - self.settings.retention_days * 86_400
        removed = 0
        try:
            names = os.listdir(self.directory)
        except OSError:
            logger.warning("Cannot list alert log directory %s", self.directory)
            return 0
        for name in names:
            if not name.startswith(LOG_PREFIX):
                continue
            path = os.path.join(self.directory, name)
            try:
                if os.path.getmtime(path) < cutoff:
                    os.unlink(path)
                    removed += 1
            except OSError:
                logger.warning("Could not remove old alert log %s", path, exc_info=True)
        if removed:
            logger.info("Removed %d alert log file(s) older than %d days", removed, self.settings.retention_days)
        return removed

    def daily_stats(self, day: date | None = None) -> DailyStats | None:
        """Summarise one day's log, or None when there is no log for that day."""
        day = day or datetime.now(UTC).date()
        path = self.path_for(day)
        try:
            entries = self._read(path)
        except (OSError, ValueError):
            logger.warning("Could not read alert log %s", path, exc_info=True)
            return None
        if not entries and not os.path.exists(path):
            return None

        by_level = {"critical": 0, "warning": 0, "info": 0}
        by_type: dict[str, int] = {}
        exec_times: list[float] = []
        slowest: str | None = None
        max_time = 0.0
        for entry in entries:
            by_level[entry.get("level", "info")] = by_level.get(entry.get("level", "info"), 0) + 1
            alert_type = entry.get("alertType", "unknown")
            by_type[alert_type] = by_type.get(alert_type, 0) + 1
            exec_ms = (entry.get("details") or {}).get("executionTimeMs")
            if exec_ms:
                exec_times.append(float(exec_ms))
                if exec_ms > max_time:
                    max_time = float(exec_ms)
                    slowest = entry["details"].get("queryText")

        return DailyStats(
            date=day.isoformat(),
            total_alerts=len(entries),
            by_level=by_level,
            by_type=by_type,
            avg_execution_time_ms=round(sum(exec_times) / len(exec_times)) if exec_times else 0,
            max_execution_time_ms=max_time,
            slowest_query=slowest,
        )

    def search(
        self,
        *,
        start: str | None = None,
        end: str | None = None,
        level: str | None = None,
        alert_type: str | None = None,
        min_execution_time_ms: float | None = None,
    ) -> list[AlertLogEntry]:
        """Scan every daily file and return entries matching all given criteria.

        ``start``/``end`` are ISO 8601 strings compared lexically against entry timestamps.
        """
        results: list[AlertLogEntry] = []
        try:
            names = sorted(n for n in os.listdir(self.directory) if n.startswith(LOG_PREFIX) and n.endswith(".json"))
        except OSError:
            return results
        for name in names:
            try:
                entries = self._read(os.path.join(self.directory, name))
            except (OSError, ValueError):
                logger.warning("Skipping unreadable alert log %s", name)
                continue
            for entry in entries:
                if start and entry["timestamp"] < start:
                    continue
                if end and entry["timestamp"] > end:
                    continue
                if level and entry["level"] != level:
                    continue
                if alert_type and entry["alertType"] != alert_type:
                    continue
                if min_execution_time_ms is not None:
                    exec_ms = (entry.get("details") or {}).get("executionTimeMs") or 0
                    if exec_ms < min_execution_time_ms:
                        continue
                results.append(entry)
        return results
