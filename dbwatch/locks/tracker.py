"""Lock accumulation tracking.

``LockHistory`` is an LRU-bounded map of ongoing lock conflicts.
``LockAccumulationTracker`` drives the per-conflict state machine:

    absent -> tracked(start, last_seen)
           -> [elapsed >= accumulation threshold] escalate: one critical
              finding, start reset to now, still tracked
           -> [unseen longer than the grace window] absent

All times are epoch seconds so entries survive a restart through the
snapshot store.
"""

import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from typing import Any, TypedDict

from dbwatch.models import BlockingRow, Finding, FindingMetrics
from dbwatch.observability.metrics import LOCK_HISTORY_ENTRIES, LOCK_HISTORY_EVICTIONS

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10_000
DEFAULT_GRACE_SECONDS = 5.0


class LockHistoryEntry(TypedDict):
    start_time: float
    last_seen: float
    data: dict[str, Any]
    alerted: bool


class LockHistoryStats(TypedDict):
    total_entries: int
    max_entries: int
    usage_percent: float
    avg_duration_seconds: float
    max_duration_seconds: float
    oldest_key: str | None


# ---------------------------------------------------------------------------
# Conflict helpers (shared with the blocking check)
# ---------------------------------------------------------------------------


def conflict_key(row: BlockingRow) -> str:
    """Identity of a blocker/blocked pair on a resource."""
    resource = row.get("object_name") or row.get("resource_type") or "-"
    return f"{row.get('blocking_session_id')}->{row.get('session_id')}@{resource}"


def conflict_query_text(row: BlockingRow) -> str:
    blocked = row.get("text") or "unknown"
    blocking = row.get("blocking_text") or "unknown"
    return f"[blocked query]\n{blocked}\n\n[blocking query]\n{blocking}"


def lock_details(row: BlockingRow) -> dict[str, Any]:
    return {
        "resource_type": row.get("resource_type"),
        "object_name": row.get("object_name") or "unknown",
        "blocked_lock_mode": row.get("lock_mode"),
        "blocker_lock_mode": row.get("blocking_lock_mode"),
        "blocked_host": row.get("host"),
        "blocker_host": row.get("blocking_host"),
        "blocked_program": row.get("program"),
        "blocker_program": row.get("blocking_program"),
    }


def _row_snapshot(row: BlockingRow) -> dict[str, Any]:
    """JSON-safe copy of the conflict row for the history entry."""
    snapshot: dict[str, Any] = {}
    for field, value in row.items():
        snapshot[field] = value if isinstance(value, str | int | float | bool | None) else str(value)
    return snapshot


# ---------------------------------------------------------------------------
# LRU map
# ---------------------------------------------------------------------------


class LockHistory:
    """Insertion beyond ``max_entries`` evicts the least-recently-touched key first."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        if max_entries < 1:
            msg = "max_entries must be at least 1"
            raise ValueError(msg)
        self.max_entries = max_entries
        self.evictions = 0
        self._entries: OrderedDict[str, LockHistoryEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def keys(self) -> list[str]:
        return list(self._entries)

    def get(self, key: str) -> LockHistoryEntry | None:
        return self._entries.get(key)

    def put(self, key: str, entry: LockHistoryEntry) -> None:
        """Insert or update ``key`` and mark it most recently touched."""
        if key in self._entries:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            return
        while len(self._entries) >= self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
            LOCK_HISTORY_EVICTIONS.inc()
            logger.warning("Lock history at capacity (%d), evicted %s", self.max_entries, evicted)
        self._entries[key] = entry

    def remove(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def snapshot(self) -> list[tuple[str, LockHistoryEntry]]:
        """Copy of all entries in LRU order (oldest first)."""
        return [(key, LockHistoryEntry(**entry)) for key, entry in self._entries.items()]

    def restore(self, entries: Iterable[tuple[str, LockHistoryEntry]]) -> None:
        """Replace the contents, keeping LRU order and the capacity bound."""
        self._entries.clear()
        for key, entry in entries:
            self.put(key, entry)

    def stats(self, now: float | None = None) -> LockHistoryStats:
        now = time.time() if now is None else now
        durations = {key: now - entry["start_time"] for key, entry in self._entries.items()}
        oldest_key = max(durations, key=lambda k: durations[k]) if durations else None
        total = len(self._entries)
        return LockHistoryStats(
            total_entries=total,
            max_entries=self.max_entries,
            usage_percent=round(total / self.max_entries * 100, 1),
            avg_duration_seconds=sum(durations.values()) / total if total else 0.0,
            max_duration_seconds=durations[oldest_key] if oldest_key else 0.0,
            oldest_key=oldest_key,
        )


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class LockAccumulationTracker:
    """Escalates lock conflicts that persist beyond the accumulation threshold."""

    def __init__(
        self,
        history: LockHistory,
        *,
        accumulation_seconds: float,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        repeat_alerts: bool = True,
        server: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.history = history
        self.accumulation_seconds = accumulation_seconds
        self.grace_seconds = grace_seconds
        self.repeat_alerts = repeat_alerts
        self.server = server
        self._clock = clock

    def evaluate(self, conflicts: Iterable[BlockingRow], now: float | None = None) -> list[Finding]:
        """Fold the current conflict set into the history and return escalations."""
        now = self._clock() if now is None else now
        findings: list[Finding] = []
        seen: set[str] = set()

        for row in conflicts:
            key = conflict_key(row)
            if key in seen:
                continue
            seen.add(key)

            existing = self.history.get(key)
            if existing is None:
                entry = LockHistoryEntry(start_time=now, last_seen=now, data=_row_snapshot(row), alerted=False)
            else:
                entry = LockHistoryEntry(
                    start_time=existing["start_time"],
                    last_seen=now,
                    data=_row_snapshot(row),
                    alerted=existing.get("alerted", False),
                )

            elapsed = now - entry["start_time"]
            if elapsed >= self.accumulation_seconds and (self.repeat_alerts or not entry["alerted"]):
                findings.append(self._build_finding(row, elapsed))
                entry["start_time"] = now
                entry["alerted"] = True

            self.history.put(key, entry)

        self.prune(now, keep=seen)
        LOCK_HISTORY_ENTRIES.set(len(self.history))
        return findings

    def prune(self, now: float, keep: set[str] | None = None) -> list[str]:
        """Drop entries unseen for longer than the grace window."""
        keep = keep or set()
        removed: list[str] = []
        for key, entry in self.history.snapshot():
            if key in keep:
                continue
            if now - entry["last_seen"] > self.grace_seconds:
                self.history.remove(key)
                removed.append(key)
        if removed:
            logger.debug("Lock history pruned %d resolved conflict(s)", len(removed))
        return removed

    def _build_finding(self, row: BlockingRow, elapsed: float) -> Finding:
        blocker = row.get("blocking_session_id")
        blocked = row.get("session_id")
        minutes = elapsed / 60
        details = lock_details(row)
        details["accumulated_seconds"] = round(elapsed, 1)
        return Finding(
            type="lock_accumulation",
            level="critical",
            message=(
                f"Lock conflict persisted for {minutes:.1f} min: "
                f"session {blocker} blocking session {blocked} on {details['object_name']}"
            ),
            session_id=blocked,
            database=row.get("database"),
            server=self.server,
            metrics=FindingMetrics(
                execution_time_ms=round(elapsed * 1000),
                wait_type=row.get("wait_type"),
                blocking_session_id=blocker,
            ),
            query_text=conflict_query_text(row),
            lock_details=details,
        )
