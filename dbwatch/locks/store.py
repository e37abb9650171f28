"""Persist lock history to a versioned JSON snapshot.

Snapshot layout::

    {"version": "1.0", "timestamp": "<ISO 8601>",
     "entries": [[key, {"startTime": ms, "lastSeen": ms, "data": {...}, "alerted": bool}], ...]}

Writes go through a temp file and ``os.replace`` so a crash mid-write never
leaves a torn file.  Load failures of any kind mean "start with empty
history"; they are never fatal.
"""

import contextlib
import json
import logging
import os
import tempfile
import time
from datetime import UTC, datetime
from typing import Any

from dbwatch.locks.tracker import LockHistory, LockHistoryEntry

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "1.0"
DEFAULT_MAX_AGE_SECONDS = 3600.0


class LockHistoryStore:
    """Saves and restores a ``LockHistory`` at ``path``."""

    def __init__(self, path: str, *, max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS) -> None:
        self.path = path
        self.max_age_seconds = max_age_seconds

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    def save(self, history: LockHistory) -> bool:
        """Write a snapshot of ``history``. Never raises; returns success."""
        return self.write_snapshot(history.snapshot())

    def write_snapshot(self, entries: list[tuple[str, LockHistoryEntry]]) -> bool:
        """Write already-copied entries. Safe to call from a worker thread."""
        try:
            self._write(entries)
        except Exception:
            logger.exception("Failed to save lock history to %s", self.path)
            return False
        logger.debug("Lock history saved: %d entries -> %s", len(entries), self.path)
        return True

    def _write(self, entries: list[tuple[str, LockHistoryEntry]]) -> None:
        payload: dict[str, Any] = {
            "version": SNAPSHOT_VERSION,
            "timestamp": datetime.now(UTC).isoformat(),
            "entries": [
                [
                    key,
                    {
                        "startTime": round(entry["start_time"] * 1000),
                        "lastSeen": round(entry["last_seen"] * 1000),
                        "data": entry["data"],
                        "alerted": entry["alerted"],
                    },
                ]
                for key, entry in entries
            ],
        }

        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        # Atomic write: write to temp file then rename
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2, default=str)
            os.replace(tmp_path, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def load(self, history: LockHistory, now: float | None = None) -> int:
        """Restore entries into ``history``; returns how many were kept.

        Entries whose ``lastSeen`` is older than ``max_age_seconds`` are
        dropped.  A missing, malformed or version-mismatched file leaves
        ``history`` empty.
        """
        now = time.time() if now is None else now
        history.clear()

        if not os.path.exists(self.path):
            logger.info("No lock history at %s (starting fresh)", self.path)
            return 0

        try:
            with open(self.path, encoding="utf-8") as f:
                raw: Any = json.load(f)
            entries = self._parse(raw)
        except (OSError, ValueError, TypeError, KeyError):
            logger.exception("Failed to load lock history from %s, starting empty", self.path)
            return 0

        if entries is None:
            return 0

        fresh = [(key, entry) for key, entry in entries if now - entry["last_seen"] <= self.max_age_seconds]
        history.restore(fresh)
        logger.info(
            "Lock history loaded: %d entries (%d stale dropped) from %s",
            len(history),
            len(entries) - len(fresh),
            raw.get("timestamp", "unknown time"),
        )
        return len(history)

    def _parse(self, raw: Any) -> list[tuple[str, LockHistoryEntry]] | None:
        if not isinstance(raw, dict):
            msg = "snapshot root must be an object"
            raise ValueError(msg)
        version = raw.get("version")
        if version != SNAPSHOT_VERSION:
            logger.warning("Lock history version mismatch: %s (expected %s), ignoring", version, SNAPSHOT_VERSION)
            return None

        entries: list[tuple[str, LockHistoryEntry]] = []
        for item in raw["entries"]:
            key, value = item
            entries.append(
                (
                    str(key),
                    LockHistoryEntry(
                        start_time=float(value["startTime"]) / 1000,
                        last_seen=float(value["lastSeen"]) / 1000,
                        data=dict(value.get("data") or {}),
                        alerted=bool(value.get("alerted", False)),
                    ),
                )
            )
        return entries
