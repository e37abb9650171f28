"""Per-key notification cooldown.

``try_claim`` checks and records in one step under a lock, so two findings
dispatched concurrently for the same key cannot both pass.  A claim whose
delivery failed everywhere can be handed back with ``release``.
"""

import logging
import threading
import time
from collections.abc import Callable, Hashable

logger = logging.getLogger(__name__)


class Throttle:
    def __init__(self, window_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._last_sent: dict[Hashable, float] = {}

    def try_claim(self, key: Hashable) -> float | None:
        """Claim ``key`` if its cooldown has elapsed.

        Returns the claim timestamp (pass it to ``release``) or None when throttled.
        """
        with self._lock:
            now = self._clock()
            last = self._last_sent.get(key)
            if last is not None and now - last < self.window_seconds:
                return None
            self._last_sent[key] = now
            return now

    def release(self, key: Hashable, claimed_at: float) -> None:
        """Undo a claim, unless a newer one has replaced it since."""
        with self._lock:
            if self._last_sent.get(key) == claimed_at:
                del self._last_sent[key]

    def is_throttled(self, key: Hashable) -> bool:
        with self._lock:
            last = self._last_sent.get(key)
            return last is not None and self._clock() - last < self.window_seconds
