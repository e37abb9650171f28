"""Rolling-window budget gate for paid analysis calls.

The window is fixed-length and wall-clock based: counters reset all at once
when ``now >= window_end``, they do not slide.
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import TypedDict

from dbwatch.observability.metrics import AI_BUDGET_REFUSALS, COST_PER_TOKEN, DEFAULT_COST_PER_TOKEN

logger = logging.getLogger(__name__)


class CostStats(TypedDict):
    window_calls: int
    window_spent: float
    total_calls: int
    total_spent: float
    max_calls_per_window: int
    max_cost_per_window: float


def price_per_token(model: str) -> float:
    """Longest-prefix match in the pricing table, default price otherwise."""
    best = ""
    for prefix in COST_PER_TOKEN:
        if model.startswith(prefix) and len(prefix) > len(best):
            best = prefix
    return COST_PER_TOKEN[best] if best else DEFAULT_COST_PER_TOKEN


class CostTracker:
    def __init__(
        self,
        *,
        max_cost_per_hour: float,
        max_calls_per_hour: int,
        alert_on_threshold: float = 0.8,
        window_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_cost_per_hour = max_cost_per_hour
        self.max_calls_per_hour = max_calls_per_hour
        self.alert_on_threshold = alert_on_threshold
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()

        self.window_spent = 0.0
        self.window_calls = 0
        self.window_end = clock() + window_seconds
        self._threshold_warned = False

        self.total_spent = 0.0
        self.total_calls = 0

    def can_make_call(self) -> bool:
        """True iff both the call count and the spend are under budget for this window."""
        with self._lock:
            self._check_reset_locked()
            return self._under_budget_locked()

    def try_acquire(self) -> bool:
        """Atomically check the budget and claim one call slot."""
        with self._lock:
            self._check_reset_locked()
            if not self._under_budget_locked():
                AI_BUDGET_REFUSALS.inc()
                return False
            self.window_calls += 1
            self.total_calls += 1
            return True

    def record_call(self, tokens: int, model: str, *, slot_acquired: bool = False) -> float:
        """Add the cost of ``tokens`` on ``model`` to the window and lifetime totals.

        Pass ``slot_acquired=True`` when the call was already counted by
        ``try_acquire``.  Returns the cost in USD.
        """
        cost = tokens * price_per_token(model)
        with self._lock:
            self._check_reset_locked()
            self.window_spent += cost
            self.total_spent += cost
            if not slot_acquired:
                self.window_calls += 1
                self.total_calls += 1
            spent = self.window_spent
            crossed = (
                not self._threshold_warned and spent >= self.max_cost_per_hour * self.alert_on_threshold
            )
            if crossed:
                self._threshold_warned = True

        logger.info("AI call cost $%.6f (window total $%.4f)", cost, spent)
        if crossed:
            logger.warning(
                "AI budget %d%% reached ($%.4f / $%.4f this window)",
                round(self.alert_on_threshold * 100),
                spent,
                self.max_cost_per_hour,
            )
        return cost

    def check_reset(self) -> bool:
        """Reset the window if its boundary has passed. Returns True when a reset happened."""
        with self._lock:
            return self._check_reset_locked()

    def stats(self) -> CostStats:
        with self._lock:
            return CostStats(
                window_calls=self.window_calls,
                window_spent=self.window_spent,
                total_calls=self.total_calls,
                total_spent=self.total_spent,
                max_calls_per_window=self.max_calls_per_hour,
                max_cost_per_window=self.max_cost_per_hour,
            )

    def _under_budget_locked(self) -> bool:
        return self.window_calls < self.max_calls_per_hour and self.window_spent < self.max_cost_per_hour

    def _check_reset_locked(self) -> bool:
        now = self._clock()
        if now < self.window_end:
            return False
        logger.info(
            "AI budget window closed: %d call(s), $%.4f spent",
            self.window_calls,
            self.window_spent,
        )
        self.window_spent = 0.0
        self.window_calls = 0
        self._threshold_warned = False
        # Skip whole windows the process slept through
        while self.window_end <= now:
            self.window_end += self.window_seconds
        return True
