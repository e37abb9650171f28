"""Tests for the AI budget gate."""

import logging

import pytest

from dbwatch.ai.cost import CostTracker, price_per_token
from dbwatch.observability.metrics import DEFAULT_COST_PER_TOKEN


class FakeClock:
    def __init__(self, t: float = 1000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


def _tracker(clock: FakeClock, **kwargs: float) -> CostTracker:
    params: dict[str, float] = {"max_cost_per_hour": 0.10, "max_calls_per_hour": 3}
    params.update(kwargs)
    return CostTracker(
        max_cost_per_hour=params["max_cost_per_hour"],
        max_calls_per_hour=int(params["max_calls_per_hour"]),
        clock=clock,
    )


class TestPricing:
    def test_exact_prefix(self) -> None:
        assert price_per_token("claude-3-haiku-20240307") == pytest.approx(0.00025 / 1000)

    def test_longest_prefix_wins(self) -> None:
        assert price_per_token("gpt-4o-mini-2024-07-18") == pytest.approx(0.00015 / 1000)
        assert price_per_token("gpt-4o-2024-08-06") == pytest.approx(0.0025 / 1000)
        assert price_per_token("gpt-4-turbo") == pytest.approx(0.03 / 1000)

    def test_unknown_model_uses_default(self) -> None:
        assert price_per_token("mystery-model") == DEFAULT_COST_PER_TOKEN


class TestBudget:
    def test_call_count_limit(self) -> None:
        clock = FakeClock()
        tracker = _tracker(clock)
        assert tracker.try_acquire()
        assert tracker.try_acquire()
        assert tracker.try_acquire()
        assert not tracker.try_acquire()
        assert not tracker.can_make_call()

    def test_spend_limit(self) -> None:
        clock = FakeClock()
        tracker = _tracker(clock, max_calls_per_hour=100, max_cost_per_hour=0.001)
        _ = tracker.record_call(5000, "claude-3-haiku")
        assert not tracker.can_make_call()

    def test_record_call_returns_cost(self) -> None:
        tracker = _tracker(FakeClock())
        cost = tracker.record_call(1000, "claude-3-haiku")
        assert cost == pytest.approx(0.00025)
        assert tracker.window_calls == 1
        assert tracker.total_spent == pytest.approx(0.00025)

    def test_acquired_slot_not_counted_twice(self) -> None:
        tracker = _tracker(FakeClock())
        assert tracker.try_acquire()
        _ = tracker.record_call(100, "gpt-4o-mini", slot_acquired=True)
        assert tracker.window_calls == 1
        assert tracker.total_calls == 1

    def test_window_reset(self) -> None:
        clock = FakeClock()
        tracker = _tracker(clock)
        for _ in range(3):
            assert tracker.try_acquire()
        assert not tracker.can_make_call()

        clock.t += 3600
        assert tracker.check_reset()
        assert tracker.window_calls == 0
        assert tracker.window_spent == 0
        assert tracker.total_calls == 3
        assert tracker.can_make_call()

    def test_no_reset_inside_window(self) -> None:
        clock = FakeClock()
        tracker = _tracker(clock)
        clock.t += 3599
        assert not tracker.check_reset()

    def test_boundary_skips_missed_windows(self) -> None:
        clock = FakeClock(0)
        tracker = _tracker(clock)
        clock.t = 3600 * 5 + 10
        assert tracker.check_reset()
        assert tracker.window_end == 3600 * 6

    def test_threshold_warning_logged_once(self, caplog: pytest.LogCaptureFixture) -> None:
        tracker = _tracker(FakeClock(), max_calls_per_hour=100, max_cost_per_hour=0.001)
        with caplog.at_level(logging.WARNING, logger="dbwatch.ai.cost"):
            _ = tracker.record_call(3300, "claude-3-haiku")  # 82.5%
            _ = tracker.record_call(100, "claude-3-haiku")
        warnings = [r for r in caplog.records if "budget" in r.getMessage()]
        assert len(warnings) == 1

    def test_stats(self) -> None:
        tracker = _tracker(FakeClock())
        _ = tracker.record_call(1000, "claude-3-haiku")
        stats = tracker.stats()
        assert stats["window_calls"] == 1
        assert stats["max_calls_per_window"] == 3
        assert stats["max_cost_per_window"] == 0.10
