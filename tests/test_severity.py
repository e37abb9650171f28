"""Unit tests for threshold classification."""

from dbwatch.config import ThresholdSet, Thresholds
from dbwatch.severity import classify

TIERS = ThresholdSet(info=500, warning=1000, critical=2000)


class TestClassify:
    def test_above_critical(self) -> None:
        assert classify(2500, TIERS) == "critical"

    def test_exactly_on_floor_counts(self) -> None:
        assert classify(2000, TIERS) == "critical"
        assert classify(1000, TIERS) == "warning"
        assert classify(500, TIERS) == "info"

    def test_between_info_and_warning(self) -> None:
        assert classify(600, TIERS) == "info"

    def test_below_every_floor(self) -> None:
        assert classify(100, TIERS) is None

    def test_missing_value(self) -> None:
        assert classify(None, TIERS) is None

    def test_unset_tiers_are_skipped(self) -> None:
        tiers = ThresholdSet(warning=500, critical=2000)
        assert classify(600, tiers) == "warning"
        assert classify(100, tiers) is None

    def test_warning_floor_without_info(self) -> None:
        tiers = ThresholdSet(warning=500, critical=1000)
        assert classify(2500, tiers) == "critical"
        assert classify(600, tiers) == "warning"
        assert classify(100, tiers) is None


class TestDefaultThresholds:
    def test_execution_time_defaults(self) -> None:
        tiers = Thresholds().for_metric("execution_time_ms")
        assert classify(12_000, tiers) == "critical"
        assert classify(6_000, tiers) == "warning"
        assert classify(1_500, tiers) == "info"
        assert classify(200, tiers) is None

    def test_cpu_defaults_are_tighter(self) -> None:
        tiers = Thresholds().for_metric("cpu_time_ms")
        assert classify(5_000, tiers) == "critical"
