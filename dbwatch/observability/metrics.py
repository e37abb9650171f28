"""Prometheus metric definitions for dbwatch self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

TICK_DURATION_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0)
CHECK_DURATION_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 15.0)

# ---------------------------------------------------------------------------
# Tick / check metrics
# ---------------------------------------------------------------------------

TICK_DURATION = Histogram(
    "dbwatch_tick_duration_seconds",
    "Duration of one monitoring tick in seconds",
    buckets=TICK_DURATION_BUCKETS,
)

TICKS_TOTAL = Counter(
    "dbwatch_ticks_total",
    "Total number of monitoring ticks",
    labelnames=["status"],
)

CHECK_DURATION = Histogram(
    "dbwatch_check_duration_seconds",
    "Duration of individual checks in seconds",
    labelnames=["check"],
    buckets=CHECK_DURATION_BUCKETS,
)

CHECK_RUNS_TOTAL = Counter(
    "dbwatch_check_runs_total",
    "Total number of check executions",
    labelnames=["check", "status"],
)

FINDINGS_TOTAL = Counter(
    "dbwatch_findings_total",
    "Total number of findings emitted",
    labelnames=["type", "level"],
)

# ---------------------------------------------------------------------------
# Notification metrics
# ---------------------------------------------------------------------------

NOTIFICATIONS_TOTAL = Counter(
    "dbwatch_notifications_total",
    "Notification attempts per channel",
    labelnames=["channel", "status"],
)

NOTIFICATIONS_THROTTLED = Counter(
    "dbwatch_notifications_throttled_total",
    "Notifications suppressed by the cooldown",
    labelnames=["type", "level"],
)

# ---------------------------------------------------------------------------
# AI analysis metrics
# ---------------------------------------------------------------------------

AI_CALLS_TOTAL = Counter(
    "dbwatch_ai_calls_total",
    "Total number of AI provider calls",
    labelnames=["status"],
)

AI_CACHE_LOOKUPS = Counter(
    "dbwatch_ai_cache_lookups_total",
    "AI analysis cache lookups",
    labelnames=["result"],
)

AI_TOKEN_USAGE = Counter(
    "dbwatch_ai_token_usage",
    "Total AI token usage",
)

AI_ESTIMATED_COST = Counter(
    "dbwatch_ai_estimated_cost_dollars",
    "Estimated cumulative AI cost in USD",
)

AI_BUDGET_REFUSALS = Counter(
    "dbwatch_ai_budget_refusals_total",
    "AI calls refused by the hourly budget",
)

# ---------------------------------------------------------------------------
# Lock history / health metrics
# ---------------------------------------------------------------------------

LOCK_HISTORY_ENTRIES = Gauge(
    "dbwatch_lock_history_entries",
    "Number of lock conflicts currently tracked",
)

LOCK_HISTORY_EVICTIONS = Counter(
    "dbwatch_lock_history_evictions_total",
    "Lock history entries evicted by the capacity bound",
)

DATA_SOURCE_UP = Gauge(
    "dbwatch_data_source_up",
    "Whether the monitored database is reachable (1=up, 0=down)",
)

APP_INFO = Info(
    "dbwatch",
    "dbwatch build information",
)

# ---------------------------------------------------------------------------
# Cost pricing (USD per token)
# ---------------------------------------------------------------------------

# Keys are model name prefixes; the cost tracker picks the longest match.
COST_PER_TOKEN: dict[str, float] = {
    "claude-3-haiku": 0.00025 / 1000,
    "claude-3-5-sonnet": 0.003 / 1000,
    "claude-3-opus": 0.015 / 1000,
    "claude-haiku-4": 0.001 / 1000,
    "claude-sonnet-4": 0.003 / 1000,
    "gpt-3.5-turbo": 0.0005 / 1000,
    "gpt-4o-mini": 0.00015 / 1000,
    "gpt-4o": 0.0025 / 1000,
    "gpt-4": 0.03 / 1000,
}
DEFAULT_COST_PER_TOKEN = 0.00025 / 1000
