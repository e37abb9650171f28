"""AI-assisted root-cause analysis for findings.

Order of operations for a triggering finding: cache lookup (free) → budget
gate → provider call(s) → cache store → cost recording.  When AI is disabled
the engine is a no-op that never touches the cache or the budget.
"""

import hashlib
import json
import logging
import re
import time
from datetime import UTC, datetime
from typing import Any, NotRequired, TypedDict

from dbwatch.ai.cache import AnalysisCache, create_cache
from dbwatch.ai.cost import CostTracker
from dbwatch.ai.providers import AnalysisProvider, create_provider
from dbwatch.config import AISettings, Settings
from dbwatch.models import Finding
from dbwatch.observability.metrics import AI_CACHE_LOOKUPS, AI_CALLS_TOTAL, AI_ESTIMATED_COST, AI_TOKEN_USAGE

logger = logging.getLogger(__name__)

SIGNATURE_LENGTH = 500

_WHITESPACE_RE = re.compile(r"\s+")
_NUMBER_RE = re.compile(r"\b\d+(?:\.\d+)?\b")
_STRING_LITERAL_RE = re.compile(r"'[^']*'")
_QUOTES_RE = re.compile(r"[\"']")
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class RootCause(TypedDict):
    cause: str
    confidence: float


class Optimization(TypedDict):
    suggestions: list[Any]
    estimated_improvement: str


class Usage(TypedDict):
    tokens: int
    cost: float


class AnalysisResult(TypedDict):
    query_name: str | None
    signature: str
    root_cause: NotRequired[RootCause]
    optimization: NotRequired[Optimization]
    usage: Usage
    timestamp: str


class EngineStats(TypedDict):
    total_calls: int
    cache_hits: int
    cache_misses: int
    failures: int
    total_cost: float
    cache_hit_rate: int


# ---------------------------------------------------------------------------
# Query signatures
# ---------------------------------------------------------------------------


def normalize_query(query_text: str) -> str:
    """Canonical signature: literals and numbers become ``?``, case and whitespace folded."""
    normalized = _WHITESPACE_RE.sub(" ", query_text)
    normalized = _STRING_LITERAL_RE.sub("?", normalized)
    normalized = _NUMBER_RE.sub("?", normalized)
    normalized = _QUOTES_RE.sub("", normalized)
    return normalized.strip().lower()[:SIGNATURE_LENGTH]


def cache_key(query_text: str) -> str:
    return hashlib.md5(normalize_query(query_text).encode("utf-8"), usedforsecurity=False).hexdigest()


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def build_root_cause_prompt(finding: Finding) -> str:
    m = finding.metrics
    wait = f"Wait type: {m.wait_type}\n" if m.wait_type else ""
    return (
        "You are a database performance expert. Analyse the root cause of the "
        "performance problem with the following query.\n\n"
        f"Query:\n{finding.query_text}\n\n"
        "Metrics:\n"
        f"Execution time: {m.execution_time_ms} ms\n"
        f"CPU time: {m.cpu_time_ms} ms\n"
        f"Logical reads: {m.logical_reads}\n"
        f"{wait}"
        f"Detected as: {finding.type} ({finding.level})\n\n"
        "Reply with compact JSON only (under 500 characters):\n"
        '{"content": "main cause in one or two sentences", "confidence": 0.8}'
    )


def build_optimization_prompt(finding: Finding) -> str:
    return (
        "Suggest how to optimise the following slow query.\n\n"
        f"Query:\n{finding.query_text}\n\n"
        f"Execution time: {finding.metrics.execution_time_ms} ms\n\n"
        "Reply with JSON only, at most three suggestions:\n"
        '{"suggestions": [{"priority": "high", "description": "add an index", '
        '"sql": "CREATE INDEX ...", "estimatedImprovement": "80%"}], "estimatedImprovement": "80%"}'
    )


def _parse_json_reply(content: str) -> dict[str, Any]:
    """Extract the first JSON object from a model reply; empty dict if there is none."""
    match = _JSON_OBJECT_RE.search(content)
    if not match:
        return {}
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class AIEngine:
    def __init__(
        self,
        settings: AISettings,
        *,
        provider: AnalysisProvider | None = None,
        cache: AnalysisCache | None = None,
        cost_tracker: CostTracker | None = None,
    ) -> None:
        self.settings = settings
        self.enabled = settings.enabled
        self.provider = provider
        self.cache = cache
        self.cost_tracker = cost_tracker
        self.total_calls = 0
        self.cache_hits = 0
        self.cache_misses = 0
        self.failures = 0
        self.total_cost = 0.0

        if self.enabled and (provider is None or cache is None or cost_tracker is None):
            msg = "An enabled AIEngine needs a provider, a cache and a cost tracker"
            raise ValueError(msg)

    def should_analyze(self, finding: Finding) -> bool:
        triggers = self.settings.triggers
        if not finding.query_text:
            return False
        if triggers.on_level and finding.level not in triggers.on_level:
            return False
        exec_ms = finding.metrics.execution_time_ms or 0
        return not (triggers.min_execution_time_ms and exec_ms < triggers.min_execution_time_ms)

    async def analyze(self, finding: Finding) -> AnalysisResult | None:
        """Return an analysis for ``finding`` or None (disabled, not triggered, over budget, failed)."""
        if not self.enabled or not self.should_analyze(finding):
            return None
        assert self.cache is not None and self.cost_tracker is not None and self.provider is not None
        assert finding.query_text is not None

        key = cache_key(finding.query_text)
        cached: AnalysisResult | None = await self.cache.get(key)
        if cached is not None:
            self.cache_hits += 1
            AI_CACHE_LOOKUPS.labels(result="hit").inc()
            logger.debug("AI analysis cache hit: %s", key[:8])
            return cached
        self.cache_misses += 1
        AI_CACHE_LOOKUPS.labels(result="miss").inc()

        if not self.cost_tracker.try_acquire():
            logger.warning("AI budget exhausted for this window, skipping analysis")
            return None

        start = time.monotonic()
        try:
            result, tokens = await self._perform_analysis(finding, key)
        except Exception:
            self.failures += 1
            AI_CALLS_TOTAL.labels(status="error").inc()
            logger.exception("AI analysis failed for %s finding", finding.type)
            return None

        cost = self.cost_tracker.record_call(tokens, self.provider.model, slot_acquired=True)
        result["usage"] = Usage(tokens=tokens, cost=cost)
        await self.cache.set(key, result)

        self.total_calls += 1
        self.total_cost += cost
        AI_CALLS_TOTAL.labels(status="success").inc()
        AI_TOKEN_USAGE.inc(tokens)
        AI_ESTIMATED_COST.inc(cost)
        logger.info("AI analysis done in %.1fs (%d tokens)", time.monotonic() - start, tokens)
        return result

    async def _perform_analysis(self, finding: Finding, key: str) -> tuple[AnalysisResult, int]:
        assert self.provider is not None
        features = self.settings.features
        result = AnalysisResult(
            query_name=finding.query_name,
            signature=key,
            usage=Usage(tokens=0, cost=0.0),
            timestamp=datetime.now(UTC).isoformat(),
        )
        tokens = 0

        if features.root_cause_analysis:
            response = await self.provider.complete(build_root_cause_prompt(finding))
            tokens += response.tokens
            parsed = _parse_json_reply(response.content)
            result["root_cause"] = RootCause(
                cause=str(parsed.get("content") or response.content.strip()),
                confidence=float(parsed.get("confidence", 0.8)),
            )

        if features.optimization_suggestion:
            response = await self.provider.complete(build_optimization_prompt(finding))
            tokens += response.tokens
            parsed = _parse_json_reply(response.content)
            suggestions = parsed.get("suggestions")
            result["optimization"] = Optimization(
                suggestions=suggestions if isinstance(suggestions, list) else [],
                estimated_improvement=str(parsed.get("estimatedImprovement", "unknown")),
            )

        return result, tokens

    def stats(self) -> EngineStats:
        lookups = self.cache_hits + self.cache_misses
        return EngineStats(
            total_calls=self.total_calls,
            cache_hits=self.cache_hits,
            cache_misses=self.cache_misses,
            failures=self.failures,
            total_cost=self.total_cost,
            cache_hit_rate=round(self.cache_hits / lookups * 100) if lookups else 0,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


def create_engine(settings: Settings) -> AIEngine:
    """Build the engine and its collaborators from settings; disabled AI builds nothing."""
    ai = settings.ai
    if not ai.enabled:
        logger.info("AI analysis disabled")
        return AIEngine(ai)
    return AIEngine(
        ai,
        provider=create_provider(ai),
        cache=create_cache(settings),
        cost_tracker=CostTracker(
            max_cost_per_hour=ai.budget.max_cost_per_hour,
            max_calls_per_hour=ai.triggers.max_ai_calls_per_hour,
            alert_on_threshold=ai.budget.alert_on_threshold,
            window_seconds=ai.budget.window_seconds,
        ),
    )
