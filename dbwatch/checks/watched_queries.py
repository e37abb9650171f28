"""Watched queries: per-statement thresholds for statements that matter.

A watch matches a running statement by case-insensitive regex ``pattern``,
or by ``signature``: either literal SQL compared after normalization, or
the name of a statement loaded from MyBatis/iBatis mapper XML
(``<file stem>.<statement id>``).
"""

import logging
import os
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import ClassVar, TypedDict

from dbwatch.ai.engine import normalize_query
from dbwatch.checks.base import CheckContext, operation_finding
from dbwatch.config import WatchQuery
from dbwatch.datasource.base import DataSource
from dbwatch.models import Finding

logger = logging.getLogger(__name__)

MAPPER_STATEMENT_TAGS = ("select", "insert", "update", "delete")

_MYBATIS_PARAM_RE = re.compile(r"[#$]\{[^}]+\}")
_POSITIONAL_PARAM_RE = re.compile(r"\$\d+|:\w+|@\w+")


class WatchStats(TypedDict):
    count: int
    total_ms: float
    min_ms: float
    max_ms: float
    avg_ms: float


@dataclass
class MapperStatement:
    name: str
    kind: str
    text: str


def signature(query_text: str) -> str:
    """Normalized form used to compare statements, placeholders folded to ``?``."""
    return normalize_query(_POSITIONAL_PARAM_RE.sub("?", _MYBATIS_PARAM_RE.sub("?", query_text)))


def load_mapper_file(path: str) -> list[MapperStatement]:
    """Extract named statements from a MyBatis ``<mapper>`` or iBatis ``<sqlMap>`` file."""
    try:
        root = ET.parse(path).getroot()
    except (OSError, ET.ParseError):
        logger.warning("Could not parse mapper XML %s", path, exc_info=True)
        return []
    if root.tag not in ("mapper", "sqlMap"):
        logger.warning("%s is not a MyBatis/iBatis mapper (root <%s>)", path, root.tag)
        return []

    stem = os.path.splitext(os.path.basename(path))[0]
    statements: list[MapperStatement] = []
    for element in root:
        if element.tag not in MAPPER_STATEMENT_TAGS or not element.get("id"):
            continue
        # itertext() flattens dynamic SQL (<if>, <where>, ...) into one statement
        text = " ".join("".join(element.itertext()).split())
        statements.append(MapperStatement(name=f"{stem}.{element.get('id')}", kind=element.tag, text=text))
    return statements


def load_mapper_dirs(directories: list[str]) -> dict[str, str]:
    """Map statement signature -> statement name for every mapper XML in ``directories``."""
    signatures: dict[str, str] = {}
    for directory in directories:
        try:
            names = sorted(n for n in os.listdir(directory) if n.endswith(".xml"))
        except OSError:
            logger.warning("Mapper directory not readable: %s", directory)
            continue
        count = 0
        for name in names:
            for statement in load_mapper_file(os.path.join(directory, name)):
                signatures[signature(statement.text)] = statement.name
                count += 1
        logger.info("Loaded %d mapper statement(s) from %d file(s) in %s", count, len(names), directory)
    return signatures


class WatchedQueryCheck:
    name: ClassVar[str] = "watch_queries"

    def __init__(self, watches: list[WatchQuery], mapper_signatures: dict[str, str] | None = None) -> None:
        self.watches = watches
        self.mapper_signatures = mapper_signatures or {}
        self._patterns = {w.name: re.compile(w.pattern, re.IGNORECASE) for w in watches if w.pattern}
        self._signatures = {w.name: signature(w.signature) for w in watches if w.signature}
        self.stats: dict[str, WatchStats] = {}

    def add_watch(self, watch: WatchQuery) -> None:
        self.watches.append(watch)
        if watch.pattern:
            self._patterns[watch.name] = re.compile(watch.pattern, re.IGNORECASE)
        if watch.signature:
            self._signatures[watch.name] = signature(watch.signature)
        logger.info("Watching %s (threshold %.0f ms)", watch.name, watch.threshold_ms)

    def matches(self, watch: WatchQuery, query_text: str, query_signature: str) -> bool:
        pattern = self._patterns.get(watch.name)
        if pattern is not None and pattern.search(query_text):
            return True
        expected = self._signatures.get(watch.name)
        if expected is not None and expected == query_signature:
            return True
        mapped = self.mapper_signatures.get(query_signature)
        return mapped is not None and mapped in (watch.name, watch.signature)

    async def run(self, source: DataSource, context: CheckContext) -> list[Finding]:
        if not self.watches:
            return []
        rows = await source.run_check_query("running_operations")
        findings: list[Finding] = []

        for row in rows:
            text = row.get("text") or ""
            if not text:
                continue
            query_signature = signature(text)
            elapsed = row.get("elapsed_ms") or 0
            for watch in self.watches:
                if not self.matches(watch, text, query_signature) or elapsed < watch.threshold_ms:
                    continue
                self._record(watch.name, elapsed)
                findings.append(
                    operation_finding(
                        row,
                        context,
                        type="watch_query",
                        level=watch.level,
                        message=(
                            f"Watched query {watch.name} ran {elapsed:,.0f} ms "
                            f"(threshold {watch.threshold_ms:,.0f} ms)"
                        ),
                        query_name=watch.name,
                    )
                )
        return findings

    def _record(self, name: str, elapsed_ms: float) -> None:
        current = self.stats.get(name)
        if current is None:
            self.stats[name] = WatchStats(
                count=1, total_ms=elapsed_ms, min_ms=elapsed_ms, max_ms=elapsed_ms, avg_ms=elapsed_ms
            )
            return
        current["count"] += 1
        current["total_ms"] += elapsed_ms
        current["min_ms"] = min(current["min_ms"], elapsed_ms)
        current["max_ms"] = max(current["max_ms"], elapsed_ms)
        current["avg_ms"] = current["total_ms"] / current["count"]
