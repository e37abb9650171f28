"""Alert dispatch pipeline: AI augmentation, daily log, throttled delivery.

Throttle scopes:
    shared       one cooldown per (type, level), claimed before sending and
                 handed back only when every channel failed
    per_channel  each channel keeps its own (type, level) cooldown
"""

import asyncio
import logging
from typing import Protocol

from dbwatch.ai.engine import AIEngine
from dbwatch.alerts.email import EmailChannel
from dbwatch.alerts.log import AlertLog
from dbwatch.alerts.throttle import Throttle
from dbwatch.alerts.webhook import WebhookChannel
from dbwatch.config import Level, Settings
from dbwatch.models import LEVELS, Finding
from dbwatch.observability.metrics import FINDINGS_TOTAL, NOTIFICATIONS_THROTTLED

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    name: str
    send_on_levels: list[Level]
    throttle_minutes: float

    @property
    def enabled(self) -> bool: ...

    async def send(self, finding: Finding) -> bool: ...


class AlertDispatcher:
    def __init__(
        self,
        channels: list[NotificationChannel],
        *,
        alert_log: AlertLog | None = None,
        engine: AIEngine | None = None,
        throttle_scope: str = "shared",
    ) -> None:
        self.channels = channels
        self.alert_log = alert_log
        self.engine = engine
        self.throttle_scope = throttle_scope
        self.counts: dict[str, int] = dict.fromkeys(LEVELS, 0)

        active = [c for c in channels if c.enabled]
        shared_window = max((c.throttle_minutes for c in active), default=0.0) * 60
        self._shared = Throttle(shared_window)
        self._per_channel = {c.name: Throttle(c.throttle_minutes * 60) for c in channels}

    async def dispatch(self, finding: Finding) -> dict[str, bool]:
        """Run ``finding`` through the pipeline. Returns per-channel delivery results."""
        self.counts[finding.level] = self.counts.get(finding.level, 0) + 1
        FINDINGS_TOTAL.labels(type=finding.type, level=finding.level).inc()
        log = logger.warning if finding.level != "info" else logger.info
        log("[%s] %s", finding.level.upper(), finding.message)

        if self.engine is not None:
            analysis = await self.engine.analyze(finding)
            if analysis is not None:
                finding.ai_analysis = dict(analysis)

        if self.alert_log is not None:
            await asyncio.to_thread(self.alert_log.append, finding)

        channels = [c for c in self.channels if c.enabled and finding.level in c.send_on_levels]
        if not channels:
            return {}
        if self.throttle_scope == "per_channel":
            return await self._dispatch_per_channel(channels, finding)
        return await self._dispatch_shared(channels, finding)

    async def _dispatch_shared(self, channels: list[NotificationChannel], finding: Finding) -> dict[str, bool]:
        key = (finding.type, finding.level)
        claimed_at = self._shared.try_claim(key)
        if claimed_at is None:
            NOTIFICATIONS_THROTTLED.labels(type=finding.type, level=finding.level).inc()
            logger.debug("Notification throttled: %s/%s", *key)
            return {}
        results = await self._send_all(channels, finding)
        if not any(results.values()):
            self._shared.release(key, claimed_at)
        return results

    async def _dispatch_per_channel(self, channels: list[NotificationChannel], finding: Finding) -> dict[str, bool]:
        key = (finding.type, finding.level)
        claims: dict[str, float] = {}
        for channel in channels:
            claimed_at = self._per_channel[channel.name].try_claim(key)
            if claimed_at is None:
                NOTIFICATIONS_THROTTLED.labels(type=finding.type, level=finding.level).inc()
                logger.debug("Notification throttled on %s: %s/%s", channel.name, *key)
            else:
                claims[channel.name] = claimed_at
        if not claims:
            return {}
        results = await self._send_all([c for c in channels if c.name in claims], finding)
        for name, ok in results.items():
            if not ok:
                self._per_channel[name].release(key, claims[name])
        return results

    async def _send_all(self, channels: list[NotificationChannel], finding: Finding) -> dict[str, bool]:
        outcomes = await asyncio.gather(*(c.send(finding) for c in channels), return_exceptions=True)
        results: dict[str, bool] = {}
        for channel, outcome in zip(channels, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error("Channel %s raised while sending", channel.name, exc_info=outcome)
                results[channel.name] = False
            else:
                results[channel.name] = bool(outcome)
        return results


def create_dispatcher(settings: Settings, engine: AIEngine | None = None) -> AlertDispatcher:
    """Wire the configured channels, daily log and engine into a dispatcher."""
    channels: list[NotificationChannel] = [EmailChannel(settings.email), WebhookChannel(settings.webhook)]
    for channel in channels:
        if channel.enabled:
            logger.info("Notification channel enabled: %s", channel.name)
    alert_log = None
    if settings.alert_log.enabled:
        alert_log = AlertLog(settings.alert_log)
        _ = alert_log.prepare()
    return AlertDispatcher(
        channels,
        alert_log=alert_log,
        engine=engine,
        throttle_scope=settings.notifications.throttle_scope,
    )
