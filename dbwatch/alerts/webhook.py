"""Webhook notification channel (generic JSON, Slack, Discord, MS Teams, Google Chat)."""

import asyncio
import logging
from typing import Any

import httpx

from dbwatch.config import WebhookSettings, WebhookTarget
from dbwatch.models import Finding, FindingMetrics, truncate
from dbwatch.observability.metrics import NOTIFICATIONS_TOTAL

logger = logging.getLogger(__name__)

CARD_QUERY_LIMIT = 500
GENERIC_QUERY_LIMIT = 1000

LEVEL_COLORS = {"critical": "#dc3545", "warning": "#ffc107", "info": "#17a2b8"}
DEFAULT_COLOR = "#6c757d"


def _title(finding: Finding) -> str:
    return f"DB Alert - {finding.level.upper()}"


def _fields(finding: Finding) -> list[tuple[str, str]]:
    m = finding.metrics
    return [
        ("Time", finding.timestamp.isoformat(timespec="seconds")),
        ("Type", finding.type.replace("_", " ").upper()),
        ("Session", str(finding.session_id or "N/A")),
        ("Database", finding.database or "N/A"),
        ("Execution time", f"{m.execution_time_ms:,.0f} ms" if m.execution_time_ms else "N/A"),
        ("CPU time", f"{m.cpu_time_ms:,.0f} ms" if m.cpu_time_ms else "N/A"),
    ]


# --- Payload builders ---


def build_generic_payload(finding: Finding) -> dict[str, Any]:
    m = finding.metrics
    return {
        "timestamp": finding.timestamp.isoformat(),
        "level": finding.level,
        "type": finding.type,
        "message": finding.message,
        "sessionId": finding.session_id,
        "database": finding.database,
        "server": finding.server,
        "executionTimeMs": m.execution_time_ms,
        "cpuTimeMs": m.cpu_time_ms,
        "logicalReads": m.logical_reads,
        "blockingSessionId": m.blocking_session_id,
        "waitType": m.wait_type,
        "queryText": truncate(finding.query_text, GENERIC_QUERY_LIMIT) or "",
    }


def build_slack_payload(finding: Finding) -> dict[str, Any]:
    return {
        "text": _title(finding),
        "attachments": [
            {
                "color": LEVEL_COLORS.get(finding.level, DEFAULT_COLOR),
                "title": finding.message,
                "fields": [{"title": k, "value": v, "short": True} for k, v in _fields(finding)],
                "footer": "dbwatch",
                "ts": int(finding.timestamp.timestamp()),
            }
        ],
    }


def build_discord_payload(finding: Finding) -> dict[str, Any]:
    fields = [{"name": k, "value": v, "inline": True} for k, v in _fields(finding)]
    if finding.query_text:
        query = truncate(finding.query_text, CARD_QUERY_LIMIT)
        fields.append({"name": "Query", "value": f"```sql\n{query}\n```", "inline": False})
    return {
        "embeds": [
            {
                "title": _title(finding),
                "description": finding.message,
                "color": int(LEVEL_COLORS.get(finding.level, DEFAULT_COLOR).lstrip("#"), 16),
                "fields": fields,
                "timestamp": finding.timestamp.isoformat(),
                "footer": {"text": "dbwatch"},
            }
        ]
    }


def build_teams_payload(finding: Finding) -> dict[str, Any]:
    return {
        "@type": "MessageCard",
        "@context": "https://schema.org/extensions",
        "summary": _title(finding),
        "themeColor": LEVEL_COLORS.get(finding.level, DEFAULT_COLOR),
        "title": _title(finding),
        "sections": [
            {
                "activityTitle": finding.message,
                "activitySubtitle": finding.timestamp.isoformat(timespec="seconds"),
                "facts": [{"name": k, "value": v} for k, v in _fields(finding)[1:]],
            }
        ],
    }


def build_google_chat_payload(finding: Finding) -> dict[str, Any]:
    sections: list[dict[str, Any]] = [
        {"widgets": [{"keyValue": {"topLabel": k, "content": v}} for k, v in _fields(finding)]},
    ]
    if finding.query_text:
        query = truncate(finding.query_text, CARD_QUERY_LIMIT)
        sections.append(
            {
                "header": "Query",
                "widgets": [{"textParagraph": {"text": f'<font face="monospace">{query}</font>'}}],
            }
        )
    return {
        "cards": [
            {
                "header": {"title": _title(finding), "subtitle": finding.message},
                "sections": sections,
            }
        ]
    }


PAYLOAD_BUILDERS = {
    "generic": build_generic_payload,
    "slack": build_slack_payload,
    "discord": build_discord_payload,
    "teams": build_teams_payload,
    "msteams": build_teams_payload,
    "google-chat": build_google_chat_payload,
    "googlechat": build_google_chat_payload,
}


def build_payload(webhook_type: str, finding: Finding) -> dict[str, Any]:
    """Payload for ``webhook_type``; unknown types get the generic shape."""
    builder = PAYLOAD_BUILDERS.get(webhook_type.lower(), build_generic_payload)
    return builder(finding)


# --- Channel ---


class WebhookChannel:
    name = "webhook"

    def __init__(self, settings: WebhookSettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self.send_on_levels = settings.send_on_levels
        self.throttle_minutes = settings.throttle_minutes
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return self.settings.enabled and bool(self.settings.webhooks)

    async def send(self, finding: Finding) -> bool:
        """Post ``finding`` to every configured webhook. True if any accepted it."""
        if not self.settings.webhooks:
            return False
        async with httpx.AsyncClient(timeout=self.settings.timeout_seconds, transport=self._transport) as client:
            results = await asyncio.gather(*(self._post(client, target, finding) for target in self.settings.webhooks))
        return any(results)

    async def _post(self, client: httpx.AsyncClient, target: WebhookTarget, finding: Finding) -> bool:
        label = target.name or target.type
        try:
            response = await client.post(target.url, json=build_payload(target.type, finding))
            _ = response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning("Webhook %s rejected alert: HTTP %d", label, e.response.status_code)
        except httpx.HTTPError as e:
            logger.warning("Webhook %s unreachable: %s", label, e)
        except Exception:
            logger.exception("Webhook %s failed", label)
        else:
            logger.info("Webhook alert sent: %s", label)
            NOTIFICATIONS_TOTAL.labels(channel=self.name, status="success").inc()
            return True
        NOTIFICATIONS_TOTAL.labels(channel=self.name, status="error").inc()
        return False

    async def send_test_message(self) -> bool:
        """Send a canned info finding to every webhook, bypassing level filters."""
        finding = Finding(
            type="slow_operation",
            level="info",
            message="dbwatch webhook test",
            session_id="TEST",
            database="test",
            metrics=FindingMetrics(execution_time_ms=1234, cpu_time_ms=567, logical_reads=8901),
            query_text="SELECT * FROM orders WHERE order_no = 'TEST123'",
        )
        return await self.send(finding)
