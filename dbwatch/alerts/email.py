"""Email notification channel.

Uses stdlib smtplib (STARTTLS optional) in a worker thread so the event
loop never blocks on SMTP.  ``send`` never raises; it returns a success
boolean and logs errors.
"""

import asyncio
import html
import logging
import smtplib
from email.mime.text import MIMEText

from dbwatch.config import EmailSettings
from dbwatch.models import Finding, truncate
from dbwatch.observability.metrics import NOTIFICATIONS_TOTAL

logger = logging.getLogger(__name__)

LEVEL_COLORS = {"critical": "#dc3545", "warning": "#ffc107", "info": "#17a2b8"}
DEFAULT_COLOR = "#6c757d"
QUERY_TEXT_LIMIT = 2000


def render_subject(finding: Finding) -> str:
    type_text = finding.type.replace("_", " ").upper()
    return f"[{finding.level.upper()}] DB Alert - {type_text}"


def _fmt_ms(value: float | None) -> str:
    return f"{value:,.0f} ms" if value else "N/A"


def render_html(finding: Finding) -> str:
    """Render an HTML body for ``finding``. All interpolated values are escaped."""
    color = LEVEL_COLORS.get(finding.level, DEFAULT_COLOR)
    m = finding.metrics
    esc = html.escape

    rows = [
        ("Time", finding.timestamp.isoformat(timespec="seconds")),
        ("Level", finding.level.upper()),
        ("Type", finding.type.replace("_", " ")),
        ("Session", str(finding.session_id or "N/A")),
        ("Database", finding.database or "N/A"),
        ("Server", finding.server or "N/A"),
    ]
    metrics = [
        ("Execution time", _fmt_ms(m.execution_time_ms)),
        ("CPU time", _fmt_ms(m.cpu_time_ms)),
        ("Logical reads", f"{m.logical_reads:,}" if m.logical_reads else "N/A"),
    ]
    if m.blocking_session_id:
        metrics.append(("Blocking session", str(m.blocking_session_id)))
    if m.wait_type:
        metrics.append(("Wait type", m.wait_type))

    parts = [
        "<!DOCTYPE html><html><head><meta charset='UTF-8'></head>",
        "<body style='font-family: Arial, sans-serif; color: #333;'>",
        f"<div style='background-color: {color}; color: white; padding: 16px;'>",
        f"<h1 style='margin: 0; font-size: 22px;'>{esc(render_subject(finding))}</h1>",
        f"<p style='margin: 4px 0 0 0;'>{esc(finding.message)}</p></div>",
        "<h2>Alert</h2><table>",
    ]
    parts += [f"<tr><th align='left'>{k}</th><td>{esc(v)}</td></tr>" for k, v in rows]
    parts.append("</table><h2>Metrics</h2><table>")
    parts += [f"<tr><th align='left'>{k}</th><td>{esc(v)}</td></tr>" for k, v in metrics]
    parts.append("</table>")

    if finding.lock_details:
        parts.append("<h2>Lock details</h2><table>")
        parts += [
            f"<tr><th align='left'>{esc(str(k))}</th><td>{esc(str(v))}</td></tr>"
            for k, v in finding.lock_details.items()
            if v is not None
        ]
        parts.append("</table>")

    if finding.query_text:
        query = truncate(finding.query_text, QUERY_TEXT_LIMIT) or ""
        parts.append(f"<h2>Query</h2><pre style='background: #f1f3f5; padding: 12px;'>{esc(query)}</pre>")

    analysis = finding.ai_analysis or {}
    root_cause = analysis.get("root_cause")
    if root_cause:
        parts.append(f"<h2>AI analysis</h2><p>{esc(str(root_cause.get('cause', '')))}</p>")
    suggestions = (analysis.get("optimization") or {}).get("suggestions") or []
    if suggestions:
        parts.append("<ul>")
        for suggestion in suggestions:
            text = suggestion.get("description", "") if isinstance(suggestion, dict) else str(suggestion)
            parts.append(f"<li>{esc(str(text))}</li>")
        parts.append("</ul>")

    parts.append("<p style='font-size: 12px; color: #6c757d;'>Sent by dbwatch</p></body></html>")
    return "\n".join(parts)


class EmailChannel:
    name = "email"

    def __init__(self, settings: EmailSettings) -> None:
        self.settings = settings
        self.send_on_levels = settings.send_on_levels
        self.throttle_minutes = settings.throttle_minutes

    @property
    def enabled(self) -> bool:
        return self.settings.enabled and self.is_configured()

    def is_configured(self) -> bool:
        """Check whether the SMTP host, sender and at least one recipient are present."""
        return bool(self.settings.smtp.host and self.settings.sender and self.settings.to)

    async def send(self, finding: Finding) -> bool:
        if not self.is_configured():
            logger.warning("Email not configured, skipping send")
            return False
        sent = await asyncio.to_thread(self._send_sync, render_subject(finding), render_html(finding))
        NOTIFICATIONS_TOTAL.labels(channel=self.name, status="success" if sent else "error").inc()
        return sent

    def _send_sync(self, subject: str, body: str) -> bool:
        smtp = self.settings.smtp
        msg = MIMEText(body, "html", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self.settings.sender
        msg["To"] = ", ".join(self.settings.to)

        try:
            with smtplib.SMTP(smtp.host, smtp.port, timeout=30) as server:
                if smtp.starttls:
                    _ = server.starttls()
                if smtp.username:
                    server.login(smtp.username, smtp.password.get_secret_value())
                server.send_message(msg)
            logger.info("Alert email sent to %s", msg["To"])
            return True
        except Exception:
            logger.exception("Failed to send alert email")
            return False
