"""Send a test notification through every enabled channel.

Usage:
    python -m scripts.send_test_alert
    python -m scripts.send_test_alert --level critical
"""

import argparse
import asyncio
import logging
import sys

from dbwatch.alerts.email import EmailChannel
from dbwatch.alerts.webhook import WebhookChannel
from dbwatch.config import get_settings
from dbwatch.models import Finding, FindingMetrics

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s: %(message)s",
)


async def main(level: str) -> None:
    """Send one canned finding to email and webhooks, ignoring throttles and level filters."""
    settings = get_settings()
    finding = Finding(
        type="slow_operation",
        level=level,  # pyright: ignore[reportArgumentType]
        message="dbwatch test alert",
        session_id="TEST",
        database=settings.data_source.database or "test",
        server=settings.data_source.server_name or None,
        metrics=FindingMetrics(execution_time_ms=12_345, cpu_time_ms=6_789, logical_reads=10_000),
        query_text="SELECT * FROM orders WHERE customer_id = 42",
    )

    channels = [EmailChannel(settings.email), WebhookChannel(settings.webhook)]
    enabled = [c for c in channels if c.enabled]
    if not enabled:
        print("No notification channel is enabled and configured.", file=sys.stderr)
        sys.exit(1)

    failed = False
    for channel in enabled:
        ok = await channel.send(finding)
        print(f"{channel.name}: {'sent' if ok else 'FAILED'}")
        failed = failed or not ok
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    _ = parser.add_argument("--level", choices=["info", "warning", "critical"], default="info")
    args = parser.parse_args()
    asyncio.run(main(args.level))
