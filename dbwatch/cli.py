"""Run the monitoring daemon.

Usage:
    python -m dbwatch
    # or, once installed:
    dbwatch
"""

import asyncio
import logging
import sys

from prometheus_client import start_http_server
from pydantic import ValidationError

from dbwatch.config import get_settings
from dbwatch.datasource.base import DataSourceError
from dbwatch.monitor import build_monitor

logger = logging.getLogger("dbwatch")


async def _run() -> int:
    settings = get_settings()
    monitor = build_monitor(settings)
    try:
        await monitor.run()
    except DataSourceError as e:
        logger.critical("Cannot reach the monitored database: %s", e)
        return 1
    print(monitor.summary())
    return 0


def main() -> None:
    """Load settings, start the optional metrics endpoint and run until signalled."""
    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if settings.metrics_port:
        _ = start_http_server(settings.metrics_port)
        logger.info("Metrics exposed on :%d/metrics", settings.metrics_port)

    sys.exit(asyncio.run(_run()))


if __name__ == "__main__":
    main()
