"""Print statistics from the daily alert log.

Usage:
    python -m scripts.alert_stats                 # today
    python -m scripts.alert_stats --date 2024-05-01
    python -m scripts.alert_stats --level critical --min-ms 10000
"""

import argparse
import json
import logging
import sys
from datetime import date

from dbwatch.alerts.log import AlertLog
from dbwatch.config import get_settings

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)


def main() -> None:
    parser = argparse.ArgumentParser(description="Summarise or search the dbwatch alert log.")
    _ = parser.add_argument("--date", type=date.fromisoformat, default=None, help="Day to summarise (YYYY-MM-DD)")
    _ = parser.add_argument("--level", choices=["info", "warning", "critical"], help="Search: filter by level")
    _ = parser.add_argument("--type", dest="alert_type", help="Search: filter by finding type")
    _ = parser.add_argument("--min-ms", type=float, default=None, help="Search: minimum execution time")
    args = parser.parse_args()

    alert_log = AlertLog(get_settings().alert_log)

    if args.level or args.alert_type or args.min_ms is not None:
        entries = alert_log.search(level=args.level, alert_type=args.alert_type, min_execution_time_ms=args.min_ms)
        for entry in entries:
            print(f"{entry['timestamp']} [{entry['level'].upper()}] {entry['alertType']}: {entry['message']}")
        print(f"\n{len(entries)} matching alert(s)")
        return

    stats = alert_log.daily_stats(args.date)
    if stats is None:
        print("No alert log for that day.", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(stats, indent=2))


if __name__ == "__main__":
    main()
