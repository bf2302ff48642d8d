"""
Command-line entry point for the email analytics engine.

Loads any of the three provider exports into a session and prints a JSON
dashboard summary: load result, summary stats, aggregated metrics for the
requested range, the metric's time series and its period-over-period change.

Usage:
    python -m email_analytics.main --campaigns campaigns.csv --flows flows.csv \\
        --metric openRate --range 30d

When DATABASE_URL is set, the loaded dataset is also written to the durable
cache tier before the command exits.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from email_analytics.core.config import get_settings
from email_analytics.core.database import close_db
from email_analytics.models import Granularity, MetricKey
from email_analytics.services.session import AnalyticsSession

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='email_analytics',
        description="Load email-marketing exports and print a dashboard summary as JSON.",
    )
    parser.add_argument('--campaigns', help="Campaign export CSV")
    parser.add_argument('--flows', help="Flow export CSV")
    parser.add_argument('--subscribers', help="Subscriber export CSV")
    parser.add_argument('--identity', default=None, help="Cache identity (default: anonymous)")
    parser.add_argument(
        '--metric',
        default=MetricKey.REVENUE.value,
        choices=[metric.value for metric in MetricKey],
        help="Metric for the series and comparison",
    )
    parser.add_argument('--range', dest='date_range', default='30d', help='"Nd", "all" or "custom"')
    parser.add_argument('--from', dest='custom_from', default=None, help="Custom range start (YYYY-MM-DD)")
    parser.add_argument('--to', dest='custom_to', default=None, help="Custom range end (YYYY-MM-DD)")
    parser.add_argument(
        '--granularity',
        default=None,
        choices=[granularity.value for granularity in Granularity],
        help="Bucket width (default: chosen from the range length)",
    )
    return parser


async def run(args: argparse.Namespace) -> Dict[str, Any]:
    """Load the given files and assemble the summary document."""
    session = AnalyticsSession(identity=args.identity)
    session.cache.add_listener(lambda event, key: logger.info(f"Cache {event.value}: {key}"))
    session.initialize()
    await session.ensure_hydrated()

    load = await session.load_files(
        campaigns=args.campaigns,
        flows=args.flows,
        subscribers=args.subscribers,
        on_progress=lambda kind, progress: logger.debug(f"{kind.label}: {progress:.0f}%"),
    )

    granularity = args.granularity or session.get_granularity_for_date_range(
        args.date_range, args.custom_from, args.custom_to
    )
    window = session.get_resolved_date_range(args.date_range, args.custom_from, args.custom_to)
    campaigns, flows = session.get_campaigns(), session.get_flow_emails()

    series = session.get_metric_time_series_result(
        campaigns, flows, args.metric, args.date_range, granularity, args.custom_from, args.custom_to
    )
    summary: Dict[str, Any] = {
        'session': session.describe(),
        'load': load.model_dump(mode='json'),
        'summary': session.get_summary_stats().model_dump(mode='json'),
        'window': window.model_dump(mode='json') if window else None,
        'metrics': (
            session.get_aggregated_metrics_for_period(campaigns, flows, window.startDate, window.endDate)
            .model_dump(mode='json') if window else None
        ),
        'series': series.model_dump(mode='json') if series else None,
        'periodOverPeriod': session.calculate_period_over_period_change(
            args.metric, args.date_range, custom_from=args.custom_from, custom_to=args.custom_to
        ).model_dump(mode='json'),
    }

    await session.cache.flush()
    return summary


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if not (args.campaigns or args.flows or args.subscribers):
        logger.info("No files given; reporting cached data only")

    async def _main() -> Dict[str, Any]:
        try:
            return await run(args)
        finally:
            if settings.database_url:
                await close_db()

    summary = asyncio.run(_main())
    json.dump(summary, sys.stdout, indent=2)
    sys.stdout.write('\n')
    return 0 if summary['load']['success'] or not summary['load']['errors'] else 1


if __name__ == '__main__':
    sys.exit(main())
