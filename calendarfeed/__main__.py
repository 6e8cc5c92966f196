"""Command-line entry for calendarfeed.

Runs the calendar hub until interrupted, or fetches every configured calendar once
with ``--once`` and prints the requested page of each as JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, NoReturn, Optional

from .config_loader import FeedConfig, load_config
from .feed_channel import FetchFailed
from .feed_hub import CalendarHub
from .feed_logging import configure_feed_logging
from .feed_models import CalendarEvent
from .http_client import close_all_clients

logger = logging.getLogger(__name__)


def _create_parser() -> argparse.ArgumentParser:
    """Create argument parser for the calendarfeed CLI.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        prog="calendarfeed",
        description="calendarfeed - ICS calendar feed fetcher",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m calendarfeed                               # Run with ./config/config.yaml
  python -m calendarfeed --config my.yaml --once       # Print the first page and exit
  python -m calendarfeed --once --page 2               # Print the second page and exit
        """,
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Path to a YAML or JSON config file (default: ./config/config.yaml)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Fetch every calendar once, print the page as JSON and exit",
    )
    parser.add_argument(
        "--page",
        type=int,
        default=1,
        metavar="N",
        help="Page to fetch with --once (default: 1)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def _event_json(event: CalendarEvent) -> dict[str, Any]:
    return event.model_dump(mode="json")


async def fetch_once(config: FeedConfig, page_number: int = 1) -> dict[str, Any]:
    """Fetch one page of every configured calendar.

    Args:
        config: Loaded configuration
        page_number: 1-based page to fetch

    Returns:
        Mapping of calendar URL to its page, or to an ``error`` entry
    """
    hub = CalendarHub.from_config(config)
    results: dict[str, Any] = {}
    try:
        tasks = []
        for source in hub.sources:
            session = hub.session(source.url)
            session.current_page = page_number
            tasks.append(session.start_fetch())
        messages = await asyncio.gather(*tasks)
        for message in messages:
            if message is None:
                continue
            if isinstance(message, FetchFailed):
                results[message.source_url] = {"error": str(message.error)}
                continue
            page = message.page
            results[message.source_url] = {
                "page": page.page_number,
                "has_more": page.has_more,
                "total_events": page.total_events,
                "events": [_event_json(event) for event in page.events],
            }
    finally:
        await hub.close()
        await close_all_clients()
    return results


async def _log_broadcast(events: list[CalendarEvent]) -> None:
    logger.info("Broadcasting %d events", len(events))
    for event in events:
        logger.debug("  %s (%d)", event.title, event.start_date)


async def run_hub(config: FeedConfig) -> None:
    """Run the calendar hub until cancelled."""
    hub = CalendarHub.from_config(config, broadcaster=_log_broadcast)
    if not hub.sources:
        logger.warning("No calendars configured; nothing to fetch")
    hub.start()
    try:
        await asyncio.Event().wait()
    finally:
        await hub.close()
        await close_all_clients()


def main(argv: Optional[list[str]] = None) -> NoReturn:
    """Run the calendarfeed CLI."""
    parser = _create_parser()
    args = parser.parse_args(argv)

    if args.page < 1:
        parser.error("--page must be >= 1")

    configure_feed_logging(debug_mode=args.debug)
    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        logger.error("Failed to load configuration: %s", e)
        sys.exit(2)

    if not args.debug and config.log_level:
        logging.getLogger().setLevel(getattr(logging, config.log_level, logging.INFO))

    if args.once:
        results = asyncio.run(fetch_once(config, args.page))
        print(json.dumps(results, indent=2))
        failed = any("error" in result for result in results.values())
        sys.exit(1 if failed else 0)

    try:
        asyncio.run(run_hub(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)
    sys.exit(0)


if __name__ == "__main__":
    main()
