"""
Background worker: prefetch provider data and aggregate fixtures.

Usage:
    python -m matchfeed.worker aggregate
    python -m matchfeed.worker prefetch --once
    python -m matchfeed.worker prefetch          # run on the cron schedule until interrupted
    python -m matchfeed.worker serve --port 8000   # read-only status API
"""
import argparse
import json
import logging
import signal
import threading
from typing import List, Optional

import uvicorn

from matchfeed.aggregator import FixtureAggregator
from matchfeed.cache import get_cache_client
from matchfeed.prefetch import PrefetchScheduler
from config.settings import settings

logger = logging.getLogger("matchfeed.worker")


def run_aggregate(args: argparse.Namespace) -> int:
    aggregator = FixtureAggregator.from_settings(settings, cache=get_cache_client())
    summary = aggregator.aggregate()
    print(json.dumps(summary.to_dict(include_fixtures=args.with_fixtures), indent=2, default=str))
    return 1 if summary.failed_writes else 0


def run_prefetch(args: argparse.Namespace) -> int:
    cache = get_cache_client()
    aggregator = FixtureAggregator.from_settings(settings, cache=cache)
    on_complete = None if args.no_aggregate else (lambda result: aggregator.aggregate())
    scheduler = PrefetchScheduler.from_settings(settings, cache=cache, on_complete=on_complete)

    if args.once:
        result = scheduler.run_once()
        print(json.dumps(result.to_dict(), indent=2))
        return 0 if not result.failed else 1

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, stopping")
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    scheduler.start()
    try:
        stop_event.wait()
    finally:
        scheduler.stop()
        cache.close()
    return 0


def run_serve(args: argparse.Namespace) -> int:
    logger.info(f"Serving status API on {args.host}:{args.port}")
    uvicorn.run("matchfeed.main:app", host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Matchfeed prefetch and aggregation worker")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Logging level (default: INFO)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    aggregate = subparsers.add_parser("aggregate", help="Run one aggregation pass")
    aggregate.add_argument(
        "--with-fixtures",
        action="store_true",
        help="Include the fixture list in the printed summary",
    )
    aggregate.set_defaults(handler=run_aggregate)

    prefetch = subparsers.add_parser("prefetch", help="Prefetch provider data")
    prefetch.add_argument(
        "--once",
        action="store_true",
        help="Run a single pass and exit instead of following the cron schedule",
    )
    prefetch.add_argument(
        "--no-aggregate",
        action="store_true",
        help="Do not run an aggregation pass after each prefetch pass",
    )
    prefetch.set_defaults(handler=run_prefetch)

    serve = subparsers.add_parser("serve", help="Run the read-only status API")
    serve.add_argument("--host", type=str, default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    serve.set_defaults(handler=run_serve)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
