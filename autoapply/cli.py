"""Command-line entry point: ``autoapply <command>`` or ``python -m autoapply``."""
from __future__ import annotations

import argparse
import json
import sys
from datetime import date, timedelta
from typing import Any

from autoapply.config import load_settings
from autoapply.db import today
from autoapply.log import configure_logging, get_logger
from autoapply.worker import Worker, build_services

log = get_logger(__name__)


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autoapply", description="Job matching and auto-apply worker")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database tables")
    sub.add_parser("sweep", help="Run one auto-apply cycle now")

    p = sub.add_parser("flush-digests", help="Send unsent recruiter digests")
    p.add_argument("--date", type=date.fromisoformat, default=None, help="YYYY-MM-DD (default: today, UTC)")

    p = sub.add_parser("work", help="Run due tasks from the work queue once")
    p.add_argument("--max-tasks", type=int, default=50)

    p = sub.add_parser("serve", help="Run the worker loop until interrupted")
    p.add_argument("--poll", type=float, default=10.0, help="Seconds to sleep when the queue is idle")

    p = sub.add_parser("search", help="Search postings the way the front-end does")
    p.add_argument("query")
    p.add_argument("--category", default=None)
    p.add_argument("--location", default=None)
    p.add_argument("--limit", type=int, default=20)

    p = sub.add_parser("score", help="Show the ATS score for an application")
    p.add_argument("application_id")

    p = sub.add_parser("stats", help="Auto-apply, digest and queue statistics")
    p.add_argument("--days", type=int, default=7)

    sub.add_parser("cleanup-cache", help="Delete expired query expansion cache entries")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    if args.verbose:
        configure_logging("DEBUG")
    services = build_services(load_settings())

    if args.command == "init-db":
        services.db.create_all()
        log.info("Database ready")
    elif args.command == "sweep":
        _print(services.engine.process_all_subscriptions())
    elif args.command == "flush-digests":
        _print(services.digests.flush(args.date))
    elif args.command == "work":
        stats = Worker(services).run_once(max_tasks=args.max_tasks)
        _print({"completed": stats.completed, "retried": stats.retried, "failed": stats.failed})
    elif args.command == "serve":
        try:
            Worker(services).serve(poll_seconds=args.poll)
        except KeyboardInterrupt:
            log.info("Worker stopped")
    elif args.command == "search":
        filters = {"category": args.category, "location": args.location}
        result = services.search.search_jobs(args.query, filters, limit=args.limit)
        _print({
            "query": result.query,
            "cached": result.cached,
            "filter": result.filter.to_dict() if result.filter else None,
            "postings": result.postings,
        })
    elif args.command == "score":
        _print(services.scoring.get_score(args.application_id))
    elif args.command == "stats":
        end = today()
        _print({
            "auto_apply": services.engine.get_statistics(days=args.days),
            "digests": services.digests.digest_stats(end - timedelta(days=args.days - 1), end),
            "queue_pending": services.queue.pending_count(),
        })
    elif args.command == "cleanup-cache":
        _print({"removed": services.expansion.clean_expired_cache()})
    return 0


if __name__ == "__main__":
    sys.exit(main())
